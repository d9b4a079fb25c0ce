import unittest
from unittest.mock import patch

from aichat_config import DefaultModel, find_client, find_default_model
from config_document import ConfigDocument
from ollama_client import Capability, ModelFields, OllamaClient, OllamaConfig, OllamaConnectionError
from reconciler import (
    apply_exclusions,
    build_model_entry,
    parse_exclusions,
    reconcile,
    select_default_model,
    update_default_model,
)

CONFIG = """\
model: ollama:llama2
clients:
  - type: openai-compatible
    name: ollama
    models:
      - name: llama2
        temperature: 0.7   # tuned by hand
      - name: old-model
        max_input_tokens: 4096
"""


class _FakeInventory:
    def __init__(self, fields=None, failing=()) -> None:
        self.fields = fields or {}
        self.failing = set(failing)
        self.calls = []

    def enrich(self, name: str) -> ModelFields:
        self.calls.append(name)
        if name in self.failing:
            raise OllamaConnectionError(f"show failed for {name}")
        return self.fields.get(name, ModelFields())


def _load(text: str = CONFIG):
    doc = ConfigDocument.parse(text)
    models = find_client(doc.root, "ollama")["models"]
    return doc, models


def _names(models):
    return [m["name"] for m in models]


class ExclusionTests(unittest.TestCase):
    def test_parse_exclusions(self) -> None:
        self.assertEqual(parse_exclusions(" embed , vision,,"), ["embed", "vision"])
        self.assertEqual(parse_exclusions(""), [])
        self.assertEqual(parse_exclusions(None), [])

    def test_apply_exclusions_by_substring(self) -> None:
        kept, excluded = apply_exclusions(["llama2", "mistral-7b", "nomic-embed"], ["mistral", "embed"])
        self.assertEqual(kept, ["llama2"])
        self.assertEqual(excluded, ["mistral-7b", "nomic-embed"])

    def test_no_exclusions_keeps_everything(self) -> None:
        kept, excluded = apply_exclusions(["llama2", "mistral"], [])
        self.assertEqual(kept, ["llama2", "mistral"])
        self.assertEqual(excluded, [])


class BuildModelEntryTests(unittest.TestCase):
    def test_only_meaningful_fields_are_written(self) -> None:
        entry = build_model_entry("mistral", ModelFields(context_length=8192))
        self.assertEqual(dict(entry), {"name": "mistral", "max_input_tokens": 8192})

    def test_non_positive_values_are_omitted(self) -> None:
        entry = build_model_entry(
            "m", ModelFields(context_length=0, temperature=0.0, top_p=-1.0)
        )
        self.assertEqual(list(entry.keys()), ["name"])

    def test_all_fields_in_order(self) -> None:
        fields = ModelFields(
            context_length=32768,
            temperature=0.6,
            top_p=0.95,
            capabilities=frozenset(Capability),
        )
        entry = build_model_entry("qwen3", fields)
        self.assertEqual(
            list(entry.items()),
            [
                ("name", "qwen3"),
                ("max_input_tokens", 32768),
                ("temperature", 0.6),
                ("top_p", 0.95),
                ("supports_vision", True),
                ("supports_function_calling", True),
                ("supports_reasoning", True),
                ("type", "embedding"),
            ],
        )

    def test_name_only_without_fields(self) -> None:
        self.assertEqual(dict(build_model_entry("x")), {"name": "x"})


class ReconcileTests(unittest.TestCase):
    def test_adds_missing_and_keeps_existing_untouched(self) -> None:
        doc, models = _load(
            "clients:\n"
            "  - name: ollama\n"
            "    models:\n"
            "      - name: llama2\n"
            "        temperature: 0.7\n"
        )
        llama2 = models[0]
        inventory = _FakeInventory({
            "mistral": ModelFields(context_length=8192, temperature=None, top_p=None),
        })

        result = reconcile(models, ["llama2", "mistral"], inventory.enrich)

        self.assertEqual(_names(models), ["llama2", "mistral"])
        self.assertIs(models[0], llama2)
        self.assertEqual(dict(models[0]), {"name": "llama2", "temperature": 0.7})
        self.assertEqual(dict(models[1]), {"name": "mistral", "max_input_tokens": 8192})
        self.assertEqual(inventory.calls, ["mistral"])
        self.assertEqual(result.added, ["mistral"])
        self.assertEqual(result.kept, ["llama2"])
        self.assertEqual(result.removed, [])
        self.assertTrue(result.changed)

    def test_replaces_obsolete_model(self) -> None:
        doc, models = _load(
            "clients:\n"
            "  - name: ollama\n"
            "    models:\n"
            "      - name: old-model   # retired\n"
        )
        result = reconcile(models, ["new-model"], _FakeInventory().enrich)

        self.assertEqual(_names(models), ["new-model"])
        self.assertEqual(result.removed, ["old-model"])
        text = doc.render()
        self.assertNotIn("old-model", text)
        self.assertNotIn("retired", text)

    def test_pruning_keeps_exactly_the_served_models(self) -> None:
        doc, models = _load(
            "clients:\n"
            "  - name: ollama\n"
            "    models:\n"
            "      - name: a\n"
            "      - name: b\n"
            "      - name: c\n"
            "      - name: d\n"
        )
        result = reconcile(models, ["d", "b"], _FakeInventory().enrich)
        self.assertEqual(_names(models), ["b", "d"])
        self.assertEqual(result.removed, ["a", "c"])

    def test_unnamed_entries_are_dropped(self) -> None:
        doc, models = _load(
            "clients:\n"
            "  - name: ollama\n"
            "    models:\n"
            "      - temperature: 0.1\n"
            "      - name: llama2\n"
        )
        reconcile(models, ["llama2"], _FakeInventory().enrich)
        self.assertEqual(_names(models), ["llama2"])

    def test_sorted_by_name_codepoint_order(self) -> None:
        doc, models = _load(
            "clients:\n"
            "  - name: ollama\n"
            "    models:\n"
            "      - name: zephyr\n"
        )
        reconcile(models, ["zephyr", "Qwen", "alpha", "llama3:8b", "llama3"], _FakeInventory().enrich)
        self.assertEqual(_names(models), ["Qwen", "alpha", "llama3", "llama3:8b", "zephyr"])

    def test_unsorted_appends_new_models(self) -> None:
        doc, models = _load(
            "clients:\n"
            "  - name: ollama\n"
            "    models:\n"
            "      - name: zephyr\n"
        )
        reconcile(models, ["beta", "zephyr", "alpha"], _FakeInventory().enrich, sort=False)
        self.assertEqual(_names(models), ["zephyr", "beta", "alpha"])

    def test_sorting_moves_comments_with_their_entries(self) -> None:
        doc, models = _load(
            "clients:\n"
            "  - name: ollama\n"
            "    models:\n"
            "      - name: zephyr\n"
            "        temperature: 0.2   # zephyr note\n"
            "      - name: alpha\n"
            "        temperature: 0.3   # alpha note\n"
        )
        reconcile(models, ["zephyr", "alpha"], _FakeInventory().enrich)
        text = doc.render()
        self.assertLess(text.index("name: alpha"), text.index("# alpha note"))
        self.assertLess(text.index("# alpha note"), text.index("name: zephyr"))
        self.assertLess(text.index("name: zephyr"), text.index("# zephyr note"))

    def test_duplicate_served_names_are_added_once(self) -> None:
        doc, models = _load()
        inventory = _FakeInventory()
        reconcile(models, ["llama2", "qwen3", "qwen3"], inventory.enrich)
        self.assertEqual(_names(models), ["llama2", "qwen3"])
        self.assertEqual(inventory.calls, ["qwen3"])

    def test_enrich_failure_adds_name_only(self) -> None:
        doc, models = _load()
        inventory = _FakeInventory(
            {"qwen3": ModelFields(context_length=40960)},
            failing={"broken"},
        )
        with self.assertLogs("reconciler", level="WARNING") as logs:
            result = reconcile(models, ["llama2", "broken", "qwen3"], inventory.enrich)

        self.assertEqual(_names(models), ["broken", "llama2", "qwen3"])
        self.assertEqual(dict(models[0]), {"name": "broken"})
        self.assertEqual(models[2]["max_input_tokens"], 40960)
        self.assertEqual(result.enrich_failures, ["broken"])
        self.assertTrue(any("broken" in line for line in logs.output))

    def test_unexpected_enrich_errors_propagate(self) -> None:
        doc, models = _load()

        def enrich(name):
            raise RuntimeError("bug")

        with self.assertRaises(RuntimeError):
            reconcile(models, ["llama2", "qwen3"], enrich)

    def test_second_run_is_identical(self) -> None:
        doc, models = _load()
        inventory = _FakeInventory({
            "mistral": ModelFields(context_length=8192, temperature=0.8, top_p=0.9),
            "llava": ModelFields(capabilities=frozenset({Capability.VISION, Capability.COMPLETION})),
        })
        served = ["mistral", "llama2", "llava"]

        reconcile(models, served, inventory.enrich)
        first = doc.render()

        doc2, models2 = _load(first)
        result = reconcile(models2, served, inventory.enrich)
        self.assertEqual(doc2.render(), first)
        self.assertFalse(result.changed)
        self.assertEqual(inventory.calls, ["mistral", "llava"])

    def test_untouched_comments_survive(self) -> None:
        doc, models = _load()
        reconcile(models, ["llama2", "mistral"], _FakeInventory().enrich)
        self.assertIn("temperature: 0.7   # tuned by hand\n", doc.render())

    def test_show_timeout_adds_name_only(self) -> None:
        doc, models = _load()
        client = OllamaClient(OllamaConfig(url="http://gpu-box:11434", timeout=1))

        with patch("ollama_client.urlopen", side_effect=TimeoutError("timed out")):
            with self.assertLogs("reconciler", level="WARNING"):
                result = reconcile(models, ["llama2", "slow"], client.model_fields)

        self.assertEqual(_names(models), ["llama2", "slow"])
        self.assertEqual(dict(models[1]), {"name": "slow"})
        self.assertEqual(result.enrich_failures, ["slow"])


SECTION_TAIL = (
    "# ---- RAG settings ----\n"
    "rag_top_k: 4\n"
)


def _models_config(*entries: str) -> str:
    return (
        "clients:\n"
        "  - name: ollama\n"
        "    models:\n"
        + "".join(entries)
        + SECTION_TAIL
    )


class CommentPlacementTests(unittest.TestCase):
    def _reconcile(self, text: str, served, sort: bool = True) -> str:
        doc, models = _load(text)
        reconcile(models, served, _FakeInventory().enrich, sort=sort)
        return doc.render()

    def test_pruning_last_entry_keeps_following_section_comment(self) -> None:
        text = self._reconcile(
            _models_config("      - name: keep\n", "      - name: old\n"),
            ["keep"],
        )
        self.assertEqual(text, _models_config("      - name: keep\n"))

    def test_following_comment_joins_end_of_line_comment(self) -> None:
        text = self._reconcile(
            _models_config("      - name: keep   # pinned\n", "      - name: old\n"),
            ["keep"],
        )
        self.assertEqual(text, _models_config("      - name: keep   # pinned\n"))

    def test_sorting_last_entry_keeps_following_section_comment(self) -> None:
        text = self._reconcile(
            _models_config("      - name: zeta\n", "      - name: alpha\n"),
            ["zeta", "alpha"],
        )
        self.assertEqual(text, _models_config("      - name: alpha\n", "      - name: zeta\n"))

    def test_appending_goes_before_following_section_comment(self) -> None:
        for sort in (True, False):
            with self.subTest(sort=sort):
                text = self._reconcile(
                    _models_config("      - name: a\n"),
                    ["a", "b"],
                    sort=sort,
                )
                self.assertEqual(text, _models_config("      - name: a\n", "      - name: b\n"))

    def test_pruned_entry_takes_the_comment_above_it(self) -> None:
        text = self._reconcile(
            _models_config(
                "      - name: a\n",
                "      # obsolete one\n",
                "      - name: old\n",
                "      - name: b\n",
            ),
            ["a", "b"],
        )
        self.assertEqual(text, _models_config("      - name: a\n", "      - name: b\n"))

    def test_comment_above_entry_moves_with_it_on_sort(self) -> None:
        text = self._reconcile(
            _models_config(
                "      - name: b\n",
                "      # about c\n",
                "      - name: c\n",
                "      - name: a\n",
            ),
            ["a", "b", "c"],
        )
        self.assertIn(
            "      - name: a\n"
            "      - name: b\n"
            "      # about c\n"
            "      - name: c\n"
            + SECTION_TAIL,
            text,
        )

    def test_comment_above_entry_sorted_to_the_top(self) -> None:
        text = self._reconcile(
            _models_config(
                "      - name: zeta\n",
                "      # the small one\n",
                "      - name: alpha\n",
            ),
            ["zeta", "alpha"],
        )
        self.assertIn(
            "    models:\n"
            "      # the small one\n"
            "      - name: alpha\n"
            "      - name: zeta\n"
            + SECTION_TAIL,
            text,
        )


class DefaultModelUpdateTests(unittest.TestCase):
    def test_select_first_match_in_list_order(self) -> None:
        doc, models = _load()
        reconcile(models, ["llama3:8b", "llama3:70b", "llama2"], _FakeInventory().enrich)
        self.assertEqual(select_default_model(models, "llama3"), "llama3:70b")
        self.assertIsNone(select_default_model(models, "qwen"))

    def test_update_rewrites_model_field(self) -> None:
        doc, models = _load()
        reconcile(models, ["llama2", "qwen3:8b"], _FakeInventory().enrich)

        default = update_default_model(doc.root, models, "ollama", "qwen")

        self.assertEqual(default, DefaultModel(client="ollama", model="qwen3:8b"))
        self.assertEqual(find_default_model(doc.root), default)
        self.assertTrue(doc.render().startswith("model: ollama:qwen3:8b\n"))

    def test_no_match_leaves_document_alone(self) -> None:
        doc, models = _load()
        before = doc.render()
        self.assertIsNone(update_default_model(doc.root, models, "ollama", "gemma"))
        self.assertEqual(doc.render(), before)

    def test_missing_model_field_is_appended(self) -> None:
        doc, models = _load(
            "clients:\n"
            "  - name: ollama\n"
            "    models:\n"
            "      - name: llama2\n"
        )
        update_default_model(doc.root, models, "ollama", "llama")
        self.assertEqual(list(doc.root.keys()), ["clients", "model"])
        self.assertEqual(doc.root["model"], "ollama:llama2")


if __name__ == "__main__":
    unittest.main()
