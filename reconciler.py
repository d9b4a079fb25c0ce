#!/usr/bin/env python3
"""
Model list reconciler for aichatconf.

Aligns a client's ``models`` list with the models the server actually
serves, in three passes over the live CommentedSeq:

    1. Prune    - drop entries the server no longer serves
    2. Augment  - append entries for newly served models, enriched with
                  whatever parameters the server reports
    3. Order    - sort by name so repeated runs produce stable output

Entries that survive keep their fields (patches, prompts, hand-tuned
parameters) and end-of-line comments as written. Comment lines between
entries stay above the entry they precede, and those after the last entry
stay after the list.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from ruamel.yaml.comments import CommentedMap, CommentedSeq
from ruamel.yaml.tokens import CommentToken

from aichat_config import DefaultModel, set_default_model
from ollama_client import Capability, ModelFields, OllamaError
from yaml_tree import attach_comment_lines, get_scalar, pop_comment_lines, prepend_comment_lines

logger = logging.getLogger(__name__)

# Capability -> (key, value) written on a new model entry
CAPABILITY_FIELDS = (
    (Capability.VISION, "supports_vision", True),
    (Capability.TOOLS, "supports_function_calling", True),
    (Capability.THINKING, "supports_reasoning", True),
    (Capability.EMBEDDING, "type", "embedding"),
)

EnrichFn = Callable[[str], ModelFields]


@dataclass
class ReconcileResult:
    """What a reconcile pass did to the models list."""
    kept: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    added: List[str] = field(default_factory=list)
    enrich_failures: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.removed or self.added)


def parse_exclusions(text: Optional[str]) -> List[str]:
    """Split a comma separated exclusion list, dropping blanks."""
    if not text:
        return []
    return [part.strip() for part in text.split(',') if part.strip()]


def apply_exclusions(names: Iterable[str], exclusions: List[str]) -> Tuple[List[str], List[str]]:
    """
    Filter out every name containing one of the exclusion substrings.

    Returns:
        (kept, excluded), both in input order
    """
    kept, excluded = [], []
    for name in names:
        if any(pattern in name for pattern in exclusions):
            logger.info(f"exclude model: {name}")
            excluded.append(name)
        else:
            kept.append(name)
    return kept, excluded


def entry_name(entry) -> Optional[str]:
    return get_scalar(entry, "name")


def build_model_entry(name: str, fields: Optional[ModelFields] = None) -> CommentedMap:
    """
    Build a new model entry.

    Only meaningful values are written: positive numbers and capabilities
    that are present. Everything else is left out rather than written as
    a default or null.
    """
    entry = CommentedMap()
    entry["name"] = name
    if fields is None:
        return entry

    if fields.context_length is not None and fields.context_length > 0:
        entry["max_input_tokens"] = fields.context_length
    if fields.temperature is not None and fields.temperature > 0:
        entry["temperature"] = fields.temperature
    if fields.top_p is not None and fields.top_p > 0:
        entry["top_p"] = fields.top_p
    for capability, key, value in CAPABILITY_FIELDS:
        if capability in fields.capabilities:
            entry[key] = value
    return entry


def reconcile(
    models: CommentedSeq,
    authoritative: Iterable[str],
    enrich: EnrichFn,
    sort: bool = True,
) -> ReconcileResult:
    """
    Reconcile ``models`` in place against the authoritative model names.

    Args:
        models: The client's models sequence (mutated in place)
        authoritative: Names the server serves, exclusions already applied
        enrich: Looks up parameters for a new model name
        sort: Sort the final list by name

    Returns:
        ReconcileResult describing the changes

    A failing enrich() for one model is logged and the model is added with
    its name only; the pass carries on.
    """
    wanted = list(dict.fromkeys(authoritative))
    wanted_set = set(wanted)
    result = ReconcileResult()

    # Comment lines between entries are stored on the entry above them but
    # belong to the entry below; those after the last entry belong to
    # whatever follows the list. Detach them before anything moves.
    trailer = pop_comment_lines(models)
    headers = {}
    for index in range(1, len(models)):
        lines = pop_comment_lines(models[index - 1])
        if lines is not None:
            headers[id(models[index])] = lines

    # Prune, back to front so deletions don't shift pending indices
    for index in range(len(models) - 1, -1, -1):
        entry = models[index]
        name = entry_name(entry)
        if name is not None and name in wanted_set:
            continue
        logger.info(f"remove model: {name if name is not None else '<unnamed entry>'}")
        result.removed.append(name or '')
        headers.pop(id(entry), None)
        del models[index]
    result.removed.reverse()

    present = set()
    for entry in models:
        name = entry_name(entry)
        present.add(name)
        result.kept.append(name)

    # Augment
    for name in wanted:
        if name in present:
            continue
        try:
            fields = enrich(name)
        except OllamaError as e:
            logger.warning(f"Could not get parameters for {name}, adding it by name only: {e}")
            result.enrich_failures.append(name)
            fields = None
        models.append(build_model_entry(name, fields))
        present.add(name)
        result.added.append(name)
        logger.info(f"add model: {name}")

    # Order; end-of-line comments live inside each entry and move with it
    if sort:
        models.sort(key=lambda entry: entry_name(entry) or '')

    _restore_comment_lines(models, headers, trailer)
    return result


def _restore_comment_lines(
    models: CommentedSeq,
    headers: Dict[int, CommentToken],
    trailer: Optional[CommentToken],
) -> None:
    """Reattach detached comment lines after the final order is known."""
    for index, entry in enumerate(models):
        lines = headers.get(id(entry))
        if lines is None:
            continue
        if index == 0:
            prepend_comment_lines(models, lines)
        elif not attach_comment_lines(models[index - 1], lines):
            logger.warning(
                f"comment above model {entry_name(entry)} dropped: previous entry is not a block mapping"
            )
    if trailer is None:
        return
    if len(models) == 0 or not attach_comment_lines(models[-1], trailer):
        logger.warning("comment after the models list dropped: no block mapping entry left to carry it")


def select_default_model(models: CommentedSeq, pattern: str) -> Optional[str]:
    """First model name (in list order) containing ``pattern``."""
    for entry in models:
        name = entry_name(entry)
        if name is not None and pattern in name:
            return name
    return None


def update_default_model(
    root: CommentedMap,
    models: CommentedSeq,
    client_name: str,
    pattern: str,
) -> Optional[DefaultModel]:
    """
    Point the top-level ``model`` field at the first model matching ``pattern``.

    Returns:
        The new default, or None when nothing matched (document untouched)
    """
    name = select_default_model(models, pattern)
    if name is None:
        logger.info(f"default model setting skip, model not found: {pattern}")
        return None
    default = DefaultModel(client=client_name, model=name)
    set_default_model(root, default)
    logger.info(f"set default model: {default}")
    return default
