#!/usr/bin/env python3
"""
Round-trip YAML document for aichatconf.

Loads the aichat config with ruamel.yaml in round-trip mode so that
comments, quoting, key order and indentation survive a load/dump cycle,
and renders it back to text after the models have been reconciled.
"""

import io
import logging
from pathlib import Path
from typing import Optional, Union

from ruamel.yaml import YAML
from ruamel.yaml.comments import CommentedMap
from ruamel.yaml.error import YAMLError
from ruamel.yaml.util import load_yaml_guess_indent

from aichat_config import ConfigSyncError

logger = logging.getLogger(__name__)

DOCUMENT_START = "---"

# Long values (api keys, prompts) must not be folded onto new lines
LINE_WIDTH = 4096


class DocumentError(ConfigSyncError):
    """Raised when the config document cannot be read, parsed or written."""
    pass


def _has_document_start(text: str) -> bool:
    """True if the first non-blank, non-comment line is a '---' marker."""
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith('#'):
            continue
        return stripped == DOCUMENT_START or stripped.startswith(DOCUMENT_START + ' ')
    return False


class ConfigDocument:
    """
    A parsed aichat configuration file.

    ``root`` is the top-level CommentedMap; mutate it in place and call
    render() to get the updated text.
    """

    def __init__(
        self,
        root: CommentedMap,
        sequence_indent: int = 2,
        sequence_offset: int = 0,
        explicit_start: bool = False,
    ):
        self.root = root
        self.sequence_indent = sequence_indent
        self.sequence_offset = sequence_offset
        self.explicit_start = explicit_start

    @classmethod
    def parse(cls, text: str) -> "ConfigDocument":
        """
        Parse config text.

        Raises:
            DocumentError: If the text is empty, not YAML, or not a mapping
        """
        if not text or not text.strip():
            raise DocumentError("empty config file")

        try:
            # indent is where item content starts, block_seq_indent where the dash is
            _, indent, block_seq_indent = load_yaml_guess_indent(text)
            sequence_offset = block_seq_indent or 0
            sequence_indent = max(indent or 2, sequence_offset + 2)
            root = cls._make_yaml(sequence_indent, sequence_offset).load(text)
        except YAMLError as e:
            raise DocumentError(f"Invalid YAML in config file: {e}") from e

        if root is None:
            raise DocumentError("empty config file")
        if not isinstance(root, CommentedMap):
            raise DocumentError(
                f"config file must contain a YAML mapping, got {type(root).__name__}"
            )

        logger.debug(f"Detected indentation: sequence={sequence_indent} offset={sequence_offset}")
        return cls(
            root,
            sequence_indent=sequence_indent,
            sequence_offset=sequence_offset,
            explicit_start=_has_document_start(text),
        )

    @classmethod
    def load(cls, path: Union[str, Path]) -> "ConfigDocument":
        """Read and parse a config file."""
        path = Path(path)
        try:
            text = path.read_text(encoding='utf-8')
        except OSError as e:
            raise DocumentError(f"Cannot read config file {path}: {e}") from e
        return cls.parse(text)

    @staticmethod
    def _make_yaml(sequence_indent: int, sequence_offset: int) -> YAML:
        yaml = YAML(typ="rt")
        yaml.preserve_quotes = True
        yaml.width = LINE_WIDTH
        yaml.indent(
            mapping=max(2, sequence_indent - sequence_offset),
            sequence=sequence_indent,
            offset=sequence_offset,
        )
        return yaml

    def render(self) -> str:
        """
        Dump the document back to text.

        A '---' line is emitted only when the source started with one.
        The result always ends with exactly one newline.
        """
        yaml = self._make_yaml(self.sequence_indent, self.sequence_offset)
        yaml.explicit_start = self.explicit_start or None
        stream = io.StringIO()
        yaml.dump(self.root, stream)
        text = stream.getvalue()
        if not self.explicit_start and text.startswith(DOCUMENT_START + '\n'):
            text = text[len(DOCUMENT_START) + 1:]
        return text.rstrip() + '\n'


def write_output(text: str, output: Optional[Union[str, Path]] = None) -> None:
    """
    Write rendered text to a file, or to stdout when no path is given.

    Raises:
        DocumentError: If the output file cannot be written
    """
    if output is None:
        logger.info("write to: stdout")
        print(text, end='')
        return
    path = Path(output)
    logger.info(f"write to: {path}")
    try:
        path.write_text(text, encoding='utf-8')
    except OSError as e:
        raise DocumentError(f"Cannot write output file {path}: {e}") from e
