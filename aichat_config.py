#!/usr/bin/env python3
"""
aichat Configuration Locator

Finds the parts of an aichat config.yaml that the model sync touches:

    model: ollama:llama3.1:8b        # default model, "client:model"
    clients:
      - type: openai-compatible
        name: ollama
        api_base: http://localhost:11434/v1
        models:
          - name: llama3.1:8b

Everything else in the document is left alone.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from ruamel.yaml.comments import CommentedMap, CommentedSeq

from yaml_tree import NodeKind, get_child, get_scalar, node_kind, set_child

logger = logging.getLogger(__name__)

DEFAULT_CLIENT_NAME = "ollama"

_DEFAULT_MODEL_RE = re.compile(r"^([^:]+):(.+)$")


class ConfigSyncError(Exception):
    """Base exception for configuration sync errors."""
    pass


class ClientNotFoundError(ConfigSyncError):
    """Raised when the target client is not declared in the config."""
    pass


@dataclass
class DefaultModel:
    """Top-level default model, stored as "client:model"."""
    client: str
    model: str

    def __str__(self) -> str:
        return f"{self.client}:{self.model}"


def find_clients(root: Any) -> List[CommentedMap]:
    """Return the client mappings of the top-level ``clients`` list."""
    clients, found = get_child(root, "clients", NodeKind.SEQUENCE)
    if not found:
        return []
    return [c for c in clients if node_kind(c) is NodeKind.MAPPING]


def find_client(root: Any, name: str) -> CommentedMap:
    """
    Find the client whose ``name`` equals ``name``.

    Raises:
        ClientNotFoundError: If no client has that name
    """
    match = None
    for client in find_clients(root):
        if get_scalar(client, "name") == name:
            if match is not None:
                logger.warning(f"Client '{name}' is declared more than once, using the last one")
            match = client
    if match is None:
        raise ClientNotFoundError(f"client name ({name}) not found in clients")
    return match


def client_models(client: CommentedMap) -> Tuple[CommentedSeq, bool]:
    """
    Return the client's ``models`` list.

    Returns:
        (models, attached). When the client has no list yet, a new empty
        CommentedSeq is returned with attached=False; the caller decides
        whether to attach it.
    """
    models, found = get_child(client, "models", NodeKind.SEQUENCE)
    if found:
        return models, True
    return CommentedSeq(), False


def client_connection(client: CommentedMap) -> Tuple[Optional[str], Optional[str]]:
    """Return the client's (api_base, api_key), each None when unset."""
    return get_scalar(client, "api_base"), get_scalar(client, "api_key")


def parse_default_model(value: Optional[str]) -> Optional[DefaultModel]:
    """Parse "client:model"; the model part may itself contain colons."""
    if not value:
        return None
    match = _DEFAULT_MODEL_RE.match(value)
    if not match:
        return None
    client, model = match.group(1).strip(), match.group(2).strip()
    if not client or not model:
        return None
    return DefaultModel(client=client, model=model)


def find_default_model(root: Any) -> Optional[DefaultModel]:
    """Return the parsed top-level ``model`` field, if it is "client:model"."""
    return parse_default_model(get_scalar(root, "model"))


def set_default_model(root: CommentedMap, default: DefaultModel) -> None:
    set_child(root, "model", str(default))


def resolve_client_name(option: Optional[str], default_model: Optional[DefaultModel]) -> str:
    """Pick the target client: explicit option, then default model's client, then "ollama"."""
    if option:
        return option
    if default_model is not None:
        return default_model.client
    return DEFAULT_CLIENT_NAME
