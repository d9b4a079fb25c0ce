#!/usr/bin/env python3
"""
Ollama Client for aichatconf

Queries an Ollama server for the models it serves and for the parameters
of individual models. Only the native API is used:

    GET  /api/tags   -> {"models": [{"name": ...}, ...]}
    POST /api/show   -> {"model_info": {...}, "parameters": "...", "capabilities": [...]}
"""

import http.client
import json
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import urlsplit, urlunsplit
from urllib.request import Request, urlopen

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 11434


class OllamaError(Exception):
    """Base exception for Ollama-related errors."""
    pass


class OllamaConnectionError(OllamaError):
    """Raised when connection to Ollama server fails."""
    pass


class OllamaModelNotFoundError(OllamaError):
    """Raised when the requested model is not available on the server."""
    pass


class Capability(str, Enum):
    """Capability tags reported by /api/show."""
    COMPLETION = "completion"
    TOOLS = "tools"
    INSERT = "insert"
    VISION = "vision"
    EMBEDDING = "embedding"
    THINKING = "thinking"


@dataclass
class ModelFields:
    """Parameters discovered for one model. None means unknown."""
    context_length: Optional[int] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    capabilities: FrozenSet[Capability] = field(default_factory=frozenset)


@dataclass
class OllamaConfig:
    """Configuration for Ollama client."""
    url: str
    api_key: Optional[str] = None
    timeout: int = 30


def _host_from_environment() -> str:
    """Base URL from OLLAMA_HOST, with the same defaults the ollama CLI uses."""
    raw = os.environ.get('OLLAMA_HOST', '').strip()
    if not raw:
        return f"http://{DEFAULT_HOST}:{DEFAULT_PORT}"
    default_port = DEFAULT_PORT
    if '://' not in raw:
        raw = f"http://{raw}"
    elif raw.startswith('http://'):
        default_port = 80
    elif raw.startswith('https://'):
        default_port = 443
    parts = urlsplit(raw)
    host = parts.hostname or DEFAULT_HOST
    if ':' in host:
        host = f"[{host}]"
    port = parts.port or default_port
    return urlunsplit((parts.scheme, f"{host}:{port}", '', '', ''))


def resolve_base_url(api_base: Optional[str]) -> str:
    """
    Work out the Ollama server root.

    aichat stores the OpenAI-compatible endpoint (e.g. http://host:11434/v1),
    so the path is dropped. Without an api_base, OLLAMA_HOST is used.
    """
    if not api_base:
        return _host_from_environment()
    parts = urlsplit(api_base.strip())
    if not parts.scheme or not parts.netloc:
        raise OllamaConnectionError(f"Invalid api_base URL: {api_base}")
    return urlunsplit((parts.scheme, parts.netloc, '', '', ''))


def parse_parameters(parameters: Optional[str]) -> Dict[str, float]:
    """
    Pull temperature and top_p out of the Modelfile parameter blob.

    The blob is newline separated "key value" pairs, e.g.::

        stop           "<|im_end|>"
        temperature    0.7
        top_p          0.8

    Keys are matched by substring; values that are not numbers are ignored.
    """
    found: Dict[str, float] = {}
    if not isinstance(parameters, str):
        return found
    for line in parameters.splitlines():
        parts = line.split()
        if len(parts) < 2:
            continue
        key, value = parts[0], parts[1].strip()
        for name in ('temperature', 'top_p'):
            if name in key:
                try:
                    found[name] = float(value)
                except ValueError:
                    logger.debug(f"Ignoring non-numeric {name} value: {value!r}")
    return found


def parse_context_length(model_info: Dict[str, Any]) -> Optional[int]:
    """Context length from the first "<arch>.context_length" key."""
    if not isinstance(model_info, dict):
        return None
    for key, value in model_info.items():
        if isinstance(key, str) and key.endswith('.context_length'):
            try:
                return int(value)
            except (TypeError, ValueError, OverflowError):
                return None
    return None


def parse_capabilities(tags: Optional[List[str]]) -> FrozenSet[Capability]:
    capabilities = set()
    if not isinstance(tags, list):
        return frozenset()
    for tag in tags:
        try:
            capabilities.add(Capability(tag))
        except ValueError:
            logger.debug(f"Ignoring unknown capability: {tag}")
    return frozenset(capabilities)


def model_fields_from_show(response: Dict[str, Any]) -> ModelFields:
    """
    Convert a /api/show response into ModelFields.

    Fields of the wrong type count as unknown.

    Raises:
        OllamaConnectionError: If the response is not a JSON object
    """
    if not isinstance(response, dict):
        raise OllamaConnectionError(f"Unexpected /api/show response: {type(response).__name__}")
    params = parse_parameters(response.get('parameters', ''))
    return ModelFields(
        context_length=parse_context_length(response.get('model_info', {})),
        temperature=params.get('temperature'),
        top_p=params.get('top_p'),
        capabilities=parse_capabilities(response.get('capabilities')),
    )


class OllamaClient:
    """
    Client for the model inventory of an Ollama server.

    Unlike a chat client, nothing is validated on init: the first request
    is the listing, and its failure aborts the sync.
    """

    def __init__(self, config: OllamaConfig):
        self.config = config
        self.base_url = config.url.rstrip('/')
        logger.debug(f"Ollama client created: {self.base_url} timeout={config.timeout}s")

    def _make_request(
        self,
        endpoint: str,
        method: str = "GET",
        data: Optional[Dict] = None,
        timeout: Optional[int] = None
    ) -> Dict:
        """
        Make an HTTP request to the Ollama server.

        Args:
            endpoint: API endpoint (e.g., "/api/tags")
            method: HTTP method
            data: Request body (will be JSON-encoded)
            timeout: Request timeout in seconds

        Returns:
            Parsed JSON response

        Raises:
            OllamaModelNotFoundError: On HTTP 404
            OllamaConnectionError: On any other failure
        """
        url = f"{self.base_url}{endpoint}"
        timeout = timeout or self.config.timeout

        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        body = json.dumps(data).encode('utf-8') if data else None

        request = Request(url, data=body, headers=headers, method=method)

        try:
            with urlopen(request, timeout=timeout) as response:
                return json.loads(response.read().decode('utf-8'))
        except HTTPError as e:
            error_body = e.read().decode('utf-8', errors='replace') if e.fp else str(e)
            if e.code == 404:
                raise OllamaModelNotFoundError(
                    f"HTTP 404 from {url}: {error_body}"
                ) from e
            raise OllamaConnectionError(
                f"HTTP {e.code} from {url}: {error_body}"
            ) from e
        except URLError as e:
            raise OllamaConnectionError(
                f"Cannot connect to Ollama server at {self.base_url}: {e.reason}"
            ) from e
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise OllamaConnectionError(
                f"Invalid JSON response from {url}: {e}"
            ) from e
        except (OSError, http.client.HTTPException) as e:
            # Read timeouts and dropped connections are not wrapped in URLError
            raise OllamaConnectionError(
                f"Request to {url} failed: {type(e).__name__}: {e}"
            ) from e

    def list_models(self) -> List[str]:
        """
        List available models on the server.

        Returns:
            List of model names

        Raises:
            OllamaConnectionError: If the server fails or the response has no models list
        """
        response = self._make_request("/api/tags")
        models = response.get('models') if isinstance(response, dict) else None
        if not isinstance(models, list):
            raise OllamaConnectionError(f"Unexpected /api/tags response from {self.base_url}")
        return [str(m['name']) for m in models if isinstance(m, dict) and m.get('name')]

    def show_model(self, name: str) -> Dict[str, Any]:
        """Raw /api/show response for one model."""
        return self._make_request("/api/show", method="POST", data={"model": name})

    def model_fields(self, name: str) -> ModelFields:
        """
        Discover context length, temperature, top_p and capabilities.

        Raises:
            OllamaError: If the model cannot be shown
        """
        fields = model_fields_from_show(self.show_model(name))
        logger.debug(f"Model {name}: {fields}")
        return fields


def create_client_from_config(client_entry: Dict[str, Any], timeout: int = 30) -> OllamaClient:
    """
    Create an OllamaClient from an aichat client entry.

    Args:
        client_entry: Client mapping with optional 'api_base' and 'api_key'
        timeout: Request timeout in seconds

    Returns:
        Configured OllamaClient
    """
    api_base = client_entry.get('api_base')
    api_key = client_entry.get('api_key') or os.environ.get('OLLAMA_API_KEY')

    if api_base:
        logger.info(f"api_base found: {api_base}")
    else:
        logger.info("api_base not found, use default")
    if api_key:
        logger.info("api_key found")

    config = OllamaConfig(
        url=resolve_base_url(str(api_base) if api_base else None),
        api_key=str(api_key) if api_key else None,
        timeout=timeout,
    )
    return OllamaClient(config)
