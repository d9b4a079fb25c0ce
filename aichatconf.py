#!/usr/bin/env python3
"""
aichatconf

Keeps the model list of an aichat client in sync with an Ollama server.

Usage:
    python aichatconf.py --config ~/.config/aichat/config.yaml [--output FILE]

Flow:
    1. Load config.yaml in round-trip mode (comments and layout preserved)
    2. Find the target client (--client, else the default model's client,
       else "ollama") and its models list
    3. List the models served by the client's Ollama server
    4. Drop excluded models, prune obsolete entries, add new ones with
       parameters from /api/show, sort by name
    5. Optionally repoint the default model (--model)
    6. Write the document to stdout or --output
"""

import argparse
import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

from aichat_config import (
    ConfigSyncError,
    client_connection,
    client_models,
    find_client,
    find_clients,
    find_default_model,
    resolve_client_name,
)
from config_document import ConfigDocument, write_output
from ollama_client import OllamaClient, OllamaError, create_client_from_config
from reconciler import apply_exclusions, parse_exclusions, reconcile, update_default_model
from yaml_tree import set_child

__version__ = "1.0.0"

logger = logging.getLogger(__name__)

ClientFactory = Callable[..., OllamaClient]


@dataclass
class SyncOptions:
    """Options for one sync run."""
    config: Path
    output: Optional[Path] = None
    client: Optional[str] = None
    default_model: Optional[str] = None
    exclude: List[str] = field(default_factory=list)
    sort_models: bool = True
    timeout: int = 30


def run(options: SyncOptions, client_factory: Optional[ClientFactory] = None) -> str:
    """
    Perform one sync and return the updated document text.

    Nothing is written here, so a failure at any step leaves the output
    untouched.

    Raises:
        ConfigSyncError: Unreadable/invalid config, or client not found
        OllamaError: If the server's model list cannot be fetched
    """
    logger.info(f"aichat configuration read: {options.config}")
    document = ConfigDocument.load(options.config)
    root = document.root

    default_model = find_default_model(root)
    if default_model is not None:
        logger.info(f"default model found: {default_model}")
    logger.info(f"clients found: {len(find_clients(root))}")

    client_name = resolve_client_name(options.client, default_model)
    client = find_client(root, client_name)
    models, attached = client_models(client)
    logger.info(f"models found: {len(models)}")

    api_base, api_key = client_connection(client)
    factory = client_factory or create_client_from_config
    ollama = factory({'api_base': api_base, 'api_key': api_key}, timeout=options.timeout)

    served = ollama.list_models()
    logger.info(f"ollama models found: {len(served)}")
    served, _ = apply_exclusions(served, options.exclude)

    result = reconcile(models, served, ollama.model_fields, sort=options.sort_models)
    if not attached and len(models) > 0:
        set_child(client, "models", models)
    logger.info(
        f"models: {len(result.kept)} kept, {len(result.added)} added, {len(result.removed)} removed"
    )

    if options.default_model:
        update_default_model(root, models, client_name, options.default_model)

    return document.render()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="aichatconf",
        description="Sync the Ollama models of an aichat configuration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    aichatconf -c config.yaml                       # print updated config
    aichatconf -c config.yaml -o config.yaml        # update in place
    aichatconf -c config.yaml -e embed,vision       # skip matching models
    aichatconf -c config.yaml -m qwen3              # make qwen3* the default model
        """
    )

    parser.add_argument(
        '--config', '-c',
        required=True,
        help='aichat config file'
    )

    parser.add_argument(
        '--output', '-o',
        help='Output file (default: stdout)'
    )

    parser.add_argument(
        '--client', '-n',
        help='Client name (default: client of the default model, else "ollama")'
    )

    parser.add_argument(
        '--model', '-m',
        help='Set the default model to the first model containing this text'
    )

    parser.add_argument(
        '--exclude', '-e',
        default=os.environ.get('AICHATCONF_EXCLUDE', ''),
        help='Comma separated substrings of models to exclude (env: AICHATCONF_EXCLUDE)'
    )

    parser.add_argument(
        '--no-sort',
        action='store_true',
        help='Keep existing order and append new models instead of sorting by name'
    )

    parser.add_argument(
        '--timeout',
        type=int,
        default=30,
        help='Ollama request timeout in seconds (default: 30)'
    )

    parser.add_argument(
        '--quiet', '-q',
        action='store_true',
        help='Suppress all information output'
    )

    parser.add_argument(
        '--debug', '-d',
        action='store_true',
        help='Enable debug logging'
    )

    parser.add_argument(
        '--version', '-V',
        action='version',
        version=f"%(prog)s {__version__}"
    )

    return parser


def options_from_args(args: argparse.Namespace) -> SyncOptions:
    return SyncOptions(
        config=Path(args.config),
        output=Path(args.output) if args.output else None,
        client=args.client,
        default_model=args.model,
        exclude=parse_exclusions(args.exclude),
        sort_models=not args.no_sort,
        timeout=args.timeout,
    )


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    if args.debug:
        log_level = logging.DEBUG
    elif args.quiet:
        log_level = logging.WARNING
    else:
        log_level = logging.INFO
    # stdout carries the document, so logs go to stderr
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s',
        datefmt='%H:%M:%S',
        stream=sys.stderr,
    )

    options = options_from_args(args)

    try:
        text = run(options)
        write_output(text, options.output)
    except (ConfigSyncError, OllamaError) as e:
        if args.debug:
            logger.exception(str(e))
        else:
            logger.error(str(e))
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130

    return 0


if __name__ == "__main__":
    sys.exit(main())
