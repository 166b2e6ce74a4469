"""CLI: codex-bridge proxy, transform, config validate."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from ..config import load_client_prompt, load_config, load_instructions, validate_config
from ..core.session import SessionManager
from ..core.transformer import transform_request


def _configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def cmd_proxy(args):
    """Start the local bridge endpoint."""
    import asyncio

    import uvicorn

    from ..proxy import create_app

    try:
        config = load_config(args.config)
    except (OSError, ValueError) as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)

    errors = validate_config(config)
    if errors:
        for err in errors:
            print(f"Config error: {err}", file=sys.stderr)
        sys.exit(1)

    _configure_logging(config.logging.debug)

    # Uvicorn force-cancels open event streams after the graceful-shutdown
    # timeout; the resulting CancelledError tracebacks are noise.
    class _SuppressCancelled(logging.Filter):
        def filter(self, record: logging.LogRecord) -> bool:
            if record.exc_info and record.exc_info[0] is asyncio.CancelledError:
                return False
            return True

    logging.getLogger("uvicorn.error").addFilter(_SuppressCancelled())

    host = args.host or config.server.host
    port = args.port or config.server.port
    app = create_app(config)
    print(f"codex-bridge on {host}:{port} -> {config.upstream.base_url}")
    uvicorn.run(
        app, host=host, port=port,
        log_level="debug" if config.logging.debug else "info",
        timeout_graceful_shutdown=2,
    )


def cmd_transform(args):
    """Print the body that would be sent upstream for a request file."""
    try:
        config = load_config(args.config)
        instructions = load_instructions(config)
        client_prompt = load_client_prompt(config)
    except (OSError, ValueError) as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)

    if args.input == "-":
        raw = sys.stdin.read()
    else:
        path = Path(args.input)
        if not path.is_file():
            print(f"Input file not found: {path}", file=sys.stderr)
            sys.exit(1)
        raw = path.read_text()

    result = transform_request(
        raw,
        instructions,
        config.user_config,
        config.codex_mode,
        SessionManager(enabled=config.enable_prompt_caching),
        config.compaction,
        client_prompt,
    )
    if result is None:
        print("Request body is not a JSON object; it would be forwarded unchanged.", file=sys.stderr)
        sys.exit(2)

    output = result.body
    if args.summary:
        decision = result.compaction_decision
        output = {
            "original_model": result.original_model,
            "model": result.body.get("model"),
            "has_tools": result.has_tools,
            "prompt_cache_key": result.body.get("prompt_cache_key"),
            "input_items": len(result.body.get("input") or []),
            "compaction": decision.mode if decision else None,
        }
    print(json.dumps(output, indent=2))


def cmd_config_validate(args):
    """Validate config file."""
    try:
        config = load_config(args.config)
    except Exception as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)

    errors = validate_config(config)
    if errors:
        print("Config validation errors:")
        for err in errors:
            print(f"  - {err}")
        sys.exit(1)
    else:
        print("Config is valid.")
        print(f"  Upstream: {config.upstream.base_url}")
        print(f"  Codex mode: {'on' if config.codex_mode else 'off'}")
        print(f"  Prompt caching: {'on' if config.enable_prompt_caching else 'off'}")
        limit = config.auto_compact_token_limit
        print(f"  Auto compaction: {f'> {limit:,} tokens' if limit else 'off'}")
        print(f"  Model overrides: {len(config.user_config.models)}")


def main():
    parser = argparse.ArgumentParser(
        prog="codex-bridge",
        description="Stateless Codex backend bridge for Responses API clients",
    )
    parser.add_argument("--config", "-c", help="Path to config file")

    subparsers = parser.add_subparsers(dest="command")

    # proxy
    proxy_parser = subparsers.add_parser("proxy", help="Start the local bridge endpoint")
    proxy_parser.add_argument("--port", "-p", type=int, help="Listen port (default from config)")
    proxy_parser.add_argument("--host", help="Listen host (default from config)")

    # transform
    transform_parser = subparsers.add_parser("transform", help="Show the transformed request body")
    transform_parser.add_argument("input", help="Request body JSON file ('-' for stdin)")
    transform_parser.add_argument("--summary", action="store_true", help="Print a short summary instead")

    # config
    config_parser = subparsers.add_parser("config", help="Config operations")
    config_sub = config_parser.add_subparsers(dest="config_command")
    config_sub.add_parser("validate", help="Validate config file")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "proxy":
        cmd_proxy(args)
    elif args.command == "transform":
        cmd_transform(args)
    elif args.command == "config":
        if args.config_command == "validate":
            cmd_config_validate(args)
        else:
            config_parser.print_help()
            sys.exit(1)


if __name__ == "__main__":
    main()
