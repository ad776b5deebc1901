"""callrelay CLI entry point.

Usage:
    callrelay run [--config relay.yaml] [--host HOST] [--port PORT]
    callrelay init [--output relay.yaml]
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger

from callrelay.errors import ConfigError


def cmd_run(args: argparse.Namespace) -> None:
    """Run the bridge server."""
    from callrelay.config import load_config

    load_dotenv()

    config_path = args.config
    if config_path and not Path(config_path).exists():
        logger.error(f"Config file not found: {config_path}")
        sys.exit(1)

    config = load_config(config_path)
    if args.host:
        config.server.listen_host = args.host
    if args.port:
        config.server.listen_port = args.port

    # Configure logging
    logger.remove()
    logger.add(sys.stderr, level=config.logging.level)

    try:
        config.require_api_key()
    except ConfigError as e:
        logger.error(str(e))
        sys.exit(1)

    logger.info(f"callrelay starting with config: {config_path or '<defaults>'}")
    logger.info(f"Listening on: {config.server.listen_host}:{config.server.listen_port}")
    logger.info(f"Realtime model: {config.realtime.model} (voice: {config.realtime.voice})")

    # Try FastAPI server first, fall back to the aiohttp/websockets server
    try:
        from callrelay.server import run_server
        run_server(config)
    except ImportError:
        from callrelay.bridge import RealtimeBridge
        bridge = RealtimeBridge(config)
        bridge.run()


def cmd_init(args: argparse.Namespace) -> None:
    """Generate a starter configuration file."""
    output = Path(args.output)

    if output.exists() and not args.force:
        logger.error(f"File already exists: {output}. Use --force to overwrite.")
        sys.exit(1)

    from callrelay.config import DEFAULT_CONFIG_YAML

    output.write_text(DEFAULT_CONFIG_YAML)
    print(f"Configuration written to: {output}")
    print(f"\nEdit the file and run: callrelay run --config {output}")


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="callrelay",
        description="callrelay - Twilio Media Streams to OpenAI Realtime API bridge",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # `callrelay run`
    run_parser = subparsers.add_parser("run", help="Run the bridge server")
    run_parser.add_argument(
        "--config", "-c",
        default=None,
        help="Path to a YAML config file (default: built-in defaults + environment)",
    )
    run_parser.add_argument("--host", default=None, help="Override the listen host")
    run_parser.add_argument("--port", "-p", type=int, default=None, help="Override the listen port")

    # `callrelay init`
    init_parser = subparsers.add_parser("init", help="Generate a starter config file")
    init_parser.add_argument(
        "--output", "-o",
        default="relay.yaml",
        help="Output file path (default: relay.yaml)",
    )
    init_parser.add_argument(
        "--force", "-f",
        action="store_true",
        help="Overwrite existing file",
    )

    args = parser.parse_args(argv)

    if args.command == "run":
        cmd_run(args)
    elif args.command == "init":
        cmd_init(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
