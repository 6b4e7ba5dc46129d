from __future__ import annotations

import argparse
import asyncio
import logging

from .config import load_settings
from .errors import ConfigError
from .logging_utils import configure_logging
from .service import run_service

logger = logging.getLogger("minerboard")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="minerboard", description="Serve the miner leaderboard")
    parser.add_argument("--config", help="TOML configuration file")
    parser.add_argument("--host")
    parser.add_argument("--port", type=int)
    parser.add_argument("--log-level")
    args = parser.parse_args(argv)

    configure_logging(level=args.log_level)
    try:
        settings = load_settings(args.config)
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 2
    if args.host:
        settings.host = args.host
    if args.port:
        settings.port = args.port

    try:
        asyncio.run(run_service(settings))
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
