"""Command-line entry point: ``grove [--host H] [--port P] [--config PATH]``."""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from grove.engine.yaml_config import load_config, resolve_config_path

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
LOG_FILENAME = "grove-server.log"
LOG_MAX_BYTES = 2_000_000
LOG_BACKUPS = 5


def configure_logging(level: str, log_dir: str | Path) -> Path:
    """Rotating file log plus stderr; returns the log file path."""
    log_dir = Path(log_dir).expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / LOG_FILENAME

    formatter = logging.Formatter(LOG_FORMAT)
    handlers: list[logging.Handler] = [
        RotatingFileHandler(log_file, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUPS, encoding="utf-8"),
        logging.StreamHandler(sys.stderr),
    ]
    root = logging.getLogger()
    for old in list(root.handlers):
        root.removeHandler(old)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    # aiohttp's own access log duplicates the request middleware.
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    return log_file


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="grove",
        description="Grove: worktree workspaces for coding agents",
    )
    parser.add_argument("--host", help="Interface to bind (default 127.0.0.1)")
    parser.add_argument(
        "--port", type=int,
        help="Server port (0=random available port, default 4545)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: $GROVE_CONFIG or ~/.grove/config.yaml)",
    )
    parser.add_argument(
        "--log-level", metavar="LEVEL",
        help="Logging level (DEBUG, INFO, WARNING, ...)",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    config = load_config(args.config)
    if args.host:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.log_level:
        config.log_level = args.log_level.upper()

    log_file = configure_logging(config.log_level, config.log_dir)
    logger = logging.getLogger(__name__)
    logger.info(
        "Starting grove host=%s port=%s config=%s log=%s",
        config.host, config.port,
        resolve_config_path(args.config) or "<none>", log_file,
    )

    from grove.server.server import GroveServer

    server = GroveServer(config)
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        logger.info("Interrupted")
    sys.exit(0)


if __name__ == "__main__":
    main()
