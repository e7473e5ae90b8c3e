"""goto-assistant — Main Entry Point

- Logging configured once, to stderr (plus an optional log file)
- Config store, cron bridge and messaging registry built once and shared
- HTTP/WebSocket API served by uvicorn; mcp-cron is started by the app
  lifespan and stopped on shutdown
"""

from __future__ import annotations
import argparse
import logging
import os
import stat
import sys

# Ensure the project directory is on sys.path when launched from elsewhere
_APP_DIR = os.path.dirname(os.path.abspath(__file__))
if _APP_DIR not in sys.path:
    sys.path.insert(0, _APP_DIR)

import uvicorn

from core.config import ConfigStore
from core.cron_bridge import CronBridge
from core.http_api import create_app
from core.messaging import ChannelRegistry


def configure_logging(level: str = "INFO", log_file: str | None = None) -> None:
    """Set up structured logging to stderr, optionally mirrored to a file."""
    handlers = [logging.StreamHandler(sys.stderr)]
    if log_file:
        # O_NOFOLLOW refuses symlinks; fstat rejects FIFOs and devices
        log_path = os.path.realpath(log_file)
        try:
            open_flags = os.O_WRONLY | os.O_CREAT | os.O_APPEND
            if hasattr(os, 'O_NOFOLLOW'):
                open_flags |= os.O_NOFOLLOW
            log_fd = os.open(log_path, open_flags, 0o644)
            if not stat.S_ISREG(os.fstat(log_fd).st_mode):
                os.close(log_fd)
                print(f"WARNING: --log-file {log_file!r} is not a regular file, ignoring",
                      file=sys.stderr)
            else:
                handlers.append(logging.StreamHandler(os.fdopen(log_fd, "a")))
        except OSError as e:
            print(f"WARNING: --log-file {log_file!r} open failed: {e}, ignoring",
                  file=sys.stderr)

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=handlers,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="goto-assistant server")
    parser.add_argument(
        "--data-dir", type=str, default=None,
        help="Directory holding config.json and mcp.json (default: $GOTO_DATA_DIR or ./data)",
    )
    parser.add_argument("--host", type=str, default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    parser.add_argument(
        "--port", type=int, default=None,
        help="HTTP port (default: server.port from config.json, else 3000)",
    )
    parser.add_argument(
        "--log-level", type=str, default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument("--log-file", type=str, default=None, help="Log file path (in addition to stderr)")
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.port is not None and not 0 < args.port < 65536:
        parser.error("--port must be between 1 and 65535")

    configure_logging(args.log_level, args.log_file)
    logger = logging.getLogger("assistant.server")

    store = ConfigStore(args.data_dir)
    try:
        port = args.port or store.server_port()
    except (OSError, ValueError) as e:
        logger.error("Cannot read %s: %s", store.config_path, e)
        sys.exit(1)

    bridge = CronBridge(store)
    channels = ChannelRegistry()
    app = create_app(store, bridge, channels)

    logger.info(
        "goto-assistant starting on http://%s:%d (data dir %s, configured=%s)",
        args.host, port, store.data_dir, store.is_configured(),
    )
    # log_config=None keeps uvicorn on the handlers configured above
    uvicorn.run(app, host=args.host, port=port, ws="websockets", log_config=None)


if __name__ == "__main__":
    main()
