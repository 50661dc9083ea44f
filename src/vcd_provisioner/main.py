"""Process wiring for the provisioner.

The platform client is supplied by the embedding adapter: anything
implementing remote.RemoteResourceAPI. serve() wires it to the state store,
the lock coordinator and the reconciler, installs signal handlers and runs
the reconciliation loop until SIGTERM/SIGINT.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from .config import Config, ConfigurationError
from .locks import LockCoordinator
from .reconciler import Reconciler
from .remote import RemoteResourceAPI
from .state_store import StateStoreError, open_state_store

# LogRecord attributes that are not user supplied extra fields
_RESERVED_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output for production."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)


async def serve(api: RemoteResourceAPI, config: Config | None = None) -> int:
    """Run the reconciliation loop against api until a shutdown signal.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    logger = logging.getLogger(__name__)

    if config is None:
        try:
            config = Config.from_env()
        except ConfigurationError as e:
            logger.error("Configuration error", extra={"error": str(e)})
            return 1

    try:
        store = open_state_store(config.state_file)
    except StateStoreError as e:
        logger.error("Failed to open state store", extra={"error": str(e)})
        return 1

    # One coordinator per process, shared by every reconciliation
    reconciler = Reconciler(api, store, config, locks=LockCoordinator())

    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        reconciler.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    logger.info(
        "Starting VCD provisioner",
        extra={
            "state_file": str(config.state_file) if config.state_file else None,
            "specs_dir": str(config.specs_dir),
            "dry_run": config.dry_run,
        },
    )

    try:
        await reconciler.run()
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)

    logger.info("Provisioner stopped")
    return 0
