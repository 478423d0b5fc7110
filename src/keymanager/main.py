"""Main entry point for the tenant encryption key operator.

Runs the reconciliation loop for one tenant until SIGTERM or SIGINT.
Credentials come from the environment: either a client-credentials grant
or a static Management API token. Secrets are never logged.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from .config import Config, ConfigurationError
from .reconciler import Reconciler

# LogRecord attributes that are not user-supplied extra fields
_RESERVED_RECORD_FIELDS = frozenset(
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
    """Render each record as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_FIELDS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Send JSON log lines to stdout and quiet the HTTP pipeline loggers."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the HTTP pipeline
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


async def main() -> int:
    """Run the operator.

    Returns:
        0 after a clean shutdown, 1 on configuration or startup errors.
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Invalid operator configuration", extra={"error": str(e)})
        return 1

    logger.info(
        "Starting tenant encryption key operator",
        extra={
            "tenant": config.tenant_domain,
            "spec_path": str(config.spec_path),
            "state_dir": str(config.state_dir),
            "dry_run": config.dry_run,
        },
    )

    try:
        reconciler = Reconciler(config)
    except Exception as e:
        logger.error(
            "Failed to build the key service client",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return 1

    loop = asyncio.get_running_loop()

    def request_shutdown(sig: signal.Signals) -> None:
        logger.info("Stopping on signal", extra={"signal": sig.name})
        reconciler.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, request_shutdown, sig)

    try:
        await reconciler.run()
    except Exception:
        logger.exception("Reconciliation loop crashed", extra={"tenant": config.tenant_domain})
        return 1

    logger.info("Key operator stopped", extra={"tenant": config.tenant_domain})
    return 0


def run() -> None:
    """Entry point for the operator."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
