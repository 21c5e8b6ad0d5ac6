"""Main entry point for the account lifecycle orchestrator.

Runs three loops on one event loop until SIGTERM/SIGINT:
- request intake: picks up new and removed request files
- reconciler: drives every non-terminal request to Managed or Failed
- drift detector: compares managed accounts with the organization

Request and account state is kept in STATE_FILE; lifecycle events are
appended to a sibling ``.events.jsonl`` file. A restart resumes every
request from its last committed state.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from pathlib import Path

from .aws import build_collaborators
from .config import Config, ConfigurationError
from .drift import DriftDetector
from .events import EventLog, LoggingNotifier
from .intake import RequestIntake
from .reconciler import Reconciler
from .store import RequestStore

# LogRecord attributes that are not structured "extra" fields
_RESERVED_RECORD_KEYS = frozenset(
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
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        # Add exception info if present
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

    # Reduce noise from the AWS SDK
    for name in ("boto3", "botocore", "urllib3", "s3transfer"):
        logging.getLogger(name).setLevel(logging.WARNING)


def events_path_for(state_file: Path | None) -> Path | None:
    """Event log file stored next to the state file."""
    if state_file is None:
        return None
    return state_file.with_name(state_file.stem + ".events.jsonl")


async def main() -> int:
    """Run the orchestrator.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    logger.info(
        "Starting account lifecycle orchestrator",
        extra={
            "requests_dir": str(config.requests_dir),
            "state_file": str(config.state_file) if config.state_file else None,
            "region": config.region,
            "drift_remediation": config.drift_remediation.value,
        },
    )

    try:
        store = RequestStore(config.state_file)
        events = EventLog(events_path_for(config.state_file))
        collaborators = build_collaborators(config)
    except Exception as e:
        # Unreadable state or AWS client setup failure
        logger.error(
            "Failed to initialize orchestrator",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return 1

    events.subscribe(LoggingNotifier())
    reconciler = Reconciler(config, store, collaborators, events)
    drift = DriftDetector(config, store, collaborators, events)
    intake = RequestIntake(config.requests_dir, reconciler)

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        reconciler.shutdown()
        drift.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    async def sync_requests() -> None:
        await intake.sync()

    try:
        await asyncio.gather(reconciler.run(before_sweep=sync_requests), drift.run())
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    logger.info("Orchestrator stopped")
    return 0


def run() -> None:
    """Entry point for the orchestrator service."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
