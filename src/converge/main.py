"""Main entry point for the converge reconciler.

Runs the reconciliation loop as a long-lived process:
- SIGTERM / SIGINT: cancel the in-flight cycle (running operations finish) and exit
- SIGHUP: trigger an immediate cycle
- SIGUSR1: force a retry after a Failed cycle
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from typing import TextIO

from .azure_provider import AzureResourceProvider, SecretlessViolationError
from .config import Config, ConfigurationError, ProviderName
from .provider import MemoryProvider, Provider
from .reconciler import Reconciler
from .state_store import FileStateStore, StateStore

# LogRecord attributes that are not user-supplied extras
_RESERVED_LOG_ATTRS = frozenset(
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

        for key, value in record.__dict__.items():
            if key not in _RESERVED_LOG_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO, stream: TextIO | None = None) -> None:
    """Configure structured logging with JSON output for production."""
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if isinstance(existing.formatter, JsonFormatter):
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_provider(config: Config) -> Provider:
    """Create the provider selected by configuration."""
    if config.provider == ProviderName.MEMORY:
        return MemoryProvider()
    return AzureResourceProvider(
        subscription_id=config.subscription_id or "",
        client_id=config.client_id,
        operation_timeout_seconds=config.operation_timeout_seconds,
    )


def build_store(config: Config) -> StateStore:
    """Create the file-backed state store under STATE_DIR."""
    return FileStateStore(config.state_dir, lease_ttl_seconds=config.lease_ttl_seconds)


async def main() -> int:
    """Run the reconciler until a termination signal.

    Returns:
        Exit code (0 for success, 1 for errors, 2 for security violations).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    logger.info(
        "Starting converge",
        extra={
            "provider": config.provider.value,
            "subscription_id": config.subscription_id,
            "desired_state_path": str(config.desired_state_path),
            "state_dir": str(config.state_dir),
            "dry_run": config.dry_run,
        },
    )

    try:
        reconciler = Reconciler(config, build_provider(config), build_store(config))
    except SecretlessViolationError as e:
        # SECURITY: Credential detected - fatal security error
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return 2
    except Exception as e:
        logger.error(
            "Failed to initialize reconciler",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return 1

    install_signal_handlers(reconciler)

    try:
        await reconciler.run()
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    logger.info("Reconciler stopped")
    return 0


def install_signal_handlers(reconciler: Reconciler) -> None:
    """Wire process signals to reconciler controls."""
    logger = logging.getLogger(__name__)
    loop = asyncio.get_running_loop()

    def on_signal(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        if sig in (signal.SIGTERM, signal.SIGINT):
            reconciler.shutdown()
        elif sig == signal.SIGHUP:
            reconciler.trigger()
        elif sig == signal.SIGUSR1:
            reconciler.force_retry()

    for sig in (signal.SIGTERM, signal.SIGINT, signal.SIGHUP, signal.SIGUSR1):
        loop.add_signal_handler(sig, lambda s=sig: on_signal(s))


def run() -> None:
    """Entry point for the converge-operator console script."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
