"""Main entry point for the provisioning engine.

Startup sequence:
- Load and validate configuration from the environment
- Open the state store
- Provision datasources, plugins, notifiers and alert rules once
- Run the dashboard polling loop until SIGTERM or SIGINT

SIGHUP re-reads every provisioning directory without restarting.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from .config import Config, ConfigurationError
from .service import ProvisioningError, ProvisioningService
from .services import ServiceHandles
from .store import StateStore, StoreError

# LogRecord attributes that are not structured extra fields
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

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Configure structured logging with JSON output for production."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    logging.getLogger("asyncio").setLevel(logging.WARNING)


async def main() -> int:
    """Run the provisioning engine.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    try:
        config = Config.from_env()
    except ConfigurationError as e:
        setup_logging()
        logging.getLogger(__name__).error("Configuration error", extra={"error": str(e)})
        return 1

    setup_logging(config.log_level)
    logger = logging.getLogger(__name__)

    logger.info(
        "Starting provisioning engine",
        extra={
            "provisioning_path": str(config.provisioning_path),
            "state_file": str(config.state_file) if config.state_file else None,
            "atomicity_policy": config.atomicity_policy.value,
        },
    )

    try:
        store = StateStore(config.state_file)
    except StoreError as e:
        logger.error("Failed to open state store", extra={"error": str(e)})
        return 1

    service = ProvisioningService(config, store, ServiceHandles.from_config(config))

    try:
        await service.run_init_provisioners()
    except ProvisioningError as e:
        logger.error("Initial provisioning failed", extra={"stage": e.stage.name.lower()})
        return 1

    return await run_service(service, logger)


async def run_service(service: ProvisioningService, logger: logging.Logger) -> int:
    """Run the service loop with signal handlers installed."""
    loop = asyncio.get_running_loop()
    reloads: set[asyncio.Task[None]] = set()

    async def reload() -> None:
        try:
            await service.reload()
        except ProvisioningError:
            # Already logged with its stage; keep serving the previous state
            pass
        else:
            logger.info("Reload completed")

    def on_shutdown(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        service.shutdown()

    def on_reload() -> None:
        logger.info("Received signal", extra={"signal": signal.SIGHUP.name})
        task = loop.create_task(reload())
        reloads.add(task)
        task.add_done_callback(reloads.discard)

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: on_shutdown(s))
    loop.add_signal_handler(signal.SIGHUP, on_reload)

    try:
        await service.run()
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT, signal.SIGHUP):
            loop.remove_signal_handler(sig)
        pending = list(reloads)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    logger.info("Provisioning engine stopped")
    return 0


def run() -> None:
    """Entry point for the provisioning engine."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
