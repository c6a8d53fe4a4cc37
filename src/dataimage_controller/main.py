"""Main entry point for the DataImage controller.

Wires configuration, the Kubernetes API client, the provisioner backend,
the reconciler, the dispatcher and the watch streams together, then runs
until SIGTERM or SIGINT.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC

from kubernetes_asyncio import config as kube_config
from kubernetes_asyncio.client import ApiClient, CustomObjectsApi
from kubernetes_asyncio.config import ConfigException

from .config import Config, ConfigurationError
from .controller import DataImageController
from .provisioner import ProvisionerFactory, get_provisioner_factory
from .reconciler import DataImageReconciler
from .store import KubernetesStore
from .watcher import build_watchers


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output for production."""
    import json
    from datetime import datetime

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
                if key not in _RESERVED_RECORD_ATTRS:
                    log_data[key] = value

            # Add exception info if present
            if record.exc_info:
                log_data["exception"] = self.formatException(record.exc_info)

            return json.dumps(log_data, default=str)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the Kubernetes client
    logging.getLogger("kubernetes_asyncio").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)


_RESERVED_RECORD_ATTRS = frozenset(
    (
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
    )
)


async def load_kubernetes_config(config: Config) -> None:
    """Load kubeconfig when configured, in-cluster configuration otherwise."""
    if config.kubeconfig is not None:
        await kube_config.load_kube_config(config_file=str(config.kubeconfig))
    else:
        kube_config.load_incluster_config()


@asynccontextmanager
async def build_reconciler(
    config: Config, provisioner_factory: ProvisionerFactory | None = None
) -> AsyncIterator[tuple[DataImageReconciler, ApiClient]]:
    """Create a reconciler backed by the Kubernetes API.

    The API client is closed when the context exits.
    """
    await load_kubernetes_config(config)
    async with ApiClient() as api_client:
        reconciler = DataImageReconciler(
            KubernetesStore(api_client),
            provisioner_factory or get_provisioner_factory(config.provisioner),
            config.delays,
            timeout_seconds=config.reconcile_timeout_seconds,
        )
        yield reconciler, api_client


async def main() -> int:
    """Run the controller.

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

    return await run_controller(config, logger)


async def run_controller(config: Config, logger: logging.Logger) -> int:
    """Run the controller with a validated configuration."""
    logger.info(
        "Starting DataImage controller",
        extra={
            "namespace": config.namespace or "<all>",
            "provisioner": config.provisioner,
            "workers": config.max_concurrent_reconciles,
        },
    )

    try:
        async with build_reconciler(config) as (reconciler, api_client):
            controller = DataImageController(config, reconciler)
            watchers = build_watchers(
                CustomObjectsApi(api_client), config.namespace, controller.enqueue
            )

            # Set up signal handlers for graceful shutdown
            loop = asyncio.get_running_loop()

            def signal_handler(sig: signal.Signals) -> None:
                logger.info("Received signal", extra={"signal": sig.name})
                controller.shutdown()

            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

            await controller.run(watchers)
    except ConfigException as e:
        logger.error("Failed to load Kubernetes configuration", extra={"error": str(e)})
        return 1
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    logger.info("Controller stopped")
    return 0


def run() -> None:
    """Entry point for the controller."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
