"""Configuration management with validation.

Requeue delays, worker pool size and backend selection are loaded once at
startup and injected into the reconciler and dispatcher. Nothing in the
reconciliation path reads the environment directly.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Requeue delays (seconds)
DEFAULT_DATA_IMAGE_RETRY_DELAY_SECONDS = 60
DEFAULT_DATA_IMAGE_UPDATE_DELAY_SECONDS = 30
DEFAULT_PROVISIONER_RETRY_DELAY_SECONDS = 30
DEFAULT_UNMANAGED_RETRY_DELAY_SECONDS = 600

# Dispatcher
DEFAULT_MAX_CONCURRENT_RECONCILES = 8
MIN_CONCURRENT_RECONCILES = 1
MAX_CONCURRENT_RECONCILES = 128

DEFAULT_RECONCILE_TIMEOUT_SECONDS = 120
MAX_RECONCILE_TIMEOUT_SECONDS = 3600

# Per-key exponential backoff for failed passes
DEFAULT_BACKOFF_BASE_SECONDS = 0.005
DEFAULT_BACKOFF_MAX_SECONDS = 1000.0

SUPPORTED_PROVISIONERS = ("fixture",)

# DNS-1123 label, which is what Kubernetes accepts for namespaces
VALID_NAMESPACE_PATTERN = r"^[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?$"


@dataclass(frozen=True)
class RequeueDelays:
    """Named requeue delays handed back to the dispatcher.

    The reconciler never sleeps; it only names which delay applies and the
    dispatcher owns the timer.
    """

    # Transient store or backend failure, and waiting for detachment
    data_image_retry: float = DEFAULT_DATA_IMAGE_RETRY_DELAY_SECONDS

    # Reserved polling cadence, not used by the reconciliation pass
    data_image_update: float = DEFAULT_DATA_IMAGE_UPDATE_DELAY_SECONDS

    # Provisioner reported not ready (with or without an error)
    provisioner_retry: float = DEFAULT_PROVISIONER_RETRY_DELAY_SECONDS

    # Host carries the detached annotation
    unmanaged_retry: float = DEFAULT_UNMANAGED_RETRY_DELAY_SECONDS

    def validate(self) -> list[str]:
        """Return validation errors, empty when the delays are usable."""
        errors: list[str] = []
        for name in ("data_image_retry", "data_image_update", "provisioner_retry", "unmanaged_retry"):
            value = getattr(self, name)
            if value <= 0:
                errors.append(f"{name.upper()}_DELAY must be positive: {value}")
        return errors


@dataclass(frozen=True)
class Config:
    """Controller configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Namespace to watch, None for all namespaces
    namespace: str | None = None

    # Worker pool
    max_concurrent_reconciles: int = DEFAULT_MAX_CONCURRENT_RECONCILES
    reconcile_timeout_seconds: float = DEFAULT_RECONCILE_TIMEOUT_SECONDS

    # Backoff for passes that failed without naming a delay
    backoff_base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS
    backoff_max_seconds: float = DEFAULT_BACKOFF_MAX_SECONDS

    delays: RequeueDelays = field(default_factory=RequeueDelays)

    # Backend
    provisioner: str = "fixture"

    # None means in-cluster configuration
    kubeconfig: Path | None = None

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        import re

        errors: list[str] = []

        if self.namespace is not None and not re.match(VALID_NAMESPACE_PATTERN, self.namespace):
            errors.append(f"WATCH_NAMESPACE must be a valid namespace name: {self.namespace}")

        if not (
            MIN_CONCURRENT_RECONCILES
            <= self.max_concurrent_reconciles
            <= MAX_CONCURRENT_RECONCILES
        ):
            errors.append(
                f"MAX_CONCURRENT_RECONCILES must be between {MIN_CONCURRENT_RECONCILES} "
                f"and {MAX_CONCURRENT_RECONCILES}"
            )

        if not 0 < self.reconcile_timeout_seconds <= MAX_RECONCILE_TIMEOUT_SECONDS:
            errors.append(
                f"RECONCILE_TIMEOUT must be between 0 and {MAX_RECONCILE_TIMEOUT_SECONDS} seconds"
            )

        if self.backoff_base_seconds <= 0:
            errors.append("BACKOFF_BASE_SECONDS must be positive")
        if self.backoff_max_seconds < self.backoff_base_seconds:
            errors.append("BACKOFF_MAX_SECONDS must not be lower than BACKOFF_BASE_SECONDS")

        errors.extend(self.delays.validate())

        if self.provisioner not in SUPPORTED_PROVISIONERS:
            errors.append(
                f"PROVISIONER must be one of {list(SUPPORTED_PROVISIONERS)}: {self.provisioner}"
            )

        if self.kubeconfig is not None and not self.kubeconfig.exists():
            errors.append(f"KUBECONFIG does not exist: {self.kubeconfig}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            WATCH_NAMESPACE: Namespace to watch (default: all namespaces)
            MAX_CONCURRENT_RECONCILES: Worker pool size (default: 8)
            RECONCILE_TIMEOUT: Per-pass timeout in seconds (default: 120)
            BACKOFF_BASE_SECONDS: First backoff step for failed passes (default: 0.005)
            BACKOFF_MAX_SECONDS: Backoff ceiling (default: 1000)
            PROVISIONER: Provisioner backend (default: fixture)
            KUBECONFIG: Path to kubeconfig (default: in-cluster configuration)

        Requeue Delay Variables (seconds):
            DATA_IMAGE_RETRY_DELAY: Transient failure retry (default: 60)
            DATA_IMAGE_UPDATE_DELAY: Reserved update cadence (default: 30)
            PROVISIONER_RETRY_DELAY: Provisioner not ready (default: 30)
            UNMANAGED_RETRY_DELAY: Host detached (default: 600)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        kubeconfig = os.environ.get("KUBECONFIG")

        return cls(
            namespace=os.environ.get("WATCH_NAMESPACE") or None,
            max_concurrent_reconciles=get_int(
                "MAX_CONCURRENT_RECONCILES", DEFAULT_MAX_CONCURRENT_RECONCILES
            ),
            reconcile_timeout_seconds=get_float(
                "RECONCILE_TIMEOUT", DEFAULT_RECONCILE_TIMEOUT_SECONDS
            ),
            backoff_base_seconds=get_float("BACKOFF_BASE_SECONDS", DEFAULT_BACKOFF_BASE_SECONDS),
            backoff_max_seconds=get_float("BACKOFF_MAX_SECONDS", DEFAULT_BACKOFF_MAX_SECONDS),
            delays=RequeueDelays(
                data_image_retry=get_float(
                    "DATA_IMAGE_RETRY_DELAY", DEFAULT_DATA_IMAGE_RETRY_DELAY_SECONDS
                ),
                data_image_update=get_float(
                    "DATA_IMAGE_UPDATE_DELAY", DEFAULT_DATA_IMAGE_UPDATE_DELAY_SECONDS
                ),
                provisioner_retry=get_float(
                    "PROVISIONER_RETRY_DELAY", DEFAULT_PROVISIONER_RETRY_DELAY_SECONDS
                ),
                unmanaged_retry=get_float(
                    "UNMANAGED_RETRY_DELAY", DEFAULT_UNMANAGED_RETRY_DELAY_SECONDS
                ),
            ),
            provisioner=os.environ.get("PROVISIONER", "fixture"),
            kubeconfig=Path(kubeconfig) if kubeconfig else None,
        )

    def to_dict(self) -> dict[str, object]:
        """Convert to a plain dictionary for display."""
        return {
            "namespace": self.namespace,
            "max_concurrent_reconciles": self.max_concurrent_reconciles,
            "reconcile_timeout_seconds": self.reconcile_timeout_seconds,
            "backoff_base_seconds": self.backoff_base_seconds,
            "backoff_max_seconds": self.backoff_max_seconds,
            "delays": {
                "data_image_retry": self.delays.data_image_retry,
                "data_image_update": self.delays.data_image_update,
                "provisioner_retry": self.delays.provisioner_retry,
                "unmanaged_retry": self.delays.unmanaged_retry,
            },
            "provisioner": self.provisioner,
            "kubeconfig": str(self.kubeconfig) if self.kubeconfig else None,
        }
