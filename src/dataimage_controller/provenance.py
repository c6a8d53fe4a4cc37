"""Per-pass provenance records for audit.

Every reconciliation pass is stamped with a structured record answering:
- "Which step ended the pass for this DataImage?"
- "When will it run again, and why?"
- "Which controller build and instance ran it?"

Records go to the structured logger; they complement the Kubernetes events
written by the event recorder, which only cover successful status updates.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

from .reconciler import ReconcileResult
from .store import PersistConflict

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
CONTROLLER_VERSION = os.environ.get("CONTROLLER_VERSION", "dev")


@dataclass
class PassProvenance:
    """Provenance record for one reconciliation pass."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    # Identity
    namespace: str = ""
    name: str = ""
    controller_version: str = CONTROLLER_VERSION
    controller_instance_id: str = ""

    # Outcome
    outcome: str = ""
    requeue: bool = False
    requeue_after_seconds: float | None = None
    requeue_count: int = 0
    events_recorded: int = 0
    events_failed: int = 0

    # Timing
    duration_seconds: float = 0.0

    # Error tracking
    error: str | None = None
    error_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


class ProvenanceLogger:
    """Logs one provenance record per pass."""

    def __init__(self) -> None:
        self._instance_id = os.environ.get("POD_NAME", "")

    def create_provenance(self, result: ReconcileResult, requeue_count: int = 0) -> PassProvenance:
        """Build the record for a finished pass.

        Args:
            result: Result returned by the reconciler.
            requeue_count: Consecutive failed passes for the key so far.
        """
        return PassProvenance(
            timestamp=result.end_time or datetime.now(UTC),
            namespace=result.key.namespace,
            name=result.key.name,
            controller_instance_id=self._instance_id,
            outcome=result.outcome.value,
            requeue=result.requeue,
            requeue_after_seconds=result.requeue_after,
            requeue_count=requeue_count,
            events_recorded=result.events_recorded,
            events_failed=result.events_failed,
            duration_seconds=result.duration_seconds,
            error=str(result.error) if result.error else None,
            error_type=type(result.error).__name__ if result.error else None,
        )

    def log_provenance(self, provenance: PassProvenance) -> None:
        """Log a completed provenance record."""
        log_level = logging.INFO
        if provenance.error_type == PersistConflict.__name__:
            # Conflicts are retried from a fresh read
            log_level = logging.INFO
        elif provenance.error:
            log_level = logging.ERROR
        elif provenance.events_failed > 0:
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Reconciliation provenance",
            extra={
                "provenance": provenance.to_dict(),
                # Flatten key fields for easier querying
                "dataimage": f"{provenance.namespace}/{provenance.name}",
                "outcome": provenance.outcome,
                "requeue_after": provenance.requeue_after_seconds,
                "controller_version": provenance.controller_version,
                "duration_seconds": provenance.duration_seconds,
            },
        )


# Global singleton for provenance logging
_provenance_logger: ProvenanceLogger | None = None


def get_provenance_logger() -> ProvenanceLogger:
    """Get the global provenance logger instance."""
    global _provenance_logger
    if _provenance_logger is None:
        _provenance_logger = ProvenanceLogger()
    return _provenance_logger
