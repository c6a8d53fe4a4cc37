"""Audit events produced during a reconciliation pass.

Events are buffered on the pass context while the pass runs and only
published after the authoritative status write, so an audit record is never
observed without the state change it describes. Publishing is best effort:
a failed event is logged and skipped, it never fails or retries the pass.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .models import API_GROUP_VERSION, DATA_IMAGE_KIND, ObjectKey

logger = logging.getLogger(__name__)

EVENT_SOURCE_COMPONENT = "metal3-dataimage-controller"
REPORTING_CONTROLLER = "metal3.io/dataimage-controller"


class EventType(str, Enum):
    """Kubernetes event severities."""

    NORMAL = "Normal"
    WARNING = "Warning"


@dataclass(frozen=True)
class AuditEvent:
    """A single human-readable fact about a DataImage."""

    key: ObjectKey
    reason: str
    message: str
    uid: str = ""
    type: EventType = EventType.NORMAL
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_k8s(self) -> dict[str, Any]:
        """Render as a core v1 Event body."""
        ts = self.timestamp.isoformat().replace("+00:00", "Z")
        return {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {
                "generateName": f"{self.reason}-",
                "namespace": self.key.namespace,
            },
            "involvedObject": {
                "kind": DATA_IMAGE_KIND,
                "namespace": self.key.namespace,
                "name": self.key.name,
                "uid": self.uid,
                "apiVersion": API_GROUP_VERSION,
            },
            "reason": self.reason,
            "message": self.message,
            "source": {"component": EVENT_SOURCE_COMPONENT},
            "firstTimestamp": ts,
            "lastTimestamp": ts,
            "count": 1,
            "type": self.type.value,
            "reportingComponent": REPORTING_CONTROLLER,
        }


@dataclass
class PublishReport:
    """Outcome of flushing one pass worth of events."""

    recorded: int = 0
    failed: int = 0


class EventRecorder:
    """Writes buffered audit events to a sink in production order."""

    def __init__(self, sink: Callable[[AuditEvent], Awaitable[None]]) -> None:
        self._sink = sink

    async def publish(self, events: Iterable[AuditEvent]) -> PublishReport:
        report = PublishReport()
        for event in events:
            logger.info(
                "Publishing event",
                extra={"dataimage": str(event.key), "reason": event.reason, "event_message": event.message},
            )
            try:
                await self._sink(event)
            except Exception as e:
                # Losing an audit record must not fail the pass
                report.failed += 1
                logger.warning(
                    "Failed to record event, ignoring",
                    extra={
                        "dataimage": str(event.key),
                        "reason": event.reason,
                        "event_message": event.message,
                        "error": str(e),
                    },
                )
                continue
            report.recorded += 1
        return report
