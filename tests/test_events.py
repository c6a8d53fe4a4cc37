"""Tests for audit events."""

from datetime import UTC, datetime

import pytest

from dataimage_controller.events import (
    EVENT_SOURCE_COMPONENT,
    REPORTING_CONTROLLER,
    AuditEvent,
    EventRecorder,
    EventType,
)
from dataimage_controller.models import ObjectKey
from dataimage_controller.store import StoreUnavailable

KEY = ObjectKey("metal3", "worker-0")


class TestAuditEvent:
    """Tests for AuditEvent serialization."""

    def test_to_k8s(self) -> None:
        event = AuditEvent(
            key=KEY,
            reason="DataImageAttached",
            message="Image http://images/a.iso attached",
            uid="uid-1",
            timestamp=datetime(2024, 5, 1, 12, 0, tzinfo=UTC),
        )

        body = event.to_k8s()

        assert body["metadata"] == {"generateName": "DataImageAttached-", "namespace": "metal3"}
        assert body["involvedObject"] == {
            "kind": "DataImage",
            "namespace": "metal3",
            "name": "worker-0",
            "uid": "uid-1",
            "apiVersion": "metal3.io/v1alpha1",
        }
        assert body["type"] == "Normal"
        assert body["source"] == {"component": EVENT_SOURCE_COMPONENT}
        assert body["reportingComponent"] == REPORTING_CONTROLLER
        assert body["firstTimestamp"] == "2024-05-01T12:00:00Z"
        assert body["count"] == 1

    def test_warning_type(self) -> None:
        event = AuditEvent(key=KEY, reason="R", message="m", type=EventType.WARNING)
        assert event.to_k8s()["type"] == "Warning"


class TestEventRecorder:
    """Tests for EventRecorder."""

    @pytest.mark.asyncio
    async def test_publishes_in_order(self) -> None:
        written: list[str] = []

        async def sink(event: AuditEvent) -> None:
            written.append(event.reason)

        events = [AuditEvent(key=KEY, reason=r, message="m") for r in ("first", "second", "third")]
        report = await EventRecorder(sink).publish(events)

        assert written == ["first", "second", "third"]
        assert report.recorded == 3
        assert report.failed == 0

    @pytest.mark.asyncio
    async def test_failed_event_is_skipped(self) -> None:
        """Test that one failing event does not stop the rest."""
        written: list[str] = []

        async def sink(event: AuditEvent) -> None:
            if event.reason == "second":
                raise StoreUnavailable("events API down")
            written.append(event.reason)

        events = [AuditEvent(key=KEY, reason=r, message="m") for r in ("first", "second", "third")]
        report = await EventRecorder(sink).publish(events)

        assert written == ["first", "third"]
        assert report.recorded == 2
        assert report.failed == 1

    @pytest.mark.asyncio
    async def test_unexpected_sink_error_is_skipped(self) -> None:
        """Test that errors outside the store taxonomy are counted, not raised."""
        written: list[str] = []

        async def sink(event: AuditEvent) -> None:
            if event.reason == "first":
                raise RuntimeError("event serialization failed")
            written.append(event.reason)

        events = [AuditEvent(key=KEY, reason=r, message="m") for r in ("first", "second")]
        report = await EventRecorder(sink).publish(events)

        assert written == ["second"]
        assert report.recorded == 1
        assert report.failed == 1

    @pytest.mark.asyncio
    async def test_empty(self) -> None:
        async def sink(event: AuditEvent) -> None:
            raise AssertionError("no events expected")

        report = await EventRecorder(sink).publish([])
        assert report.recorded == 0
        assert report.failed == 0
