"""Tests for watch event handling and reconcile triggers."""

from __future__ import annotations

import asyncio
from typing import Any
from unittest.mock import MagicMock

import pytest
from kubernetes_asyncio.client import ApiException

import dataimage_controller.watcher as watcher_module
from dataimage_controller.models import ObjectKey
from dataimage_controller.watcher import (
    GoneError,
    KubernetesWatcher,
    WatchEvent,
    WatchEventType,
    build_watchers,
    data_image_trigger,
    host_trigger,
    make_enqueuer,
)

KEY = ObjectKey("default", "img-a")


def raw_object(generation: int = 1, resource_version: str = "1") -> dict[str, Any]:
    return {
        "metadata": {
            "name": "img-a",
            "namespace": "default",
            "generation": generation,
            "resourceVersion": resource_version,
        }
    }


class TestTriggers:
    """Tests for per-kind trigger filters."""

    @pytest.mark.parametrize("event_type", list(WatchEventType)[:3])
    def test_data_image_always_triggers(self, event_type: WatchEventType) -> None:
        event = WatchEvent(type=event_type, object=raw_object(), old_object=raw_object())
        assert data_image_trigger(event) == KEY

    def test_host_create_and_delete_trigger(self) -> None:
        assert host_trigger(WatchEvent(WatchEventType.ADDED, raw_object())) == KEY
        assert host_trigger(WatchEvent(WatchEventType.DELETED, raw_object())) == KEY

    def test_host_status_update_ignored(self) -> None:
        event = WatchEvent(WatchEventType.MODIFIED, raw_object(1, "2"), raw_object(1, "1"))
        assert host_trigger(event) is None

    def test_host_generation_change_triggers(self) -> None:
        event = WatchEvent(WatchEventType.MODIFIED, raw_object(2, "2"), raw_object(1, "1"))
        assert host_trigger(event) == KEY

    def test_enqueuer_drops_filtered_events(self) -> None:
        enqueued: list[ObjectKey] = []
        on_event = make_enqueuer(enqueued.append, host_trigger)

        on_event(WatchEvent(WatchEventType.MODIFIED, raw_object(1, "2"), raw_object(1, "1")))
        on_event(WatchEvent(WatchEventType.ADDED, raw_object()))

        assert enqueued == [KEY]


class TestKubernetesWatcher:
    """Tests for watch event handling."""

    @pytest.fixture
    def events(self) -> list[WatchEvent]:
        return []

    @pytest.fixture
    def watcher(self, events: list[WatchEvent]) -> KubernetesWatcher:
        return KubernetesWatcher(
            MagicMock(), plural="baremetalhosts", namespace=None, on_event=events.append
        )

    @pytest.mark.asyncio
    async def test_old_object_tracked(
        self, watcher: KubernetesWatcher, events: list[WatchEvent]
    ) -> None:
        first = raw_object(1, "1")
        second = raw_object(2, "2")

        await watcher._handle({"type": "ADDED", "raw_object": first})
        await watcher._handle({"type": "MODIFIED", "raw_object": second})
        await watcher._handle({"type": "DELETED", "raw_object": second})

        assert [e.type for e in events] == [
            WatchEventType.ADDED,
            WatchEventType.MODIFIED,
            WatchEventType.DELETED,
        ]
        assert events[0].old_object is None
        assert events[1].old_object == first
        assert events[2].old_object == second
        assert watcher._resource_version == "2"

    @pytest.mark.asyncio
    async def test_bookmark_updates_version_only(
        self, watcher: KubernetesWatcher, events: list[WatchEvent]
    ) -> None:
        await watcher._handle({"type": "BOOKMARK", "raw_object": raw_object(1, "99")})

        assert events == []
        assert watcher._resource_version == "99"

    @pytest.mark.asyncio
    async def test_gone_error(self, watcher: KubernetesWatcher) -> None:
        with pytest.raises(GoneError):
            await watcher._handle(
                {"type": "ERROR", "raw_object": {"code": 410, "message": "too old"}}
            )

    @pytest.mark.asyncio
    async def test_other_error_ignored(
        self, watcher: KubernetesWatcher, events: list[WatchEvent]
    ) -> None:
        await watcher._handle({"type": "ERROR", "raw_object": {"code": 500}})
        assert events == []

    @pytest.mark.asyncio
    async def test_async_callback_awaited(self) -> None:
        seen: list[ObjectKey] = []

        async def on_event(event: WatchEvent) -> None:
            seen.append(event.key)

        watcher = KubernetesWatcher(
            MagicMock(), plural="dataimages", namespace="default", on_event=on_event
        )
        await watcher._handle({"type": "ADDED", "raw_object": raw_object()})

        assert seen == [KEY]


class TestBuildWatchers:
    def test_one_watcher_per_kind(self) -> None:
        enqueued: list[ObjectKey] = []
        watchers = build_watchers(MagicMock(), "default", enqueued.append)

        assert sorted(w._plural for w in watchers) == ["baremetalhosts", "dataimages"]


class TestWatcherRun:
    """Tests for the restart loop around the watch stream."""

    @pytest.fixture
    def watcher(self, monkeypatch: pytest.MonkeyPatch) -> KubernetesWatcher:
        monkeypatch.setattr(watcher_module, "WATCH_RETRY_DELAY_SECONDS", 0)
        return KubernetesWatcher(
            MagicMock(), plural="dataimages", namespace=None, on_event=lambda event: None
        )

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            RuntimeError("callback exploded"),
            ApiException(status=500, reason="Internal Server Error"),
            TimeoutError(),
        ],
    )
    async def test_restarts_after_failure(
        self, watcher: KubernetesWatcher, error: Exception, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test that a failed stream is reopened instead of ending the task."""
        attempts = 0

        async def watch_once() -> None:
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise error
            watcher.stop()

        monkeypatch.setattr(watcher, "_watch_once", watch_once)

        await asyncio.wait_for(watcher.run(), timeout=1)

        assert attempts == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error", [GoneError("too old"), ApiException(status=410, reason="Gone")]
    )
    async def test_relists_after_gone(
        self, watcher: KubernetesWatcher, error: Exception, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        watcher._resource_version = "5"
        seen_versions: list[str | None] = []

        async def watch_once() -> None:
            seen_versions.append(watcher._resource_version)
            if len(seen_versions) == 1:
                raise error
            watcher.stop()

        monkeypatch.setattr(watcher, "_watch_once", watch_once)

        await asyncio.wait_for(watcher.run(), timeout=1)

        assert seen_versions == ["5", None]
