"""Watch DataImages and BareMetalHosts and turn changes into reconcile triggers.

Each watched kind runs one long-lived watch stream. Streams are restarted
after errors; a 410 Gone answer means the stored resource version is too
old, so the next attempt starts from a fresh list.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import aiohttp
from kubernetes_asyncio.client import ApiException, CustomObjectsApi
from kubernetes_asyncio.watch import Watch

from .models import API_GROUP, API_VERSION, DATA_IMAGE_PLURAL, HOST_PLURAL, ObjectKey
from .reconciler import generation_changed

logger = logging.getLogger(__name__)

# Server-side timeout of a single watch request before it is reopened
WATCH_TIMEOUT_SECONDS = 300

# Pause between failed watch attempts
WATCH_RETRY_DELAY_SECONDS = 5.0


class WatchEventType(str, Enum):
    """Watch event types sent by the API server."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    BOOKMARK = "BOOKMARK"
    ERROR = "ERROR"


@dataclass
class WatchEvent:
    """Watch event with the previously seen version of the object, if any."""

    type: WatchEventType
    object: dict[str, Any]
    old_object: dict[str, Any] | None = None

    @property
    def key(self) -> ObjectKey:
        return ObjectKey.from_object(self.object)


# Returns the key to enqueue, or None to drop the event
EventFilter = Callable[[WatchEvent], ObjectKey | None]


def data_image_trigger(event: WatchEvent) -> ObjectKey | None:
    """Every create, update and delete of a DataImage triggers a pass.

    This includes the controller's own status writes. The reconciler only
    writes status when it differs from the stored one, so a settled
    DataImage does not keep re-triggering itself.
    """
    return event.key


def host_trigger(event: WatchEvent) -> ObjectKey | None:
    """Host creates and deletes trigger; updates only on a generation change."""
    if event.type == WatchEventType.MODIFIED and not generation_changed(
        event.old_object, event.object
    ):
        return None
    return event.key


class GoneError(Exception):
    """Raised when the watch resource version has expired."""

    pass


class KubernetesWatcher:
    """Stream events for one custom resource kind and hand them to a callback."""

    def __init__(
        self,
        custom_api: CustomObjectsApi,
        *,
        plural: str,
        namespace: str | None,
        on_event: Callable[[WatchEvent], Awaitable[None] | None],
    ) -> None:
        self._api = custom_api
        self._plural = plural
        self._namespace = namespace
        self._on_event = on_event
        self._watch: Watch | None = None
        self._stopped = False
        self._resource_version: str | None = None

        # key -> last seen object, to supply old_object on updates
        self._cache: dict[ObjectKey, dict[str, Any]] = {}

    def stop(self) -> None:
        self._stopped = True
        if self._watch is not None:
            self._watch.stop()

    async def run(self) -> None:
        """Watch until stopped, restarting the stream after failures."""
        while not self._stopped:
            try:
                await self._watch_once()
            except GoneError:
                logger.info("Watch expired, relisting", extra={"plural": self._plural})
                self._resource_version = None
                continue
            except (ApiException, aiohttp.ClientError, TimeoutError) as e:
                if isinstance(e, ApiException) and e.status == 410:
                    self._resource_version = None
                    continue
                logger.warning(
                    "Watch failed, retrying",
                    extra={
                        "plural": self._plural,
                        "error": str(e),
                        "retry_seconds": WATCH_RETRY_DELAY_SECONDS,
                    },
                )
                await asyncio.sleep(WATCH_RETRY_DELAY_SECONDS)
            except Exception as e:
                # The callback or the client failed unexpectedly; keep watching
                logger.exception(
                    "Unexpected watch failure, retrying",
                    extra={
                        "plural": self._plural,
                        "error": str(e),
                        "retry_seconds": WATCH_RETRY_DELAY_SECONDS,
                    },
                )
                await asyncio.sleep(WATCH_RETRY_DELAY_SECONDS)

    async def _watch_once(self) -> None:
        args: dict[str, Any] = {"timeout_seconds": WATCH_TIMEOUT_SECONDS}
        if self._resource_version:
            args["resource_version"] = self._resource_version
        if self._namespace:
            method = self._api.list_namespaced_custom_object
            args.update(namespace=self._namespace)
        else:
            method = self._api.list_cluster_custom_object

        self._watch = Watch()
        try:
            async with self._watch.stream(
                method, API_GROUP, API_VERSION, plural=self._plural, **args
            ) as stream:
                async for raw in stream:
                    await self._handle(raw)
                    if self._stopped:
                        break
        finally:
            self._watch = None

    async def _handle(self, raw: dict[str, Any]) -> None:
        event_type = WatchEventType(raw["type"])
        obj = raw.get("raw_object") or raw.get("object") or {}

        if event_type == WatchEventType.ERROR:
            if obj.get("code") == 410:
                raise GoneError(obj.get("message", "resource version too old"))
            logger.warning("Watch error event", extra={"plural": self._plural, "event": obj})
            return

        metadata = obj.get("metadata") or {}
        if metadata.get("resourceVersion"):
            self._resource_version = metadata["resourceVersion"]
        if event_type == WatchEventType.BOOKMARK:
            return

        key = ObjectKey.from_object(obj)
        if event_type == WatchEventType.DELETED:
            old = self._cache.pop(key, None)
        else:
            old = self._cache.get(key)
            self._cache[key] = obj

        result = self._on_event(WatchEvent(type=event_type, object=obj, old_object=old))
        if result is not None:
            await result


def make_enqueuer(
    enqueue: Callable[[ObjectKey], None], trigger: EventFilter
) -> Callable[[WatchEvent], None]:
    """Build a watch callback that enqueues keys accepted by a trigger filter."""

    def on_event(event: WatchEvent) -> None:
        key = trigger(event)
        if key is None:
            logger.debug(
                "Ignoring event",
                extra={"dataimage": str(event.key), "event_type": event.type.value},
            )
            return
        enqueue(key)

    return on_event


def build_watchers(
    custom_api: CustomObjectsApi,
    namespace: str | None,
    enqueue: Callable[[ObjectKey], None],
) -> list[KubernetesWatcher]:
    """Watchers for DataImages and their correlated hosts."""
    return [
        KubernetesWatcher(
            custom_api,
            plural=DATA_IMAGE_PLURAL,
            namespace=namespace,
            on_event=make_enqueuer(enqueue, data_image_trigger),
        ),
        KubernetesWatcher(
            custom_api,
            plural=HOST_PLURAL,
            namespace=namespace,
            on_event=make_enqueuer(enqueue, host_trigger),
        ),
    ]
