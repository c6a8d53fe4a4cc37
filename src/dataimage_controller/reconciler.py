"""Core reconciliation pass for DataImage resources.

One pass, for one DataImage key:
1. Load the DataImage and the BareMetalHost with the same name
2. Skip detached hosts
3. Build a provisioner for the host and wait for it to be ready
4. Add the finalizer on first touch (then requeue immediately)
5. Copy the backend's attachment status into the DataImage
6. Deleting: remove the finalizer once nothing is attached
7. Live: persist status, then publish the events buffered during the pass

The pass never sleeps and keeps no state between runs. Its ReconcileResult
names the delay after which the dispatcher should run it again.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from .config import RequeueDelays
from .events import AuditEvent, EventRecorder
from .finalizers import FinalizerManager
from .models import BareMetalHost, DataImage, ObjectKey
from .provisioner import (
    ProvisionerError,
    ProvisionerFactory,
    ProvisionerHandleError,
    ProvisionerUnavailable,
    build_host_data_no_bmc,
)
from .store import NotFoundError, ObjectStore, PersistConflict, StoreError

logger = logging.getLogger(__name__)


class PassOutcome(str, Enum):
    """Step at which a reconciliation pass ended."""

    DATA_IMAGE_NOT_FOUND = "data_image_not_found"
    HOST_NOT_FOUND = "host_not_found"
    HOST_DETACHED = "host_detached"
    PROVISIONER_NOT_READY = "provisioner_not_ready"
    FINALIZER_ADDED = "finalizer_added"
    WAITING_FOR_DETACH = "waiting_for_detach"
    FINALIZER_REMOVED = "finalizer_removed"
    STATUS_UPDATED = "status_updated"
    FAILED = "failed"


class ReconcileTimeout(Exception):
    """Raised when a pass exceeds its time budget."""

    pass


@dataclass
class ReconcileResult:
    """Result of a single reconciliation pass."""

    key: ObjectKey
    outcome: PassOutcome = PassOutcome.FAILED
    requeue: bool = False
    requeue_after: float | None = None
    error: Exception | None = None
    events_recorded: int = 0
    events_failed: int = 0
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if the pass succeeded."""
        return self.error is None


@dataclass
class ReconcileContext:
    """State owned by one in-flight pass, discarded when it ends."""

    key: ObjectKey
    data_image: DataImage | None = None
    host: BareMetalHost | None = None
    deadline: float | None = None
    events: list[AuditEvent] = field(default_factory=list)

    def publish_event(self, reason: str, message: str) -> None:
        """Buffer an audit event; flushed after the status write."""
        uid = self.data_image.metadata.uid if self.data_image else ""
        self.events.append(AuditEvent(key=self.key, reason=reason, message=message, uid=uid))


def generation_changed(old: dict | None, new: dict | None) -> bool:
    """Update-event filter: True only when metadata.generation moved.

    Status-only updates leave the generation untouched and are ignored.
    """
    old_generation = ((old or {}).get("metadata") or {}).get("generation")
    new_generation = ((new or {}).get("metadata") or {}).get("generation")
    return old_generation != new_generation


class DataImageReconciler:
    """Reconciles DataImage resources against the provisioning backend."""

    def __init__(
        self,
        store: ObjectStore,
        provisioner_factory: ProvisionerFactory,
        delays: RequeueDelays | None = None,
        *,
        timeout_seconds: float | None = None,
    ) -> None:
        self._store = store
        self._provisioner_factory = provisioner_factory
        self._delays = delays or RequeueDelays()
        self._timeout = timeout_seconds
        self._finalizers = FinalizerManager(store)
        self._recorder = EventRecorder(store.create_event)

    @property
    def delays(self) -> RequeueDelays:
        return self._delays

    async def reconcile(self, key: ObjectKey) -> ReconcileResult:
        """Run one pass for a key.

        Never raises for store or backend failures; those are reported on the
        result. Cancellation propagates to the caller.
        """
        ctx = ReconcileContext(key=key)
        result = ReconcileResult(key=key)
        if self._timeout is not None:
            ctx.deadline = asyncio.get_running_loop().time() + self._timeout

        logger.info("Start dataImage reconciliation", extra={"dataimage": str(key)})
        start = time.monotonic()
        budget = asyncio.timeout_at(ctx.deadline)
        try:
            async with budget:
                await self._reconcile(ctx, result)
        except TimeoutError:
            # Only the pass budget is reported as ReconcileTimeout
            if not budget.expired():
                raise
            result.outcome = PassOutcome.FAILED
            result.requeue = False
            result.requeue_after = None
            result.error = ReconcileTimeout(
                f"reconciliation of {key} exceeded {self._timeout} seconds"
            )
        result.end_time = datetime.now(UTC)

        logger.debug(
            "Finished dataImage reconciliation",
            extra={
                "dataimage": str(key),
                "outcome": result.outcome.value,
                "elapsed_seconds": round(time.monotonic() - start, 3),
            },
        )
        return result

    async def _reconcile(self, ctx: ReconcileContext, result: ReconcileResult) -> None:
        key = ctx.key
        log_extra = {"dataimage": str(key)}

        try:
            ctx.data_image = await self._store.get_data_image(key)
        except NotFoundError:
            # The DataImage may have been deleted
            logger.info("dataImage not found", extra=log_extra)
            result.outcome = PassOutcome.DATA_IMAGE_NOT_FOUND
            return
        except StoreError as e:
            self._retry(result, _wrap(e, "could not load dataImage"))
            return

        try:
            ctx.host = await self._store.get_host(key)
        except NotFoundError:
            # There might not be any BareMetalHost for the DataImage yet
            logger.info("bareMetalHost not found for the dataImage", extra=log_extra)
            result.outcome = PassOutcome.HOST_NOT_FOUND
            return
        except StoreError as e:
            self._retry(result, _wrap(e, "could not load baremetalhost"))
            return

        data_image = ctx.data_image
        host = ctx.host

        if host.has_detached_annotation():
            logger.info("The host is detached, not running reconciler", extra=log_extra)
            result.outcome = PassOutcome.HOST_DETACHED
            result.requeue = True
            result.requeue_after = self._delays.unmanaged_retry
            return

        try:
            provisioner = self._provisioner_factory.new_provisioner(
                build_host_data_no_bmc(host), ctx.publish_event
            )
        except ProvisionerError as e:
            result.error = _wrap(e, "failed to create provisioner", ProvisionerHandleError)
            return

        try:
            ready = await provisioner.try_init()
            reason = "not ready"
        except Exception as e:
            # A failed readiness check is reported like "not ready"
            ready = False
            reason = str(e) or type(e).__name__
        if not ready:
            logger.info(
                "Provisioner is not ready",
                extra={
                    **log_extra,
                    "reason": reason,
                    "requeue_after": self._delays.provisioner_retry,
                },
            )
            result.outcome = PassOutcome.PROVISIONER_NOT_READY
            result.requeue = True
            result.requeue_after = self._delays.provisioner_retry
            return

        # Record the finalizer before any attach/detach bookkeeping
        if not data_image.is_deleting and not data_image.has_finalizer():
            try:
                await self._finalizers.ensure(data_image)
            except PersistConflict as e:
                logger.info(
                    "Finalizer update conflicted, retrying", extra={**log_extra, "error": str(e)}
                )
                result.error = _wrap(e, "failed to update resource after add finalizer")
                return
            except StoreError as e:
                result.error = _wrap(e, "failed to update resource after add finalizer")
                return
            result.outcome = PassOutcome.FINALIZER_ADDED
            result.requeue = True
            return

        try:
            status = await provisioner.get_data_image_status()
        except Exception as e:
            # Any backend failure here is transient
            logger.info(
                "Failed to get current dataimage status", extra={**log_extra, "error": str(e)}
            )
            self._retry(result, _wrap(e, "failed to get latest status", ProvisionerUnavailable))
            return

        previous_status = data_image.status
        previous_url = previous_status.attached_url
        data_image.status = status.model_copy(deep=True)
        self._note_attachment_change(ctx, previous_url, data_image.status.attached_url)

        if data_image.is_deleting:
            logger.info("Cleaning up deleted dataImage resource", extra=log_extra)
            if data_image.status.attached_url:
                logger.info(
                    "Wait for DataImage to detach before removing finalizer, requeueing",
                    extra={**log_extra, "attached_url": data_image.status.attached_url},
                )
                result.outcome = PassOutcome.WAITING_FOR_DETACH
                result.requeue = True
                result.requeue_after = self._delays.data_image_retry
                return
            try:
                await self._finalizers.release(data_image)
            except StoreError as e:
                self._retry(result, _wrap(e, "failed to update resource after remove finalizer"))
                return
            result.outcome = PassOutcome.FINALIZER_REMOVED
            return

        # DataImage updates always trigger a pass, so an unchanged status must
        # not be written back or the pass would re-trigger itself
        if data_image.status == previous_status:
            logger.debug("DataImage status unchanged, skipping update", extra=log_extra)
        else:
            try:
                await self._store.update_data_image_status(data_image)
            except StoreError as e:
                self._retry(result, _wrap(e, "failed to update resource status"))
                return
            logger.info(
                "Updated DataImage status",
                extra={**log_extra, "attached_url": data_image.status.attached_url},
            )

        report = await self._recorder.publish(ctx.events)
        result.events_recorded = report.recorded
        result.events_failed = report.failed
        result.outcome = PassOutcome.STATUS_UPDATED

    def _retry(self, result: ReconcileResult, error: Exception) -> None:
        """Fail the pass with the standard retry delay."""
        result.outcome = PassOutcome.FAILED
        result.requeue = True
        result.requeue_after = self._delays.data_image_retry
        result.error = error

    @staticmethod
    def _note_attachment_change(ctx: ReconcileContext, previous: str, current: str) -> None:
        if previous == current:
            return
        if not previous:
            ctx.publish_event("DataImageAttached", f"Image {current} attached")
        elif not current:
            ctx.publish_event("DataImageDetached", f"Image {previous} detached")
        else:
            ctx.publish_event(
                "DataImageChanged", f"Attached image changed from {previous} to {current}"
            )


def _wrap(
    error: Exception, step: str, error_type: type[Exception] | None = None
) -> Exception:
    """Prefix an error with the step that produced it.

    Store errors keep their class so a conflict stays a PersistConflict.
    """
    cls = error_type or type(error)
    wrapped = cls(f"{step}: {str(error) or type(error).__name__}")
    wrapped.__cause__ = error
    return wrapped
