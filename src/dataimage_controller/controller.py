"""Dispatcher driving DataImage reconciliation.

A pool of workers takes keys from the shared work queue and runs one
reconciliation pass per key. The pass result decides what happens next:

- requeue_after set: run again after that delay (also when an error is
  attached, the error is logged)
- error without a delay: run again after the key's exponential backoff
- requeue without a delay: run again as soon as the current pass is done
- otherwise: wait for the next watch trigger

Watchers feed keys into the same queue. The queue guarantees a key is never
reconciled by two workers at once.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from datetime import UTC, datetime

from .config import Config
from .models import ObjectKey
from .provenance import get_provenance_logger
from .reconciler import DataImageReconciler, PassOutcome, ReconcileResult
from .store import PersistConflict
from .watcher import KubernetesWatcher
from .workqueue import WorkQueue

logger = logging.getLogger(__name__)


class DataImageController:
    """Worker pool running DataImage passes off a deduplicating queue."""

    def __init__(self, config: Config, reconciler: DataImageReconciler) -> None:
        self._config = config
        self._reconciler = reconciler
        self._queue: WorkQueue[ObjectKey] = WorkQueue(
            backoff_base_seconds=config.backoff_base_seconds,
            backoff_max_seconds=config.backoff_max_seconds,
        )
        self._provenance = get_provenance_logger()
        self._shutdown_event = asyncio.Event()

    @property
    def config(self) -> Config:
        return self._config

    @property
    def queue(self) -> WorkQueue[ObjectKey]:
        return self._queue

    def enqueue(self, key: ObjectKey) -> None:
        """Request a pass for a key."""
        self._queue.add(key)

    async def run(self, watchers: Sequence[KubernetesWatcher] = ()) -> None:
        """Run workers and watchers until shutdown() is called."""
        logger.info(
            "Starting controller",
            extra={
                "namespace": self._config.namespace or "<all>",
                "workers": self._config.max_concurrent_reconciles,
            },
        )

        workers = [
            asyncio.create_task(self._worker(i), name=f"dataimage-worker-{i}")
            for i in range(self._config.max_concurrent_reconciles)
        ]
        watch_tasks = [asyncio.create_task(w.run()) for w in watchers]

        try:
            await self._shutdown_event.wait()
        finally:
            for watcher in watchers:
                watcher.stop()
            for task in watch_tasks:
                task.cancel()
            self._queue.shutdown()

            # In-flight passes complete; their writes are single atomic calls
            await asyncio.gather(*workers, return_exceptions=True)
            await asyncio.gather(*watch_tasks, return_exceptions=True)

        logger.info("Controller shutdown complete")

    def shutdown(self) -> None:
        """Signal the controller to stop."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    async def _worker(self, index: int) -> None:
        while True:
            key = await self._queue.get()
            if key is None:
                return
            try:
                await self.process(key)
            finally:
                self._queue.done(key)

    async def process(self, key: ObjectKey) -> ReconcileResult:
        """Run one pass for a key and schedule the follow-up."""
        try:
            result = await self._reconciler.reconcile(key)
        except Exception as e:
            # A bug in the pass must not kill the worker
            logger.exception(
                "Reconciliation raised unexpectedly", extra={"dataimage": str(key), "error": str(e)}
            )
            result = ReconcileResult(
                key=key, outcome=PassOutcome.FAILED, error=e, end_time=datetime.now(UTC)
            )

        self._provenance.log_provenance(
            self._provenance.create_provenance(result, self._queue.num_requeues(key))
        )
        self.handle_result(result)
        return result

    def handle_result(self, result: ReconcileResult) -> None:
        """Translate a pass result into a queue action."""
        key = result.key
        if result.requeue_after:
            if result.error is not None:
                log = logger.info if isinstance(result.error, PersistConflict) else logger.warning
                log(
                    "Reconciliation failed, retrying after delay",
                    extra={
                        "dataimage": str(key),
                        "error": str(result.error),
                        "requeue_after": result.requeue_after,
                    },
                )
            self._queue.forget(key)
            self._queue.add_after(key, result.requeue_after)
        elif result.error is not None:
            # Conflicts are retried from a fresh read
            log = logger.info if isinstance(result.error, PersistConflict) else logger.error
            log(
                "Reconciliation failed",
                extra={
                    "dataimage": str(key),
                    "error": str(result.error),
                    "error_type": type(result.error).__name__,
                    "backoff_seconds": self._queue.when(key),
                },
            )
            self._queue.add_rate_limited(key)
        elif result.requeue:
            self._queue.forget(key)
            self._queue.add(key)
        else:
            self._queue.forget(key)
