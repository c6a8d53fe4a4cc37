"""Finalizer lifecycle for DataImages.

The finalizer marker gates physical removal of a DataImage. It is added the
first time the controller touches a live DataImage and removed only once
the backend confirms nothing is attached any more.
"""

from __future__ import annotations

import logging
from enum import Enum

from .models import DATA_IMAGE_FINALIZER, DataImage
from .store import ObjectStore

logger = logging.getLogger(__name__)


class FinalizerState(str, Enum):
    """Whether this controller's finalizer marker is present."""

    ABSENT = "absent"
    PRESENT = "present"


class FinalizerGateError(Exception):
    """Raised when removing the finalizer while an image is still attached."""

    pass


def finalizer_state(finalizers: list[str]) -> FinalizerState:
    if DATA_IMAGE_FINALIZER in finalizers:
        return FinalizerState.PRESENT
    return FinalizerState.ABSENT


def with_finalizer(finalizers: list[str]) -> list[str]:
    """Return finalizers carrying exactly one marker.

    Other controllers' finalizers keep their order.
    """
    result = [f for f in finalizers if f != DATA_IMAGE_FINALIZER]
    result.append(DATA_IMAGE_FINALIZER)
    return result


def without_finalizer(finalizers: list[str], attached_url: str) -> list[str]:
    """Return finalizers with the marker removed.

    Raises:
        FinalizerGateError: If an image is still recorded as attached.
    """
    if attached_url:
        raise FinalizerGateError(
            f"refusing to remove finalizer while {attached_url} is attached"
        )
    return [f for f in finalizers if f != DATA_IMAGE_FINALIZER]


class FinalizerManager:
    """Applies finalizer transitions and persists them in one write each.

    Both transitions are idempotent: adding a present marker or removing an
    absent one still performs the (no-op) write.
    """

    def __init__(self, store: ObjectStore) -> None:
        self._store = store

    async def ensure(self, data_image: DataImage) -> DataImage:
        """Add the marker and persist.

        Raises:
            StoreError: If the update could not be persisted.
        """
        data_image.metadata.finalizers = with_finalizer(data_image.metadata.finalizers)
        logger.info("Adding finalizer", extra={"dataimage": str(data_image.key)})
        return await self._store.update_data_image(data_image)

    async def release(self, data_image: DataImage) -> DataImage:
        """Remove the marker and persist.

        The gate reads the attachment recorded on the object itself, so it
        holds even if called before a fresh status was copied in.

        Raises:
            FinalizerGateError: If an image is still recorded as attached.
            StoreError: If the update could not be persisted.
        """
        data_image.metadata.finalizers = without_finalizer(
            data_image.metadata.finalizers, data_image.status.attached_url
        )
        logger.info("Removing finalizer", extra={"dataimage": str(data_image.key)})
        return await self._store.update_data_image(data_image)
