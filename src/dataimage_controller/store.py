"""Persisted-object access for DataImages, hosts and audit events.

The reconciler talks to the API server only through ObjectStore. Every
failure is classified into one of the store exceptions below so the
reconciler can tell an expected not-found from a transient outage or an
optimistic-concurrency conflict.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

import aiohttp
from kubernetes_asyncio.client import ApiException, CoreV1Api, CustomObjectsApi

from .models import (
    API_GROUP,
    API_VERSION,
    DATA_IMAGE_PLURAL,
    HOST_PLURAL,
    BareMetalHost,
    DataImage,
    ObjectKey,
)

if TYPE_CHECKING:
    from kubernetes_asyncio.client import ApiClient

    from .events import AuditEvent

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Base class for object store failures."""

    pass


class NotFoundError(StoreError):
    """Raised when the requested object does not exist."""

    pass


class StoreUnavailable(StoreError):
    """Raised when the API server cannot be reached or answers with an error."""

    pass


class PersistConflict(StoreError):
    """Raised when a conditional update lost against a concurrent writer."""

    pass


class ObjectStore(ABC):
    """Load, conditionally update and record events for DataImages."""

    @abstractmethod
    async def get_data_image(self, key: ObjectKey) -> DataImage:
        """Load a DataImage by key.

        Raises:
            NotFoundError: If no DataImage exists for the key.
            StoreUnavailable: On any other failure.
        """

    @abstractmethod
    async def get_host(self, key: ObjectKey) -> BareMetalHost:
        """Load the BareMetalHost correlated with a key.

        Raises:
            NotFoundError: If no host exists for the key.
            StoreUnavailable: On any other failure.
        """

    @abstractmethod
    async def update_data_image(self, data_image: DataImage) -> DataImage:
        """Write metadata and spec, failing if the object changed since it was read.

        Returns:
            The persisted object with its new resource version.

        Raises:
            PersistConflict: If the resource version is stale.
            NotFoundError: If the object was removed.
            StoreUnavailable: On any other failure.
        """

    @abstractmethod
    async def update_data_image_status(self, data_image: DataImage) -> DataImage:
        """Write the status subresource.

        Raises:
            PersistConflict: If the resource version is stale.
            NotFoundError: If the object was removed.
            StoreUnavailable: On any other failure.
        """

    @abstractmethod
    async def create_event(self, event: AuditEvent) -> None:
        """Record an audit event.

        Raises:
            StoreError: If the event could not be recorded.
        """


def _classify(e: Exception, action: str, key: ObjectKey) -> StoreError:
    """Map a client exception to the store taxonomy."""
    if isinstance(e, ApiException):
        if e.status == 404:
            return NotFoundError(f"{action} {key}: not found")
        if e.status == 409:
            return PersistConflict(f"{action} {key}: object was modified concurrently")
        return StoreUnavailable(f"{action} {key}: API error {e.status} {e.reason}")
    return StoreUnavailable(f"{action} {key}: {type(e).__name__}: {e}")


class KubernetesStore(ObjectStore):
    """ObjectStore backed by the Kubernetes API server.

    DataImages and hosts are custom objects in the metal3.io group. Events
    are written as core v1 Events in the DataImage's namespace.
    """

    def __init__(self, api_client: ApiClient) -> None:
        self._custom = CustomObjectsApi(api_client)
        self._core = CoreV1Api(api_client)

    async def _get(self, plural: str, key: ObjectKey) -> dict[str, Any]:
        try:
            return await self._custom.get_namespaced_custom_object(
                API_GROUP, API_VERSION, key.namespace, plural, key.name
            )
        except (ApiException, aiohttp.ClientError, TimeoutError) as e:
            raise _classify(e, f"get {plural}", key) from e

    async def get_data_image(self, key: ObjectKey) -> DataImage:
        return DataImage.model_validate(await self._get(DATA_IMAGE_PLURAL, key))

    async def get_host(self, key: ObjectKey) -> BareMetalHost:
        return BareMetalHost.model_validate(await self._get(HOST_PLURAL, key))

    async def update_data_image(self, data_image: DataImage) -> DataImage:
        key = data_image.key
        try:
            result = await self._custom.replace_namespaced_custom_object(
                API_GROUP,
                API_VERSION,
                key.namespace,
                DATA_IMAGE_PLURAL,
                key.name,
                data_image.to_k8s(),
            )
        except (ApiException, aiohttp.ClientError, TimeoutError) as e:
            raise _classify(e, "update dataimage", key) from e
        return DataImage.model_validate(result)

    async def update_data_image_status(self, data_image: DataImage) -> DataImage:
        key = data_image.key
        try:
            result = await self._custom.replace_namespaced_custom_object_status(
                API_GROUP,
                API_VERSION,
                key.namespace,
                DATA_IMAGE_PLURAL,
                key.name,
                data_image.to_k8s(),
            )
        except (ApiException, aiohttp.ClientError, TimeoutError) as e:
            raise _classify(e, "update dataimage status", key) from e
        return DataImage.model_validate(result)

    async def create_event(self, event: AuditEvent) -> None:
        try:
            await self._core.create_namespaced_event(event.key.namespace, event.to_k8s())
        except (ApiException, aiohttp.ClientError, TimeoutError) as e:
            raise _classify(e, "create event for", event.key) from e
