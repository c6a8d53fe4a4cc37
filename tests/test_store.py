"""Tests for the Kubernetes-backed object store."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest
from k8s_mock import make_data_image, make_host
from kubernetes_asyncio.client import ApiException

from dataimage_controller.events import AuditEvent
from dataimage_controller.models import ObjectKey
from dataimage_controller.store import (
    KubernetesStore,
    NotFoundError,
    PersistConflict,
    StoreUnavailable,
)

KEY = ObjectKey("default", "img-a")


@pytest.fixture
def store() -> KubernetesStore:
    kube_store = KubernetesStore(MagicMock())
    kube_store._custom = MagicMock()
    kube_store._core = MagicMock()
    return kube_store


class TestGet:
    """Tests for loading DataImages and hosts."""

    @pytest.mark.asyncio
    async def test_get_data_image(self, store: KubernetesStore) -> None:
        store._custom.get_namespaced_custom_object = AsyncMock(
            return_value=make_data_image(finalizer=True).to_k8s()
        )

        data_image = await store.get_data_image(KEY)

        assert data_image.key == KEY
        assert data_image.has_finalizer()
        store._custom.get_namespaced_custom_object.assert_awaited_once_with(
            "metal3.io", "v1alpha1", "default", "dataimages", "img-a"
        )

    @pytest.mark.asyncio
    async def test_get_host(self, store: KubernetesStore) -> None:
        store._custom.get_namespaced_custom_object = AsyncMock(
            return_value=make_host(detached=True).to_k8s()
        )

        host = await store.get_host(KEY)

        assert host.has_detached_annotation()
        args = store._custom.get_namespaced_custom_object.await_args.args
        assert args[3] == "baremetalhosts"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("error", "expected"),
        [
            (ApiException(status=404, reason="Not Found"), NotFoundError),
            (ApiException(status=409, reason="Conflict"), PersistConflict),
            (ApiException(status=500, reason="Internal Server Error"), StoreUnavailable),
            (ApiException(status=403, reason="Forbidden"), StoreUnavailable),
            (aiohttp.ClientConnectionError("refused"), StoreUnavailable),
            (TimeoutError(), StoreUnavailable),
        ],
    )
    async def test_errors_classified(
        self, store: KubernetesStore, error: Exception, expected: type[Exception]
    ) -> None:
        store._custom.get_namespaced_custom_object = AsyncMock(side_effect=error)

        with pytest.raises(expected) as exc_info:
            await store.get_data_image(KEY)

        assert exc_info.value.__cause__ is error


class TestUpdate:
    """Tests for conditional writes."""

    @pytest.mark.asyncio
    async def test_update_sends_resource_version(self, store: KubernetesStore) -> None:
        data_image = make_data_image(finalizer=True)
        data_image.metadata.resource_version = "7"
        persisted = data_image.model_copy(deep=True)
        persisted.metadata.resource_version = "8"
        store._custom.replace_namespaced_custom_object = AsyncMock(return_value=persisted.to_k8s())

        result = await store.update_data_image(data_image)

        body = store._custom.replace_namespaced_custom_object.await_args.args[5]
        assert body["metadata"]["resourceVersion"] == "7"
        assert body["metadata"]["labels"] == {"app": "test"}
        assert result.metadata.resource_version == "8"

    @pytest.mark.asyncio
    async def test_update_conflict(self, store: KubernetesStore) -> None:
        store._custom.replace_namespaced_custom_object = AsyncMock(
            side_effect=ApiException(status=409, reason="Conflict")
        )

        with pytest.raises(PersistConflict):
            await store.update_data_image(make_data_image())

    @pytest.mark.asyncio
    async def test_update_status_uses_subresource(self, store: KubernetesStore) -> None:
        data_image = make_data_image(attached_url="http://images/a.iso")
        store._custom.replace_namespaced_custom_object_status = AsyncMock(
            return_value=data_image.to_k8s()
        )

        await store.update_data_image_status(data_image)

        call = store._custom.replace_namespaced_custom_object_status.await_args
        assert call.args[:5] == ("metal3.io", "v1alpha1", "default", "dataimages", "img-a")
        assert call.args[5]["status"]["attachedImage"] == {"url": "http://images/a.iso"}

    @pytest.mark.asyncio
    async def test_update_status_not_found(self, store: KubernetesStore) -> None:
        store._custom.replace_namespaced_custom_object_status = AsyncMock(
            side_effect=ApiException(status=404, reason="Not Found")
        )

        with pytest.raises(NotFoundError):
            await store.update_data_image_status(make_data_image())


class TestCreateEvent:
    """Tests for event recording."""

    @pytest.mark.asyncio
    async def test_create_event(self, store: KubernetesStore) -> None:
        store._core.create_namespaced_event = AsyncMock()
        event = AuditEvent(key=KEY, reason="DataImageAttached", message="attached")

        await store.create_event(event)

        namespace, body = store._core.create_namespaced_event.await_args.args
        assert namespace == "default"
        assert body["reason"] == "DataImageAttached"
        assert body["involvedObject"]["name"] == "img-a"

    @pytest.mark.asyncio
    async def test_create_event_failure(self, store: KubernetesStore) -> None:
        store._core.create_namespaced_event = AsyncMock(
            side_effect=ApiException(status=500, reason="Internal Server Error")
        )

        with pytest.raises(StoreUnavailable):
            await store.create_event(AuditEvent(key=KEY, reason="R", message="m"))
