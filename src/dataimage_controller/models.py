"""Pydantic models for the DataImage and BareMetalHost resources.

These models provide:
1. Type-safe parsing of API server objects
2. Round-trip preservation of fields this controller does not own
3. Serialization back to the camelCase wire format
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

# =============================================================================
# API Constants
# =============================================================================

API_GROUP = "metal3.io"
API_VERSION = "v1alpha1"
API_GROUP_VERSION = f"{API_GROUP}/{API_VERSION}"

DATA_IMAGE_KIND = "DataImage"
DATA_IMAGE_PLURAL = "dataimages"
HOST_KIND = "BareMetalHost"
HOST_PLURAL = "baremetalhosts"

# Finalizer marker owned by this controller
DATA_IMAGE_FINALIZER = "dataimage.metal3.io"

# Presence of this annotation (any value) means the host is detached
DETACHED_ANNOTATION = "baremetalhost.metal3.io/detached"


@dataclass(frozen=True, order=True)
class ObjectKey:
    """Namespace and name identifying a DataImage and its correlated host."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def parse(cls, value: str) -> ObjectKey:
        """Parse a ``namespace/name`` string."""
        namespace, sep, name = value.partition("/")
        if not sep or not namespace or not name:
            raise ValueError(f"expected namespace/name, got {value!r}")
        return cls(namespace=namespace, name=name)

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> ObjectKey:
        """Build a key from a raw API object."""
        metadata = obj.get("metadata") or {}
        return cls(namespace=metadata.get("namespace", ""), name=metadata.get("name", ""))


# =============================================================================
# Shared Metadata
# =============================================================================


class ObjectMeta(BaseModel):
    """Subset of Kubernetes object metadata used by the controller."""

    model_config = {"extra": "allow", "populate_by_name": True}

    name: str
    namespace: str = ""
    uid: str = ""
    resource_version: str | None = Field(None, alias="resourceVersion")
    generation: int = 0
    finalizers: list[str] = Field(default_factory=list)
    deletion_timestamp: datetime | None = Field(None, alias="deletionTimestamp")
    annotations: dict[str, str] = Field(default_factory=dict)


class KubernetesObject(BaseModel):
    """Base for API objects handled by the controller."""

    model_config = {"extra": "allow", "populate_by_name": True}

    api_version: str = Field(API_GROUP_VERSION, alias="apiVersion")
    kind: str = ""
    metadata: ObjectMeta

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(namespace=self.metadata.namespace, name=self.metadata.name)

    @property
    def is_deleting(self) -> bool:
        """True once a deletion timestamp has been set."""
        return self.metadata.deletion_timestamp is not None

    def to_k8s(self) -> dict[str, Any]:
        """Serialize to the wire format expected by the API server."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# =============================================================================
# DataImage
# =============================================================================


class DataImageSpec(BaseModel):
    """Desired image reference."""

    model_config = {"extra": "allow", "populate_by_name": True}

    url: str = ""


class AttachedImageReference(BaseModel):
    """Image currently attached to the host, empty URL when none."""

    model_config = {"extra": "allow", "populate_by_name": True}

    url: str = ""


class DataImageError(BaseModel):
    """Backend-reported error for the last attach or detach attempt."""

    model_config = {"extra": "allow", "populate_by_name": True}

    count: int = 0
    message: str = ""


class DataImageStatus(BaseModel):
    """Observed attachment state, owned by the provisioner backend."""

    model_config = {"extra": "allow", "populate_by_name": True}

    last_reconciled: datetime | None = Field(None, alias="lastReconciled")
    attached_image: AttachedImageReference = Field(
        default_factory=AttachedImageReference, alias="attachedImage"
    )
    error: DataImageError = Field(default_factory=DataImageError)

    @property
    def attached_url(self) -> str:
        return self.attached_image.url


class DataImage(KubernetesObject):
    """Desired and observed attachment of a boot-time image to a host."""

    kind: str = DATA_IMAGE_KIND
    spec: DataImageSpec = Field(default_factory=DataImageSpec)
    status: DataImageStatus = Field(default_factory=DataImageStatus)

    def has_finalizer(self) -> bool:
        return DATA_IMAGE_FINALIZER in self.metadata.finalizers


# =============================================================================
# BareMetalHost
# =============================================================================


class BareMetalHost(KubernetesObject):
    """Physical machine correlated 1:1 with a DataImage.

    Read only for this controller. Spec and status are kept as raw
    dictionaries since only a handful of fields are consumed.
    """

    kind: str = HOST_KIND
    spec: dict[str, Any] = Field(default_factory=dict)
    status: dict[str, Any] = Field(default_factory=dict)

    def has_detached_annotation(self) -> bool:
        return DETACHED_ANNOTATION in self.metadata.annotations

    @property
    def provisioner_id(self) -> str:
        """Backend node identifier, empty until the host is registered."""
        provisioning = self.status.get("provisioning") or {}
        return str(provisioning.get("ID", ""))

    @property
    def boot_mac_address(self) -> str:
        return str(self.spec.get("bootMACAddress", ""))
