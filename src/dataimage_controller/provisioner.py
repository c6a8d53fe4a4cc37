"""Provisioner gateway contract and the in-memory fixture backend.

The reconciler never talks to a provisioning backend directly. It asks a
ProvisionerFactory for a Provisioner scoped to one host, checks that the
backend is ready, then reads the current attachment status.

The fixture backend keeps per-host state in memory. It is used for local
runs without a real backend and throughout the test suite.
"""

from __future__ import annotations

import copy
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from .models import (
    AttachedImageReference,
    BareMetalHost,
    DataImageError,
    DataImageStatus,
    ObjectKey,
)

logger = logging.getLogger(__name__)

# Callback used by a provisioner to report audit facts: (reason, message)
EventPublisher = Callable[[str, str], None]


class ProvisionerError(Exception):
    """Base class for provisioner gateway failures."""

    pass


class ProvisionerHandleError(ProvisionerError):
    """Raised when a provisioner cannot be built for a host."""

    pass


class ProvisionerUnavailable(ProvisionerError):
    """Raised when the backend cannot answer a status query."""

    pass


@dataclass(frozen=True)
class HostData:
    """Identity needed to address a host on the backend.

    Built without BMC credentials; attachment status lookups only need to
    find the node.
    """

    key: ObjectKey
    uid: str = ""
    provisioner_id: str = ""
    boot_mac_address: str = ""


def build_host_data_no_bmc(host: BareMetalHost) -> HostData:
    """Extract backend addressing data from a host."""
    return HostData(
        key=host.key,
        uid=host.metadata.uid,
        provisioner_id=host.provisioner_id,
        boot_mac_address=host.boot_mac_address,
    )


class Provisioner(ABC):
    """Backend handle scoped to a single host."""

    @abstractmethod
    async def try_init(self) -> bool:
        """Return True once the backend is ready to serve requests.

        May raise to report why the backend is not ready.
        """

    @abstractmethod
    async def get_data_image_status(self) -> DataImageStatus:
        """Return the attachment status the backend reports for the host.

        Raises:
            ProvisionerError: If the status cannot be fetched.
        """


class ProvisionerFactory(ABC):
    """Builds host-scoped provisioners."""

    @abstractmethod
    def new_provisioner(self, host_data: HostData, publish_event: EventPublisher) -> Provisioner:
        """Create a provisioner for a host.

        Raises:
            ProvisionerHandleError: If the host cannot be addressed.
        """


# =============================================================================
# Fixture Backend
# =============================================================================


@dataclass
class FixtureHostState:
    """Simulated backend state for one host."""

    ready: bool = True
    init_error: Exception | None = None
    status_error: Exception | None = None
    status: DataImageStatus = field(default_factory=DataImageStatus)
    status_calls: int = 0
    # (reason, message) pairs reported on the next status lookup
    pending_events: list[tuple[str, str]] = field(default_factory=list)


class FixtureBackend:
    """In-memory provisioning backend shared by all fixture provisioners.

    Hosts that were never configured are ready with nothing attached.
    """

    def __init__(self, *, ready: bool = True) -> None:
        self._default_ready = ready
        self._hosts: dict[ObjectKey, FixtureHostState] = {}

    def host(self, key: ObjectKey) -> FixtureHostState:
        if key not in self._hosts:
            self._hosts[key] = FixtureHostState(ready=self._default_ready)
        return self._hosts[key]

    def set_ready(self, key: ObjectKey, ready: bool, error: Exception | None = None) -> None:
        state = self.host(key)
        state.ready = ready
        state.init_error = error

    def fail_status(self, key: ObjectKey, error: Exception | None) -> None:
        """Make status lookups for a host raise, or clear with None."""
        self.host(key).status_error = error

    def attach(self, key: ObjectKey, url: str) -> None:
        state = self.host(key)
        state.status = DataImageStatus(
            last_reconciled=datetime.now(UTC),
            attached_image=AttachedImageReference(url=url),
        )

    def detach(self, key: ObjectKey) -> None:
        state = self.host(key)
        state.status = DataImageStatus(last_reconciled=datetime.now(UTC))

    def record_error(self, key: ObjectKey, message: str) -> None:
        state = self.host(key)
        state.status.error = DataImageError(count=state.status.error.count + 1, message=message)
        state.pending_events.append(("DataImageError", message))


class FixtureProvisioner(Provisioner):
    """Provisioner answering from a FixtureBackend."""

    def __init__(
        self, backend: FixtureBackend, host_data: HostData, publish_event: EventPublisher
    ) -> None:
        self._backend = backend
        self._host_data = host_data
        self._publish_event = publish_event

    async def try_init(self) -> bool:
        state = self._backend.host(self._host_data.key)
        if state.init_error is not None:
            raise state.init_error
        return state.ready

    async def get_data_image_status(self) -> DataImageStatus:
        state = self._backend.host(self._host_data.key)
        state.status_calls += 1
        if state.status_error is not None:
            raise ProvisionerUnavailable(str(state.status_error)) from state.status_error
        for reason, message in state.pending_events:
            self._publish_event(reason, message)
        state.pending_events.clear()
        logger.debug(
            "Fixture status lookup",
            extra={"host": str(self._host_data.key), "attached_url": state.status.attached_url},
        )
        return copy.deepcopy(state.status)


class FixtureProvisionerFactory(ProvisionerFactory):
    """Factory handing out FixtureProvisioners over one shared backend."""

    def __init__(self, backend: FixtureBackend | None = None) -> None:
        self.backend = backend or FixtureBackend()

    def new_provisioner(self, host_data: HostData, publish_event: EventPublisher) -> Provisioner:
        if not host_data.key.namespace or not host_data.key.name:
            raise ProvisionerHandleError(f"host identity is incomplete: {host_data.key}")
        return FixtureProvisioner(self.backend, host_data, publish_event)


def get_provisioner_factory(name: str) -> ProvisionerFactory:
    """Return the factory for a configured backend name.

    Raises:
        ValueError: If the backend is unknown.
    """
    if name == "fixture":
        return FixtureProvisionerFactory()
    raise ValueError(f"Unknown provisioner: {name}")
