"""Kubernetes API mock for reconciliation tests.

This module provides an in-memory ObjectStore that behaves like the API
server for the calls the controller makes.

Key Features:
- Resource versions bumped on every write, stale writes rejected with 409
- Finalizer-gated deletion: a deleting object disappears once its last
  finalizer is removed
- Error injection per operation for failure scenarios
- Recorded events and write history for assertions

Usage:
    from k8s_mock import MockObjectStore, make_data_image, make_host

    store = MockObjectStore()
    store.add_data_image(make_data_image("img-a"))
    store.add_host(make_host("img-a"))

    reconciler = DataImageReconciler(store, FixtureProvisionerFactory())
    result = await reconciler.reconcile(ObjectKey("default", "img-a"))

    assert store.get_stored_data_image("default", "img-a").has_finalizer()
"""

from .objects import make_data_image, make_host
from .store import MockObjectStore, StoreOperation

__all__ = [
    "MockObjectStore",
    "StoreOperation",
    "make_data_image",
    "make_host",
]
