"""Reconciliation with the remote backend."""

from vshield.sync.connectivity import ConnectivityMonitor
from vshield.sync.reconciler import CONNECTIVITY_LOST, NO_CONNECTIVITY, SyncReconciler
from vshield.sync.remote import HttpRemoteBackend, InMemoryRemoteBackend, RemoteBackendInterface
from vshield.sync.tables import SYNC_TABLES, SyncTable

__all__ = [
    "CONNECTIVITY_LOST",
    "ConnectivityMonitor",
    "HttpRemoteBackend",
    "InMemoryRemoteBackend",
    "NO_CONNECTIVITY",
    "RemoteBackendInterface",
    "SYNC_TABLES",
    "SyncReconciler",
    "SyncTable",
]
