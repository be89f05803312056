"""
Variation Shield - offline-first evidence store for construction variation claims.

Field staff capture claims (photos, voice notes, documents) without
connectivity. Every artifact is hashed at capture, claims move through a
closed status lifecycle with an append-only audit trail, and a reconciler
pushes and pulls changes when the device is back online.

This module uses lazy imports so that the storage and sync stacks (SQLModel,
httpx) are only loaded when one of their symbols is accessed:

    # This does NOT import sqlmodel:
    from vshield import Claim, evidence_hash

    # This DOES import sqlmodel (when the symbol is accessed):
    from vshield import SQLiteRecordStore
"""

from typing import TYPE_CHECKING

from vshield.domain import (
    Actor,
    Attachment,
    Claim,
    ClaimDetail,
    ClaimStatus,
    InstructionSource,
    NewClaim,
    NewProject,
    PhotoEvidence,
    Project,
    Role,
    StatusChange,
    SyncResult,
    SyncState,
    VoiceNote,
)
from vshield.errors import (
    ArtifactReadError,
    InvalidTransition,
    RecordNotFoundError,
    StoreWriteError,
    VShieldError,
)
from vshield.hashing import HASH_FAILED, combine, digest_bytes, digest_file, evidence_hash, verify

if TYPE_CHECKING:
    from vshield.capture import ClaimCaptureService
    from vshield.lifecycle import StatusLifecycleEngine
    from vshield.storage.sqlite import SQLiteRecordStore
    from vshield.sync import ConnectivityMonitor, InMemoryRemoteBackend, SyncReconciler

__all__ = [
    "Actor",
    "ArtifactReadError",
    "Attachment",
    "Claim",
    "ClaimCaptureService",
    "ClaimDetail",
    "ClaimStatus",
    "ConnectivityMonitor",
    "HASH_FAILED",
    "InMemoryRemoteBackend",
    "InstructionSource",
    "InvalidTransition",
    "NewClaim",
    "NewProject",
    "PhotoEvidence",
    "Project",
    "RecordNotFoundError",
    "Role",
    "SQLiteRecordStore",
    "StatusChange",
    "StatusLifecycleEngine",
    "StoreWriteError",
    "SyncReconciler",
    "SyncResult",
    "SyncState",
    "VShieldError",
    "VoiceNote",
    "combine",
    "digest_bytes",
    "digest_file",
    "evidence_hash",
    "verify",
]

__version__ = "0.1.0"

_LAZY = {
    "ClaimCaptureService": "vshield.capture",
    "StatusLifecycleEngine": "vshield.lifecycle",
    "SQLiteRecordStore": "vshield.storage.sqlite",
    "ConnectivityMonitor": "vshield.sync",
    "InMemoryRemoteBackend": "vshield.sync",
    "SyncReconciler": "vshield.sync",
}


def __getattr__(name: str):
    """Lazy import for the storage and sync stacks."""
    if name in _LAZY:
        import importlib

        return getattr(importlib.import_module(_LAZY[name]), name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
