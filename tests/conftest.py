"""Test fixtures for the evidence store.

This module provides:
- A manual clock so that timestamps (and therefore hashes and last-write-wins
  decisions) are deterministic
- An isolated in-memory SQLite store per test
- An in-memory remote backend with its own server clock, and a connectivity
  monitor that starts online
- Helpers that write small evidence files and build claim drafts
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from vshield.clock import ManualClock
from vshield.domain import InstructionSource, NewClaim, NewPhoto, NewProject, NewVoiceNote, Project
from vshield.hashing import digest_bytes
from vshield.storage.sqlite import SQLiteRecordStore
from vshield.sync.connectivity import ConnectivityMonitor
from vshield.sync.reconciler import SyncReconciler
from vshield.sync.remote import InMemoryRemoteBackend

T0 = datetime(2025, 3, 14, 9, 30, tzinfo=timezone.utc)
SERVER_T0 = T0 + timedelta(days=1)
OWNER_ID = "owner-1"


def write_evidence(directory: Path, name: str, data: bytes) -> str:
    """Write a small evidence file and return its path as a string."""
    path = directory / name
    path.write_bytes(data)
    return str(path)


def make_claim(project_id: str, **overrides) -> NewClaim:
    """Build a claim draft with sensible defaults."""
    fields = {
        "project_id": project_id,
        "title": "Relocate stormwater pit",
        "description": "Pit clashes with new footing; superintendent directed relocation 2m north.",
        "instruction_source": InstructionSource.VERBAL_DIRECTION,
        "instructed_by": "Site superintendent",
        "estimated_value": 1_250_000,
        "latitude": -33.8688197,
        "longitude": 151.2092955,
    }
    fields.update(overrides)
    return NewClaim(**fields)


def make_photo(path: str, data: bytes, **overrides) -> NewPhoto:
    return NewPhoto(local_path=path, digest=digest_bytes(data), **overrides)


def make_voice_note(path: str, data: bytes, **overrides) -> NewVoiceNote:
    return NewVoiceNote(local_path=path, digest=digest_bytes(data), duration_seconds=12.5, **overrides)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(T0)


@pytest.fixture
def server_clock() -> ManualClock:
    return ManualClock(SERVER_T0)


@pytest.fixture
async def store(clock):
    """An open, isolated in-memory store."""
    record_store = SQLiteRecordStore(":memory:", clock=clock)
    await record_store.open()
    yield record_store
    await record_store.close()


@pytest.fixture
def remote(server_clock) -> InMemoryRemoteBackend:
    return InMemoryRemoteBackend(owner_id=OWNER_ID, clock=server_clock)


@pytest.fixture
def monitor() -> ConnectivityMonitor:
    return ConnectivityMonitor(connected=True)


@pytest.fixture
def reconciler(store, remote, monitor) -> SyncReconciler:
    return SyncReconciler(store, remote, monitor)


@pytest.fixture
async def project(store) -> Project:
    return await store.create_project(
        NewProject(name="Dock 4 Upgrade", client="Harbour Authority", reference="HA-2231")
    )


@pytest.fixture
def evidence_dir(tmp_path) -> Path:
    directory = tmp_path / "evidence"
    directory.mkdir()
    return directory
