"""Pull-side conflict policy.

Per-row last-write-wins on the server-assigned ``updated_at``, with one
absolute rule on top: a local row that still has unpushed edits (``pending``)
or was rejected by the server (``failed``) is never overwritten by a pull.
Append-only tables are insert-if-absent.
"""

from datetime import datetime, timezone

from vshield.domain import PullAction, SyncState, TranscriptionStatus
from vshield.storage.interfaces import RowDict
from vshield.sync.tables import TABLES_BY_NAME, SyncTable

_UNFINISHED_TRANSCRIPTIONS = (TranscriptionStatus.NONE.value, TranscriptionStatus.PENDING.value)


def _parse(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    parsed = value if isinstance(value, datetime) else datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _adopts_transcription(local: RowDict, remote: RowDict) -> bool:
    # Another device finished transcribing a note this device has not.
    return (
        remote.get("transcription_status") == TranscriptionStatus.COMPLETE.value
        and local.get("transcription_status") in _UNFINISHED_TRANSCRIPTIONS
    )


def decide(table: SyncTable | str, local: RowDict | None, remote: RowDict) -> PullAction:
    """Decide what a pull does with `remote`, given the local copy (or None)."""
    settings = TABLES_BY_NAME[table] if isinstance(table, str) else table
    if local is None:
        return PullAction.INSERT
    if local.get("sync_status") != SyncState.SYNCED.value:
        return PullAction.SKIP_PENDING
    if settings.name == "voice_notes" and _adopts_transcription(local, remote):
        return PullAction.UPDATE
    if not settings.mutable:
        return PullAction.SKIP_PRESENT
    local_updated = _parse(local.get("updated_at"))
    remote_updated = _parse(remote.get("updated_at"))
    if remote_updated is None or (local_updated is not None and local_updated >= remote_updated):
        return PullAction.SKIP_FRESHER
    return PullAction.UPDATE
