"""Which local tables are reconciled, in what order, and how."""

import mimetypes
from pathlib import PurePath

from pydantic import BaseModel

from vshield.domain import ArtifactKind
from vshield.storage.interfaces import RowDict


class SyncTable(BaseModel, frozen=True):
    """Reconciliation settings for one table."""

    name: str
    mutable: bool
    parent_field: str | None = None
    parent_table: str | None = None
    blob_kind: ArtifactKind | None = None
    owner_scoped: bool = False


# Parents before children, so that foreign keys hold on both sides.
SYNC_TABLES: tuple[SyncTable, ...] = (
    SyncTable(name="projects", mutable=True, owner_scoped=True),
    SyncTable(name="notices", mutable=True, parent_field="project_id", parent_table="projects"),
    SyncTable(name="claims", mutable=True, parent_field="project_id", parent_table="projects"),
    SyncTable(
        name="photo_evidence",
        mutable=False,
        parent_field="claim_id",
        parent_table="claims",
        blob_kind=ArtifactKind.PHOTO,
    ),
    SyncTable(
        name="voice_notes",
        mutable=True,
        parent_field="claim_id",
        parent_table="claims",
        blob_kind=ArtifactKind.VOICE,
    ),
    SyncTable(
        name="attachments",
        mutable=False,
        parent_field="claim_id",
        parent_table="claims",
        blob_kind=ArtifactKind.DOCUMENT,
    ),
    SyncTable(name="status_changes", mutable=False, parent_field="claim_id", parent_table="claims"),
)

TABLES_BY_NAME = {table.name: table for table in SYNC_TABLES}

DEFAULT_EXTENSIONS = {
    ArtifactKind.PHOTO: "jpg",
    ArtifactKind.VOICE: "m4a",
    ArtifactKind.DOCUMENT: "bin",
}

DEFAULT_CONTENT_TYPES = {
    ArtifactKind.PHOTO: "image/jpeg",
    ArtifactKind.VOICE: "audio/mp4",
    ArtifactKind.DOCUMENT: "application/octet-stream",
}


def _source_name(row: RowDict) -> str:
    return row.get("file_name") or row.get("local_path") or ""


def blob_key(owner_id: str, table: SyncTable, row: RowDict) -> str:
    """Object storage key for an artifact file: ``{owner}/{kind}/{id}.{ext}``."""
    if table.blob_kind is None:
        raise ValueError(f"Table {table.name!r} has no files")
    suffix = PurePath(_source_name(row)).suffix.lstrip(".").lower()
    return f"{owner_id}/{table.blob_kind.value}/{row['id']}.{suffix or DEFAULT_EXTENSIONS[table.blob_kind]}"


def blob_content_type(table: SyncTable, row: RowDict) -> str:
    if table.blob_kind is None:
        raise ValueError(f"Table {table.name!r} has no files")
    guessed, _ = mimetypes.guess_type(_source_name(row))
    return row.get("mime_type") or guessed or DEFAULT_CONTENT_TYPES[table.blob_kind]
