"""
SQLModel schemas for the local SQLite database.

Timestamps are stored as UTC ISO-8601 text so that values round-trip exactly
and compare correctly as strings. Every table carries `sync_status`; tables
whose rows can change after creation also carry `updated_at`.
"""

from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


class SchemaVersion(SQLModel, table=True):
    """Single-row marker of the last applied migration."""

    __tablename__ = "schema_version"

    id: int = Field(default=1, primary_key=True)
    version: int = Field()
    applied_at: str = Field()


class ProjectRow(SQLModel, table=True):
    __tablename__ = "projects"

    id: str = Field(primary_key=True)
    name: str = Field()
    client: str = Field()
    reference: str = Field(default="")
    address: Optional[str] = Field(default=None)
    latitude: Optional[float] = Field(default=None)
    longitude: Optional[float] = Field(default=None)
    contract_type: Optional[str] = Field(default=None)
    is_active: bool = Field(default=True, index=True)
    created_at: str = Field()
    updated_at: str = Field()
    sync_status: str = Field(default="pending", index=True)


class ClaimRow(SQLModel, table=True):
    __tablename__ = "claims"
    __table_args__ = (UniqueConstraint("project_id", "sequence_number", name="uq_claims_project_sequence"),)

    id: str = Field(primary_key=True)
    project_id: str = Field(foreign_key="projects.id", ondelete="CASCADE", index=True)
    sequence_number: int = Field()
    claim_code: str = Field()
    title: str = Field()
    description: str = Field(default="")
    instruction_source: str = Field()
    instructed_by: Optional[str] = Field(default=None)
    reference_doc: Optional[str] = Field(default=None)
    estimated_value: int = Field(default=0)
    status: str = Field(default="captured", index=True)
    captured_at: str = Field()
    latitude: Optional[float] = Field(default=None)
    longitude: Optional[float] = Field(default=None)
    location_accuracy: Optional[float] = Field(default=None)
    evidence_hash: Optional[str] = Field(default=None)
    notes: Optional[str] = Field(default=None)
    ai_description: Optional[str] = Field(default=None)
    notice_id: Optional[str] = Field(default=None)
    created_at: str = Field()
    updated_at: str = Field()
    sync_status: str = Field(default="pending", index=True)


class PhotoRow(SQLModel, table=True):
    __tablename__ = "photo_evidence"

    id: str = Field(primary_key=True)
    claim_id: str = Field(foreign_key="claims.id", ondelete="CASCADE", index=True)
    local_path: Optional[str] = Field(default=None)
    remote_uri: Optional[str] = Field(default=None)
    digest: str = Field()
    captured_at: str = Field()
    latitude: Optional[float] = Field(default=None)
    longitude: Optional[float] = Field(default=None)
    width: Optional[int] = Field(default=None)
    height: Optional[int] = Field(default=None)
    sync_status: str = Field(default="pending", index=True)


class VoiceNoteRow(SQLModel, table=True):
    __tablename__ = "voice_notes"

    id: str = Field(primary_key=True)
    claim_id: str = Field(foreign_key="claims.id", ondelete="CASCADE", index=True)
    local_path: Optional[str] = Field(default=None)
    remote_uri: Optional[str] = Field(default=None)
    digest: str = Field()
    captured_at: str = Field()
    latitude: Optional[float] = Field(default=None)
    longitude: Optional[float] = Field(default=None)
    duration_seconds: float = Field(default=0.0)
    transcription: Optional[str] = Field(default=None)
    transcription_status: str = Field(default="none")
    updated_at: str = Field()
    sync_status: str = Field(default="pending", index=True)


class AttachmentRow(SQLModel, table=True):
    __tablename__ = "attachments"

    id: str = Field(primary_key=True)
    claim_id: str = Field(foreign_key="claims.id", ondelete="CASCADE", index=True)
    local_path: Optional[str] = Field(default=None)
    remote_uri: Optional[str] = Field(default=None)
    digest: str = Field()
    captured_at: str = Field()
    latitude: Optional[float] = Field(default=None)
    longitude: Optional[float] = Field(default=None)
    file_name: str = Field()
    file_size: Optional[int] = Field(default=None)
    mime_type: Optional[str] = Field(default=None)
    sync_status: str = Field(default="pending", index=True)


class StatusChangeRow(SQLModel, table=True):
    __tablename__ = "status_changes"

    id: str = Field(primary_key=True)
    claim_id: str = Field(foreign_key="claims.id", ondelete="CASCADE", index=True)
    from_status: Optional[str] = Field(default=None)
    to_status: str = Field()
    actor: str = Field()
    changed_at: str = Field()
    note: Optional[str] = Field(default=None)
    sync_status: str = Field(default="pending", index=True)


class NoticeRow(SQLModel, table=True):
    __tablename__ = "notices"
    __table_args__ = (UniqueConstraint("project_id", "sequence_number", name="uq_notices_project_sequence"),)

    id: str = Field(primary_key=True)
    project_id: str = Field(foreign_key="projects.id", ondelete="CASCADE", index=True)
    sequence_number: int = Field()
    notice_code: str = Field()
    event_description: str = Field()
    event_date: str = Field()
    cost_flag: bool = Field(default=False)
    time_flag: bool = Field(default=False)
    estimated_days: Optional[int] = Field(default=None)
    contract_clause: Optional[str] = Field(default=None)
    issued_by: Optional[str] = Field(default=None)
    status: str = Field(default="draft")
    issued_at: Optional[str] = Field(default=None)
    acknowledged_at: Optional[str] = Field(default=None)
    claim_id: Optional[str] = Field(default=None)
    created_at: str = Field()
    updated_at: str = Field()
    sync_status: str = Field(default="pending", index=True)


# Tables that take part in reconciliation, keyed by table name.
ROW_MODELS: dict[str, type[SQLModel]] = {
    "projects": ProjectRow,
    "notices": NoticeRow,
    "claims": ClaimRow,
    "photo_evidence": PhotoRow,
    "voice_notes": VoiceNoteRow,
    "attachments": AttachmentRow,
    "status_changes": StatusChangeRow,
}

# Columns that only make sense on this device and are never sent or overwritten.
LOCAL_ONLY_COLUMNS = frozenset({"sync_status", "local_path"})
