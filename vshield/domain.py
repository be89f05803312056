"""Domain records for projects, claims, evidence artifacts and their audit trail.

All records are frozen pydantic models. Money is carried as a non-negative
integer in minor currency units; floats are rejected at validation time.
Timestamps must be timezone-aware and are normalised to UTC.
"""

from datetime import date, datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, field_validator

from vshield.hashing import Digest, is_degraded


class SyncState(str, Enum):
    """Reconciliation eligibility of a local row."""

    PENDING = "pending"
    """Changed locally and not yet accepted by the remote store."""

    SYNCED = "synced"
    """Matches the last copy exchanged with the remote store."""

    FAILED = "failed"
    """Rejected by the remote store; not retried until edited again."""


class PullAction(str, Enum):
    """What to do with one row fetched from the remote store."""

    INSERT = "insert"
    UPDATE = "update"
    SKIP_PENDING = "skip_pending"
    """The local copy has unpushed (or rejected) edits; never overwrite it."""

    SKIP_FRESHER = "skip_fresher"
    SKIP_PRESENT = "skip_present"
    """Append-only row already held locally."""

    @property
    def applied(self) -> bool:
        return self in (PullAction.INSERT, PullAction.UPDATE)


class ClaimStatus(str, Enum):
    """Lifecycle status of a claim. See `vshield.lifecycle` for the transitions."""

    CAPTURED = "captured"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    DISPUTED = "disputed"
    PAID = "paid"


AT_RISK_STATUSES = (ClaimStatus.CAPTURED, ClaimStatus.SUBMITTED, ClaimStatus.DISPUTED)


class InstructionSource(str, Enum):
    SITE_INSTRUCTION = "site_instruction"
    VERBAL_DIRECTION = "verbal_direction"
    RFI_RESPONSE = "rfi_response"
    DRAWING_REVISION = "drawing_revision"
    LATENT_CONDITION = "latent_condition"
    DELAY_CLAIM = "delay_claim"
    EMAIL = "email"
    OTHER = "other"


class ContractType(str, Enum):
    LUMP_SUM = "lump_sum"
    SCHEDULE_OF_RATES = "schedule_of_rates"
    COST_PLUS = "cost_plus"
    DESIGN_AND_CONSTRUCT = "design_and_construct"


class TranscriptionStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    COMPLETE = "complete"
    FAILED = "failed"


class ArtifactKind(str, Enum):
    """Evidence artifact type; also the folder name in object storage."""

    PHOTO = "photo"
    VOICE = "voice"
    DOCUMENT = "document"


class Role(str, Enum):
    ADMIN = "admin"
    OFFICE = "office"
    FIELD = "field"


class NoticeStatus(str, Enum):
    DRAFT = "draft"
    ISSUED = "issued"
    ACKNOWLEDGED = "acknowledged"


def _aware_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError("timestamps must be timezone-aware")
    return value.astimezone(timezone.utc)


def format_claim_code(sequence_number: int) -> str:
    """Human-readable claim code derived from the per-project sequence."""
    return f"VAR-{sequence_number:03d}"


def format_notice_code(sequence_number: int) -> str:
    return f"VN-{sequence_number:03d}"


class Actor(BaseModel, frozen=True):
    """The user performing a write, as recorded in the audit trail."""

    name: str = Field(min_length=1)
    role: Role = Role.ADMIN


class Record(BaseModel):
    """Fields shared by every persisted record."""

    model_config = {"frozen": True}

    id: str = Field(description="Stable identifier, shared with the remote store.")
    sync_status: SyncState = Field(default=SyncState.PENDING)


class TimestampedRecord(Record):
    created_at: datetime
    updated_at: datetime

    @field_validator("created_at", "updated_at")
    @classmethod
    def timestamps_are_aware(cls, value: datetime) -> datetime:
        return _aware_utc(value)


class Project(TimestampedRecord):
    """A contract or worksite."""

    name: str = Field(min_length=1)
    client: str
    reference: str = ""
    address: str | None = None
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    contract_type: ContractType | None = None
    is_active: bool = True


class Claim(TimestampedRecord):
    """A single change-order (variation) record."""

    project_id: str
    sequence_number: int = Field(ge=1)
    claim_code: str
    title: str = Field(min_length=1)
    description: str = ""
    instruction_source: InstructionSource
    instructed_by: str | None = None
    reference_doc: str | None = None
    estimated_value: int = Field(default=0, ge=0, strict=True, description="Minor currency units.")
    status: ClaimStatus = ClaimStatus.CAPTURED
    captured_at: datetime
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    location_accuracy: float | None = Field(default=None, ge=0)
    evidence_hash: Digest | None = None
    notes: str | None = None
    ai_description: str | None = None
    notice_id: str | None = None

    @field_validator("captured_at")
    @classmethod
    def captured_at_is_aware(cls, value: datetime) -> datetime:
        return _aware_utc(value)


class Artifact(Record):
    """Fields common to every evidence artifact."""

    claim_id: str
    local_path: str | None = Field(
        default=None,
        description="Device-local file. None for artifacts pulled from another device.",
    )
    remote_uri: str | None = None
    digest: Digest
    captured_at: datetime
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)

    @field_validator("captured_at")
    @classmethod
    def captured_at_is_aware(cls, value: datetime) -> datetime:
        return _aware_utc(value)


class PhotoEvidence(Artifact):
    width: int | None = Field(default=None, ge=0)
    height: int | None = Field(default=None, ge=0)


class VoiceNote(Artifact):
    duration_seconds: float = Field(default=0.0, ge=0)
    transcription: str | None = None
    transcription_status: TranscriptionStatus = TranscriptionStatus.NONE
    updated_at: datetime

    @field_validator("updated_at")
    @classmethod
    def updated_at_is_aware(cls, value: datetime) -> datetime:
        return _aware_utc(value)


class Attachment(Artifact):
    file_name: str
    file_size: int | None = Field(default=None, ge=0)
    mime_type: str | None = None


class StatusChange(Record):
    """One append-only entry of a claim's audit trail."""

    claim_id: str
    from_status: ClaimStatus | None = None
    to_status: ClaimStatus
    actor: str
    changed_at: datetime
    note: str | None = None

    @field_validator("changed_at")
    @classmethod
    def changed_at_is_aware(cls, value: datetime) -> datetime:
        return _aware_utc(value)


class Notice(TimestampedRecord):
    """Early-warning notice of a variation event, raised before a claim is priced."""

    project_id: str
    sequence_number: int = Field(ge=1)
    notice_code: str
    event_description: str = Field(min_length=1)
    event_date: date
    cost_flag: bool = False
    time_flag: bool = False
    estimated_days: int | None = Field(default=None, ge=0)
    contract_clause: str | None = None
    issued_by: str | None = None
    status: NoticeStatus = NoticeStatus.DRAFT
    issued_at: datetime | None = None
    acknowledged_at: datetime | None = None
    claim_id: str | None = None

    @field_validator("issued_at", "acknowledged_at")
    @classmethod
    def optional_timestamps_are_aware(cls, value: datetime | None) -> datetime | None:
        return _aware_utc(value)


# --- Write inputs ---


class NewProject(BaseModel, frozen=True):
    name: str = Field(min_length=1)
    client: str
    reference: str = ""
    address: str | None = None
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    contract_type: ContractType | None = None


class ProjectUpdate(BaseModel, frozen=True):
    """Partial project update. Only fields that are set are written."""

    name: str | None = Field(default=None, min_length=1)
    client: str | None = None
    reference: str | None = None
    address: str | None = None
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    contract_type: ContractType | None = None


class NewClaim(BaseModel, frozen=True):
    """Everything needed to create a claim. The sequence is assigned by the store."""

    project_id: str
    title: str = Field(min_length=1)
    description: str = ""
    instruction_source: InstructionSource
    instructed_by: str | None = None
    reference_doc: str | None = None
    estimated_value: int = Field(default=0, ge=0, strict=True)
    captured_at: datetime | None = Field(default=None, description="Defaults to the store clock.")
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    location_accuracy: float | None = Field(default=None, ge=0)
    notes: str | None = None
    notice_id: str | None = None

    @field_validator("captured_at")
    @classmethod
    def captured_at_is_aware(cls, value: datetime | None) -> datetime | None:
        return _aware_utc(value)


class ClaimUpdate(BaseModel, frozen=True):
    """Partial claim update. Status changes go through the lifecycle engine instead."""

    title: str | None = Field(default=None, min_length=1)
    description: str | None = None
    instructed_by: str | None = None
    reference_doc: str | None = None
    estimated_value: int | None = Field(default=None, ge=0, strict=True)
    notes: str | None = None
    ai_description: str | None = None


class NewArtifact(BaseModel, frozen=True):
    """A captured file that has already been hashed."""

    local_path: str
    digest: Digest
    captured_at: datetime | None = None
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    id: str | None = Field(default=None, description="Pre-assigned id; generated when omitted.")

    @field_validator("captured_at")
    @classmethod
    def captured_at_is_aware(cls, value: datetime | None) -> datetime | None:
        return _aware_utc(value)


class NewPhoto(NewArtifact):
    width: int | None = Field(default=None, ge=0)
    height: int | None = Field(default=None, ge=0)


class NewVoiceNote(NewArtifact):
    duration_seconds: float = Field(default=0.0, ge=0)


class NewAttachment(NewArtifact):
    file_name: str
    file_size: int | None = Field(default=None, ge=0)
    mime_type: str | None = None


class NewNotice(BaseModel, frozen=True):
    project_id: str
    event_description: str = Field(min_length=1)
    event_date: date
    cost_flag: bool = False
    time_flag: bool = False
    estimated_days: int | None = Field(default=None, ge=0)
    contract_clause: str | None = None
    issued_by: str | None = None


# --- Read models ---


class ClaimDetail(Claim):
    """A fully hydrated claim, as read by export collaborators."""

    project_name: str | None = None
    photos: tuple[PhotoEvidence, ...] = ()
    voice_notes: tuple[VoiceNote, ...] = ()
    attachments: tuple[Attachment, ...] = ()
    status_history: tuple[StatusChange, ...] = ()

    @property
    def artifact_digests(self) -> list[Digest]:
        return [a.digest for a in (*self.photos, *self.voice_notes, *self.attachments)]

    @property
    def integrity_degraded(self) -> bool:
        """True when any artifact carries the hash-failed sentinel."""
        return any(is_degraded(d) for d in self.artifact_digests)


class ProjectSummary(Project):
    claim_count: int = 0
    total_value: int = 0
    at_risk_value: int = 0
    last_capture_at: datetime | None = None


class DashboardStats(BaseModel, frozen=True):
    total_claims: int = 0
    total_value: int = 0
    at_risk_value: int = 0
    approved_count: int = 0
    disputed_count: int = 0
    paid_count: int = 0

    @property
    def total_with_outcome(self) -> int:
        return self.approved_count + self.disputed_count + self.paid_count


class StatusSummary(BaseModel, frozen=True):
    status: ClaimStatus
    count: int
    total_value: int


class SyncBacklog(BaseModel, frozen=True):
    """Rows waiting for reconciliation, per table."""

    pending: dict[str, int] = Field(default_factory=dict)
    failed: dict[str, int] = Field(default_factory=dict)

    @property
    def pending_total(self) -> int:
        return sum(self.pending.values())

    @property
    def failed_total(self) -> int:
        return sum(self.failed.values())


class ArtifactCheck(BaseModel, frozen=True):
    artifact_id: str
    kind: ArtifactKind
    local_path: str | None
    expected: Digest
    ok: bool
    reason: str | None = None


class IntegrityReport(BaseModel, frozen=True):
    """Result of re-hashing a claim's evidence against its recorded digests."""

    claim_id: str
    evidence_hash_ok: bool
    recorded_evidence_hash: Digest | None
    computed_evidence_hash: Digest
    artifacts: tuple[ArtifactCheck, ...] = ()

    @property
    def ok(self) -> bool:
        return self.evidence_hash_ok and all(a.ok for a in self.artifacts)


class SyncResult(BaseModel, frozen=True):
    """Outcome of one reconciliation pass."""

    pushed: int = 0
    pulled: int = 0
    success: bool = True
    reason: str | None = None
    failed: int = Field(default=0, description="Rows rejected or left pending by errors.")
    skipped: int = Field(
        default=0,
        description="Remote rows not applied because of unpushed local edits or local invariants.",
    )
    errors: tuple[str, ...] = ()
