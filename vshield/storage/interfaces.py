"""Storage interface definitions for the local record store."""

from abc import ABC, abstractmethod
from typing import Any, Callable, Iterable

from vshield.domain import (
    Attachment,
    Claim,
    ClaimDetail,
    ClaimStatus,
    ClaimUpdate,
    DashboardStats,
    IntegrityReport,
    NewAttachment,
    NewClaim,
    NewNotice,
    NewPhoto,
    NewProject,
    NewVoiceNote,
    Notice,
    NoticeStatus,
    PhotoEvidence,
    Project,
    PullAction,
    ProjectSummary,
    ProjectUpdate,
    StatusChange,
    StatusSummary,
    SyncBacklog,
    VoiceNote,
)

# A row as exchanged with the reconciler: column name -> stored value.
RowDict = dict[str, Any]

# (current, target) -> None, raising to veto a status change.
TransitionCheck = Callable[[ClaimStatus, ClaimStatus], None]


class RecordStoreInterface(ABC):
    """Durable, device-local store for projects, claims, evidence and audit trail.

    Every write is atomic: either every row it touches is committed or none
    is, in which case `StoreWriteError` is raised. Every write made on behalf
    of a user marks the touched rows `pending` for reconciliation.
    """

    async def open(self) -> None:
        """Prepare the store for use. Idempotent."""

    async def close(self) -> None:
        """Release resources held by the store. Idempotent."""

    async def __aenter__(self) -> "RecordStoreInterface":
        await self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # --- Projects ---

    @abstractmethod
    async def create_project(self, new_project: NewProject) -> Project:
        """Insert a project and return it."""

    @abstractmethod
    async def get_project(self, project_id: str) -> Project | None:
        """Retrieve a project by ID, or None if not found."""

    @abstractmethod
    async def list_projects(self, active_only: bool = True) -> list[Project]:
        """List projects ordered by name."""

    @abstractmethod
    async def list_project_summaries(self, active_only: bool = True) -> list[ProjectSummary]:
        """List projects with claim counts and value totals."""

    @abstractmethod
    async def update_project(self, project_id: str, update: ProjectUpdate) -> Project:
        """Apply the fields set on `update`. Raises RecordNotFoundError."""

    @abstractmethod
    async def archive_project(self, project_id: str) -> Project:
        """Mark a project inactive. Raises RecordNotFoundError."""

    @abstractmethod
    async def delete_project(self, project_id: str) -> bool:
        """Delete a project and everything under it, locally only.

        Returns True if the project existed.
        """

    # --- Claims ---

    @abstractmethod
    async def next_sequence(self, project_id: str) -> int:
        """Peek at the sequence number the next claim in the project would get.

        Informational only; `create_claim` assigns the number itself.
        """

    @abstractmethod
    async def create_claim(
        self,
        new_claim: NewClaim,
        photos: Iterable[NewPhoto] = (),
        voice_notes: Iterable[NewVoiceNote] = (),
        attachments: Iterable[NewAttachment] = (),
        actor: str = "system",
    ) -> ClaimDetail:
        """Create a claim with its evidence in a single transaction.

        Assigns the next per-project sequence number, inserts the claim and
        its artifacts, appends the initial status change and records the
        evidence hash. Nothing is persisted if any step fails.
        """

    @abstractmethod
    async def get_claim(self, claim_id: str) -> Claim | None:
        """Retrieve a claim by ID, or None if not found."""

    @abstractmethod
    async def get_claim_detail(self, claim_id: str) -> ClaimDetail | None:
        """Retrieve a claim with its project name, evidence and audit trail."""

    @abstractmethod
    async def list_claims(
        self,
        project_id: str | None = None,
        status: ClaimStatus | None = None,
    ) -> list[Claim]:
        """List claims, optionally filtered, ordered by project then sequence."""

    @abstractmethod
    async def list_claims_by_status(self, statuses: Iterable[ClaimStatus]) -> list[Claim]:
        """List claims whose status is any of `statuses`."""

    @abstractmethod
    async def update_claim(self, claim_id: str, update: ClaimUpdate) -> Claim:
        """Apply the fields set on `update`. Raises RecordNotFoundError."""

    @abstractmethod
    async def delete_claim(self, claim_id: str) -> bool:
        """Delete a claim and its evidence, locally only."""

    # --- Artifacts ---

    @abstractmethod
    async def add_photo(self, claim_id: str, photo: NewPhoto) -> PhotoEvidence:
        """Attach a photo to an existing claim and refresh its evidence hash."""

    @abstractmethod
    async def add_voice_note(self, claim_id: str, voice_note: NewVoiceNote) -> VoiceNote:
        """Attach a voice note to an existing claim and refresh its evidence hash."""

    @abstractmethod
    async def add_attachment(self, claim_id: str, attachment: NewAttachment) -> Attachment:
        """Attach a document to an existing claim and refresh its evidence hash."""

    @abstractmethod
    async def list_photos(self, claim_id: str) -> list[PhotoEvidence]:
        pass

    @abstractmethod
    async def list_voice_notes(self, claim_id: str) -> list[VoiceNote]:
        pass

    @abstractmethod
    async def list_attachments(self, claim_id: str) -> list[Attachment]:
        pass

    @abstractmethod
    async def get_voice_note(self, voice_note_id: str) -> VoiceNote | None:
        pass

    @abstractmethod
    async def begin_transcription(self, voice_note_id: str) -> VoiceNote:
        """Move a voice note's transcription from none to pending.

        Raises InvalidTranscriptionState if a transcription has already been
        started, including one that failed.
        """

    @abstractmethod
    async def complete_transcription(self, voice_note_id: str, text: str | None) -> VoiceNote:
        """Finish a pending transcription: complete with `text`, or failed when None."""

    # --- Status ---

    @abstractmethod
    async def transition_status(
        self,
        claim_id: str,
        new_status: ClaimStatus,
        actor: str,
        note: str | None = None,
        authorize: TransitionCheck | None = None,
    ) -> StatusChange:
        """Validate and apply a status change, appending one audit entry.

        The transition table and `authorize` are both checked against the
        status read inside the write transaction.
        """

    @abstractmethod
    async def get_status_history(self, claim_id: str) -> list[StatusChange]:
        """Audit trail of a claim, oldest first."""

    # --- Notices ---

    @abstractmethod
    async def create_notice(self, new_notice: NewNotice) -> Notice:
        pass

    @abstractmethod
    async def get_notice(self, notice_id: str) -> Notice | None:
        pass

    @abstractmethod
    async def list_notices(self, project_id: str | None = None) -> list[Notice]:
        pass

    @abstractmethod
    async def transition_notice(self, notice_id: str, new_status: NoticeStatus) -> Notice:
        """Advance a notice through draft -> issued -> acknowledged."""

    @abstractmethod
    async def link_notice(self, notice_id: str, claim_id: str) -> Notice:
        """Record that a claim was raised from a notice."""

    # --- Reporting ---

    @abstractmethod
    async def dashboard_stats(self, project_id: str | None = None) -> DashboardStats:
        pass

    @abstractmethod
    async def status_summary(self, project_id: str | None = None) -> list[StatusSummary]:
        """Claim count and value per status, one entry for every status."""

    @abstractmethod
    async def sync_backlog(self) -> SyncBacklog:
        pass

    @abstractmethod
    async def pending_sync_count(self) -> int:
        pass

    # --- Integrity ---

    @abstractmethod
    async def verify_claim_integrity(self, claim_id: str) -> IntegrityReport:
        """Re-hash a claim's local evidence files and recompute its evidence hash."""

    # --- Reconciliation support ---

    @abstractmethod
    async def pending_rows(self, table: str) -> list[RowDict]:
        """Rows of `table` waiting to be pushed."""

    @abstractmethod
    async def get_row(self, table: str, row_id: str) -> RowDict | None:
        pass

    @abstractmethod
    async def list_ids(self, table: str) -> list[str]:
        pass

    @abstractmethod
    async def mark_synced(
        self,
        table: str,
        row_id: str,
        expected_updated_at: str | None = None,
        server_updated_at: str | None = None,
    ) -> bool:
        """Mark a pushed row synced unless it was edited since it was read.

        Returns False, leaving the row pending, when the row's `updated_at` no
        longer equals `expected_updated_at`.
        """

    @abstractmethod
    async def mark_failed(self, table: str, row_id: str, expected_updated_at: str | None = None) -> bool:
        """Mark a row rejected by the remote store."""

    @abstractmethod
    async def requeue_failed(self, table: str | None = None) -> int:
        """Move failed rows back to pending. Returns how many were moved."""

    @abstractmethod
    async def record_remote_uri(self, table: str, row_id: str, uri: str) -> None:
        """Remember where an artifact's file was uploaded."""

    @abstractmethod
    async def apply_remote(
        self,
        table: str,
        row: RowDict,
        decide: Callable[[RowDict | None, RowDict], PullAction],
    ) -> PullAction:
        """Apply one pulled row.

        `decide(local, remote)` is called inside the write transaction with the
        current local row (or None) and returns a `PullAction`; the store then
        inserts, updates or leaves the row as decided and returns that action.
        """
