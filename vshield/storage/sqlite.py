"""
SQLite implementation of the record store.

One engine holds one connection for the life of the store. A lock serialises
every unit of work on that connection and the blocking SQLite calls run in a
worker thread, so the event loop is never blocked. Each write is a single
``BEGIN IMMEDIATE`` transaction: the sequence number of a new claim is read
and used inside the same transaction that inserts it.
"""

import asyncio
import logging
import threading
import uuid
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, TypeVar

from pydantic import BaseModel, ValidationError
from sqlalchemy import event, func, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, col, create_engine, select

from vshield.clock import Clock, SystemClock
from vshield.domain import (
    AT_RISK_STATUSES,
    ArtifactCheck,
    ArtifactKind,
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
    ProjectSummary,
    ProjectUpdate,
    PullAction,
    StatusChange,
    StatusSummary,
    SyncBacklog,
    SyncState,
    TranscriptionStatus,
    VoiceNote,
    format_claim_code,
    format_notice_code,
)
from vshield.errors import (
    DuplicateSequenceError,
    InvalidTranscriptionState,
    InvariantViolation,
    RecordNotFoundError,
    StoreWriteError,
)
from vshield.hashing import evidence_hash, is_degraded, verify_file
from vshield.lifecycle import INITIAL_STATUS, validate_notice_transition, validate_transition
from vshield.storage.interfaces import RecordStoreInterface, RowDict, TransitionCheck
from vshield.storage.migrations import apply_migrations
from vshield.storage.tables import (
    LOCAL_ONLY_COLUMNS,
    ROW_MODELS,
    AttachmentRow,
    ClaimRow,
    NoticeRow,
    PhotoRow,
    ProjectRow,
    StatusChangeRow,
    VoiceNoteRow,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

MEMORY = ":memory:"

TIMESTAMP_COLUMNS = frozenset({"created_at", "updated_at", "captured_at", "changed_at", "issued_at", "acknowledged_at"})

DOMAIN_MODELS: dict[str, type[BaseModel]] = {
    "projects": Project,
    "notices": Notice,
    "claims": Claim,
    "photo_evidence": PhotoEvidence,
    "voice_notes": VoiceNote,
    "attachments": Attachment,
    "status_changes": StatusChange,
}

_ARTIFACT_ROWS: dict[type[BaseModel], type[SQLModel]] = {
    PhotoEvidence: PhotoRow,
    VoiceNote: VoiceNoteRow,
    Attachment: AttachmentRow,
}


def _new_id() -> str:
    return str(uuid.uuid4())


def _ts(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _normalize_timestamp(value: Any) -> Any:
    """Rewrite a timestamp (text or datetime) in the stored UTC form."""
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return _ts(value)
    return value


def _column_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return _ts(value)
    if isinstance(value, date):
        return value.isoformat()
    return value


def _row_values(model: BaseModel, row_cls: type[SQLModel]) -> dict[str, Any]:
    data = model.model_dump()
    return {name: _column_value(data[name]) for name in row_cls.__table__.columns.keys() if name in data}


def _to_row(model: BaseModel, row_cls: type[SQLModel]) -> Any:
    return row_cls(**_row_values(model, row_cls))


def _row_model(table: str) -> type[SQLModel]:
    try:
        return ROW_MODELS[table]
    except KeyError:
        raise ValueError(f"Unknown table {table!r}") from None


def _has_column(row_cls: type[SQLModel], name: str) -> bool:
    return name in row_cls.__table__.columns


def _get_or_raise(session: Session, row_cls: type[SQLModel], row_id: str, kind: str) -> Any:
    row = session.get(row_cls, row_id)
    if row is None:
        raise RecordNotFoundError(kind, row_id)
    return row


def _touch(row: Any, now: datetime) -> None:
    """Mark a row as locally edited."""
    row.updated_at = _ts(now)
    row.sync_status = SyncState.PENDING.value


def _begin_immediate(conn: Any) -> None:
    conn.exec_driver_sql("BEGIN IMMEDIATE")


def _check_integrity(detail: ClaimDetail) -> IntegrityReport:
    checks = []
    groups = (
        (ArtifactKind.PHOTO, detail.photos),
        (ArtifactKind.VOICE, detail.voice_notes),
        (ArtifactKind.DOCUMENT, detail.attachments),
    )
    for kind, artifacts in groups:
        for artifact in artifacts:
            if artifact.local_path is None:
                ok, reason = False, "no local copy on this device"
            elif is_degraded(artifact.digest):
                ok, reason = False, "digest was not available at capture"
            elif verify_file(artifact.local_path, artifact.digest):
                ok, reason = True, None
            else:
                ok, reason = False, "file missing or modified"
            checks.append(
                ArtifactCheck(
                    artifact_id=artifact.id,
                    kind=kind,
                    local_path=artifact.local_path,
                    expected=artifact.digest,
                    ok=ok,
                    reason=reason,
                )
            )
    computed = evidence_hash(detail.artifact_digests, detail.captured_at, detail.latitude, detail.longitude)
    return IntegrityReport(
        claim_id=detail.id,
        evidence_hash_ok=detail.evidence_hash == computed,
        recorded_evidence_hash=detail.evidence_hash,
        computed_evidence_hash=computed,
        artifacts=tuple(checks),
    )


class SQLiteRecordStore(RecordStoreInterface):
    """
    SQLite implementation of the record store.

    Example:
        ```python
        async with SQLiteRecordStore("./data/vshield.db") as store:
            project = await store.create_project(NewProject(name="Dock 4", client="Harbour Co"))
        ```
    """

    def __init__(self, db_path: str | Path = MEMORY, clock: Optional[Clock] = None, wal: bool = True):
        self.db_path = str(db_path)
        self.clock = clock or SystemClock()
        self._wal = wal and self.db_path != MEMORY
        self._lock = threading.Lock()
        self._engine: Optional[Engine] = None
        self.schema_version: Optional[int] = None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Record store is not open; call open() first")
        return self._engine

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    # --- Lifecycle ---

    async def open(self) -> None:
        if self._engine is None:
            await asyncio.to_thread(self._open)

    async def close(self) -> None:
        if self._engine is not None:
            engine, self._engine = self._engine, None
            await asyncio.to_thread(self._locked, engine.dispose)
            logger.info("Closed record store %s", self.db_path)

    def _open(self) -> None:
        if self.db_path == MEMORY:
            url = "sqlite://"
        else:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            url = f"sqlite:///{self.db_path}"
        engine = create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
        event.listen(engine, "connect", self._on_connect)
        event.listen(engine, "begin", _begin_immediate)
        try:
            with engine.begin() as conn:
                version = apply_migrations(conn)
        except SQLAlchemyError as e:
            engine.dispose()
            raise StoreWriteError("migrate", e) from e
        except Exception:
            engine.dispose()
            raise
        self._engine = engine
        self.schema_version = version
        logger.info("Opened record store %s (schema version %d)", self.db_path, version)

    def _on_connect(self, dbapi_conn: Any, connection_record: Any) -> None:
        # Let the begin hook issue BEGIN IMMEDIATE instead of pysqlite's implicit BEGIN.
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        if self._wal:
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    # --- Units of work ---

    def _locked(self, fn: Callable[..., T], *args: Any) -> T:
        with self._lock:
            return fn(*args)

    def _transaction(self, operation: str, fn: Callable[[Session], T]) -> T:
        try:
            with Session(self.engine, expire_on_commit=False) as session:
                with session.begin():
                    return fn(session)
        except SQLAlchemyError as e:
            logger.error("Rolled back %s: %s", operation, e)
            raise StoreWriteError(operation, e) from e

    def _query(self, fn: Callable[[Session], T]) -> T:
        with Session(self.engine) as session:
            return fn(session)

    async def _write(self, operation: str, fn: Callable[[Session], T]) -> T:
        return await asyncio.to_thread(self._locked, self._transaction, operation, fn)

    async def _read(self, fn: Callable[[Session], T]) -> T:
        return await asyncio.to_thread(self._locked, self._query, fn)

    # --- Projects ---

    async def create_project(self, new_project: NewProject) -> Project:
        def op(session: Session) -> Project:
            now = self.clock.now()
            project = Project(id=_new_id(), created_at=now, updated_at=now, **new_project.model_dump())
            session.add(_to_row(project, ProjectRow))
            return project

        project = await self._write("create project", op)
        logger.info("Created project %s (%s)", project.name, project.id)
        return project

    async def get_project(self, project_id: str) -> Project | None:
        def op(session: Session) -> Project | None:
            row = session.get(ProjectRow, project_id)
            return Project.model_validate(row.model_dump()) if row else None

        return await self._read(op)

    async def list_projects(self, active_only: bool = True) -> list[Project]:
        def op(session: Session) -> list[Project]:
            stmt = select(ProjectRow)
            if active_only:
                stmt = stmt.where(ProjectRow.is_active == True)  # noqa: E712
            rows = session.exec(stmt.order_by(ProjectRow.name)).all()
            return [Project.model_validate(r.model_dump()) for r in rows]

        return await self._read(op)

    async def list_project_summaries(self, active_only: bool = True) -> list[ProjectSummary]:
        def op(session: Session) -> list[ProjectSummary]:
            stmt = select(ProjectRow)
            if active_only:
                stmt = stmt.where(ProjectRow.is_active == True)  # noqa: E712
            projects = session.exec(stmt.order_by(ProjectRow.name)).all()
            totals = {
                project_id: (count, total, last)
                for project_id, count, total, last in session.exec(
                    select(
                        ClaimRow.project_id,
                        func.count(ClaimRow.id),
                        func.coalesce(func.sum(ClaimRow.estimated_value), 0),
                        func.max(ClaimRow.captured_at),
                    ).group_by(ClaimRow.project_id)
                ).all()
            }
            at_risk = dict(
                session.exec(
                    select(ClaimRow.project_id, func.coalesce(func.sum(ClaimRow.estimated_value), 0))
                    .where(col(ClaimRow.status).in_([s.value for s in AT_RISK_STATUSES]))
                    .group_by(ClaimRow.project_id)
                ).all()
            )
            summaries = []
            for row in projects:
                count, total, last = totals.get(row.id, (0, 0, None))
                summaries.append(
                    ProjectSummary.model_validate(
                        {
                            **row.model_dump(),
                            "claim_count": count,
                            "total_value": total,
                            "at_risk_value": at_risk.get(row.id, 0),
                            "last_capture_at": last,
                        }
                    )
                )
            return summaries

        return await self._read(op)

    async def update_project(self, project_id: str, update: ProjectUpdate) -> Project:
        changes = update.model_dump(exclude_unset=True)

        def op(session: Session) -> Project:
            row = _get_or_raise(session, ProjectRow, project_id, "project")
            if changes:
                for name, value in changes.items():
                    setattr(row, name, _column_value(value))
                _touch(row, self.clock.now())
                session.add(row)
            return Project.model_validate(row.model_dump())

        return await self._write("update project", op)

    async def archive_project(self, project_id: str) -> Project:
        def op(session: Session) -> Project:
            row = _get_or_raise(session, ProjectRow, project_id, "project")
            row.is_active = False
            _touch(row, self.clock.now())
            session.add(row)
            return Project.model_validate(row.model_dump())

        return await self._write("archive project", op)

    async def delete_project(self, project_id: str) -> bool:
        def op(session: Session) -> bool:
            row = session.get(ProjectRow, project_id)
            if row is None:
                return False
            session.delete(row)
            return True

        deleted = await self._write("delete project", op)
        if deleted:
            logger.info("Deleted project %s and its claims", project_id)
        return deleted

    # --- Claims ---

    @staticmethod
    def _max_sequence(session: Session, row_cls: Any, project_id: str) -> int:
        value = session.exec(select(func.max(row_cls.sequence_number)).where(row_cls.project_id == project_id)).one()
        return value or 0

    async def next_sequence(self, project_id: str) -> int:
        def op(session: Session) -> int:
            _get_or_raise(session, ProjectRow, project_id, "project")
            return self._max_sequence(session, ClaimRow, project_id) + 1

        return await self._read(op)

    @staticmethod
    def _artifact(cls: type[T], claim_id: str, new: BaseModel, default_captured_at: datetime, **extra: Any) -> T:
        data = new.model_dump(exclude={"id"})
        data["captured_at"] = data["captured_at"] or default_captured_at
        return cls(id=new.id or _new_id(), claim_id=claim_id, **data, **extra)  # type: ignore[attr-defined]

    async def create_claim(
        self,
        new_claim: NewClaim,
        photos: Iterable[NewPhoto] = (),
        voice_notes: Iterable[NewVoiceNote] = (),
        attachments: Iterable[NewAttachment] = (),
        actor: str = "system",
    ) -> ClaimDetail:
        photos, voice_notes, attachments = list(photos), list(voice_notes), list(attachments)

        def op(session: Session) -> ClaimDetail:
            project = _get_or_raise(session, ProjectRow, new_claim.project_id, "project")
            now = self.clock.now()
            captured_at = new_claim.captured_at or now
            sequence = self._max_sequence(session, ClaimRow, new_claim.project_id) + 1
            claim_id = _new_id()

            photo_records = [self._artifact(PhotoEvidence, claim_id, p, captured_at) for p in photos]
            voice_records = [self._artifact(VoiceNote, claim_id, v, captured_at, updated_at=now) for v in voice_notes]
            attachment_records = [self._artifact(Attachment, claim_id, a, captured_at) for a in attachments]
            artifacts = [*photo_records, *voice_records, *attachment_records]

            claim = Claim(
                **{**new_claim.model_dump(), "captured_at": captured_at},
                id=claim_id,
                sequence_number=sequence,
                claim_code=format_claim_code(sequence),
                status=INITIAL_STATUS,
                evidence_hash=evidence_hash(
                    [a.digest for a in artifacts], captured_at, new_claim.latitude, new_claim.longitude
                ),
                created_at=now,
                updated_at=now,
            )
            session.add(_to_row(claim, ClaimRow))
            session.flush()

            for artifact in artifacts:
                session.add(_to_row(artifact, _ARTIFACT_ROWS[type(artifact)]))
            change = StatusChange(
                id=_new_id(),
                claim_id=claim_id,
                from_status=None,
                to_status=INITIAL_STATUS,
                actor=actor,
                changed_at=now,
            )
            session.add(_to_row(change, StatusChangeRow))
            if new_claim.notice_id is not None:
                self._link_notice(session, new_claim.notice_id, claim_id, now)

            return ClaimDetail.model_validate(
                {
                    **claim.model_dump(),
                    "project_name": project.name,
                    "photos": photo_records,
                    "voice_notes": voice_records,
                    "attachments": attachment_records,
                    "status_history": [change],
                }
            )

        detail = await self._write("create claim", op)
        logger.info(
            "Created claim %s (%s) in project %s with %d artifacts",
            detail.claim_code,
            detail.id,
            detail.project_id,
            len(detail.artifact_digests),
        )
        if detail.integrity_degraded:
            logger.warning("Claim %s was saved with an incomplete integrity proof", detail.claim_code)
        return detail

    async def get_claim(self, claim_id: str) -> Claim | None:
        def op(session: Session) -> Claim | None:
            row = session.get(ClaimRow, claim_id)
            return Claim.model_validate(row.model_dump()) if row else None

        return await self._read(op)

    @staticmethod
    def _children(session: Session, row_cls: Any, domain_cls: type[T], claim_id: str, order_by: Any) -> list[T]:
        rows = session.exec(select(row_cls).where(row_cls.claim_id == claim_id).order_by(order_by, text("rowid"))).all()
        return [domain_cls.model_validate(r.model_dump()) for r in rows]  # type: ignore[attr-defined]

    async def get_claim_detail(self, claim_id: str) -> ClaimDetail | None:
        def op(session: Session) -> ClaimDetail | None:
            row = session.get(ClaimRow, claim_id)
            if row is None:
                return None
            project = session.get(ProjectRow, row.project_id)
            return ClaimDetail.model_validate(
                {
                    **row.model_dump(),
                    "project_name": project.name if project else None,
                    "photos": self._children(session, PhotoRow, PhotoEvidence, claim_id, PhotoRow.captured_at),
                    "voice_notes": self._children(session, VoiceNoteRow, VoiceNote, claim_id, VoiceNoteRow.captured_at),
                    "attachments": self._children(
                        session, AttachmentRow, Attachment, claim_id, AttachmentRow.captured_at
                    ),
                    "status_history": self._children(
                        session, StatusChangeRow, StatusChange, claim_id, StatusChangeRow.changed_at
                    ),
                }
            )

        return await self._read(op)

    async def list_claims(
        self,
        project_id: str | None = None,
        status: ClaimStatus | None = None,
    ) -> list[Claim]:
        def op(session: Session) -> list[Claim]:
            stmt = select(ClaimRow)
            if project_id is not None:
                stmt = stmt.where(ClaimRow.project_id == project_id)
            if status is not None:
                stmt = stmt.where(ClaimRow.status == ClaimStatus(status).value)
            rows = session.exec(stmt.order_by(ClaimRow.project_id, ClaimRow.sequence_number)).all()
            return [Claim.model_validate(r.model_dump()) for r in rows]

        return await self._read(op)

    async def list_claims_by_status(self, statuses: Iterable[ClaimStatus]) -> list[Claim]:
        values = [ClaimStatus(s).value for s in statuses]

        def op(session: Session) -> list[Claim]:
            rows = session.exec(
                select(ClaimRow)
                .where(col(ClaimRow.status).in_(values))
                .order_by(ClaimRow.project_id, ClaimRow.sequence_number)
            ).all()
            return [Claim.model_validate(r.model_dump()) for r in rows]

        return await self._read(op)

    async def update_claim(self, claim_id: str, update: ClaimUpdate) -> Claim:
        changes = update.model_dump(exclude_unset=True)

        def op(session: Session) -> Claim:
            row = _get_or_raise(session, ClaimRow, claim_id, "claim")
            if changes:
                for name, value in changes.items():
                    setattr(row, name, _column_value(value))
                _touch(row, self.clock.now())
                session.add(row)
            return Claim.model_validate(row.model_dump())

        return await self._write("update claim", op)

    async def delete_claim(self, claim_id: str) -> bool:
        def op(session: Session) -> bool:
            row = session.get(ClaimRow, claim_id)
            if row is None:
                return False
            now = self.clock.now()
            for notice in session.exec(select(NoticeRow).where(NoticeRow.claim_id == claim_id)).all():
                notice.claim_id = None
                _touch(notice, now)
                session.add(notice)
            session.delete(row)
            return True

        return await self._write("delete claim", op)

    # --- Artifacts ---

    def _refresh_evidence_hash(self, session: Session, claim: Any, now: datetime) -> None:
        digests: list[str] = []
        for row_cls in (PhotoRow, VoiceNoteRow, AttachmentRow):
            digests.extend(session.exec(select(row_cls.digest).where(row_cls.claim_id == claim.id)).all())
        claim.evidence_hash = evidence_hash(
            digests, datetime.fromisoformat(claim.captured_at), claim.latitude, claim.longitude
        )
        _touch(claim, now)
        session.add(claim)

    async def _add_artifact(self, claim_id: str, build: Callable[[datetime, datetime], T], operation: str) -> T:
        def op(session: Session) -> T:
            claim = _get_or_raise(session, ClaimRow, claim_id, "claim")
            now = self.clock.now()
            artifact = build(datetime.fromisoformat(claim.captured_at), now)
            session.add(_to_row(artifact, _ARTIFACT_ROWS[type(artifact)]))  # type: ignore[arg-type]
            session.flush()
            self._refresh_evidence_hash(session, claim, now)
            return artifact

        return await self._write(operation, op)

    async def add_photo(self, claim_id: str, photo: NewPhoto) -> PhotoEvidence:
        return await self._add_artifact(
            claim_id,
            lambda captured_at, now: self._artifact(PhotoEvidence, claim_id, photo, captured_at),
            "add photo",
        )

    async def add_voice_note(self, claim_id: str, voice_note: NewVoiceNote) -> VoiceNote:
        return await self._add_artifact(
            claim_id,
            lambda captured_at, now: self._artifact(VoiceNote, claim_id, voice_note, captured_at, updated_at=now),
            "add voice note",
        )

    async def add_attachment(self, claim_id: str, attachment: NewAttachment) -> Attachment:
        return await self._add_artifact(
            claim_id,
            lambda captured_at, now: self._artifact(Attachment, claim_id, attachment, captured_at),
            "add attachment",
        )

    async def list_photos(self, claim_id: str) -> list[PhotoEvidence]:
        return await self._read(
            lambda session: self._children(session, PhotoRow, PhotoEvidence, claim_id, PhotoRow.captured_at)
        )

    async def list_voice_notes(self, claim_id: str) -> list[VoiceNote]:
        return await self._read(
            lambda session: self._children(session, VoiceNoteRow, VoiceNote, claim_id, VoiceNoteRow.captured_at)
        )

    async def list_attachments(self, claim_id: str) -> list[Attachment]:
        return await self._read(
            lambda session: self._children(session, AttachmentRow, Attachment, claim_id, AttachmentRow.captured_at)
        )

    async def get_voice_note(self, voice_note_id: str) -> VoiceNote | None:
        def op(session: Session) -> VoiceNote | None:
            row = session.get(VoiceNoteRow, voice_note_id)
            return VoiceNote.model_validate(row.model_dump()) if row else None

        return await self._read(op)

    async def begin_transcription(self, voice_note_id: str) -> VoiceNote:
        def op(session: Session) -> VoiceNote:
            row = _get_or_raise(session, VoiceNoteRow, voice_note_id, "voice note")
            current = TranscriptionStatus(row.transcription_status)
            if current != TranscriptionStatus.NONE:
                raise InvalidTranscriptionState(f"Voice note {voice_note_id} transcription is already {current.value}")
            row.transcription_status = TranscriptionStatus.PENDING.value
            _touch(row, self.clock.now())
            session.add(row)
            return VoiceNote.model_validate(row.model_dump())

        return await self._write("begin transcription", op)

    async def complete_transcription(self, voice_note_id: str, text: str | None) -> VoiceNote:
        def op(session: Session) -> VoiceNote:
            row = _get_or_raise(session, VoiceNoteRow, voice_note_id, "voice note")
            current = TranscriptionStatus(row.transcription_status)
            if current != TranscriptionStatus.PENDING:
                raise InvalidTranscriptionState(
                    f"Voice note {voice_note_id} has no pending transcription (status {current.value})"
                )
            if text is None:
                row.transcription_status = TranscriptionStatus.FAILED.value
            else:
                row.transcription = text
                row.transcription_status = TranscriptionStatus.COMPLETE.value
            _touch(row, self.clock.now())
            session.add(row)
            return VoiceNote.model_validate(row.model_dump())

        return await self._write("complete transcription", op)

    # --- Status ---

    async def transition_status(
        self,
        claim_id: str,
        new_status: ClaimStatus,
        actor: str,
        note: str | None = None,
        authorize: TransitionCheck | None = None,
    ) -> StatusChange:
        target = ClaimStatus(new_status)

        def op(session: Session) -> StatusChange:
            row = _get_or_raise(session, ClaimRow, claim_id, "claim")
            current = ClaimStatus(row.status)
            validate_transition(current, target)
            if authorize is not None:
                authorize(current, target)
            now = self.clock.now()
            row.status = target.value
            _touch(row, now)
            session.add(row)
            change = StatusChange(
                id=_new_id(),
                claim_id=claim_id,
                from_status=current,
                to_status=target,
                actor=actor,
                changed_at=now,
                note=note,
            )
            session.add(_to_row(change, StatusChangeRow))
            return change

        change = await self._write("change status", op)
        logger.info("Claim %s moved %s -> %s by %s", claim_id, change.from_status.value, target.value, actor)
        return change

    async def get_status_history(self, claim_id: str) -> list[StatusChange]:
        return await self._read(
            lambda session: self._children(
                session, StatusChangeRow, StatusChange, claim_id, StatusChangeRow.changed_at
            )
        )

    # --- Notices ---

    async def create_notice(self, new_notice: NewNotice) -> Notice:
        def op(session: Session) -> Notice:
            _get_or_raise(session, ProjectRow, new_notice.project_id, "project")
            now = self.clock.now()
            sequence = self._max_sequence(session, NoticeRow, new_notice.project_id) + 1
            notice = Notice(
                **new_notice.model_dump(),
                id=_new_id(),
                sequence_number=sequence,
                notice_code=format_notice_code(sequence),
                created_at=now,
                updated_at=now,
            )
            session.add(_to_row(notice, NoticeRow))
            return notice

        notice = await self._write("create notice", op)
        logger.info("Created notice %s (%s) in project %s", notice.notice_code, notice.id, notice.project_id)
        return notice

    async def get_notice(self, notice_id: str) -> Notice | None:
        def op(session: Session) -> Notice | None:
            row = session.get(NoticeRow, notice_id)
            return Notice.model_validate(row.model_dump()) if row else None

        return await self._read(op)

    async def list_notices(self, project_id: str | None = None) -> list[Notice]:
        def op(session: Session) -> list[Notice]:
            stmt = select(NoticeRow)
            if project_id is not None:
                stmt = stmt.where(NoticeRow.project_id == project_id)
            rows = session.exec(stmt.order_by(NoticeRow.project_id, NoticeRow.sequence_number)).all()
            return [Notice.model_validate(r.model_dump()) for r in rows]

        return await self._read(op)

    async def transition_notice(self, notice_id: str, new_status: NoticeStatus) -> Notice:
        target = NoticeStatus(new_status)

        def op(session: Session) -> Notice:
            row = _get_or_raise(session, NoticeRow, notice_id, "notice")
            validate_notice_transition(NoticeStatus(row.status), target)
            now = self.clock.now()
            row.status = target.value
            if target == NoticeStatus.ISSUED:
                row.issued_at = _ts(now)
            elif target == NoticeStatus.ACKNOWLEDGED:
                row.acknowledged_at = _ts(now)
            _touch(row, now)
            session.add(row)
            return Notice.model_validate(row.model_dump())

        return await self._write("change notice status", op)

    def _link_notice(self, session: Session, notice_id: str, claim_id: str, now: datetime) -> Any:
        notice = _get_or_raise(session, NoticeRow, notice_id, "notice")
        claim = _get_or_raise(session, ClaimRow, claim_id, "claim")
        if notice.project_id != claim.project_id:
            raise InvariantViolation(f"Notice {notice_id} and claim {claim_id} belong to different projects")
        notice.claim_id = claim_id
        _touch(notice, now)
        session.add(notice)
        if claim.notice_id != notice_id:
            claim.notice_id = notice_id
            _touch(claim, now)
            session.add(claim)
        return notice

    async def link_notice(self, notice_id: str, claim_id: str) -> Notice:
        def op(session: Session) -> Notice:
            row = self._link_notice(session, notice_id, claim_id, self.clock.now())
            return Notice.model_validate(row.model_dump())

        return await self._write("link notice", op)

    # --- Reporting ---

    @staticmethod
    def _status_totals(session: Session, project_id: str | None) -> dict[ClaimStatus, tuple[int, int]]:
        stmt = select(
            ClaimRow.status,
            func.count(ClaimRow.id),
            func.coalesce(func.sum(ClaimRow.estimated_value), 0),
        )
        if project_id is not None:
            stmt = stmt.where(ClaimRow.project_id == project_id)
        rows = session.exec(stmt.group_by(ClaimRow.status)).all()
        return {ClaimStatus(status): (count, total) for status, count, total in rows}

    async def dashboard_stats(self, project_id: str | None = None) -> DashboardStats:
        def op(session: Session) -> DashboardStats:
            totals = self._status_totals(session, project_id)

            def count(status: ClaimStatus) -> int:
                return totals.get(status, (0, 0))[0]

            return DashboardStats(
                total_claims=sum(c for c, _ in totals.values()),
                total_value=sum(v for _, v in totals.values()),
                at_risk_value=sum(totals.get(s, (0, 0))[1] for s in AT_RISK_STATUSES),
                approved_count=count(ClaimStatus.APPROVED),
                disputed_count=count(ClaimStatus.DISPUTED),
                paid_count=count(ClaimStatus.PAID),
            )

        return await self._read(op)

    async def status_summary(self, project_id: str | None = None) -> list[StatusSummary]:
        def op(session: Session) -> list[StatusSummary]:
            totals = self._status_totals(session, project_id)
            return [
                StatusSummary(status=status, count=totals.get(status, (0, 0))[0], total_value=totals.get(status, (0, 0))[1])
                for status in ClaimStatus
            ]

        return await self._read(op)

    async def sync_backlog(self) -> SyncBacklog:
        def op(session: Session) -> SyncBacklog:
            pending: dict[str, int] = {}
            failed: dict[str, int] = {}
            for table, row_cls in ROW_MODELS.items():
                counts = dict(
                    session.exec(
                        select(row_cls.sync_status, func.count(row_cls.id)).group_by(row_cls.sync_status)
                    ).all()
                )
                if counts.get(SyncState.PENDING.value):
                    pending[table] = counts[SyncState.PENDING.value]
                if counts.get(SyncState.FAILED.value):
                    failed[table] = counts[SyncState.FAILED.value]
            return SyncBacklog(pending=pending, failed=failed)

        return await self._read(op)

    async def pending_sync_count(self) -> int:
        return (await self.sync_backlog()).pending_total

    # --- Integrity ---

    async def verify_claim_integrity(self, claim_id: str) -> IntegrityReport:
        detail = await self.get_claim_detail(claim_id)
        if detail is None:
            raise RecordNotFoundError("claim", claim_id)
        report = await asyncio.to_thread(_check_integrity, detail)
        if not report.ok:
            logger.warning("Integrity check failed for claim %s", detail.claim_code)
        return report

    # --- Reconciliation support ---

    async def pending_rows(self, table: str) -> list[RowDict]:
        row_cls = _row_model(table)
        order = row_cls.changed_at if _has_column(row_cls, "changed_at") else text("rowid")

        def op(session: Session) -> list[RowDict]:
            rows = session.exec(
                select(row_cls).where(row_cls.sync_status == SyncState.PENDING.value).order_by(order)
            ).all()
            return [r.model_dump() for r in rows]

        return await self._read(op)

    async def get_row(self, table: str, row_id: str) -> RowDict | None:
        row_cls = _row_model(table)

        def op(session: Session) -> RowDict | None:
            row = session.get(row_cls, row_id)
            return row.model_dump() if row else None

        return await self._read(op)

    async def list_ids(self, table: str) -> list[str]:
        row_cls = _row_model(table)
        return await self._read(lambda session: list(session.exec(select(row_cls.id)).all()))

    def _set_sync_state(
        self,
        table: str,
        row_id: str,
        state: SyncState,
        expected_updated_at: str | None,
        server_updated_at: str | None = None,
    ) -> Callable[[Session], bool]:
        row_cls = _row_model(table)
        versioned = _has_column(row_cls, "updated_at")

        def op(session: Session) -> bool:
            row = session.get(row_cls, row_id)
            if row is None or row.sync_status != SyncState.PENDING.value:
                return False
            if versioned and expected_updated_at is not None and row.updated_at != expected_updated_at:
                return False
            row.sync_status = state.value
            if versioned and server_updated_at is not None:
                row.updated_at = _normalize_timestamp(server_updated_at)
            session.add(row)
            return True

        return op

    async def mark_synced(
        self,
        table: str,
        row_id: str,
        expected_updated_at: str | None = None,
        server_updated_at: str | None = None,
    ) -> bool:
        return await self._write(
            f"mark {table} synced",
            self._set_sync_state(table, row_id, SyncState.SYNCED, expected_updated_at, server_updated_at),
        )

    async def mark_failed(self, table: str, row_id: str, expected_updated_at: str | None = None) -> bool:
        return await self._write(
            f"mark {table} failed",
            self._set_sync_state(table, row_id, SyncState.FAILED, expected_updated_at),
        )

    async def requeue_failed(self, table: str | None = None) -> int:
        tables = [table] if table is not None else list(ROW_MODELS)
        row_classes = [_row_model(t) for t in tables]

        def op(session: Session) -> int:
            moved = 0
            for row_cls in row_classes:
                for row in session.exec(select(row_cls).where(row_cls.sync_status == SyncState.FAILED.value)).all():
                    row.sync_status = SyncState.PENDING.value
                    session.add(row)
                    moved += 1
            return moved

        moved = await self._write("requeue failed rows", op)
        if moved:
            logger.info("Requeued %d failed rows for reconciliation", moved)
        return moved

    async def record_remote_uri(self, table: str, row_id: str, uri: str) -> None:
        row_cls = _row_model(table)
        if not _has_column(row_cls, "remote_uri"):
            raise ValueError(f"Table {table!r} has no remote file")

        def op(session: Session) -> None:
            row = _get_or_raise(session, row_cls, row_id, table)
            row.remote_uri = uri
            session.add(row)

        await self._write(f"record {table} upload", op)

    @staticmethod
    def _check_remote_sequence(session: Session, table: str, row_cls: Any, incoming: RowDict) -> None:
        if not _has_column(row_cls, "sequence_number"):
            return
        clash = session.exec(
            select(row_cls.id).where(
                row_cls.project_id == incoming.get("project_id"),
                row_cls.sequence_number == incoming.get("sequence_number"),
                row_cls.id != incoming["id"],
            )
        ).first()
        if clash is not None:
            raise DuplicateSequenceError(
                f"Remote {table} row {incoming['id']} reuses sequence {incoming.get('sequence_number')} "
                f"already held locally by {clash}"
            )

    async def apply_remote(
        self,
        table: str,
        row: RowDict,
        decide: Callable[[RowDict | None, RowDict], PullAction],
    ) -> PullAction:
        row_cls = _row_model(table)
        columns = set(row_cls.__table__.columns.keys()) - LOCAL_ONLY_COLUMNS
        try:
            incoming = {
                name: _normalize_timestamp(value) if name in TIMESTAMP_COLUMNS else value
                for name, value in row.items()
                if name in columns
            }
            DOMAIN_MODELS[table].model_validate({**incoming, "sync_status": SyncState.SYNCED.value})
        except (ValidationError, ValueError, TypeError) as e:
            raise InvariantViolation(f"Remote {table} row {row.get('id')} is invalid: {e}") from e

        def op(session: Session) -> PullAction:
            existing = session.get(row_cls, incoming["id"])
            action = PullAction(decide(existing.model_dump() if existing else None, incoming))
            if action == PullAction.INSERT:
                self._check_remote_sequence(session, table, row_cls, incoming)
                session.add(row_cls(**incoming, sync_status=SyncState.SYNCED.value))
            elif action == PullAction.UPDATE:
                self._check_remote_sequence(session, table, row_cls, incoming)
                for name, value in incoming.items():
                    setattr(existing, name, value)
                existing.sync_status = SyncState.SYNCED.value
                session.add(existing)
            return action

        return await self._write(f"apply remote {table}", op)
