"""Forward-only schema migrations.

Migrations are applied in order inside a single transaction when the store is
opened; the `schema_version` row records the last one applied. A database
written by a newer release is refused rather than guessed at.
"""

import logging
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy import Connection, inspect, text
from sqlmodel import SQLModel

from vshield.errors import SchemaVersionError
from vshield.storage.tables import (
    AttachmentRow,
    ClaimRow,
    NoticeRow,
    PhotoRow,
    ProjectRow,
    SchemaVersion,
    StatusChangeRow,
    VoiceNoteRow,
)

logger = logging.getLogger(__name__)


def _create_core_tables(conn: Connection) -> None:
    tables = [
        ProjectRow.__table__,
        ClaimRow.__table__,
        PhotoRow.__table__,
        VoiceNoteRow.__table__,
        AttachmentRow.__table__,
        StatusChangeRow.__table__,
    ]
    SQLModel.metadata.create_all(conn, tables=tables)  # type: ignore[arg-type]


def _create_notices(conn: Connection) -> None:
    SQLModel.metadata.create_all(conn, tables=[NoticeRow.__table__])  # type: ignore[list-item]


MIGRATIONS: list[tuple[int, str, Callable[[Connection], None]]] = [
    (1, "core tables", _create_core_tables),
    (2, "variation notices", _create_notices),
]

LATEST_VERSION = MIGRATIONS[-1][0]


def current_version(conn: Connection) -> int:
    if not inspect(conn).has_table(SchemaVersion.__tablename__):
        return 0
    row = conn.execute(text("SELECT version FROM schema_version WHERE id = 1")).first()
    return int(row[0]) if row else 0


def apply_migrations(conn: Connection) -> int:
    """Bring the schema up to `LATEST_VERSION`. Returns the resulting version.

    The caller owns the transaction; any failure leaves the schema untouched.

    Raises:
        SchemaVersionError: the database is newer than this code.
    """
    SQLModel.metadata.create_all(conn, tables=[SchemaVersion.__table__])  # type: ignore[list-item]
    version = current_version(conn)
    if version > LATEST_VERSION:
        raise SchemaVersionError(
            f"Database schema version {version} is newer than supported version {LATEST_VERSION}"
        )
    for target, description, migrate in MIGRATIONS:
        if target <= version:
            continue
        logger.info("Applying migration %d (%s)", target, description)
        migrate(conn)
        version = target
    stamp = datetime.now(timezone.utc).isoformat()
    conn.execute(
        text(
            "INSERT INTO schema_version (id, version, applied_at) VALUES (1, :v, :at) "
            "ON CONFLICT(id) DO UPDATE SET version = excluded.version, applied_at = excluded.applied_at"
        ),
        {"v": version, "at": stamp},
    )
    return version
