"""Exception hierarchy for the evidence store.

Errors fall into four groups, each handled differently by callers:

- **Integrity errors** (`EvidenceIntegrityError`): an artifact could not be
  hashed. These always surface; a digest is never invented to cover them.
- **Invariant violations** (`InvariantViolation`): an illegal status move,
  a duplicate sequence number, and so on. Rejected synchronously.
- **Local storage errors** (`StoreWriteError`): the compound write was rolled
  back in full, so the caller can report that nothing was lost and retry.
- **Remote errors** (`RemoteError`): raised by backends during reconciliation
  and absorbed by the reconciler, never by interactive flows.
"""


class VShieldError(Exception):
    """Base class for all errors raised by this package."""


class EvidenceIntegrityError(VShieldError):
    """An integrity proof could not be produced or checked."""


class ArtifactReadError(EvidenceIntegrityError):
    """The artifact file could not be read for hashing."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot read artifact {path!r}: {reason}")


class InvariantViolation(VShieldError):
    """A write was rejected because it would break a domain invariant."""


class InvalidTransition(InvariantViolation):
    """The requested status is not an allowed successor of the current one."""

    def __init__(self, from_status: str, to_status: str) -> None:
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Transition {from_status} -> {to_status} is not allowed")


class TransitionNotPermitted(InvariantViolation):
    """The transition exists but the actor's role may not perform it."""

    def __init__(self, role: str, from_status: str, to_status: str) -> None:
        self.role = role
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Role {role!r} may not move a record from {from_status} to {to_status}")


class DuplicateSequenceError(InvariantViolation):
    """A sequence number is already taken within the project."""


class InvalidTranscriptionState(InvariantViolation):
    """A voice note transcription step was requested out of order."""


class RecordNotFoundError(VShieldError, LookupError):
    """A referenced record does not exist in the local store."""

    def __init__(self, kind: str, record_id: str) -> None:
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} {record_id!r} not found")


class StoreWriteError(VShieldError):
    """A local write failed and was rolled back; no data was changed."""

    def __init__(self, operation: str, cause: Exception | None = None) -> None:
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Could not save ({operation}); nothing was saved and the attempt can be retried{detail}")


class SchemaVersionError(VShieldError):
    """The database schema is newer than this code understands."""


class RemoteError(VShieldError):
    """Base class for failures talking to the remote backend."""


class TransientRemoteError(RemoteError):
    """Network or server-side failure; the operation may succeed later."""


class RemoteRejectedError(RemoteError):
    """The backend refused the request; retrying unchanged will not help."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)
