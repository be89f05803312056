"""Status lifecycle for claims and notices.

The transition table below is the single authority on which status moves are
legal. The store calls `validate_transition` inside the same transaction that
applies the move, so the check and the write cannot be separated by another
writer. Role checks (`authorize_transition`) are a policy layered on top and
never widen the table.

    captured  -> submitted, disputed
    submitted -> approved, disputed
    approved  -> paid, disputed
    disputed  -> submitted, approved
    paid      -> (terminal)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, Mapping

from vshield.domain import Actor, ClaimStatus, NoticeStatus, Role, StatusChange
from vshield.errors import InvalidTransition, TransitionNotPermitted

if TYPE_CHECKING:
    from vshield.storage.interfaces import RecordStoreInterface

INITIAL_STATUS = ClaimStatus.CAPTURED

ALLOWED_TRANSITIONS: Mapping[ClaimStatus, frozenset[ClaimStatus]] = {
    ClaimStatus.CAPTURED: frozenset({ClaimStatus.SUBMITTED, ClaimStatus.DISPUTED}),
    ClaimStatus.SUBMITTED: frozenset({ClaimStatus.APPROVED, ClaimStatus.DISPUTED}),
    ClaimStatus.APPROVED: frozenset({ClaimStatus.PAID, ClaimStatus.DISPUTED}),
    ClaimStatus.DISPUTED: frozenset({ClaimStatus.SUBMITTED, ClaimStatus.APPROVED}),
    ClaimStatus.PAID: frozenset(),
}

# Field staff may only send their own captures up for review.
ROLE_TRANSITIONS: Mapping[Role, frozenset[tuple[ClaimStatus, ClaimStatus]] | None] = {
    Role.ADMIN: None,
    Role.OFFICE: None,
    Role.FIELD: frozenset({(ClaimStatus.CAPTURED, ClaimStatus.SUBMITTED)}),
}

NOTICE_TRANSITIONS: Mapping[NoticeStatus, frozenset[NoticeStatus]] = {
    NoticeStatus.DRAFT: frozenset({NoticeStatus.ISSUED}),
    NoticeStatus.ISSUED: frozenset({NoticeStatus.ACKNOWLEDGED}),
    NoticeStatus.ACKNOWLEDGED: frozenset(),
}


def allowed_successors(status: ClaimStatus) -> frozenset[ClaimStatus]:
    return ALLOWED_TRANSITIONS[ClaimStatus(status)]


def is_terminal(status: ClaimStatus) -> bool:
    return not allowed_successors(status)


def validate_transition(from_status: ClaimStatus, to_status: ClaimStatus) -> None:
    """Raise `InvalidTransition` unless `to_status` may follow `from_status`."""
    from_status = ClaimStatus(from_status)
    to_status = ClaimStatus(to_status)
    if to_status not in ALLOWED_TRANSITIONS[from_status]:
        raise InvalidTransition(from_status.value, to_status.value)


def authorize_transition(role: Role, from_status: ClaimStatus, to_status: ClaimStatus) -> None:
    """Raise `TransitionNotPermitted` if `role` may not perform this move."""
    permitted = ROLE_TRANSITIONS[Role(role)]
    if permitted is not None and (ClaimStatus(from_status), ClaimStatus(to_status)) not in permitted:
        raise TransitionNotPermitted(Role(role).value, ClaimStatus(from_status).value, ClaimStatus(to_status).value)


def validate_notice_transition(from_status: NoticeStatus, to_status: NoticeStatus) -> None:
    from_status = NoticeStatus(from_status)
    to_status = NoticeStatus(to_status)
    if to_status not in NOTICE_TRANSITIONS[from_status]:
        raise InvalidTransition(from_status.value, to_status.value)


def replay_history(history: Iterable[StatusChange]) -> ClaimStatus:
    """Rebuild a claim's current status from its audit trail.

    The trail must start with the initial entry (no prior status) and every
    following entry must continue from the status the previous one reached.

    Raises:
        ValueError: the trail is empty or broken.
        InvalidTransition: an entry records a move the table does not allow.
    """
    current: ClaimStatus | None = None
    for change in history:
        if current is None:
            if change.from_status is not None or change.to_status != INITIAL_STATUS:
                raise ValueError(f"audit trail must start with None -> {INITIAL_STATUS.value}")
        else:
            if change.from_status != current:
                raise ValueError(
                    f"audit trail broken at {change.id}: expected from {current.value}, "
                    f"got {change.from_status.value if change.from_status else None}"
                )
            validate_transition(current, change.to_status)
        current = change.to_status
    if current is None:
        raise ValueError("audit trail is empty")
    return current


class StatusLifecycleEngine:
    """Applies claim status transitions on behalf of an actor.

    Example:
        ```python
        engine = StatusLifecycleEngine(store)
        await engine.transition(claim.id, ClaimStatus.SUBMITTED, Actor(name="sam", role=Role.FIELD))
        ```
    """

    def __init__(self, store: RecordStoreInterface) -> None:
        self._store = store

    async def transition(
        self,
        claim_id: str,
        new_status: ClaimStatus,
        actor: Actor,
        note: str | None = None,
    ) -> StatusChange:
        """Move a claim to `new_status` and append one audit entry.

        Raises:
            RecordNotFoundError: the claim does not exist.
            InvalidTransition: the move is not in the transition table.
            TransitionNotPermitted: the actor's role may not make this move.
        """
        return await self._store.transition_status(
            claim_id,
            ClaimStatus(new_status),
            actor=actor.name,
            note=note,
            authorize=lambda current, target: authorize_transition(actor.role, current, target),
        )

    async def history(self, claim_id: str) -> list[StatusChange]:
        return await self._store.get_status_history(claim_id)

    async def can_transition(self, claim_id: str, new_status: ClaimStatus, actor: Actor) -> bool:
        """Whether `actor` could move the claim to `new_status` right now."""
        claim = await self._store.get_claim(claim_id)
        if claim is None:
            return False
        try:
            validate_transition(claim.status, new_status)
            authorize_transition(actor.role, claim.status, new_status)
        except (InvalidTransition, TransitionNotPermitted):
            return False
        return True
