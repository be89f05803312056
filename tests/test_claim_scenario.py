"""End-to-end: capture a claim on site, walk it to payment, and reconcile.

The foreman captures a verbal direction offline with a photo and a voice
note. The QS submits it, the client disputes it, it is resubmitted, approved
and paid. Once the device is back online everything reaches the server, and
the audit trail replays to the final status.

A second claim with two photos keeps its evidence hash across reloads and
cannot jump from submitted straight to paid.
"""

import pytest

from tests.conftest import make_claim, write_evidence
from vshield.capture import ClaimCaptureService, PhotoCapture, VoiceCapture
from vshield.domain import Actor, ClaimStatus, Role
from vshield.errors import InvalidTransition
from vshield.hashing import digest_bytes, evidence_hash
from vshield.lifecycle import StatusLifecycleEngine, replay_history

FOREMAN = Actor(name="Sam (foreman)", role=Role.FIELD)
QS = Actor(name="Priya (QS)", role=Role.OFFICE)


async def test_claim_from_capture_to_payment(store, project, remote, monitor, reconciler, evidence_dir):
    monitor.set_connected(False)
    photo = write_evidence(evidence_dir, "pit.jpg", b"pit clashes with footing")
    voice = write_evidence(evidence_dir, "direction.m4a", b"move it two metres north")

    detail = await ClaimCaptureService(store).capture(
        make_claim(project.id),
        photos=[PhotoCapture(path=photo)],
        voice_notes=[VoiceCapture(path=voice, duration_seconds=14.0)],
        actor=FOREMAN.name,
    )
    assert detail.claim_code == "VAR-001"
    offline = await reconciler.reconcile()
    assert not offline.success
    assert remote.upserts == []

    engine = StatusLifecycleEngine(store)
    await engine.transition(detail.id, ClaimStatus.SUBMITTED, FOREMAN)
    await engine.transition(detail.id, ClaimStatus.DISPUTED, QS, note="Client says pit was shown on IFC drawings")
    await engine.transition(detail.id, ClaimStatus.SUBMITTED, QS, note="Resubmitted with survey")
    await engine.transition(detail.id, ClaimStatus.APPROVED, QS)
    await engine.transition(detail.id, ClaimStatus.PAID, QS)

    with pytest.raises(InvalidTransition):
        await engine.transition(detail.id, ClaimStatus.DISPUTED, QS)

    history = await engine.history(detail.id)
    assert [h.to_status for h in history] == [
        ClaimStatus.CAPTURED,
        ClaimStatus.SUBMITTED,
        ClaimStatus.DISPUTED,
        ClaimStatus.SUBMITTED,
        ClaimStatus.APPROVED,
        ClaimStatus.PAID,
    ]
    assert replay_history(history) == ClaimStatus.PAID
    assert (await store.verify_claim_integrity(detail.id)).ok

    monitor.set_connected(True)
    online = await reconciler.reconcile()

    assert online.success
    assert online.failed == 0
    assert await store.pending_sync_count() == 0
    assert remote.tables["claims"][detail.id]["status"] == "paid"
    assert len(remote.tables["status_changes"]) == 6
    assert len(remote.uploads) == 2

    stats = await store.dashboard_stats(project.id)
    assert stats.paid_count == 1
    assert stats.at_risk_value == 0


async def test_two_photo_claim_lifecycle(store, project, evidence_dir):
    """A two-photo claim keeps its evidence hash and refuses to skip approval."""
    first = write_evidence(evidence_dir, "before.jpg", b"pit before relocation")
    second = write_evidence(evidence_dir, "after.jpg", b"pit after relocation")
    draft = make_claim(project.id)

    captured = await ClaimCaptureService(store).capture(
        draft,
        photos=[PhotoCapture(path=first), PhotoCapture(path=second)],
        actor=FOREMAN.name,
    )

    reloaded = await store.get_claim_detail(captured.id)
    expected = evidence_hash(
        [digest_bytes(b"pit before relocation"), digest_bytes(b"pit after relocation")],
        reloaded.captured_at,
        draft.latitude,
        draft.longitude,
    )
    assert len(reloaded.photos) == 2
    assert reloaded.evidence_hash == expected
    assert (await store.get_claim_detail(captured.id)).evidence_hash == expected

    engine = StatusLifecycleEngine(store)
    await engine.transition(captured.id, ClaimStatus.SUBMITTED, FOREMAN)
    assert len(await engine.history(captured.id)) == 2

    with pytest.raises(InvalidTransition):
        await engine.transition(captured.id, ClaimStatus.PAID, QS)
    assert (await store.get_claim(captured.id)).status == ClaimStatus.SUBMITTED
    assert len(await engine.history(captured.id)) == 2

    await engine.transition(captured.id, ClaimStatus.APPROVED, QS)
    await engine.transition(captured.id, ClaimStatus.PAID, QS)
    history = await engine.history(captured.id)
    assert [h.to_status for h in history] == [
        ClaimStatus.CAPTURED,
        ClaimStatus.SUBMITTED,
        ClaimStatus.APPROVED,
        ClaimStatus.PAID,
    ]
    assert replay_history(history) == ClaimStatus.PAID

    with pytest.raises(InvalidTransition):
        await engine.transition(captured.id, ClaimStatus.DISPUTED, QS)
    assert (await store.get_claim_detail(captured.id)).evidence_hash == expected
    assert (await store.verify_claim_integrity(captured.id)).ok
