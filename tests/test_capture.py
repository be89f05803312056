"""Tests for the capture flow.

This module verifies:
- Captured files are hashed and the claim is persisted with their digests
- An unreadable file aborts the capture and nothing is persisted
- The degraded mode stores the hash-failed sentinel and reports it
- Voice notes are handed to the transcription queue
"""

import pytest

from tests.conftest import make_claim, write_evidence
from vshield.capture import ClaimCaptureService, DocumentCapture, PhotoCapture, VoiceCapture
from vshield.domain import TranscriptionStatus
from vshield.errors import ArtifactReadError
from vshield.hashing import HASH_FAILED, digest_bytes
from vshield.transcription import TranscriberInterface, TranscriptionQueue


class EchoTranscriber(TranscriberInterface):
    async def transcribe(self, path: str) -> str | None:
        return f"transcript of {path.rsplit('/', 1)[-1]}"


class TestClaimCaptureService:
    """Tests for ClaimCaptureService.capture."""

    async def test_hashes_and_persists(self, store, project, evidence_dir):
        photo = write_evidence(evidence_dir, "pit.jpg", b"pit photo")
        doc = write_evidence(evidence_dir, "SI-014.pdf", b"%PDF-1.7 instruction")
        service = ClaimCaptureService(store)

        detail = await service.capture(
            make_claim(project.id),
            photos=[PhotoCapture(path=photo, width=4032, height=3024)],
            documents=[DocumentCapture(path=doc, mime_type="application/pdf")],
            actor="sam",
        )

        assert detail.photos[0].digest == digest_bytes(b"pit photo")
        assert detail.photos[0].width == 4032
        attachment = detail.attachments[0]
        assert attachment.file_name == "SI-014.pdf"
        assert attachment.file_size == len(b"%PDF-1.7 instruction")
        assert not detail.integrity_degraded
        assert (await store.verify_claim_integrity(detail.id)).ok

    async def test_unreadable_file_saves_nothing(self, store, project, evidence_dir):
        service = ClaimCaptureService(store)

        with pytest.raises(ArtifactReadError):
            await service.capture(
                make_claim(project.id),
                photos=[PhotoCapture(path=str(evidence_dir / "never-written.jpg"))],
            )

        assert await store.list_claims(project.id) == []
        assert await store.next_sequence(project.id) == 1

    async def test_degraded_capture_is_flagged(self, store, project, evidence_dir):
        service = ClaimCaptureService(store, allow_degraded=True)
        good = write_evidence(evidence_dir, "ok.jpg", b"ok")

        detail = await service.capture(
            make_claim(project.id),
            photos=[PhotoCapture(path=good), PhotoCapture(path=str(evidence_dir / "lost.jpg"))],
        )

        assert sorted(p.digest for p in detail.photos) == sorted([digest_bytes(b"ok"), HASH_FAILED])
        assert detail.integrity_degraded
        report = await store.verify_claim_integrity(detail.id)
        assert not report.ok
        assert "digest was not available at capture" in [a.reason for a in report.artifacts]

    async def test_degraded_is_opt_in_per_call(self, store, project, evidence_dir):
        service = ClaimCaptureService(store)
        detail = await service.capture(
            make_claim(project.id),
            voice_notes=[VoiceCapture(path=str(evidence_dir / "lost.m4a"))],
            allow_degraded=True,
        )
        assert detail.voice_notes[0].digest == HASH_FAILED

    async def test_voice_notes_are_queued(self, store, project, evidence_dir):
        voice = write_evidence(evidence_dir, "note.m4a", b"voice")

        async with TranscriptionQueue(store, EchoTranscriber()) as queue:
            service = ClaimCaptureService(store, transcription_queue=queue)
            detail = await service.capture(
                make_claim(project.id), voice_notes=[VoiceCapture(path=voice, duration_seconds=8.0)]
            )
            await queue.join()

        note = await store.get_voice_note(detail.voice_notes[0].id)
        assert note.transcription_status == TranscriptionStatus.COMPLETE
        assert note.transcription == "transcript of note.m4a"
        assert note.duration_seconds == 8.0
