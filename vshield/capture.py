"""Capture flow: hash the captured files, persist the claim, hand off voice notes."""

import asyncio
import logging
import os
from datetime import datetime
from typing import Iterable, Optional

from pydantic import BaseModel, Field

from vshield.domain import ClaimDetail, NewAttachment, NewClaim, NewPhoto, NewVoiceNote
from vshield.errors import VShieldError
from vshield.hashing import digest_file, digest_file_or_sentinel
from vshield.storage.interfaces import RecordStoreInterface
from vshield.transcription import TranscriptionQueue

logger = logging.getLogger(__name__)


class CapturedFile(BaseModel, frozen=True):
    """A file produced by the device's camera, recorder or document picker."""

    path: str
    captured_at: datetime | None = None
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)


class PhotoCapture(CapturedFile):
    width: int | None = None
    height: int | None = None


class VoiceCapture(CapturedFile):
    duration_seconds: float = 0.0


class DocumentCapture(CapturedFile):
    file_name: str | None = Field(default=None, description="Defaults to the file's base name.")
    mime_type: str | None = None


class ClaimCaptureService:
    """
    Turns a draft claim plus captured files into a persisted claim.

    Files are hashed off the event loop before anything is written. An
    unreadable file aborts the capture with `ArtifactReadError`, unless
    `allow_degraded` is set, in which case the `hash-failed` sentinel is stored
    for that file and the claim is reported as integrity-degraded.
    """

    def __init__(
        self,
        store: RecordStoreInterface,
        transcription_queue: Optional[TranscriptionQueue] = None,
        allow_degraded: bool = False,
    ):
        self.store = store
        self.transcription_queue = transcription_queue
        self.allow_degraded = allow_degraded

    async def _digest(self, path: str, allow_degraded: bool) -> str:
        return await asyncio.to_thread(digest_file_or_sentinel if allow_degraded else digest_file, path)

    async def capture(
        self,
        draft: NewClaim,
        photos: Iterable[PhotoCapture] = (),
        voice_notes: Iterable[VoiceCapture] = (),
        documents: Iterable[DocumentCapture] = (),
        actor: str = "system",
        allow_degraded: bool | None = None,
    ) -> ClaimDetail:
        degraded_ok = self.allow_degraded if allow_degraded is None else allow_degraded

        new_photos = [
            NewPhoto(
                local_path=p.path,
                digest=await self._digest(p.path, degraded_ok),
                captured_at=p.captured_at,
                latitude=p.latitude,
                longitude=p.longitude,
                width=p.width,
                height=p.height,
            )
            for p in photos
        ]
        new_voice_notes = [
            NewVoiceNote(
                local_path=v.path,
                digest=await self._digest(v.path, degraded_ok),
                captured_at=v.captured_at,
                latitude=v.latitude,
                longitude=v.longitude,
                duration_seconds=v.duration_seconds,
            )
            for v in voice_notes
        ]
        new_attachments = []
        for d in documents:
            digest = await self._digest(d.path, degraded_ok)
            try:
                size: int | None = os.path.getsize(d.path)
            except OSError:
                size = None
            new_attachments.append(
                NewAttachment(
                    local_path=d.path,
                    digest=digest,
                    captured_at=d.captured_at,
                    latitude=d.latitude,
                    longitude=d.longitude,
                    file_name=d.file_name or os.path.basename(d.path),
                    file_size=size,
                    mime_type=d.mime_type,
                )
            )

        detail = await self.store.create_claim(draft, new_photos, new_voice_notes, new_attachments, actor=actor)

        if self.transcription_queue is not None:
            for note in detail.voice_notes:
                try:
                    await self.transcription_queue.enqueue(note.id)
                except VShieldError as e:
                    logger.warning("Could not queue voice note %s for transcription: %s", note.id, e)
        return detail
