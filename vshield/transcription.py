"""Background transcription of voice notes.

Capture hands each new voice note to a `TranscriptionQueue`. Workers call the
configured transcriber and store the outcome; a failure only marks the note's
transcription as failed and never touches the claim it belongs to.
"""

import asyncio
import logging
from abc import ABC, abstractmethod

from vshield.domain import VoiceNote
from vshield.errors import VShieldError
from vshield.storage.interfaces import RecordStoreInterface

logger = logging.getLogger(__name__)


class TranscriberInterface(ABC):
    """Speech-to-text collaborator."""

    @abstractmethod
    async def transcribe(self, path: str) -> str | None:
        """Return the transcript of the audio file at `path`, or None if none could be produced."""


class TranscriptionQueue:
    """
    Queue of voice note ids waiting for transcription, drained by worker tasks.

    Example:
        ```python
        async with TranscriptionQueue(store, transcriber) as queue:
            await queue.enqueue(voice_note.id)
            await queue.join()
        ```
    """

    def __init__(self, store: RecordStoreInterface, transcriber: TranscriberInterface, workers: int = 1):
        self.store = store
        self.transcriber = transcriber
        self.workers = workers
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        if self._tasks:
            return
        for _ in range(self.workers):
            self._tasks.append(asyncio.create_task(self._worker_loop()))
        logger.info("Started %s transcription worker(s)", self.workers)

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("Stopped transcription workers")

    async def enqueue(self, voice_note_id: str) -> VoiceNote:
        """Mark a voice note's transcription pending and queue it.

        Raises:
            InvalidTranscriptionState: a transcription was already started for this note.
        """
        note = await self.store.begin_transcription(voice_note_id)
        await self._queue.put(voice_note_id)
        return note

    async def join(self) -> None:
        """Wait until every queued voice note has been processed."""
        await self._queue.join()

    async def _worker_loop(self) -> None:
        while True:
            voice_note_id = await self._queue.get()
            try:
                await self._process(voice_note_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("Transcription worker error for %s: %s", voice_note_id, e)
            finally:
                self._queue.task_done()

    async def _process(self, voice_note_id: str) -> None:
        note = await self.store.get_voice_note(voice_note_id)
        if note is None:
            logger.warning("Voice note not found: %s", voice_note_id)
            return
        text: str | None = None
        if note.local_path is None:
            logger.warning("Voice note %s has no local audio file", voice_note_id)
        else:
            try:
                text = await self.transcriber.transcribe(note.local_path)
            except Exception as e:
                logger.error("Transcription of %s failed: %s", voice_note_id, e)
        try:
            await self.store.complete_transcription(voice_note_id, text)
        except VShieldError as e:
            logger.error("Could not store transcription for %s: %s", voice_note_id, e)
            return
        if text is None:
            logger.warning("Transcription of voice note %s marked failed", voice_note_id)

    async def __aenter__(self) -> "TranscriptionQueue":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()
