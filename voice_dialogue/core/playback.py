from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from voice_dialogue.audio.output import AudioOutput, decode_audio
from voice_dialogue.errors import PlaybackError

logger = logging.getLogger(__name__)

MS_PER_CHARACTER = 50


def estimate_duration_ms(text: str) -> int:
    """Rough speaking time of *text*, reported to the dialogue service."""
    return len(text) * MS_PER_CHARACTER


@dataclass(frozen=True)
class PlaybackHandle:
    id: int
    text: str = ""
    estimated_duration_ms: int = 0


FinishedCallback = Callable[[PlaybackHandle], None]
ErrorCallback = Callable[[PlaybackHandle, PlaybackError], None]


class PlaybackController:
    """Keeps at most one synthesized reply playing.

    `play()` never raises for playback problems: a blocked, undecodable or
    unplayable reply is reported through ``on_error`` on the event loop after
    `play()` has returned, and the handle is released as though playback had
    ended at once. `stop()` is synchronous and idempotent, and a stopped handle
    never reports completion.

    Host policy may forbid audio output until the user has interacted once in
    the session; that is modelled by the unlock flag, which is required before
    the first playback when ``require_unlock`` is set.
    """

    def __init__(self, output: AudioOutput, *, require_unlock: bool = True) -> None:
        self._output = output
        self._require_unlock = require_unlock
        self._unlocked = not require_unlock
        self._handle: Optional[PlaybackHandle] = None
        self._on_finished: Optional[FinishedCallback] = None
        self._on_error: Optional[ErrorCallback] = None
        self._counter = 0

    # ------------------------------------------------------------------
    # Capability flag
    # ------------------------------------------------------------------
    def unlock(self) -> None:
        if not self._unlocked:
            logger.info("[Playback] audio output unlocked")
        self._unlocked = True

    def lock(self) -> None:
        if self._require_unlock:
            self._unlocked = False

    @property
    def is_unlocked(self) -> bool:
        return self._unlocked

    # ------------------------------------------------------------------
    # Playback
    # ------------------------------------------------------------------
    @property
    def current(self) -> Optional[PlaybackHandle]:
        return self._handle

    @property
    def is_playing(self) -> bool:
        return self._handle is not None

    def play(
        self,
        audio: bytes,
        text: str = "",
        *,
        on_finished: Optional[FinishedCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> PlaybackHandle:
        self.stop()
        loop = asyncio.get_running_loop()

        self._counter += 1
        handle = PlaybackHandle(id=self._counter, text=text, estimated_duration_ms=estimate_duration_ms(text))
        self._handle = handle
        self._on_finished = on_finished
        self._on_error = on_error

        if not self._unlocked:
            loop.call_soon(self._failed, handle, PlaybackError("Playback blocked: audio output has not been unlocked"))
            return handle
        try:
            samples, sample_rate = decode_audio(audio)
            self._output.start(samples, sample_rate, lambda: loop.call_soon_threadsafe(self._finished, handle))
        except PlaybackError as exc:
            loop.call_soon(self._failed, handle, exc)
            return handle

        logger.info(f"[Playback] #{handle.id} started ({len(samples) / sample_rate:.2f}s)")
        return handle

    def stop(self) -> None:
        handle = self._release()
        if handle is None:
            return
        self._output.abort()
        logger.info(f"[Playback] #{handle.id} stopped")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _release(self) -> Optional[PlaybackHandle]:
        handle = self._handle
        self._handle = None
        self._on_finished = None
        self._on_error = None
        return handle

    def _finished(self, handle: PlaybackHandle) -> None:
        if handle is not self._handle:
            return  # stopped or superseded
        callback = self._on_finished
        self._release()
        # the drained stream is still open until aborted
        self._output.abort()
        logger.info(f"[Playback] #{handle.id} finished")
        if callback is not None:
            callback(handle)

    def _failed(self, handle: PlaybackHandle, exc: PlaybackError) -> None:
        if handle is not self._handle:
            return
        callback = self._on_error
        self._release()
        self._output.abort()
        logger.warning(f"[Playback] #{handle.id} failed: {exc}")
        if callback is not None:
            callback(handle, exc)
