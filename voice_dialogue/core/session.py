from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional, Protocol

import numpy as np

from voice_dialogue.audio.level import LevelSampler
from voice_dialogue.config import AppConfig
from voice_dialogue.core.playback import PlaybackController
from voice_dialogue.core.recording import RecordingController
from voice_dialogue.core.turn_manager import TurnManager
from voice_dialogue.core.types import ConversationSnapshot, TurnState
from voice_dialogue.errors import ApiError, DeviceError, SessionError
from voice_dialogue.net.client import DialogueClient
from voice_dialogue.vad.energy import EnergyVAD

logger = logging.getLogger(__name__)


class CaptureDevice(Protocol):
    def open(
        self,
        on_block: Optional[Callable[[np.ndarray], None]] = None,
        on_lost: Optional[Callable[[], None]] = None,
    ) -> None: ...

    def close(self) -> None: ...

    def latest_window(self, n_samples: int) -> Optional[np.ndarray]: ...

    def pre_roll(self, duration_ms: float) -> np.ndarray: ...


class SessionManager:
    """Starts and ends dialogue sessions and owns every device resource.

    The manager wires the pipeline together (sampler → VAD → turn manager,
    microphone blocks → recorder) and guarantees that `end()` reclaims the
    microphone, the sampler, playback and any open recording no matter what
    happened before.

    A generation counter is bumped on every start and end; requests carry the
    generation they were issued under, so anything that resolves after the
    session it belonged to is ignored.
    """

    def __init__(
        self,
        client: DialogueClient,
        capture: CaptureDevice,
        playback: PlaybackController,
        *,
        config: Optional[AppConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or AppConfig()
        self.client = client
        self.capture = capture
        self.playback = playback

        audio_cfg = self.config.audio
        self.vad = EnergyVAD(self.config.vad)
        self.recorder = RecordingController(audio_cfg.sample_rate, min_clip_ms=audio_cfg.min_clip_ms)
        self.turns = TurnManager(self.recorder, playback, client, pre_roll=self._pre_roll)
        self.sampler = LevelSampler(
            capture,
            self._on_level,
            rate_hz=audio_cfg.sampler_rate_hz,
            window=audio_cfg.level_window,
            clock=clock,
        )

        self._generation = 0
        self._session_id: Optional[str] = None
        self._starting = False
        self._end_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def state(self) -> TurnState:
        return self.turns.state

    @property
    def is_active(self) -> bool:
        return self._session_id is not None

    @property
    def end_task(self) -> Optional[asyncio.Task]:
        """Teardown scheduled after the microphone was lost, if any."""
        return self._end_task

    def snapshot(self) -> ConversationSnapshot:
        return self.turns.snapshot()

    def unlock_playback(self) -> None:
        """Record the user gesture that allows audio output this session."""
        self.playback.unlock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self, persona: Optional[str] = None) -> str:
        if self._session_id is not None or self._starting:
            raise SessionError("A session is already active")
        persona = persona or self.config.client.persona
        self._generation += 1
        generation = self._generation
        self._starting = True
        logger.info(f"[Session] Starting conversation with persona: {persona}")
        try:
            try:
                session_id = await self.client.start_session(persona)
            except ApiError as exc:
                self.turns.report_error(str(exc))
                raise SessionError(str(exc)) from exc

            if generation != self._generation:
                # end() was called while we were waiting
                await self.client.end_session(session_id)
                raise SessionError("Session start was cancelled")

            try:
                self.vad.reset()
                self.capture.open(on_block=self.recorder.append, on_lost=self._on_device_lost)
                self.sampler.start()
            except DeviceError as exc:
                self._release()
                await self.client.end_session(session_id)
                self.turns.report_error(str(exc))
                raise SessionError(str(exc)) from exc
        finally:
            self._starting = False

        self._session_id = session_id
        self.turns.begin(session_id, generation)
        logger.info(f"[Session] Session started: {session_id}")
        return session_id

    async def end(self) -> None:
        """End the conversation; safe to call repeatedly and from any state."""
        self._generation += 1
        session_id = self._session_id
        self._session_id = None
        try:
            self._release()
        finally:
            self.playback.lock()
            if session_id is not None:
                await self.client.end_session(session_id)
                logger.info(f"[Session] Conversation ended: {session_id}")

    async def aclose(self) -> None:
        await self.end()
        await self.turns.drain()
        await self.client.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _release(self) -> None:
        try:
            self.sampler.stop()
        finally:
            try:
                self.capture.close()
            finally:
                self.turns.shutdown()
                self.vad.reset()

    def _on_level(self, level: float, t_ms: float) -> None:
        self.turns.update_level(level, t_ms)
        for event in self.vad.feed(level, t_ms):
            self.turns.handle_vad_event(event)

    def _pre_roll(self) -> Optional[np.ndarray]:
        duration_ms = self.config.audio.pre_roll_ms
        if duration_ms <= 0:
            return None
        return self.capture.pre_roll(duration_ms)

    def _on_device_lost(self) -> None:
        if self._session_id is None:
            return
        self.turns.report_error("Microphone disconnected; conversation ended")
        self._end_task = asyncio.get_running_loop().create_task(self.end())
