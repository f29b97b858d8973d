from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Set, Tuple

import numpy as np

from voice_dialogue.audio.level import LevelMeter
from voice_dialogue.core.playback import PlaybackController, PlaybackHandle
from voice_dialogue.core.recording import RecordingController
from voice_dialogue.core.types import (
    Clip,
    ConversationSnapshot,
    InteractionResult,
    LearningProgress,
    TurnState,
)
from voice_dialogue.errors import ApiError, PlaybackError
from voice_dialogue.net.client import DialogueClient
from voice_dialogue.vad.energy import SpeechEnd, SpeechStart, VADEvent

logger = logging.getLogger(__name__)

USER_PLACEHOLDER = "[Audio Message]"

Observer = Callable[[ConversationSnapshot], None]


class TurnManager:
    """Turn-taking state machine for one conversation at a time.

    The manager is the only writer of `state`. VAD events, request results and
    playback completion all arrive here as plain method calls on the event
    loop, and every transition is published to observers as an immutable
    `ConversationSnapshot`.

    Usage
    -----
        tm = TurnManager(recorder, playback, client)
        tm.begin(session_id, generation)
        for event in vad.feed(level, t_ms):
            tm.handle_vad_event(event)
        ...
        tm.shutdown()
    """

    def __init__(
        self,
        recorder: RecordingController,
        playback: PlaybackController,
        client: DialogueClient,
        *,
        pre_roll: Optional[Callable[[], Optional[np.ndarray]]] = None,
    ) -> None:
        self.recorder = recorder
        self.playback = playback
        self.client = client
        self._pre_roll = pre_roll

        self.state = TurnState.IDLE
        self._session_id: Optional[str] = None
        self._generation: Optional[int] = None

        self._error: Optional[str] = None
        self._history: List[Tuple[str, str]] = []
        self._progress: Optional[LearningProgress] = None
        self._meter = LevelMeter()

        self._observers: List[Observer] = []
        self._pending: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Session bracket
    # ------------------------------------------------------------------
    def begin(self, session_id: str, generation: int) -> None:
        if self.state is not TurnState.IDLE:
            raise RuntimeError(f"cannot begin a conversation while {self.state.value}")
        self._session_id = session_id
        self._generation = generation
        self._history.clear()
        self._progress = None
        self._error = None
        self._transition(TurnState.LISTENING)

    def shutdown(self) -> None:
        """Drop back to IDLE from any state, discarding the turn in progress."""
        self.recorder.discard()
        self.playback.stop()
        self._session_id = None
        self._generation = None
        self._pending = None
        self._meter = LevelMeter()
        if self.state is not TurnState.IDLE:
            self._transition(TurnState.IDLE)

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------
    def handle_vad_event(self, event: VADEvent) -> None:
        if isinstance(event, SpeechStart):
            self._on_speech_start(event)
        elif isinstance(event, SpeechEnd):
            self._on_speech_end(event)

    def update_level(self, level: float, t_ms: float) -> None:
        self._meter = self._meter.advance(level, t_ms)

    def report_error(self, message: str) -> None:
        self._error = message
        logger.warning(f"[TurnManager] {message}")
        self._publish()

    def clear_error(self) -> None:
        if self._error is not None:
            self._error = None
            self._publish()

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------
    def subscribe(self, observer: Observer) -> Callable[[], None]:
        self._observers.append(observer)

        def _unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return _unsubscribe

    def snapshot(self) -> ConversationSnapshot:
        return ConversationSnapshot(
            state=self.state,
            session_id=self._session_id,
            error=self._error,
            level=self._meter.level,
            peak_level=self._meter.peak,
            history=tuple(self._history),
            progress=self._progress,
        )

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def pending(self) -> Optional[asyncio.Task]:
        """The in-flight submit request, if any."""
        return self._pending

    async def drain(self) -> None:
        """Wait for the in-flight request and queued notifications."""
        if self._pending is not None:
            await asyncio.gather(self._pending, return_exceptions=True)
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # VAD transitions
    # ------------------------------------------------------------------
    def _on_speech_start(self, event: SpeechStart) -> None:
        if self.state is TurnState.LISTENING:
            pre_roll = self._pre_roll() if self._pre_roll is not None else None
            self.recorder.open(event.window, pre_roll=pre_roll)
            self._transition(TurnState.USER_SPEAKING)
        elif self.state is TurnState.AI_SPEAKING:
            # Barge-in: silence the reply before the mic starts keeping audio.
            logger.info("[TurnManager] Barge-in, interrupting AI speech")
            self.playback.stop()
            self.recorder.open(event.window)
            self._transition(TurnState.USER_SPEAKING)
        elif self.state is TurnState.PROCESSING:
            logger.info("[TurnManager] Speech while processing; ignored until the reply arrives")

    def _on_speech_end(self, event: SpeechEnd) -> None:
        if self.state is not TurnState.USER_SPEAKING:
            return
        clip = self.recorder.close(event.window)
        if clip.is_empty:
            self._transition(TurnState.LISTENING)
            return
        self._transition(TurnState.PROCESSING)
        self._pending = asyncio.get_running_loop().create_task(
            self._submit(self._session_id, self._generation, clip)
        )

    # ------------------------------------------------------------------
    # Network transitions
    # ------------------------------------------------------------------
    async def _submit(self, session_id: str, generation: int, clip: Clip) -> None:
        logger.info(f"[TurnManager] Sending {clip.duration_sec:.2f}s of audio ({len(clip.data)} bytes)")
        try:
            result = await self.client.submit_utterance(session_id, clip)
        except ApiError as exc:
            self._on_request_failed(session_id, generation, exc)
            return
        self._on_response(session_id, generation, result)

    def _accepts(self, session_id: str, generation: int) -> bool:
        return (
            self.state is TurnState.PROCESSING
            and session_id == self._session_id
            and generation == self._generation
        )

    def _on_response(self, session_id: str, generation: int, result: InteractionResult) -> None:
        if not self._accepts(session_id, generation):
            logger.info("[TurnManager] Dropping stale response")
            return
        self._pending = None
        self._error = None
        self._history.append(("user", USER_PLACEHOLDER))
        if result.reply_text:
            self._history.append(("ai", result.reply_text))
        if result.progress is not None:
            self._progress = result.progress

        if not result.has_audio:
            self._transition(TurnState.LISTENING)
            return

        self._transition(TurnState.AI_SPEAKING)
        handle = self.playback.play(
            result.reply_audio,
            result.reply_text,
            on_finished=self._on_playback_finished,
            on_error=self._on_playback_error,
        )
        self._spawn(self.client.notify_playback_started(session_id, result.reply_text, handle.estimated_duration_ms))

    def _on_request_failed(self, session_id: str, generation: int, exc: ApiError) -> None:
        if not self._accepts(session_id, generation):
            logger.info(f"[TurnManager] Dropping stale failure: {exc}")
            return
        self._pending = None
        self._error = str(exc)
        logger.warning(f"[TurnManager] Turn abandoned: {exc}")
        self._transition(TurnState.LISTENING)

    # ------------------------------------------------------------------
    # Playback transitions
    # ------------------------------------------------------------------
    def _on_playback_finished(self, handle: PlaybackHandle) -> None:
        if self.state is not TurnState.AI_SPEAKING:
            return
        self._transition(TurnState.LISTENING)
        if self._session_id is not None:
            self._spawn(self.client.notify_playback_finished(self._session_id))

    def _on_playback_error(self, handle: PlaybackHandle, exc: PlaybackError) -> None:
        if self.state is not TurnState.AI_SPEAKING:
            return
        self._error = str(exc)
        self._transition(TurnState.LISTENING)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _transition(self, new_state: TurnState) -> None:
        old_state = self.state
        self.state = new_state
        logger.info(f"[TurnManager] {old_state.value} → {new_state.value}")
        self._publish()

    def _publish(self) -> None:
        if not self._observers:
            return
        snap = self.snapshot()
        for observer in list(self._observers):
            observer(snap)

    def _spawn(self, coro: Awaitable[bool]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
