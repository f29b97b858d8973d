"""Dataclasses and enums shared by the turn-taking pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple


class TurnState(Enum):
    IDLE = "idle"  # no session
    LISTENING = "listening"
    USER_SPEAKING = "user_speaking"  # recording open
    PROCESSING = "processing"  # request in flight
    AI_SPEAKING = "ai_speaking"  # playback live


STATUS_LABELS = {
    TurnState.IDLE: "Ready",
    TurnState.LISTENING: "Listening",
    TurnState.USER_SPEAKING: "You Speaking",
    TurnState.PROCESSING: "Processing",
    TurnState.AI_SPEAKING: "AI Speaking",
}


@dataclass(frozen=True)
class SpeechWindow:
    """Hypothesized utterance, in milliseconds on the sampler clock."""

    started_at_ms: float
    ended_at_ms: Optional[float] = None

    @property
    def is_closed(self) -> bool:
        return self.ended_at_ms is not None

    @property
    def duration_ms(self) -> Optional[float]:
        if self.ended_at_ms is None:
            return None
        return self.ended_at_ms - self.started_at_ms


@dataclass(frozen=True)
class Clip:
    """One finalized recording, encoded for upload."""

    data: bytes
    sample_rate: int
    num_samples: int
    mime_type: str = "audio/wav"
    filename: str = "audio.wav"
    is_empty: bool = False
    window: Optional[SpeechWindow] = None

    @property
    def duration_sec(self) -> float:
        return self.num_samples / self.sample_rate if self.sample_rate else 0.0


@dataclass(frozen=True)
class LearningProgress:
    goals_met: int
    total_goals: int
    current_goals: Tuple[str, ...] = ()

    @property
    def fraction(self) -> float:
        if self.total_goals <= 0:
            return 0.0
        return self.goals_met / self.total_goals


@dataclass(frozen=True)
class InteractionResult:
    """Parsed reply to one submitted utterance."""

    success: bool
    reply_text: str = ""
    reply_audio: Optional[bytes] = None
    progress: Optional[LearningProgress] = None

    @property
    def has_audio(self) -> bool:
        return self.success and bool(self.reply_audio)


@dataclass(frozen=True)
class ConversationSnapshot:
    """Read-only projection of the conversation for observers (e.g. a UI)."""

    state: TurnState
    session_id: Optional[str] = None
    error: Optional[str] = None
    level: float = 0.0
    peak_level: float = 0.0
    history: Tuple[Tuple[str, str], ...] = ()
    progress: Optional[LearningProgress] = None

    @property
    def status_label(self) -> str:
        return STATUS_LABELS[self.state]

    @property
    def is_active(self) -> bool:
        return self.state is not TurnState.IDLE

