from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Union

from voice_dialogue.config import VADConfig
from voice_dialogue.core.types import SpeechWindow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SpeechStart:
    """Sustained energy confirmed; `window` is still open."""

    at_ms: float
    window: SpeechWindow


@dataclass(frozen=True)
class SpeechEnd:
    """Sustained silence confirmed; `window` is closed."""

    at_ms: float
    window: SpeechWindow


VADEvent = Union[SpeechStart, SpeechEnd]


class EnergyVAD:
    """Streaming hysteresis detector over normalized RMS energy levels.

    The detector consumes one `EnergyLevel` per sampler tick and emits
    `SpeechStart` once energy has stayed above ``speech_threshold`` for at
    least ``min_speech_ms``, and `SpeechEnd` once energy has stayed below
    ``silence_threshold`` for longer than ``silence_hold_ms``.

    Levels between the two thresholds fall into the dead zone: they never
    cause a transition, but while speaking they still count as voiced, so a
    mumble keeps an utterance open instead of letting it time out.

    Parameters
    ----------
    config : VADConfig, optional
        Thresholds and durations; defaults to the conversational profile
        (0.015 / 0.007 / 100 ms / 700 ms).
    """

    def __init__(self, config: Optional[VADConfig] = None) -> None:
        self.config = config or VADConfig()

        # State
        self._speaking = False
        self._candidate_start_at: Optional[float] = None
        self._last_above_speech_at: Optional[float] = None
        self._last_voiced_at: Optional[float] = None
        self._window: Optional[SpeechWindow] = None
        self._last_t: Optional[float] = None

    # ------------------------------------------------------------------
    # Public streaming API
    # ------------------------------------------------------------------
    def feed(self, level: float, t_ms: float) -> List[VADEvent]:
        """Feed one energy sample observed at *t_ms*.

        Returns the events emitted by this sample (0 or 1 in practice). Samples
        must arrive in time order; an out-of-order sample is ignored.
        """
        if self._last_t is not None and t_ms < self._last_t:
            logger.debug(f"[EnergyVAD] dropped out-of-order sample at {t_ms:.1f} ms")
            return []
        self._last_t = t_ms

        cfg = self.config
        events: List[VADEvent] = []

        if level > cfg.speech_threshold:
            self._last_above_speech_at = t_ms
            self._last_voiced_at = t_ms
            if not self._speaking:
                if self._candidate_start_at is None:
                    self._candidate_start_at = t_ms
                if t_ms - self._candidate_start_at >= cfg.min_speech_ms:
                    events.append(self._open_window(t_ms))
        elif level < cfg.silence_threshold:
            if not self._speaking:
                self._candidate_start_at = None
            elif t_ms - self._last_voiced_at > cfg.silence_hold_ms:
                events.append(self._close_window(t_ms))
        else:
            # Dead zone: no transition
            if self._speaking:
                self._last_voiced_at = t_ms
            else:
                self._candidate_start_at = None

        return events

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _open_window(self, t_ms: float) -> SpeechStart:
        self._speaking = True
        self._window = SpeechWindow(started_at_ms=self._candidate_start_at)
        logger.info(f"[EnergyVAD] Speech started at {t_ms:.0f} ms (onset {self._candidate_start_at:.0f} ms)")
        return SpeechStart(at_ms=t_ms, window=self._window)

    def _close_window(self, t_ms: float) -> SpeechEnd:
        self._speaking = False
        self._candidate_start_at = None
        window = SpeechWindow(started_at_ms=self._window.started_at_ms, ended_at_ms=t_ms)
        self._window = None
        logger.info(f"[EnergyVAD] Speech ended at {t_ms:.0f} ms → duration {window.duration_ms / 1000:.2f}s")
        return SpeechEnd(at_ms=t_ms, window=window)

    # ------------------------------------------------------------------
    # Convenience
    # ------------------------------------------------------------------
    def reset(self) -> None:
        """Forget any open window or candidate start."""
        self._speaking = False
        self._candidate_start_at = None
        self._last_above_speech_at = None
        self._last_voiced_at = None
        self._window = None
        self._last_t = None

    def is_active(self) -> bool:
        """Return True if currently inside a speech window."""
        return self._speaking

    @property
    def last_above_speech_at(self) -> Optional[float]:
        return self._last_above_speech_at
