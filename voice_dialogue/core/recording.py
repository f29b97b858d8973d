from __future__ import annotations

import io
import logging
from typing import List, Optional

import numpy as np
import soundfile as sf

from voice_dialogue.core.types import Clip, SpeechWindow
from voice_dialogue.errors import RecordingStateError

logger = logging.getLogger(__name__)


class RecordingController:
    """Owns the lifecycle of the single open recording, if any.

    Blocks from the microphone are offered through `append()` at all times and
    only kept while a recording is open. `close()` assembles the chunks into a
    16-bit WAV clip; `discard()` drops them without encoding.

    Parameters
    ----------
    sample_rate : int, default 16000
        Rate of the PCM blocks fed to `append()`.
    min_clip_ms : float, default 0.0
        Clips at or below this duration are flagged empty and must not be
        submitted. With the default only a clip without samples is empty.
    """

    def __init__(self, sample_rate: int = 16_000, *, min_clip_ms: float = 0.0) -> None:
        self.sample_rate = sample_rate
        self.min_clip_ms = min_clip_ms
        self._chunks: List[np.ndarray] = []
        self._num_samples = 0
        self._open = False
        self._window: Optional[SpeechWindow] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def num_samples(self) -> int:
        """Samples held by the open recording, pre-roll included."""
        return self._num_samples

    def open(self, window: Optional[SpeechWindow] = None, pre_roll: Optional[np.ndarray] = None) -> None:
        if self._open:
            raise RecordingStateError("a recording is already open")
        self._reset()
        self._open = True
        self._window = window
        if pre_roll is not None:
            self._keep(pre_roll)
        logger.debug(f"[Recorder] opened (pre-roll {self._duration_ms():.0f} ms)")

    def append(self, pcm: np.ndarray) -> None:
        """Offer one PCM block; ignored unless a recording is open."""
        if not self._open:
            return
        self._keep(pcm)

    def close(self, window: Optional[SpeechWindow] = None) -> Clip:
        """Finalize the open recording into one clip."""
        if not self._open:
            raise RecordingStateError("no recording is open")
        audio = np.concatenate(self._chunks) if self._chunks else np.zeros(0, dtype=np.float32)
        self._reset()
        self._open = False
        window = window or self._window
        self._window = None

        duration_ms = len(audio) / self.sample_rate * 1000.0
        if audio.size == 0 or duration_ms <= self.min_clip_ms:
            logger.info(f"[Recorder] closed with {duration_ms:.0f} ms of audio; treated as empty")
            return Clip(data=b"", sample_rate=self.sample_rate, num_samples=len(audio), is_empty=True, window=window)

        data = self._encode(audio)
        logger.info(f"[Recorder] closed → {duration_ms / 1000:.2f}s, {len(data)} bytes")
        return Clip(data=data, sample_rate=self.sample_rate, num_samples=len(audio), window=window)

    def discard(self) -> None:
        """Drop the open recording, if any, without encoding it."""
        if not self._open:
            return
        logger.info(f"[Recorder] discarded {self._duration_ms() / 1000:.2f}s of audio")
        self._reset()
        self._open = False
        self._window = None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _keep(self, pcm: np.ndarray) -> None:
        block = np.asarray(pcm, dtype=np.float32)
        if block.ndim != 1:
            raise ValueError("PCM must be mono 1-D")
        if block.size:
            self._chunks.append(block)
            self._num_samples += block.size

    def _reset(self) -> None:
        self._chunks = []
        self._num_samples = 0

    def _duration_ms(self) -> float:
        return self._num_samples / self.sample_rate * 1000.0

    def _encode(self, audio: np.ndarray) -> bytes:
        out = io.BytesIO()
        sf.write(out, np.clip(audio, -1.0, 1.0), self.sample_rate, format="WAV", subtype="PCM_16")
        return out.getvalue()
