from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import TYPE_CHECKING, Callable, Deque, List, Optional

import numpy as np

from voice_dialogue.errors import DeviceError

if TYPE_CHECKING:
    import sounddevice as sd

logger = logging.getLogger(__name__)


def load_sounddevice():
    """Import sounddevice, which needs the PortAudio shared library."""
    try:
        import sounddevice
    except OSError as exc:
        raise DeviceError(f"PortAudio is not available: {exc}") from exc
    return sounddevice


class RingBuffer:
    """Rewind buffer holding the last few capture blocks.

    Blocks are kept whole, oldest dropped first once *max_frames* is reached.
    `tail()` stitches the newest blocks back together on demand, which is
    all the level sampler and the recording pre-roll need.
    """

    def __init__(self, max_frames: int) -> None:
        self._blocks: Deque[np.ndarray] = deque(maxlen=max(1, max_frames))

    def extend(self, frame: np.ndarray) -> None:
        # copied: PortAudio reuses its buffers
        self._blocks.append(np.array(frame, dtype=np.float32, copy=True).reshape(-1))

    def tail(self, n_samples: int) -> np.ndarray:
        """Return at most the last *n_samples* samples, oldest first."""
        picked: List[np.ndarray] = []
        have = 0
        for block in reversed(self._blocks):
            if have >= n_samples:
                break
            picked.append(block)
            have += block.size
        if not picked or n_samples <= 0:
            return np.zeros(0, dtype=np.float32)
        return np.concatenate(picked[::-1])[-n_samples:]

    def clear(self) -> None:
        self._blocks.clear()

    @property
    def num_frames(self) -> int:
        return len(self._blocks)


class AudioStream:
    """Microphone reader that hands PCM blocks to the event loop.

    The PortAudio callback runs on its own thread; every block is marshalled
    onto the owning asyncio loop, where it is written to the rewind buffer and
    forwarded to the optional ``on_block`` sink. Loss of the device (the
    stream finishing without `close()` being called) is reported through
    ``on_lost`` on the loop.

    Example
    -------
    >>> async with AudioStream() as mic:
    ...     window = mic.latest_window(2048)
    """

    def __init__(
        self,
        sample_rate: int = 16_000,
        block_size: int = 512,
        channels: int = 1,
        dtype: str = "float32",
        ring_buffer_seconds: float = 1.0,
        stale_after_sec: float = 0.5,
        device: int | str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.sample_rate = sample_rate
        self.block_size = block_size
        self.channels = channels
        self.dtype = dtype
        self.device = device
        self.stale_after_sec = stale_after_sec
        self._clock = clock

        # Ring buffer for rewind (stores *blocks*, not samples)
        max_frames = int((ring_buffer_seconds * sample_rate) / block_size)
        self.ring_buffer = RingBuffer(max_frames=max_frames)

        # Underlying sounddevice stream (created in open())
        self._sd_stream: Optional["sd.InputStream"] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._token: Optional[object] = None
        self._last_block_at: Optional[float] = None
        self._on_block: Optional[Callable[[np.ndarray], None]] = None
        self._on_lost: Optional[Callable[[], None]] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def open(
        self,
        on_block: Optional[Callable[[np.ndarray], None]] = None,
        on_lost: Optional[Callable[[], None]] = None,
    ) -> None:
        """Acquire the microphone. Must be called from the running loop."""
        if self._sd_stream is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._on_block = on_block
        self._on_lost = on_lost
        self._last_block_at = None
        self.ring_buffer.clear()

        sd = load_sounddevice()
        loop = self._loop
        token = object()

        def _callback(indata: np.ndarray, frames: int, time_info, status) -> None:  # noqa: D401
            if status:
                # Overflows are non-fatal; the block is still usable.
                logger.debug(f"[AudioStream] status: {status}")
            # Flatten to 1-D mono float32 array.
            mono = indata[:, 0].copy() if indata.ndim > 1 else indata.copy().reshape(-1)
            loop.call_soon_threadsafe(self._dispatch, mono)

        def _finished() -> None:
            loop.call_soon_threadsafe(self._handle_finished, token)

        try:
            stream = sd.InputStream(
                samplerate=self.sample_rate,
                blocksize=self.block_size,
                channels=self.channels,
                dtype=self.dtype,
                device=self.device,
                callback=_callback,
                finished_callback=_finished,
            )
        except (sd.PortAudioError, ValueError) as exc:
            raise DeviceError(f"Microphone unavailable: {exc}") from exc
        try:
            stream.start()
        except (sd.PortAudioError, ValueError) as exc:
            stream.close()
            raise DeviceError(f"Microphone unavailable: {exc}") from exc
        self._sd_stream = stream
        self._token = token
        logger.info(f"[AudioStream] Microphone opened ({self.sample_rate} Hz, block {self.block_size})")

    def close(self) -> None:
        """Release the microphone. Safe to call repeatedly."""
        stream = self._sd_stream
        self._sd_stream = None
        self._on_block = None
        self._on_lost = None
        self._last_block_at = None
        self._token = None
        if stream is None:
            return
        sd = load_sounddevice()
        try:
            stream.stop()
            stream.close()
        except sd.PortAudioError as exc:
            logger.warning(f"[AudioStream] error while closing microphone: {exc}")
        self.ring_buffer.clear()
        logger.info("[AudioStream] Microphone released")

    # ------------------------------------------------------------------
    # Context-manager helpers so callers can `async with AudioStream()`
    # ------------------------------------------------------------------
    async def __aenter__(self) -> "AudioStream":
        self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------
    @property
    def is_open(self) -> bool:
        return self._sd_stream is not None

    def is_available(self) -> bool:
        """True when the device is open and delivered audio recently."""
        if self._sd_stream is None or self._last_block_at is None:
            return False
        return (self._clock() - self._last_block_at) <= self.stale_after_sec

    def latest_window(self, n_samples: int) -> Optional[np.ndarray]:
        """Most recent *n_samples* of audio, or None while unavailable."""
        if not self.is_available():
            return None
        window = self.ring_buffer.tail(n_samples)
        return window if window.size else None

    def pre_roll(self, duration_ms: float) -> np.ndarray:
        """Audio captured during the last *duration_ms* milliseconds."""
        return self.ring_buffer.tail(int(self.sample_rate * duration_ms / 1000.0))

    # ------------------------------------------------------------------
    # Loop-thread handlers
    # ------------------------------------------------------------------
    def _dispatch(self, mono: np.ndarray) -> None:
        if self._sd_stream is None:
            return  # late block after close()
        self._last_block_at = self._clock()
        self.ring_buffer.extend(mono)
        if self._on_block is not None:
            self._on_block(mono)

    def _handle_finished(self, token: object) -> None:
        if token is not self._token:
            return  # stopped by close()
        on_lost = self._on_lost
        logger.error("[AudioStream] Microphone stream stopped unexpectedly")
        self.close()
        if on_lost is not None:
            on_lost()
