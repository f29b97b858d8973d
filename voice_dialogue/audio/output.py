from __future__ import annotations

import io
import logging
from typing import TYPE_CHECKING, Callable, Optional, Protocol, Tuple

import numpy as np
import soundfile as sf

from voice_dialogue.audio.capture import load_sounddevice
from voice_dialogue.errors import DeviceError, PlaybackError

if TYPE_CHECKING:
    import sounddevice as sd

logger = logging.getLogger(__name__)


def decode_audio(data: bytes) -> Tuple[np.ndarray, int]:
    """Decode an encoded reply (wav/flac/ogg/mp3) to mono float32 PCM."""
    if not data:
        raise PlaybackError("Reply audio is empty")
    try:
        pcm, sr = sf.read(io.BytesIO(data), dtype="float32")
    except (RuntimeError, TypeError) as exc:
        raise PlaybackError(f"Could not decode reply audio: {exc}") from exc
    if pcm.ndim > 1:
        pcm = pcm.mean(axis=1).astype(np.float32)  # convert to mono
    return pcm, sr


class AudioOutput(Protocol):
    def start(self, samples: np.ndarray, sample_rate: int, on_finished: Callable[[], None]) -> None: ...

    def abort(self) -> None: ...


class SpeakerOutput:
    """One-shot playback on a `sounddevice.OutputStream`.

    ``on_finished`` is called from the PortAudio thread once the stream has
    drained or was aborted; callers must marshal it themselves. `abort()`
    returns only after the stream is stopped, so no further audio is emitted.
    """

    def __init__(self, device: int | str | None = None, blocksize: int = 1024) -> None:
        self.device = device
        self.blocksize = blocksize
        self._stream: Optional["sd.OutputStream"] = None

    def start(self, samples: np.ndarray, sample_rate: int, on_finished: Callable[[], None]) -> None:
        self.abort()
        try:
            sd = load_sounddevice()
        except DeviceError as exc:
            raise PlaybackError(str(exc)) from exc
        position = 0

        def _callback(outdata: np.ndarray, frames: int, _time, status) -> None:
            nonlocal position
            if status:
                logger.debug(f"[SpeakerOutput] status: {status}")
            chunk = samples[position:position + frames]
            outdata[: len(chunk), 0] = chunk
            outdata[len(chunk):, 0] = 0.0
            position += frames
            if len(chunk) < frames:
                raise sd.CallbackStop

        try:
            stream = sd.OutputStream(
                samplerate=sample_rate,
                channels=1,
                dtype="float32",
                device=self.device,
                blocksize=self.blocksize,
                callback=_callback,
                finished_callback=on_finished,
            )
        except (sd.PortAudioError, ValueError) as exc:
            raise PlaybackError(f"Speaker unavailable: {exc}") from exc
        try:
            stream.start()
        except (sd.PortAudioError, ValueError) as exc:
            stream.close()
            raise PlaybackError(f"Speaker unavailable: {exc}") from exc
        self._stream = stream

    def abort(self) -> None:
        stream = self._stream
        self._stream = None
        if stream is None:
            return
        sd = load_sounddevice()
        try:
            stream.abort()
            stream.close()
        except sd.PortAudioError as exc:
            logger.warning(f"[SpeakerOutput] error while stopping playback: {exc}")
