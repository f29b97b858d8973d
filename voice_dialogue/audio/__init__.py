from .capture import AudioStream, RingBuffer
from .level import LevelMeter, LevelSampler, rms_level
from .output import SpeakerOutput, decode_audio

__all__ = [
    "AudioStream",
    "RingBuffer",
    "LevelMeter",
    "LevelSampler",
    "rms_level",
    "SpeakerOutput",
    "decode_audio",
]
