"""Runtime settings, resolved from keyword arguments or the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw not in (None, "") else default


def _env_device(name: str) -> int | str | None:
    raw = os.getenv(name)
    if not raw:
        return None
    return int(raw) if raw.isdigit() else raw


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    return raw.lower() in {"1", "true", "yes"}


@dataclass(frozen=True)
class VADConfig:
    # Sensitive, conversational profile
    speech_threshold: float = 0.015
    silence_threshold: float = 0.007
    min_speech_ms: float = 100.0
    silence_hold_ms: float = 700.0

    def __post_init__(self) -> None:
        if not 0.0 <= self.silence_threshold < self.speech_threshold <= 1.0:
            raise ValueError(
                "silence_threshold must be strictly below speech_threshold, both within [0, 1]"
            )
        if self.min_speech_ms < 0 or self.silence_hold_ms < 0:
            raise ValueError("durations must be non-negative")

    @classmethod
    def from_env(cls) -> "VADConfig":
        return cls(
            speech_threshold=_env_float("VOICE_VAD_SPEECH_THRESHOLD", cls.speech_threshold),
            silence_threshold=_env_float("VOICE_VAD_SILENCE_THRESHOLD", cls.silence_threshold),
            min_speech_ms=_env_float("VOICE_VAD_MIN_SPEECH_MS", cls.min_speech_ms),
            silence_hold_ms=_env_float("VOICE_VAD_SILENCE_HOLD_MS", cls.silence_hold_ms),
        )


@dataclass(frozen=True)
class AudioConfig:
    sample_rate: int = 16_000
    block_size: int = 512
    channels: int = 1
    input_device: int | str | None = None
    output_device: int | str | None = None
    sampler_rate_hz: float = 60.0
    level_window: int = 2048  # samples per RMS window
    ring_buffer_seconds: float = 1.0
    stale_after_sec: float = 0.5
    pre_roll_ms: float = 200.0
    min_clip_ms: float = 0.0

    @classmethod
    def from_env(cls) -> "AudioConfig":
        return cls(
            sample_rate=_env_int("VOICE_SAMPLE_RATE", cls.sample_rate),
            block_size=_env_int("VOICE_BLOCK_SIZE", cls.block_size),
            input_device=_env_device("VOICE_INPUT_DEVICE"),
            output_device=_env_device("VOICE_OUTPUT_DEVICE"),
            sampler_rate_hz=_env_float("VOICE_SAMPLER_RATE_HZ", cls.sampler_rate_hz),
            level_window=_env_int("VOICE_LEVEL_WINDOW", cls.level_window),
            pre_roll_ms=_env_float("VOICE_PRE_ROLL_MS", cls.pre_roll_ms),
            min_clip_ms=_env_float("VOICE_MIN_CLIP_MS", cls.min_clip_ms),
        )


@dataclass(frozen=True)
class ClientConfig:
    base_url: str = "http://localhost:8080"
    timeout_sec: float = 30.0
    persona: str = "adult"
    require_unlock: bool = True

    @classmethod
    def from_env(cls) -> "ClientConfig":
        return cls(
            base_url=os.getenv("DIALOGUE_API_BASE", cls.base_url),
            timeout_sec=_env_float("DIALOGUE_TIMEOUT_SEC", cls.timeout_sec),
            persona=os.getenv("DIALOGUE_PERSONA", cls.persona),
            require_unlock=_env_bool("DIALOGUE_REQUIRE_UNLOCK", cls.require_unlock),
        )


@dataclass(frozen=True)
class AppConfig:
    vad: VADConfig = field(default_factory=VADConfig)
    audio: AudioConfig = field(default_factory=AudioConfig)
    client: ClientConfig = field(default_factory=ClientConfig)

    @classmethod
    def from_env(cls) -> "AppConfig":
        return cls(vad=VADConfig.from_env(), audio=AudioConfig.from_env(), client=ClientConfig.from_env())
