"""Pytest fixtures: fake audio devices and a mock dialogue service."""

from __future__ import annotations

import asyncio
import base64
import io
from typing import List, Optional, Tuple

import httpx
import numpy as np
import pytest
import soundfile as sf

from voice_dialogue.config import AppConfig, AudioConfig
from voice_dialogue.core.playback import PlaybackController
from voice_dialogue.core.session import SessionManager
from voice_dialogue.net.client import DialogueClient

BASE_URL = "http://dialogue.test"


def make_wav(seconds: float = 0.2, sample_rate: int = 16_000, amplitude: float = 0.3) -> bytes:
    t = np.arange(int(seconds * sample_rate)) / sample_rate
    tone = (amplitude * np.sin(2 * np.pi * 220 * t)).astype(np.float32)
    out = io.BytesIO()
    sf.write(out, tone, sample_rate, format="WAV", subtype="PCM_16")
    return out.getvalue()


class FakeClock:
    def __init__(self, start: float = 100.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance_ms(self, ms: float) -> None:
        self.now += ms / 1000.0


class FakeCapture:
    """Stands in for AudioStream; the level is a constant window of samples."""

    def __init__(self, window: int = 2048) -> None:
        self.window = window
        self.is_open = False
        self.open_calls = 0
        self.close_calls = 0
        self.fail_with: Optional[Exception] = None
        self.on_block = None
        self.on_lost = None
        self._level = 0.0
        self.pre_roll_audio = np.zeros(0, dtype=np.float32)

    def open(self, on_block=None, on_lost=None) -> None:
        self.open_calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        self.is_open = True
        self.on_block = on_block
        self.on_lost = on_lost

    def close(self) -> None:
        self.close_calls += 1
        self.is_open = False
        self.on_block = None
        self.on_lost = None

    def set_level(self, level: float) -> None:
        self._level = level

    def latest_window(self, n_samples: int):
        if not self.is_open:
            return None
        return np.full(n_samples, self._level, dtype=np.float32)

    def pre_roll(self, duration_ms: float):
        return self.pre_roll_audio

    def push(self, block: np.ndarray) -> None:
        if self.on_block is not None:
            self.on_block(block)

    def lose(self) -> None:
        on_lost = self.on_lost
        self.close()
        if on_lost is not None:
            on_lost()


class FakeOutput:
    """Stands in for SpeakerOutput; completion is triggered by the test."""

    def __init__(self) -> None:
        self.started: List[Tuple[np.ndarray, int]] = []
        self.abort_calls = 0
        self.fail_with: Optional[Exception] = None
        self._on_finished = None

    @property
    def is_playing(self) -> bool:
        return self._on_finished is not None

    def start(self, samples, sample_rate, on_finished) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.started.append((samples, sample_rate))
        self._on_finished = on_finished

    def abort(self) -> None:
        self.abort_calls += 1
        self._on_finished = None

    def finish(self) -> None:
        on_finished = self._on_finished
        self._on_finished = None
        if on_finished is not None:
            on_finished()


class FakeDialogueServer:
    """httpx MockTransport handler emulating the dialogue service."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.session_id = "sess-1"
        self.start_status = 200
        self.interact_status = 200
        self.notify_status = 200
        self.reply_text = "Hello there!"
        self.reply_audio: Optional[bytes] = make_wav()
        self.progress = {"goalsMet": 2, "totalGoals": 16, "currentGoals": ["greet", "ask name"]}
        self.start_gate: Optional[asyncio.Event] = None
        self.interact_gate: Optional[asyncio.Event] = None

    @property
    def paths(self) -> List[str]:
        return [req.url.path.rsplit("/", 1)[-1] for req in self.requests]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        endpoint = request.url.path.rsplit("/", 1)[-1]
        if endpoint == "start":
            if self.start_gate is not None:
                await self.start_gate.wait()
            if self.start_status != 200:
                return httpx.Response(self.start_status)
            return httpx.Response(200, json={"sessionId": self.session_id})
        if endpoint == "interact":
            if self.interact_gate is not None:
                await self.interact_gate.wait()
            if self.interact_status != 200:
                return httpx.Response(self.interact_status)
            body = {"success": True, "aiResponse": self.reply_text, "learningProgress": self.progress}
            if self.reply_audio is not None:
                body["audioResponse"] = base64.b64encode(self.reply_audio).decode("ascii")
            return httpx.Response(200, json=body)
        if endpoint in {"ai-speaking", "ai-finished", "complete"}:
            return httpx.Response(self.notify_status)
        raise AssertionError(f"Unexpected request {request.url}")

    def client(self) -> DialogueClient:
        transport = httpx.MockTransport(self.handler)
        return DialogueClient(BASE_URL, client=httpx.AsyncClient(transport=transport))


@pytest.fixture()
def server() -> FakeDialogueServer:
    return FakeDialogueServer()


@pytest.fixture()
def capture() -> FakeCapture:
    return FakeCapture()


@pytest.fixture()
def output() -> FakeOutput:
    return FakeOutput()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def session_factory(server, capture, output, clock):
    def _build(**audio_overrides) -> SessionManager:
        audio = AudioConfig(**{"pre_roll_ms": 0.0, **audio_overrides})
        playback = PlaybackController(output, require_unlock=False)
        return SessionManager(server.client(), capture, playback, config=AppConfig(audio=audio), clock=clock)

    return _build


def drive(session: SessionManager, capture: FakeCapture, clock: FakeClock, level: float, duration_ms: float, step_ms: float = 10.0) -> None:
    """Tick the sampler by hand at a fixed cadence while holding *level*."""
    capture.set_level(level)
    for _ in range(int(duration_ms / step_ms)):
        session.sampler.tick()
        capture.push(np.full(160, level, dtype=np.float32))
        clock.advance_ms(step_ms)


async def settle(rounds: int = 5) -> None:
    """Let scheduled callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)
