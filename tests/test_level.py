import asyncio

import numpy as np
import pytest

from voice_dialogue.audio.capture import RingBuffer
from voice_dialogue.audio.level import LevelMeter, LevelSampler, decay_peak, rms_level


def test_rms_of_full_scale_square_wave_is_one():
    window = np.array([1.0, -1.0] * 512, dtype=np.float32)
    assert rms_level(window) == pytest.approx(1.0)


def test_rms_handles_int16_and_empty():
    window = np.full(1024, 16384, dtype=np.int16)
    assert rms_level(window) == pytest.approx(0.5)
    assert rms_level(np.empty(0, dtype=np.float32)) == 0.0


def test_rms_of_sine_matches_amplitude():
    t = np.arange(16_000) / 16_000
    sine = (0.1 * np.sin(2 * np.pi * 440 * t)).astype(np.float32)
    assert rms_level(sine) == pytest.approx(0.1 / np.sqrt(2), rel=1e-3)


def test_peak_decays_linearly_but_not_below_sample():
    assert decay_peak(0.8, 0.1, 200) == pytest.approx(0.7)
    assert decay_peak(0.8, 0.75, 200) == pytest.approx(0.75)
    assert decay_peak(0.05, 0.0, 10_000) == 0.0


def test_level_meter_smooths_and_holds_peak():
    meter = LevelMeter()
    meter = meter.advance(1.0, 0.0)
    assert meter.level == pytest.approx(0.15)
    assert meter.peak == pytest.approx(1.0)
    meter = meter.advance(0.0, 100.0)
    assert meter.level == pytest.approx(0.1275)
    assert meter.peak == pytest.approx(0.95)


def test_ring_buffer_tail_spans_frames():
    buf = RingBuffer(max_frames=4)
    for value in range(6):
        buf.extend(np.full(4, value, dtype=np.float32))
    assert buf.num_frames == 4
    assert buf.tail(6).tolist() == [4, 4, 5, 5, 5, 5]
    assert buf.tail(100).size == 16
    assert buf.tail(0).size == 0


class Source:
    def __init__(self):
        self.window = None

    def latest_window(self, n_samples):
        return self.window


def test_sampler_pauses_while_source_unavailable():
    source = Source()
    seen = []
    sampler = LevelSampler(source, lambda level, t: seen.append((level, t)), clock=lambda: 2.0)

    assert sampler.tick() is None
    assert seen == []

    source.window = np.full(2048, 0.25, dtype=np.float32)
    assert sampler.tick() == pytest.approx(0.25)
    assert seen == [(pytest.approx(0.25), 2000.0)]


def test_sampler_runs_on_a_timer_until_stopped():
    source = Source()
    source.window = np.full(64, 0.5, dtype=np.float32)
    seen = []

    async def scenario():
        sampler = LevelSampler(source, lambda level, t: seen.append(level), rate_hz=200.0)
        sampler.start()
        assert sampler.is_running
        await asyncio.sleep(0.05)
        sampler.stop()
        count = len(seen)
        await asyncio.sleep(0.02)
        assert len(seen) == count
        assert not sampler.is_running

    asyncio.run(scenario())
    assert len(seen) >= 2


def test_sampler_rejects_non_positive_rate():
    with pytest.raises(ValueError):
        LevelSampler(Source(), lambda level, t: None, rate_hz=0)
