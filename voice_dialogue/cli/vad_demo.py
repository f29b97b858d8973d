import asyncio
import logging

from voice_dialogue.audio import AudioStream, LevelSampler
from voice_dialogue.config import AppConfig
from voice_dialogue.vad import EnergyVAD, SpeechEnd, SpeechStart


async def main():
    config = AppConfig.from_env()
    vad = EnergyVAD(config.vad)

    def on_level(level: float, t_ms: float) -> None:
        for evt in vad.feed(level, t_ms):
            if isinstance(evt, SpeechStart):
                print(f"[vad_demo] Speech start at {evt.at_ms:.0f} ms (level {level:.4f})")
            elif isinstance(evt, SpeechEnd):
                print(f"[vad_demo] Speech end → {evt.window.duration_ms / 1000:.2f}s")

    mic = AudioStream(
        sample_rate=config.audio.sample_rate,
        block_size=config.audio.block_size,
        device=config.audio.input_device,
    )
    async with mic:
        sampler = LevelSampler(mic, on_level, rate_hz=config.audio.sampler_rate_hz, window=config.audio.level_window)
        sampler.start()
        print("[vad_demo] Listening… Press Ctrl+C to stop")
        try:
            await asyncio.Event().wait()
        finally:
            sampler.stop()


def run():
    logging.basicConfig(level=logging.WARNING)
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("[vad_demo] Stopped by user")


if __name__ == "__main__":
    run()
