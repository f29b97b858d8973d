import asyncio
import logging
import sys

import colorama

from voice_dialogue.audio import AudioStream, SpeakerOutput
from voice_dialogue.config import AppConfig
from voice_dialogue.core.playback import PlaybackController
from voice_dialogue.core.session import SessionManager
from voice_dialogue.core.types import ConversationSnapshot, TurnState
from voice_dialogue.errors import SessionError
from voice_dialogue.net import DialogueClient

colorama.init(autoreset=True)

STATE_COLORS = {
    TurnState.IDLE: colorama.Fore.WHITE,
    TurnState.LISTENING: colorama.Fore.CYAN,
    TurnState.USER_SPEAKING: colorama.Fore.GREEN,
    TurnState.PROCESSING: colorama.Fore.YELLOW,
    TurnState.AI_SPEAKING: colorama.Fore.MAGENTA,
}


def build_session(config: AppConfig) -> SessionManager:
    client = DialogueClient(config.client.base_url, timeout=config.client.timeout_sec)
    mic = AudioStream(
        sample_rate=config.audio.sample_rate,
        block_size=config.audio.block_size,
        ring_buffer_seconds=config.audio.ring_buffer_seconds,
        stale_after_sec=config.audio.stale_after_sec,
        device=config.audio.input_device,
    )
    playback = PlaybackController(
        SpeakerOutput(device=config.audio.output_device),
        require_unlock=config.client.require_unlock,
    )
    return SessionManager(client, mic, playback, config=config)


class StatusPrinter:
    """Prints state changes, replies and errors as they are published."""

    def __init__(self) -> None:
        self._last_state = None
        self._history_len = 0
        self._last_error = None

    def __call__(self, snap: ConversationSnapshot) -> None:
        if snap.state is not self._last_state:
            self._last_state = snap.state
            print(f"{STATE_COLORS[snap.state]}[{snap.status_label}]")
        for speaker, text in snap.history[self._history_len:]:
            if speaker == "ai":
                print(f"{colorama.Fore.BLUE}AI: {text}")
        self._history_len = len(snap.history)
        if snap.progress is not None and snap.state is TurnState.AI_SPEAKING:
            print(f"   goals {snap.progress.goals_met}/{snap.progress.total_goals}")
        if snap.error and snap.error != self._last_error:
            print(f"{colorama.Fore.RED}[error] {snap.error}")
        self._last_error = snap.error


async def main(persona: str | None = None) -> int:
    config = AppConfig.from_env()
    session = build_session(config)
    session.turns.subscribe(StatusPrinter())

    # Launching the demo is the user gesture that allows playback.
    session.unlock_playback()
    try:
        await session.start(persona)
    except SessionError as exc:
        print(f"{colorama.Fore.RED}[conversation_demo] Could not start: {exc}")
        await session.aclose()
        return 1

    print("[conversation_demo] Speak naturally; pause to hand over the turn. Ctrl+C to end.")
    try:
        while session.is_active:
            await asyncio.sleep(0.25)
    finally:
        await session.aclose()
    return 0


def run():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(message)s")
    persona = sys.argv[1] if len(sys.argv) > 1 else None
    try:
        sys.exit(asyncio.run(main(persona)))
    except KeyboardInterrupt:
        print("[conversation_demo] Stopped by user")


if __name__ == "__main__":
    run()
