"""Exception types raised across the voice dialogue client."""

from __future__ import annotations


class VoiceDialogueError(Exception):
    """Base class for every error raised by this package."""


class DeviceError(VoiceDialogueError):
    """Microphone or speaker could not be opened, or was lost."""


class ApiError(VoiceDialogueError):
    """A call to the remote dialogue service failed."""


class PlaybackError(VoiceDialogueError):
    """A synthesized reply could not be played."""


class SessionError(VoiceDialogueError):
    """A dialogue session could not be started."""


class RecordingStateError(VoiceDialogueError, RuntimeError):
    """Recording controller used out of order (open twice, close when closed)."""
