from .energy import EnergyVAD, SpeechEnd, SpeechStart, VADEvent

__all__ = ["EnergyVAD", "SpeechStart", "SpeechEnd", "VADEvent"]
