from .client import DialogueClient, parse_interaction

__all__ = ["DialogueClient", "parse_interaction"]
