"""Voice activity detection and turn-taking client for spoken dialogue."""

__version__ = "0.1.0"
