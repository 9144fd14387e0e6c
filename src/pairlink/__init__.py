"""pairlink - pair two devices and share text between them in real time."""

__version__ = "0.1.0"
