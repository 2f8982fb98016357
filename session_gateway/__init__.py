"""Chat session lifecycle, presence tracking and webhook delivery."""

__version__ = "0.1.0"
