"""ASR-GoT staged reasoning engine."""

__version__ = "0.1.0"
