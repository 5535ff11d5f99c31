"""TableNow: multi-channel restaurant reservation engine."""

__version__ = "0.1.0"
