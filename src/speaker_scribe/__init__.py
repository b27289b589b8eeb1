"""Speaker-attributed transcription of long recordings with a speech-capable model."""

__version__ = "0.1.0"
