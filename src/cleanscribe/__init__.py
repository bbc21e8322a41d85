"""Batch ffmpeg cleaning + whisperx transcription with incremental re-runs."""

__version__ = "0.1.0"
