"""
Audio module for Motion Coach: exclusive, deduplicated spoken feedback.
"""

from .dispatcher import (
    AudioDispatcher,
    LoggingSpeechEngine,
    SpeechCallbacks,
    SpeechEngine,
    SpeechOptions,
    SpeechResource,
    speech_options,
)

__all__ = [
    "AudioDispatcher",
    "LoggingSpeechEngine",
    "SpeechCallbacks",
    "SpeechEngine",
    "SpeechOptions",
    "SpeechResource",
    "speech_options",
]
