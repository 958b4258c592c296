"""
Voice Session Service

Real-time spoken conversation over one WebSocket per client:
streaming speech-to-text, a streamed language-model reply split into
sentences, and per-sentence speech synthesis returned in order.
"""

from .config import SessionConfig
from .exceptions import (
    InferenceStreamFailure,
    LinkClosedUnexpectedly,
    LinkConnectError,
    ProviderError,
    QueueClosedError,
    SynthesisFailure,
    SynthesisTimeout,
    VoiceSessionError,
)
from .inference import InferenceInvocation
from .models import SentenceUnit, SynthesisResult, TranscriptEvent, Turn
from .sentence_buffer import SentenceBuffer, split_stream
from .session_controller import SessionController
from .synthesis_queue import OrderedSynthesisQueue
from .transcription_link import ConnectionState, TranscriptionLink

__version__ = "1.0.0"

__all__ = [
    "SessionConfig",
    "SessionController",
    "SentenceBuffer",
    "split_stream",
    "OrderedSynthesisQueue",
    "TranscriptionLink",
    "ConnectionState",
    "InferenceInvocation",
    "Turn",
    "TranscriptEvent",
    "SentenceUnit",
    "SynthesisResult",
    "VoiceSessionError",
    "ProviderError",
    "LinkConnectError",
    "LinkClosedUnexpectedly",
    "SynthesisFailure",
    "SynthesisTimeout",
    "InferenceStreamFailure",
    "QueueClosedError",
]
