"""
Provider Base Protocols

Defines the interfaces the session pipeline needs from its three external
capabilities. Concrete providers (Deepgram, OpenAI-compatible chat, mock)
implement these so the pipeline can be wired with any of them.
"""

from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Protocol

from ..models import TranscriptEvent


@dataclass(frozen=True)
class TranscriptionParams:
    """Audio and recognition parameters agreed at link setup"""
    sample_rate: int = 16000
    channels: int = 1
    encoding: str = "linear16"
    language: str = "en-US"
    model: str = "nova-2"
    interim_results: bool = True
    punctuate: bool = True
    smart_format: bool = True


@dataclass(frozen=True)
class VoiceConfig:
    """Session voice used for every synthesis call"""
    model: str = "aura-arcas-en"
    encoding: str = "linear16"
    sample_rate: int = 24000


class TranscriptionStream(Protocol):
    """
    An open streaming recognition connection.

    Iterating yields TranscriptEvents in arrival order; iteration ends when
    the remote side closes the connection.
    """

    async def send(self, audio: bytes) -> None:
        ...

    def __aiter__(self) -> AsyncIterator[TranscriptEvent]:
        ...

    async def close(self) -> None:
        ...


class TranscriptionProvider(Protocol):
    """Opens streaming recognition connections."""

    name: str

    async def open(self, params: TranscriptionParams) -> TranscriptionStream:
        """
        Open a connection and wait for the handshake.

        Raises:
            Exception: On handshake rejection or network failure
        """
        ...


class SynthesisProvider(Protocol):
    """Synthesizes one piece of text into one audio payload."""

    name: str

    async def synthesize(self, text: str, voice: VoiceConfig) -> bytes:
        """
        Returns:
            bytes: Complete audio payload in voice.encoding at voice.sample_rate

        Raises:
            Exception: On synthesis failure (network, API error)
        """
        ...


class InferenceProvider(Protocol):
    """Streams chat completions."""

    name: str

    def stream_chat(
        self,
        model: str,
        system_prompt: str,
        messages: List[Dict[str, str]],
    ) -> AsyncIterator[str]:
        """Yield text fragments of the reply as they arrive."""
        ...
