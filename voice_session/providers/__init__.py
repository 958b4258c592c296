"""
Capability Providers

Providers:
    - DeepgramTranscriptionProvider: Deepgram live listen (streaming STT)
    - DeepgramSynthesisProvider: Deepgram speak (REST TTS)
    - ChatCompletionsProvider: OpenAI-compatible streaming chat (LLM)
    - Mock*Provider: offline stand-ins for all three
"""

import logging
from dataclasses import dataclass

from .base import (
    InferenceProvider,
    SynthesisProvider,
    TranscriptionParams,
    TranscriptionProvider,
    TranscriptionStream,
    VoiceConfig,
)
from .chat_completions import ChatCompletionsProvider
from .deepgram import DeepgramSynthesisProvider, DeepgramTranscriptionProvider
from .mock import MockInferenceProvider, MockSynthesisProvider, MockTranscriptionProvider

logger = logging.getLogger(__name__)


@dataclass
class Providers:
    """The capability set shared by every session of one process."""
    transcription: TranscriptionProvider
    synthesis: SynthesisProvider
    inference: InferenceProvider

    def names(self):
        return {
            "transcription": self.transcription.name,
            "synthesis": self.synthesis.name,
            "inference": self.inference.name,
        }

    async def close(self):
        """Release HTTP sessions held by the providers."""
        for provider in (self.transcription, self.synthesis, self.inference):
            close = getattr(provider, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception as e:
                logger.warning(f"Error closing {provider.name} provider: {e}")


def build_providers(config) -> Providers:
    """Create providers for a SessionConfig."""
    if config.mock_providers:
        logger.info("Mock providers active (no external API calls)")
        return Providers(
            transcription=MockTranscriptionProvider(),
            synthesis=MockSynthesisProvider(),
            inference=MockInferenceProvider(),
        )

    return Providers(
        transcription=DeepgramTranscriptionProvider(config.deepgram_api_key),
        synthesis=DeepgramSynthesisProvider(config.deepgram_api_key),
        inference=ChatCompletionsProvider(config.llm_base_url, config.llm_api_key),
    )


__all__ = [
    "TranscriptionParams",
    "TranscriptionProvider",
    "TranscriptionStream",
    "SynthesisProvider",
    "InferenceProvider",
    "VoiceConfig",
    "ChatCompletionsProvider",
    "DeepgramTranscriptionProvider",
    "DeepgramSynthesisProvider",
    "MockTranscriptionProvider",
    "MockSynthesisProvider",
    "MockInferenceProvider",
    "Providers",
    "build_providers",
]
