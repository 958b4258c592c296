"""
Mock Providers

Offline stand-ins for the three capabilities, used for local development
and load testing without API keys (MOCK_PROVIDERS=true):
    - MockTranscriptionProvider: emits one utterance per N bytes of audio
    - MockSynthesisProvider: silent WAV sized to the text
    - MockInferenceProvider: echoes the last user turn word by word
"""

import asyncio
import struct
import logging
from typing import AsyncIterator, Dict, List, Optional

from ..models import TranscriptEvent
from .base import TranscriptionParams, VoiceConfig

logger = logging.getLogger(__name__)


def generate_silent_wav(duration_seconds: float, sample_rate: int) -> bytes:
    """
    Build a silent PCM 16-bit mono WAV file.

    Args:
        duration_seconds: Duration in seconds
        sample_rate: Samples per second

    Returns:
        WAV file bytes
    """
    num_samples = max(0, int(duration_seconds * sample_rate))
    num_channels = 1
    bytes_per_sample = 2

    pcm_data = b'\x00' * (num_samples * bytes_per_sample)

    byte_rate = sample_rate * num_channels * bytes_per_sample
    block_align = num_channels * bytes_per_sample
    data_size = len(pcm_data)

    wav_header = struct.pack(
        '<4sI4s4sIHHIIHH4sI',
        b'RIFF',
        36 + data_size,
        b'WAVE',
        b'fmt ',
        16,               # PCM chunk size
        1,                # PCM format
        num_channels,
        sample_rate,
        byte_rate,
        block_align,
        16,               # bits per sample
        b'data',
        data_size,
    )
    return wav_header + pcm_data


class MockTranscriptionStream:
    """Counts audio bytes and emits an interim then a final transcript per utterance."""

    def __init__(self, params: TranscriptionParams, utterance_seconds: float = 2.0):
        bytes_per_second = params.sample_rate * params.channels * 2
        self.utterance_bytes = max(1, int(bytes_per_second * utterance_seconds))
        self._received = 0
        self._utterances = 0
        self._events: "asyncio.Queue[Optional[TranscriptEvent]]" = asyncio.Queue()
        self.closed = False

    async def send(self, audio: bytes) -> None:
        if self.closed:
            raise ConnectionError("mock transcription stream is closed")
        before = self._received // self.utterance_bytes
        self._received += len(audio)
        after = self._received // self.utterance_bytes
        for _ in range(after - before):
            self._utterances += 1
            text = f"mock utterance {self._utterances}"
            await self._events.put(TranscriptEvent(text=text.rsplit(" ", 1)[0], is_final=False))
            await self._events.put(TranscriptEvent(text=text, is_final=True))

    def __aiter__(self) -> AsyncIterator[TranscriptEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[TranscriptEvent]:
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            await self._events.put(None)


class MockTranscriptionProvider:
    name = "mock"

    def __init__(self, utterance_seconds: float = 2.0):
        self.utterance_seconds = utterance_seconds

    async def open(self, params: TranscriptionParams) -> MockTranscriptionStream:
        return MockTranscriptionStream(params, self.utterance_seconds)


class MockSynthesisProvider:
    """
    Silent audio, ~60ms per character.

    Usage:
        - Unit tests without API costs
        - Development without API access
        - Load testing (predictable latency)
    """

    name = "mock"

    def __init__(self, latency: float = 0.0, seconds_per_char: float = 0.06):
        self.latency = latency
        self.seconds_per_char = seconds_per_char

    async def synthesize(self, text: str, voice: VoiceConfig) -> bytes:
        if self.latency:
            await asyncio.sleep(self.latency)
        duration = len(text) * self.seconds_per_char
        wav_audio = generate_silent_wav(duration, voice.sample_rate)
        logger.debug(f"Mock TTS generated {len(text)} chars -> {duration:.1f}s silence ({len(wav_audio)} bytes)")
        return wav_audio


class MockInferenceProvider:
    name = "mock"

    def __init__(self, token_delay: float = 0.0):
        self.token_delay = token_delay

    async def stream_chat(
        self,
        model: str,
        system_prompt: str,
        messages: List[Dict[str, str]],
    ) -> AsyncIterator[str]:
        last_user = next(
            (m["content"] for m in reversed(messages) if m.get("role") == "user"),
            "nothing",
        )
        reply = f"You said: {last_user}. This is a mock reply."
        words = reply.split(" ")
        for i, word in enumerate(words):
            if self.token_delay:
                await asyncio.sleep(self.token_delay)
            yield word if i == 0 else " " + word
