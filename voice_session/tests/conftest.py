"""
pytest Configuration and Fixtures

Provides in-memory stand-ins for the three capabilities and the client sink:
    - session_config: SessionConfig with mock providers and fast timeouts
    - sink: RecordingSink collecting outbound messages
    - stt_provider: FakeTranscriptionProvider with scriptable failures
    - tts_provider: ScriptedSynthesisProvider with per-sentence latency/errors
    - llm_provider: ScriptedInferenceProvider yielding fixed fragments
"""

import asyncio
from typing import Dict, List, Optional

import pytest

from voice_session.config import SessionConfig
from voice_session.models import TranscriptEvent
from voice_session.providers.base import TranscriptionParams, VoiceConfig
from voice_session.structured_logger import StructuredLogger


class RecordingSink:
    """Outbound sink that records every message."""

    def __init__(self, fail: bool = False):
        self.messages: List[dict] = []
        self.fail = fail

    async def send(self, message: dict) -> None:
        if self.fail:
            raise ConnectionError("client went away")
        self.messages.append(message)

    def of_type(self, msg_type: str) -> List[dict]:
        return [m for m in self.messages if m["type"] == msg_type]


_END = object()


class FakeTranscriptionStream:
    """Transcription stream driven by the test."""

    def __init__(self, send_delay: float = 0.0):
        self.sent: List[bytes] = []
        self.closed = False
        self.fail_on_send: Optional[Exception] = None
        self.send_delay = send_delay
        self._events: "asyncio.Queue" = asyncio.Queue()

    async def send(self, audio: bytes) -> None:
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        if self.fail_on_send is not None:
            raise self.fail_on_send
        if self.closed:
            raise ConnectionError("stream closed")
        self.sent.append(audio)

    def push(self, text: str, is_final: bool = False):
        self._events.put_nowait(TranscriptEvent(text=text, is_final=is_final))

    def drop(self, error: Optional[Exception] = None):
        """Simulate the remote end going away."""
        self._events.put_nowait(error if error is not None else _END)

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        while True:
            item = await self._events.get()
            if item is _END:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    async def close(self) -> None:
        self.closed = True


class FakeTranscriptionProvider:
    """
    Opens FakeTranscriptionStreams.

    `failures` is a list consumed one entry per open(): None opens normally,
    an Exception is raised, and "hang" never returns. `send_delay` makes
    every send on the opened streams suspend for that long.
    """

    name = "fake_stt"

    def __init__(self, failures: Optional[list] = None, send_delay: float = 0.0):
        self.failures = list(failures or [])
        self.send_delay = send_delay
        self.streams: List[FakeTranscriptionStream] = []
        self.open_calls = 0
        self.last_params: Optional[TranscriptionParams] = None

    async def open(self, params: TranscriptionParams) -> FakeTranscriptionStream:
        self.open_calls += 1
        self.last_params = params
        outcome = self.failures.pop(0) if self.failures else None
        if outcome == "hang":
            await asyncio.Event().wait()
        if isinstance(outcome, Exception):
            raise outcome
        stream = FakeTranscriptionStream(send_delay=self.send_delay)
        self.streams.append(stream)
        return stream

    @property
    def current(self) -> FakeTranscriptionStream:
        return self.streams[-1]


class ScriptedSynthesisProvider:
    """
    Returns b"audio:<text>" after a per-sentence latency.

    `latencies` maps sentence text to seconds (or "hang"), `errors` maps
    sentence text to an exception to raise.
    """

    name = "fake_tts"

    def __init__(
        self,
        latencies: Optional[Dict[str, object]] = None,
        errors: Optional[Dict[str, Exception]] = None,
    ):
        self.latencies = latencies or {}
        self.errors = errors or {}
        self.calls: List[str] = []
        self.active = 0
        self.max_active = 0

    async def synthesize(self, text: str, voice: VoiceConfig) -> bytes:
        self.calls.append(text)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            latency = self.latencies.get(text, 0)
            if latency == "hang":
                await asyncio.Event().wait()
            elif latency:
                await asyncio.sleep(latency)
            if text in self.errors:
                raise self.errors[text]
            return f"audio:{text}".encode()
        finally:
            self.active -= 1


class ScriptedInferenceProvider:
    """
    Yields scripted fragments.

    `replies` is consumed one list per call; `error_after` raises after
    that many fragments; `gate` (an asyncio.Event) blocks before the first
    fragment until set.
    """

    name = "fake_llm"

    def __init__(
        self,
        replies: Optional[List[List[str]]] = None,
        error_after: Optional[int] = None,
        gate: Optional[asyncio.Event] = None,
    ):
        self.replies = list(replies or [])
        self.error_after = error_after
        self.gate = gate
        self.requests: List[list] = []

    async def stream_chat(self, model, system_prompt, messages):
        self.requests.append(list(messages))
        fragments = self.replies.pop(0) if self.replies else ["Okay."]
        if self.gate is not None:
            await self.gate.wait()
        for i, fragment in enumerate(fragments):
            if self.error_after is not None and i >= self.error_after:
                raise ConnectionError("model stream reset")
            await asyncio.sleep(0)
            yield fragment


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005):
    """Poll until predicate() is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def session_config():
    """SessionConfig with short timeouts for tests."""
    return SessionConfig(
        mock_providers=True,
        stt_connect_timeout=0.2,
        stt_reconnect_delay=0.01,
        stt_max_reconnect_attempts=3,
        stt_audio_backlog_chunks=4,
        tts_timeout=0.5,
        session_idle_timeout=5.0,
    )


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def stt_provider():
    return FakeTranscriptionProvider()


@pytest.fixture
def tts_provider():
    return ScriptedSynthesisProvider()


@pytest.fixture
def llm_provider():
    return ScriptedInferenceProvider()


@pytest.fixture
def event_log():
    return StructuredLogger()


@pytest.fixture
def voice():
    return VoiceConfig()


@pytest.fixture
def stt_params():
    return TranscriptionParams()


# Test markers
def pytest_configure(config):
    """
    Register custom test markers.
    """
    config.addinivalue_line(
        "markers", "unit: Unit tests (fast, no external dependencies)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (full session wiring)"
    )
