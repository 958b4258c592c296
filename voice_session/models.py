"""
Data structures for the voice session pipeline.

Internal records (turns, transcript events, sentence units, synthesis
results) are dataclasses; messages crossing the client WebSocket are
Pydantic models.
"""

import base64
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, Literal

from pydantic import BaseModel, Field


@dataclass(frozen=True)
class Turn:
    """One message in conversation history."""
    role: str
    content: str

    def to_message(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class TranscriptEvent:
    """Transcript produced by the transcription link"""
    text: str
    is_final: bool = False


@dataclass(frozen=True)
class SentenceUnit:
    """
    A synthesizable slice of model output.

    `text` is the exact slice of the stream (whitespace included) so that
    concatenating units reproduces the stream; `sentence` is what gets spoken.
    """
    text: str
    position: int

    @property
    def sentence(self) -> str:
        return self.text.strip()


@dataclass
class SynthesisResult:
    """Outcome of synthesizing one sentence unit"""
    unit: SentenceUnit
    sequence: int
    audio: Optional[bytes] = None
    error: Optional[Exception] = None
    synthesis_time_ms: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None and self.audio is not None

    @property
    def sentence(self) -> str:
        return self.unit.sentence


class ControlMessage(BaseModel):
    """Text frame sent by the client"""
    type: str = Field(..., description="Message type, 'cmd' for commands")
    data: Optional[str] = Field(None, description="Command name, e.g. 'clear'")


class TranscriptMessage(BaseModel):
    """Interim or final transcript sent to the client"""
    type: Literal["text"] = "text"
    text: str
    interim: bool = False


class TextMessage(BaseModel):
    """Model text or text-only fallback sent to the client"""
    type: Literal["text"] = "text"
    text: str


class AudioMessage(BaseModel):
    """Synthesized sentence audio sent to the client"""
    type: Literal["audio"] = "audio"
    text: str
    audio: str = Field(..., description="Base64 encoded audio payload")

    @classmethod
    def from_bytes(cls, text: str, audio: bytes) -> "AudioMessage":
        return cls(text=text, audio=base64.b64encode(audio).decode("utf-8"))


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""
    status: str = Field(..., description="Service status (healthy, degraded)")
    active_sessions: int = Field(..., description="Number of open client sessions")
    providers: Dict[str, str] = Field(default_factory=dict, description="Provider in use per capability")
    mock_mode: bool = Field(False, description="Whether offline mock providers are active")
    uptime_seconds: float = Field(0.0, description="Seconds since service start")
