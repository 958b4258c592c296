"""
Deepgram Providers

Streaming speech-to-text over the live listen WebSocket and REST
text-to-speech, both with aiohttp.

Reference:
    https://developers.deepgram.com/reference/listen-live
    https://developers.deepgram.com/reference/text-to-speech-api
"""

import asyncio
import json
import logging
from typing import AsyncIterator, Optional

import aiohttp

from ..exceptions import ProviderError
from ..models import TranscriptEvent
from .base import TranscriptionParams, VoiceConfig

logger = logging.getLogger(__name__)

LISTEN_URL = "wss://api.deepgram.com/v1/listen"
SPEAK_URL = "https://api.deepgram.com/v1/speak"


def _flag(value: bool) -> str:
    return "true" if value else "false"


class _DeepgramClient:
    """Owns the aiohttp session shared by a provider's requests."""

    def __init__(self, api_key: Optional[str], session: Optional[aiohttp.ClientSession] = None):
        self.api_key = api_key
        self.session = session
        self._owns_session = session is None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()
            self._owns_session = True
        return self.session

    @property
    def headers(self):
        return {"Authorization": f"Token {self.api_key}"}

    async def close(self):
        if self._owns_session and self.session and not self.session.closed:
            await self.session.close()
        self.session = None


class DeepgramListenStream:
    """
    One open live-transcription socket.

    Deepgram closes idle sockets after ~10s without audio, so a KeepAlive
    text frame is sent periodically.
    """

    def __init__(self, ws: aiohttp.ClientWebSocketResponse, keepalive_interval: float = 8.0):
        self.ws = ws
        self.keepalive_interval = keepalive_interval
        self._keepalive_task: Optional[asyncio.Task] = None
        if keepalive_interval > 0:
            self._keepalive_task = asyncio.create_task(self._keepalive_loop())

    async def send(self, audio: bytes) -> None:
        if self.ws.closed:
            raise ConnectionError("Deepgram listen socket is closed")
        await self.ws.send_bytes(audio)

    def __aiter__(self) -> AsyncIterator[TranscriptEvent]:
        return self.events()

    async def events(self) -> AsyncIterator[TranscriptEvent]:
        async for msg in self.ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                event = self._parse(msg.data)
                if event is not None:
                    yield event
            elif msg.type == aiohttp.WSMsgType.ERROR:
                raise ProviderError("deepgram", f"listen socket error: {self.ws.exception()}")
            elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
                break

    @staticmethod
    def _parse(raw: str) -> Optional[TranscriptEvent]:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Invalid JSON from Deepgram: {raw[:200]}")
            return None

        msg_type = data.get("type")
        if msg_type == "Results":
            alternatives = (data.get("channel") or {}).get("alternatives") or [{}]
            transcript = alternatives[0].get("transcript") or ""
            return TranscriptEvent(text=transcript, is_final=bool(data.get("is_final", False)))
        if msg_type == "Metadata":
            logger.debug(f"Deepgram metadata: request_id={data.get('request_id')}")
        elif msg_type == "Error":
            logger.error(f"Deepgram error message: {data}")
        return None

    async def _keepalive_loop(self):
        try:
            while not self.ws.closed:
                await asyncio.sleep(self.keepalive_interval)
                if not self.ws.closed:
                    await self.ws.send_str(json.dumps({"type": "KeepAlive"}))
        except asyncio.CancelledError:
            pass
        except (ConnectionError, RuntimeError) as e:
            logger.debug(f"KeepAlive stopped: {e}")

    async def close(self) -> None:
        if self._keepalive_task and not self._keepalive_task.done():
            self._keepalive_task.cancel()
        if not self.ws.closed:
            try:
                await self.ws.send_str(json.dumps({"type": "CloseStream"}))
            except (ConnectionError, RuntimeError) as e:
                logger.debug(f"CloseStream not sent: {e}")
            await self.ws.close()


class DeepgramTranscriptionProvider(_DeepgramClient):
    """Opens Deepgram live listen sockets."""

    name = "deepgram"

    def __init__(
        self,
        api_key: Optional[str],
        session: Optional[aiohttp.ClientSession] = None,
        keepalive_interval: float = 8.0,
    ):
        super().__init__(api_key, session)
        self.keepalive_interval = keepalive_interval

    async def open(self, params: TranscriptionParams) -> DeepgramListenStream:
        session = await self._ensure_session()
        query = {
            "model": params.model,
            "language": params.language,
            "encoding": params.encoding,
            "sample_rate": str(params.sample_rate),
            "channels": str(params.channels),
            "interim_results": _flag(params.interim_results),
            "punctuate": _flag(params.punctuate),
            "smart_format": _flag(params.smart_format),
            "vad_events": "true",
        }
        logger.debug(f"Opening Deepgram listen socket: model={params.model}, rate={params.sample_rate}Hz")
        try:
            ws = await session.ws_connect(LISTEN_URL, params=query, headers=self.headers)
        except aiohttp.WSServerHandshakeError as e:
            raise ProviderError("deepgram", f"listen handshake rejected: {e.message}", e.status) from e
        return DeepgramListenStream(ws, keepalive_interval=self.keepalive_interval)


class DeepgramSynthesisProvider(_DeepgramClient):
    """Deepgram REST text-to-speech."""

    name = "deepgram"

    def __init__(
        self,
        api_key: Optional[str],
        session: Optional[aiohttp.ClientSession] = None,
        request_timeout: float = 30.0,
    ):
        super().__init__(api_key, session)
        self.request_timeout = request_timeout

    async def synthesize(self, text: str, voice: VoiceConfig) -> bytes:
        """
        Synthesize text with Deepgram speak.

        Args:
            text: Sentence to speak
            voice: Voice model, encoding and sample rate

        Returns:
            Audio bytes in the requested encoding

        Raises:
            ProviderError: On non-200 responses or an empty payload
            aiohttp.ClientError: On transport failure
        """
        session = await self._ensure_session()
        params = {
            "model": voice.model,
            "encoding": voice.encoding,
            "sample_rate": str(voice.sample_rate),
        }
        async with session.post(
            SPEAK_URL,
            params=params,
            json={"text": text},
            headers=self.headers,
            timeout=aiohttp.ClientTimeout(total=self.request_timeout),
        ) as response:
            if response.status != 200:
                error_text = await response.text()
                raise ProviderError("deepgram", error_text[:300], response.status)
            audio = await response.read()

        if not audio:
            raise ProviderError("deepgram", "empty audio payload")

        logger.debug(f"Deepgram TTS synthesized {len(text)} chars -> {len(audio) / 1024:.1f} KB")
        return audio
