"""
Transcription Link
==================

Manages one session's streaming connection to the speech-to-text capability.

Features:
- Bounded connect (open timeout, failure reported, no retry from connect())
- Transcript delivery to a callback in arrival order
- Automatic reconnect on unexpected close with a fixed delay and a cap on
  consecutive failures, escalating to the error callback once exhausted
- Audio sent while disconnected is held in a bounded backlog and re-sent
  after the link comes back
"""

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Optional

from .exceptions import LinkClosedUnexpectedly, LinkConnectError
from .models import TranscriptEvent
from .providers.base import TranscriptionParams, TranscriptionProvider, TranscriptionStream
from .structured_logger import StructuredLogger

logger = logging.getLogger(__name__)

TranscriptCallback = Callable[[TranscriptEvent], Awaitable[None]]
ErrorCallback = Callable[[Exception], Awaitable[None]]


class ConnectionState:
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class TranscriptionLink:
    """
    Streaming STT link with bounded automatic reconnection.

    Usage:
        link = TranscriptionLink(provider, params, session_id="abc")
        if await link.connect(on_transcript, on_error):
            await link.send_audio(chunk)
        await link.disconnect()
    """

    def __init__(
        self,
        provider: TranscriptionProvider,
        params: TranscriptionParams,
        session_id: Optional[str] = None,
        connect_timeout: float = 5.0,
        reconnect_delay: float = 0.1,
        max_reconnect_attempts: int = 5,
        audio_backlog_chunks: int = 50,
        event_log: Optional[StructuredLogger] = None,
    ):
        self.provider = provider
        self.params = params
        self.session_id = session_id or "-"
        self.connect_timeout = connect_timeout
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_attempts = max_reconnect_attempts
        self.event_log = event_log or StructuredLogger()

        self.state = ConnectionState.DISCONNECTED
        self._stream: Optional[TranscriptionStream] = None
        self._receive_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._on_transcript: Optional[TranscriptCallback] = None
        self._on_error: Optional[ErrorCallback] = None
        self._closing = False
        self._gave_up = False
        self._flushing = False
        self._backlog: Deque[bytes] = deque(maxlen=audio_backlog_chunks if audio_backlog_chunks > 0 else None)
        self._backlog_limit = audio_backlog_chunks

        # Metrics
        self._chunks_sent = 0
        self._bytes_sent = 0
        self._chunks_dropped = 0
        self._events_received = 0
        self._reconnects = 0
        self._connection_time: Optional[float] = None

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED and self._stream is not None

    @property
    def backlog_size(self) -> int:
        return len(self._backlog)

    def _set_state(self, new_state: str, trigger: str):
        if new_state == self.state:
            return
        old_state = self.state
        self.state = new_state
        self.event_log.link_state(self.session_id, old_state, new_state, trigger)

    async def connect(
        self,
        on_transcript: TranscriptCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> bool:
        """
        Open the transcription stream.

        Args:
            on_transcript: Awaited for each non-empty transcript event
            on_error: Awaited with LinkConnectError / LinkClosedUnexpectedly

        Returns:
            bool: True if the link is connected, False on failure (already reported to on_error)
        """
        self._on_transcript = on_transcript
        self._on_error = on_error
        self._closing = False
        self._gave_up = False

        if self.is_connected:
            logger.debug(f"[{self.session_id}] Transcription link already connected")
            return True

        # An explicit connect takes over from a pending reconnect
        await self._stop_task(self._reconnect_task)
        self._reconnect_task = None

        self._set_state(ConnectionState.CONNECTING, "connect")
        error = await self._open()
        if error is not None:
            self._set_state(ConnectionState.DISCONNECTED, "connect_failed")
            logger.error(f"[{self.session_id}] ❌ STT connection failed: {error}")
            await self._report(error)
            return False

        await self._flush_backlog()
        return True

    async def _open(self) -> Optional[LinkConnectError]:
        """Open one stream. Returns the failure instead of raising it."""
        start = time.time()
        try:
            stream = await asyncio.wait_for(self.provider.open(self.params), timeout=self.connect_timeout)
        except asyncio.TimeoutError:
            return LinkConnectError(f"STT connection timeout after {self.connect_timeout:.1f}s")
        except Exception as e:
            error = LinkConnectError(f"{type(e).__name__}: {e}")
            error.__cause__ = e
            return error

        if self._closing:
            await self._close_stream(stream)
            return LinkConnectError("link disconnected while connecting")

        if self._stream is not None:
            await self._release_stream(self._stream)

        self._stream = stream
        self._connection_time = time.time()
        self._set_state(ConnectionState.CONNECTED, "opened")
        self._receive_task = asyncio.create_task(self._receive_loop(stream))

        connect_ms = (self._connection_time - start) * 1000
        logger.info(
            f"[{self.session_id}] ✅ STT connected ({self.provider.name}, {self.params.model}, "
            f"{self.params.sample_rate}Hz) in {connect_ms:.0f}ms"
        )
        self.event_log.latency_recorded(self.session_id, "stt_connect", connect_ms)
        return None

    async def _receive_loop(self, stream: TranscriptionStream):
        error: Optional[Exception] = None
        try:
            async for event in stream:
                if not event.text or not event.text.strip():
                    continue
                self._events_received += 1
                try:
                    await self._on_transcript(event)
                except Exception as e:
                    logger.error(f"[{self.session_id}] Transcript callback error: {e}", exc_info=True)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = e
            logger.warning(f"[{self.session_id}] STT receive loop error: {e}")

        if self._closing or self._stream is not stream:
            return

        logger.warning(f"[{self.session_id}] ⚠️ STT connection closed unexpectedly")
        self._stream = None
        await self._close_stream(stream)
        self._start_reconnect("remote_close", error)

    def _start_reconnect(self, trigger: str, last_error: Optional[Exception] = None):
        if self._closing or self._gave_up or self._on_transcript is None:
            return
        task = self._reconnect_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            return
        self._set_state(ConnectionState.RECONNECTING, trigger)
        self._reconnect_task = asyncio.create_task(self._reconnect_loop(last_error))

    async def _reconnect_loop(self, last_error: Optional[Exception]):
        attempts = 0
        while attempts < self.max_reconnect_attempts:
            await asyncio.sleep(self.reconnect_delay)
            if self._closing:
                return
            attempts += 1
            logger.info(
                f"[{self.session_id}] 🔄 Reconnecting STT "
                f"(attempt {attempts}/{self.max_reconnect_attempts})..."
            )
            error = await self._open()
            if error is None:
                self._reconnects += 1
                await self._flush_backlog()
                return
            last_error = error
            logger.warning(f"[{self.session_id}] Reconnect attempt {attempts} failed: {error}")

        if self._closing:
            return
        self._gave_up = True
        self._backlog.clear()
        self._set_state(ConnectionState.DISCONNECTED, "reconnect_exhausted")
        logger.error(
            f"[{self.session_id}] ❌ Max STT reconnection attempts ({self.max_reconnect_attempts}) exceeded"
        )
        await self._report(LinkClosedUnexpectedly(attempts, last_error))

    async def send_audio(self, chunk: bytes) -> bool:
        """
        Forward an audio chunk.

        Returns:
            bool: True if sent; False if held in the backlog (or dropped after
            the link gave up or was disconnected)
        """
        if self._closing:
            return False

        if self.is_connected and (self._flushing or self._backlog):
            # Live audio queues behind older held audio
            self._hold(chunk)
            await self._flush_backlog()
            return False

        if self.is_connected:
            stream = self._stream
            try:
                await stream.send(chunk)
                self._chunks_sent += 1
                self._bytes_sent += len(chunk)
                return True
            except Exception as e:
                logger.warning(f"[{self.session_id}] ⚠️ STT send failed, reconnecting: {e}")
                if self._stream is stream:
                    await self._release_stream(stream)
                self._hold(chunk)
                self._start_reconnect("send_failed", e)
                return False

        if self._gave_up:
            self._chunks_dropped += 1
            return False

        self._hold(chunk)
        if self.state == ConnectionState.DISCONNECTED:
            self._start_reconnect("send_while_disconnected")
        return False

    def _hold(self, chunk: bytes):
        if self._backlog_limit <= 0:
            self._chunks_dropped += 1
            return
        if len(self._backlog) == self._backlog.maxlen:
            self._chunks_dropped += 1
            logger.warning(f"[{self.session_id}] STT audio backlog full, dropping oldest chunk")
        self._backlog.append(chunk)

    async def _flush_backlog(self):
        """Drain the backlog in order. Only one drain runs at a time."""
        if self._flushing or not self._backlog or not self.is_connected:
            return
        self._flushing = True
        stream = self._stream
        logger.info(f"[{self.session_id}] Re-sending {len(self._backlog)} buffered audio chunk(s)")
        try:
            # Chunks held while a send is in flight join the tail and go out in turn
            while self._backlog and self._stream is stream and self.is_connected:
                chunk = self._backlog.popleft()
                try:
                    await stream.send(chunk)
                except Exception as e:
                    self._backlog.appendleft(chunk)
                    logger.warning(f"[{self.session_id}] Backlog resend interrupted, reconnecting: {e}")
                    if self._stream is stream:
                        await self._release_stream(stream)
                    self._start_reconnect("send_failed", e)
                    break
                self._chunks_sent += 1
                self._bytes_sent += len(chunk)
        finally:
            self._flushing = False

    async def _release_stream(self, stream: TranscriptionStream):
        """Detach the current stream, stop its receive loop and close it."""
        self._stream = None
        receive_task, self._receive_task = self._receive_task, None
        if receive_task is not None and receive_task is not asyncio.current_task():
            receive_task.cancel()
        await self._close_stream(stream)

    async def _stop_task(self, task: Optional[asyncio.Task]):
        if task is None or task is asyncio.current_task() or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug(f"[{self.session_id}] STT task ended with error: {e}")

    async def _close_stream(self, stream: TranscriptionStream):
        try:
            await stream.close()
        except Exception as e:
            logger.debug(f"[{self.session_id}] Error closing STT stream: {e}")

    async def _report(self, error: Exception):
        if self._on_error is None:
            return
        try:
            await self._on_error(error)
        except Exception as e:
            logger.error(f"[{self.session_id}] Link error callback failed: {e}", exc_info=True)

    async def disconnect(self):
        """Close the link. Safe to call in any state, any number of times."""
        self._closing = True

        for task in (self._reconnect_task, self._receive_task):
            await self._stop_task(task)
        self._reconnect_task = None
        self._receive_task = None

        stream, self._stream = self._stream, None
        if stream is not None:
            await self._close_stream(stream)

        self._backlog.clear()
        if self.state != ConnectionState.DISCONNECTED:
            self._set_state(ConnectionState.DISCONNECTED, "disconnect")
            logger.info(f"[{self.session_id}] 🔌 STT disconnected")

    def get_stats(self) -> dict:
        """Get link statistics"""
        return {
            "state": self.state,
            "provider": self.provider.name,
            "chunks_sent": self._chunks_sent,
            "bytes_sent": self._bytes_sent,
            "chunks_dropped": self._chunks_dropped,
            "events_received": self._events_received,
            "reconnects": self._reconnects,
            "backlog_size": len(self._backlog),
            "connected_for": time.time() - self._connection_time
            if self.is_connected and self._connection_time
            else None,
        }
