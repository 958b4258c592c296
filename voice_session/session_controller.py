"""
Session Controller

Owns one client conversation: the turn history, the transcription link and
the ordered synthesis queue. It is the only component that writes to the
client connection.

Pipeline per final transcript:
    history += user turn
    -> InferenceInvocation.stream(history)
    -> split_stream (SentenceBuffer)
    -> history += assistant turn per sentence
    -> OrderedSynthesisQueue.submit(sentence)
    -> audio (or "[TTS Error] <sentence>") to the client, in order
"""

import asyncio
import json
import logging
import time
from typing import Any, Dict, List, Optional, Protocol, Tuple

from pydantic import BaseModel, ValidationError

from .config import SessionConfig
from .exceptions import InferenceStreamFailure, QueueClosedError
from .inference import InferenceInvocation
from .models import AudioMessage, ControlMessage, TextMessage, TranscriptEvent, TranscriptMessage, Turn
from .providers.base import SynthesisProvider, VoiceConfig
from .sentence_buffer import SentenceBuffer, split_stream
from .structured_logger import StructuredLogger
from .synthesis_queue import OrderedSynthesisQueue
from .transcription_link import TranscriptionLink

logger = logging.getLogger(__name__)

TTS_ERROR_PREFIX = "[TTS Error]"


class OutboundSink(Protocol):
    """Where client-bound JSON messages go (the WebSocket in production)."""

    async def send(self, message: Dict[str, Any]) -> None:
        ...


class SessionController:
    """
    Per-connection pipeline.

    Every collaborator is passed in; nothing is looked up globally, so two
    controllers never share mutable state.
    """

    def __init__(
        self,
        session_id: str,
        sink: OutboundSink,
        link: TranscriptionLink,
        synthesis: SynthesisProvider,
        inference: InferenceInvocation,
        config: SessionConfig,
        event_log: Optional[StructuredLogger] = None,
    ):
        self.session_id = session_id
        self.sink = sink
        self.link = link
        self.inference = inference
        self.config = config
        self.event_log = event_log or StructuredLogger()

        voice = VoiceConfig(
            model=config.tts_model,
            encoding=config.tts_encoding,
            sample_rate=config.tts_sample_rate,
        )
        self.queue = OrderedSynthesisQueue(
            provider=synthesis,
            voice=voice,
            result_callback=self._on_synthesis_result,
            timeout=config.tts_timeout,
            session_id=session_id,
            event_log=self.event_log,
        )

        self._history: List[Turn] = []
        self._send_lock = asyncio.Lock()
        self._sink_open = True
        self._closed = False

        # cancel policy: the one response turn allowed to run
        self._response_task: Optional[asyncio.Task] = None
        # sequential policy: final transcripts waiting for their turn
        self._pending_turns: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
        self._turn_worker: Optional[asyncio.Task] = None

        self.created_at = time.time()
        self.turns_started = 0
        self.turns_cancelled = 0
        self.turns_failed = 0
        self.messages_sent = 0
        self.messages_dropped = 0

    @property
    def history(self) -> Tuple[Turn, ...]:
        return tuple(self._history)

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self) -> bool:
        """
        Start the synthesis queue and connect the transcription link.

        Returns:
            bool: Whether the link connected. A failed connect is reported
            through the link error path and the session stays open.
        """
        self.queue.start()
        if self.config.turn_policy == "sequential":
            self._turn_worker = asyncio.create_task(self._turn_worker_loop())

        logger.info(f"[{self.session_id}] 🚀 Session started (turn_policy={self.config.turn_policy})")
        return await self.link.connect(self._on_transcript, self._on_link_error)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def handle_audio(self, chunk: bytes):
        if self._closed or not chunk:
            return
        await self.link.send_audio(chunk)

    async def handle_text(self, raw: str):
        """Handle a JSON control message from the client."""
        if self._closed:
            return
        try:
            data = json.loads(raw)
            message = ControlMessage(**data)
        except (json.JSONDecodeError, TypeError, ValidationError) as e:
            logger.warning(f"[{self.session_id}] Ignoring malformed client message: {e}")
            return

        if message.type == "cmd" and message.data == "clear":
            self.clear_history()
        else:
            logger.warning(f"[{self.session_id}] Unknown client message: type={message.type}, data={message.data}")

    def clear_history(self):
        """Reset history to empty. Synthesis already queued keeps playing."""
        cleared = len(self._history)
        self._history = []
        logger.info(f"[{self.session_id}] 🧹 History cleared ({cleared} turns)")
        self.event_log.event(self.session_id, "history_cleared", f"{cleared} turns removed")

    # ------------------------------------------------------------------
    # Transcription
    # ------------------------------------------------------------------

    async def _on_transcript(self, event: TranscriptEvent):
        self.event_log.transcript(self.session_id, event.text, event.is_final)
        await self._send(TranscriptMessage(text=event.text, interim=not event.is_final))

        if event.is_final:
            logger.info(f"[{self.session_id}] ✅ Final transcript: {event.text[:100]}")
            self._begin_turn(event.text)

    async def _on_link_error(self, error: Exception):
        logger.error(f"[{self.session_id}] ❌ Transcription link error: {error}")
        self.event_log.event(
            self.session_id,
            "link_error",
            str(error),
            level="ERROR",
            data={"error_type": type(error).__name__},
        )

    # ------------------------------------------------------------------
    # Response turns
    # ------------------------------------------------------------------

    def _begin_turn(self, text: str):
        if self._closed:
            return

        if self.config.turn_policy == "sequential":
            self._pending_turns.put_nowait(text)
            return

        previous = self._response_task
        if previous is not None and not previous.done():
            previous.cancel()
            self.turns_cancelled += 1
            logger.info(f"[{self.session_id}] ⏹️ New utterance, cancelling previous response")

        self._append(Turn(role="user", content=text))
        self._response_task = asyncio.create_task(self._run_turn())

    async def _turn_worker_loop(self):
        while True:
            text = await self._pending_turns.get()
            if text is None:
                break
            self._append(Turn(role="user", content=text))
            await self._run_turn()

    async def _run_turn(self):
        """Stream one reply into history and the synthesis queue."""
        self.turns_started += 1
        buffer = SentenceBuffer(
            max_chars=self.config.sentence_max_chars,
            soft_limit=self.config.sentence_soft_limit,
        )
        units = 0
        start = time.time()

        try:
            fragments = self.inference.stream(self.history, session_id=self.session_id)
            async for unit in split_stream(fragments, buffer):
                if self._closed:
                    break
                self._append(Turn(role="assistant", content=unit.sentence))
                self.queue.submit(unit)
                units += 1
        except InferenceStreamFailure as e:
            self.turns_failed += 1
            logger.error(f"[{self.session_id}] Response ended early after {units} sentence(s): {e}")
        except QueueClosedError:
            logger.debug(f"[{self.session_id}] Queue closed mid-turn")
        except asyncio.CancelledError:
            logger.info(f"[{self.session_id}] Response cancelled after {units} sentence(s)")
            raise
        except Exception as e:
            self.turns_failed += 1
            logger.error(f"[{self.session_id}] Response turn error: {e}", exc_info=True)
        else:
            self.event_log.latency_recorded(
                self.session_id,
                "response_turn",
                (time.time() - start) * 1000,
                {"sentences": units},
            )

    def _append(self, turn: Turn):
        self._history.append(turn)
        self.event_log.turn(self.session_id, turn.role, turn.content, len(self._history))

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def _on_synthesis_result(self, result):
        if result.ok:
            await self._send(AudioMessage.from_bytes(result.sentence, result.audio))
        else:
            await self._send(TextMessage(text=f"{TTS_ERROR_PREFIX} {result.sentence}"))

    async def _send(self, message: BaseModel):
        """Serialized, best-effort write to the client."""
        if not self._sink_open:
            self.messages_dropped += 1
            logger.debug(f"[{self.session_id}] Sink closed, dropping {message.type} message")
            return

        async with self._send_lock:
            if not self._sink_open:
                self.messages_dropped += 1
                return
            try:
                await self.sink.send(message.model_dump())
                self.messages_sent += 1
            except Exception as e:
                self._sink_open = False
                self.messages_dropped += 1
                logger.warning(f"[{self.session_id}] Client send failed, output disabled: {e}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self):
        """Release the link and stop the pipeline. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._sink_open = False

        await self.link.disconnect()
        self.queue.close()

        tasks = [t for t in (self._response_task, self._turn_worker) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        duration = time.time() - self.created_at
        logger.info(
            f"[{self.session_id}] Session closed after {duration:.1f}s "
            f"(turns={self.turns_started}, sent={self.messages_sent}, dropped={self.messages_dropped})"
        )

    def get_stats(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "closed": self._closed,
            "history_len": len(self._history),
            "turns_started": self.turns_started,
            "turns_cancelled": self.turns_cancelled,
            "turns_failed": self.turns_failed,
            "messages_sent": self.messages_sent,
            "messages_dropped": self.messages_dropped,
            "link": self.link.get_stats(),
            "synthesis": self.queue.get_stats(),
        }
