"""
Ordered Synthesis Queue

Serializes per-sentence speech synthesis for one session:
- Submissions never block: each gets a sequence number and a completion future
- A single drain worker calls the synthesis provider one sentence at a time
- Every submitted sentence produces exactly one result, delivered in
  submission order (audio, or a failure marker for the text-only fallback)

Because the worker is strictly sequential, a slow sentence holds back the
ones behind it instead of letting them overtake it.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from .exceptions import QueueClosedError, SynthesisFailure, SynthesisTimeout
from .models import SentenceUnit, SynthesisResult
from .providers.base import SynthesisProvider, VoiceConfig
from .structured_logger import StructuredLogger

logger = logging.getLogger(__name__)

ResultCallback = Callable[[SynthesisResult], Awaitable[None]]


@dataclass
class _QueueItem:
    sequence: int
    unit: SentenceUnit
    future: "asyncio.Future[SynthesisResult]"
    submitted_at: float


class OrderedSynthesisQueue:
    """
    Per-session synthesis queue with strict output ordering.

    Flow:
    1. submit(unit) assigns the next sequence number and returns a future
    2. The drain worker picks items in sequence order
    3. Each item is synthesized with a bounded wait
    4. The result goes to result_callback, then resolves the item's future
    """

    def __init__(
        self,
        provider: SynthesisProvider,
        voice: VoiceConfig,
        result_callback: Optional[ResultCallback] = None,
        timeout: float = 10.0,
        session_id: Optional[str] = None,
        event_log: Optional[StructuredLogger] = None,
    ):
        """
        Args:
            provider: Synthesis capability
            voice: Voice model/encoding/sample rate for every call
            result_callback: Awaited once per result, in submission order
            timeout: Seconds to wait for one sentence's audio
            session_id: Used as log prefix
            event_log: Structured logger for latency events
        """
        self.provider = provider
        self.voice = voice
        self.result_callback = result_callback
        self.timeout = timeout
        self.session_id = session_id or "-"
        self.event_log = event_log or StructuredLogger()

        self._queue: "asyncio.Queue[Optional[_QueueItem]]" = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._closed = False
        self._next_sequence = 0
        self._in_flight: Optional[_QueueItem] = None

        # Statistics
        self.sentences_submitted = 0
        self.sentences_synthesized = 0
        self.sentences_failed = 0
        self.sentences_timed_out = 0
        self.sentences_discarded = 0
        self.total_synthesis_time_ms = 0.0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize() + (1 if self._in_flight else 0)

    def start(self):
        """Start the drain worker (idempotent)."""
        if self._worker is None and not self._closed:
            self._worker = asyncio.create_task(self._drain())

    def submit(self, unit: SentenceUnit) -> "asyncio.Future[SynthesisResult]":
        """
        Queue a sentence for synthesis.

        Returns:
            Future resolved with this unit's SynthesisResult once it has been delivered

        Raises:
            QueueClosedError: If the queue has been closed
        """
        if self._closed:
            raise QueueClosedError(f"[{self.session_id}] synthesis queue is closed")

        future = asyncio.get_running_loop().create_future()
        item = _QueueItem(
            sequence=self._next_sequence,
            unit=unit,
            future=future,
            submitted_at=time.perf_counter(),
        )
        self._next_sequence += 1
        self.sentences_submitted += 1
        self._queue.put_nowait(item)
        self.start()

        logger.debug(f"[{self.session_id}] Queued sentence #{item.sequence}: '{unit.sentence[:40]}'")
        return future

    async def _drain(self):
        try:
            while True:
                item = await self._queue.get()
                if item is None:
                    break

                self._in_flight = item
                result = await self._synthesize(item)

                if self._closed:
                    logger.debug(f"[{self.session_id}] Queue closed, dropping output for #{item.sequence}")
                else:
                    await self._deliver(result)

                if not item.future.done():
                    item.future.set_result(result)
                self._in_flight = None
        except asyncio.CancelledError:
            logger.debug(f"[{self.session_id}] Synthesis worker cancelled")
            raise
        finally:
            self._in_flight = None

    async def _synthesize(self, item: _QueueItem) -> SynthesisResult:
        sentence = item.unit.sentence
        start = time.perf_counter()
        audio = None
        error = None

        try:
            audio = await asyncio.wait_for(
                self.provider.synthesize(sentence, self.voice),
                timeout=self.timeout,
            )
            if not audio:
                raise SynthesisFailure("provider returned no audio")
        except asyncio.TimeoutError:
            error = SynthesisTimeout(self.timeout)
            self.sentences_timed_out += 1
        except SynthesisFailure as e:
            error = e
        except Exception as e:
            error = SynthesisFailure(f"{type(e).__name__}: {e}")

        elapsed_ms = (time.perf_counter() - start) * 1000
        self.total_synthesis_time_ms += elapsed_ms

        if error is None:
            self.sentences_synthesized += 1
            logger.info(
                f"[{self.session_id}] Sentence #{item.sequence} synthesized in {elapsed_ms:.0f}ms "
                f"({len(audio) / 1024:.1f} KB)"
            )
        else:
            audio = None
            self.sentences_failed += 1
            logger.warning(f"[{self.session_id}] TTS failed for sentence #{item.sequence}: {error}")

        self.event_log.latency_recorded(
            self.session_id,
            "tts",
            elapsed_ms,
            {"sequence": item.sequence, "ok": error is None},
        )

        return SynthesisResult(
            unit=item.unit,
            sequence=item.sequence,
            audio=audio,
            error=error,
            synthesis_time_ms=elapsed_ms,
            metadata={"queue_wait_ms": (start - item.submitted_at) * 1000},
        )

    async def _deliver(self, result: SynthesisResult):
        if self.result_callback is None:
            return
        try:
            await self.result_callback(result)
        except Exception as e:
            logger.error(
                f"[{self.session_id}] Result callback failed for sentence #{result.sequence}: {e}",
                exc_info=True,
            )

    def close(self):
        """
        Stop accepting submissions.

        The sentence currently being synthesized may finish (its output is
        not delivered); sentences that have not started are discarded.
        """
        if self._closed:
            return
        self._closed = True

        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if item is None:
                continue
            self.sentences_discarded += 1
            if not item.future.done():
                item.future.set_result(SynthesisResult(
                    unit=item.unit,
                    sequence=item.sequence,
                    error=QueueClosedError("discarded on close"),
                ))

        self._queue.put_nowait(None)
        logger.info(
            f"[{self.session_id}] Synthesis queue closed "
            f"(in_flight={self._in_flight is not None}, discarded={self.sentences_discarded})"
        )

    async def aclose(self):
        """Close and wait for the in-flight sentence to finish."""
        self.close()
        if self._worker is not None:
            try:
                await self._worker
            except asyncio.CancelledError:
                pass

    def get_stats(self) -> Dict[str, Any]:
        """Get queue statistics"""
        return {
            "closed": self._closed,
            "pending": self.pending,
            "sentences_submitted": self.sentences_submitted,
            "sentences_synthesized": self.sentences_synthesized,
            "sentences_failed": self.sentences_failed,
            "sentences_timed_out": self.sentences_timed_out,
            "sentences_discarded": self.sentences_discarded,
            "avg_synthesis_time_ms": self.total_synthesis_time_ms / max(
                1, self.sentences_synthesized + self.sentences_failed
            ),
        }
