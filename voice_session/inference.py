"""
Inference Invocation

One streamed model completion per finalized user utterance.
"""

import logging
import time
from typing import AsyncIterator, Dict, List, Optional, Sequence

from .exceptions import InferenceStreamFailure
from .models import Turn
from .providers.base import InferenceProvider
from .structured_logger import StructuredLogger

logger = logging.getLogger(__name__)


class InferenceInvocation:
    """
    Streams a reply for the current conversation history.

    No retry and no timeout: a failure ends the stream with
    InferenceStreamFailure, and fragments already yielded stand.
    """

    def __init__(
        self,
        provider: InferenceProvider,
        model: str,
        system_prompt: str,
        event_log: Optional[StructuredLogger] = None,
    ):
        self.provider = provider
        self.model = model
        self.system_prompt = system_prompt
        self.event_log = event_log or StructuredLogger()

    def stream(self, history: Sequence[Turn], session_id: Optional[str] = None) -> AsyncIterator[str]:
        """
        Args:
            history: Turns so far; copied now, before the request is made
            session_id: Used as log prefix

        Returns:
            Async iterator of non-empty text fragments in arrival order.
            Iteration raises InferenceStreamFailure if the stream cannot be
            opened or breaks off.
        """
        messages = [turn.to_message() for turn in history]
        return self._stream(messages, session_id or "-")

    async def _stream(self, messages: List[Dict[str, str]], sid: str) -> AsyncIterator[str]:
        start = time.time()
        first_token_ms = None
        fragments = 0

        try:
            async for fragment in self.provider.stream_chat(self.model, self.system_prompt, messages):
                if not fragment:
                    continue
                if first_token_ms is None:
                    first_token_ms = (time.time() - start) * 1000
                    self.event_log.latency_recorded(sid, "llm_first_token", first_token_ms, {"model": self.model})
                fragments += 1
                yield fragment
        except InferenceStreamFailure:
            raise
        except Exception as e:
            logger.error(f"[{sid}] LLM stream failed after {fragments} fragment(s): {e}")
            raise InferenceStreamFailure(f"{self.provider.name}: {e}") from e

        total_ms = (time.time() - start) * 1000
        logger.info(f"[{sid}] LLM stream complete: {fragments} fragment(s) in {total_ms:.0f}ms")
