"""
Chat Completions Provider

Streams replies from any OpenAI-compatible `/chat/completions` endpoint
(OpenAI, Groq, vLLM, Workers AI compatibility layer, ...) using
server-sent events over aiohttp.
"""

import json
import logging
from typing import AsyncIterator, Dict, List, Optional

import aiohttp

from ..exceptions import ProviderError

logger = logging.getLogger(__name__)


class ChatCompletionsProvider:
    """OpenAI-compatible streaming chat client."""

    name = "chat_completions"

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
        temperature: Optional[float] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.temperature = temperature
        self.session = session
        self._owns_session = session is None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()
            self._owns_session = True
        return self.session

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "text/event-stream"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def stream_chat(
        self,
        model: str,
        system_prompt: str,
        messages: List[Dict[str, str]],
    ) -> AsyncIterator[str]:
        """
        Stream a completion.

        Yields:
            Content deltas in arrival order

        Raises:
            ProviderError: On non-200 status or an error payload in the stream
            aiohttp.ClientError: On transport failure
        """
        session = await self._ensure_session()
        payload = {
            "model": model,
            "stream": True,
            "messages": [{"role": "system", "content": system_prompt}, *messages],
        }
        if self.temperature is not None:
            payload["temperature"] = self.temperature

        async with session.post(
            f"{self.base_url}/chat/completions",
            json=payload,
            headers=self._headers(),
            # No total timeout: a reply may stream for a long time
            timeout=aiohttp.ClientTimeout(total=None, sock_connect=10),
        ) as resp:
            if resp.status != 200:
                error_text = await resp.text()
                raise ProviderError(self.name, error_text[:300], resp.status)

            async for raw_line in resp.content:
                line = raw_line.decode("utf-8").strip()
                if not line or not line.startswith("data:"):
                    continue
                data = line[len("data:"):].strip()
                if data == "[DONE]":
                    break
                delta = self._parse_delta(data)
                if delta:
                    yield delta

    def _parse_delta(self, data: str) -> Optional[str]:
        try:
            chunk = json.loads(data)
        except json.JSONDecodeError:
            logger.warning(f"Skipping malformed SSE chunk: {data[:120]}")
            return None

        if "error" in chunk:
            raise ProviderError(self.name, str(chunk["error"]))

        choices = chunk.get("choices") or []
        if not choices:
            return None
        return (choices[0].get("delta") or {}).get("content")

    async def close(self):
        if self._owns_session and self.session and not self.session.closed:
            await self.session.close()
        self.session = None
