from typing import Any, Dict, List, Optional
import time

import httpx
import structlog

from companion.domain.errors import MalformedReplyEnvelope, RequestFailed
from companion.domain.models.conversation import ConversationTurn
from companion.infrastructure.observability.logging import companion_logger, metrics

logger = structlog.get_logger(__name__)

FALLBACK_REPLY = "I do not understand."


class CompletionClient:
    """Single-shot, non-streaming client for an OpenAI-compatible chat endpoint"""

    def __init__(
        self,
        url: str,
        model: str,
        temperature: float = 0.6,
        top_p: float = 0.9,
        max_tokens: int = 128,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.model = model
        self.temperature = temperature
        self.top_p = top_p
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.http_client = http_client

    def build_payload(self, messages: List[ConversationTurn]) -> Dict[str, Any]:
        return {
            "model": self.model,
            "messages": [message.to_wire() for message in messages],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "top_p": self.top_p,
            "stream": False,
        }

    async def complete(self, messages: List[ConversationTurn], credential: str) -> str:
        """Return the first choice's content

        Raises:
            RequestFailed: non-2xx status, or any transport/decoding error
        """

        headers = {
            "Authorization": f"Bearer {credential}",
            "Content-Type": "application/json",
        }
        payload = self.build_payload(messages)
        started = time.perf_counter()

        try:
            response = await self._post(payload, headers)
        except httpx.HTTPError as e:
            self._record(messages, started, status=None, error=str(e))
            raise RequestFailed(None, str(e)) from e

        if not response.is_success:
            detail = response.text[:200]
            self._record(messages, started, status=response.status_code, error=detail)
            raise RequestFailed(response.status_code, detail)

        try:
            body = response.json()
        except ValueError as e:
            self._record(messages, started, status=response.status_code, error="invalid JSON body")
            raise RequestFailed(None, "invalid JSON body") from e

        self._record(messages, started, status=response.status_code)

        try:
            return self.extract_reply(body)
        except MalformedReplyEnvelope as e:
            logger.warning("Reply envelope missing content, using fallback", error=str(e))
            return FALLBACK_REPLY

    @staticmethod
    def extract_reply(body: Any) -> str:
        try:
            content = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise MalformedReplyEnvelope(f"choices[0].message.content missing: {e!r}") from e
        if not isinstance(content, str) or not content:
            raise MalformedReplyEnvelope("choices[0].message.content is empty")
        return content

    async def _post(self, payload: Dict[str, Any], headers: Dict[str, str]) -> httpx.Response:
        if self.http_client is not None:
            return await self.http_client.post(self.url, json=payload, headers=headers)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.url, json=payload, headers=headers)

    def _record(self, messages: List[ConversationTurn], started: float,
                status: Optional[int], error: Optional[str] = None) -> None:
        duration_ms = (time.perf_counter() - started) * 1000
        metrics.record_latency("completion_request", duration_ms)
        companion_logger.log_completion_request(
            model=self.model,
            message_count=len(messages),
            duration_ms=round(duration_ms, 2),
            status=status,
            success=error is None,
            error=error,
        )
