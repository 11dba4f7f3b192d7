from typing import Iterable, Optional, Protocol
import asyncio
import structlog

logger = structlog.get_logger(__name__)

DEFAULT_TRIGGERS = (
    "screen", "look", "see", "view",
    "read", "reading", "analyze", "summarize",
    "blog", "article", "page", "website", "this",
)

DEFAULT_CONTEXT_CHAR_LIMIT = 3500


class PageContextProvider(Protocol):
    """Extracts plain text from the user's current foreground page"""

    async def extract(self) -> str:
        ...


class ContextGate:
    """Decides whether page context is wanted and fetches it best-effort"""

    def __init__(
        self,
        triggers: Iterable[str] = DEFAULT_TRIGGERS,
        char_limit: int = DEFAULT_CONTEXT_CHAR_LIMIT,
        fetch_timeout: Optional[float] = None,
    ):
        self.triggers = frozenset(word.lower() for word in triggers)
        self.char_limit = char_limit
        self.fetch_timeout = fetch_timeout

    def wants_context(self, utterance: str) -> bool:
        """True when any trigger term appears in the utterance"""

        text = (utterance or "").lower()
        return any(word in text for word in self.triggers)

    def truncate(self, snippet: Optional[str]) -> str:
        return (snippet or "")[:self.char_limit]

    async def acquire(self, utterance: str, provider: Optional[PageContextProvider]) -> str:
        """Return the truncated page snippet, or an empty string

        Extraction failures never leave this method.
        """

        if provider is None or not self.wants_context(utterance):
            return ""

        try:
            if self.fetch_timeout is not None:
                snippet = await asyncio.wait_for(provider.extract(), timeout=self.fetch_timeout)
            else:
                snippet = await provider.extract()
        except Exception as e:
            logger.warning("Context acquisition failed", error=str(e), error_type=type(e).__name__)
            return ""

        snippet = self.truncate(snippet)
        logger.info("Context acquired", chars=len(snippet))
        return snippet
