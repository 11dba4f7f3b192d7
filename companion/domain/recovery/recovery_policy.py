from typing import Iterable, Optional, Tuple
import structlog

from companion.domain.context.memory.conversation_memory import ConversationMemory
from companion.domain.errors import RequestFailed
from companion.infrastructure.observability.logging import companion_logger, metrics

logger = structlog.get_logger(__name__)

RESET_MESSAGE = "My memory banks were corrupted. I have reset them."
CONNECTIVITY_MESSAGE = "I am having trouble connecting to the cloud."

MALFORMED_REQUEST_STATUSES = frozenset({400})


class RecoveryPolicy:
    """Chooses between an apology and a history reset after a failed turn

    A malformed-request status means the stored history produced a request
    the endpoint rejects, so the history is discarded rather than repaired.
    Nothing is retried.
    """

    def __init__(self, memory: ConversationMemory, reset_statuses: Iterable[int] = MALFORMED_REQUEST_STATUSES):
        self.memory = memory
        self.reset_statuses = frozenset(reset_statuses)

    def should_reset(self, error: BaseException) -> bool:
        status = error.status if isinstance(error, RequestFailed) else None
        return status is not None and status in self.reset_statuses

    async def recover(self, error: BaseException) -> Tuple[str, bool]:
        """Return the message to speak and whether history was cleared"""

        status: Optional[int] = error.status if isinstance(error, RequestFailed) else None

        if self.should_reset(error):
            await self.memory.clear_history()
            metrics.increment_counter("history_resets")
            companion_logger.log_recovery(status=status, history_reset=True, error=str(error))
            return RESET_MESSAGE, True

        metrics.increment_counter("turn_failures")
        companion_logger.log_recovery(status=status, history_reset=False, error=str(error))
        return CONNECTIVITY_MESSAGE, False
