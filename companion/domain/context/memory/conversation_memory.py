from typing import List, Optional
import structlog
from pydantic import ValidationError

from companion.domain.models.conversation import ConversationTurn
from companion.infrastructure.storage.kv_store import KeyValueStore

logger = structlog.get_logger(__name__)

CREDENTIAL_KEY = "credential"
USER_FACTS_KEY = "userFacts"
HISTORY_KEY = "conversationHistory"

DEFAULT_USER_FACTS = "User is my friend."
FACT_SEPARATOR = "; "


class ConversationMemory:
    """Typed access to the persisted conversation state of one namespace"""

    def __init__(self, store: KeyValueStore, history_window: int = 6):
        self.store = store
        self.history_window = history_window

    async def get_credential(self) -> Optional[str]:
        stored = await self.store.get([CREDENTIAL_KEY])
        credential = stored.get(CREDENTIAL_KEY)
        return credential or None

    async def set_credential(self, credential: str) -> None:
        await self.store.set({CREDENTIAL_KEY: credential})

    async def get_user_facts(self) -> str:
        """Stored facts, or the placeholder fact when none are stored"""

        stored = await self.store.get([USER_FACTS_KEY])
        return stored.get(USER_FACTS_KEY) or DEFAULT_USER_FACTS

    async def get_history(self) -> List[ConversationTurn]:
        """Get conversation history, skipping entries that no longer validate"""

        stored = await self.store.get([HISTORY_KEY])
        raw = stored.get(HISTORY_KEY) or []
        if not isinstance(raw, list):
            logger.warning("Stored history is not a list, ignoring it", kind=type(raw).__name__)
            return []

        history: List[ConversationTurn] = []
        for entry in raw:
            try:
                history.append(ConversationTurn.model_validate(entry))
            except ValidationError as e:
                logger.warning("Dropping invalid history entry", error=str(e))
        return history

    async def commit_turn(
        self,
        history: List[ConversationTurn],
        user_facts: Optional[str] = None,
    ) -> List[ConversationTurn]:
        """Persist a finished turn's history window, and facts when they changed, in one write"""

        window = history[-self.history_window:] if self.history_window > 0 else []
        items = {HISTORY_KEY: [turn.model_dump(mode="json") for turn in window]}
        if user_facts is not None:
            items[USER_FACTS_KEY] = user_facts
        await self.store.set(items)
        return window

    async def clear_history(self) -> None:
        await self.store.remove([HISTORY_KEY])
