from typing import Optional
import uuid

import structlog

from companion.config.settings import Settings
from companion.domain.context.context_gate import ContextGate, PageContextProvider
from companion.domain.context.memory.conversation_memory import ConversationMemory
from companion.domain.context.persona import PersonaDeriver
from companion.domain.context.prompt_assembler import PromptAssembler
from companion.domain.context.state.state_manager import StateManager, TurnStatus
from companion.domain.errors import ConfigurationMissing, InvalidCredentialError
from companion.domain.models.conversation import TurnOutcome, TurnResult
from companion.domain.orchestration.core.turn_pipeline import TurnPipeline, UpdateCallback
from companion.domain.recovery.recovery_policy import RecoveryPolicy
from companion.domain.response.response_processor import ResponseProcessor
from companion.domain.response.speech import to_speakable
from companion.infrastructure.llm.completion_client import CompletionClient
from companion.infrastructure.observability.logging import companion_logger, metrics
from companion.infrastructure.storage.kv_store import JsonFileKeyValueStore, KeyValueStore

logger = structlog.get_logger(__name__)

NO_CREDENTIAL_MESSAGE = "I need a key."
CREDENTIAL_SAVED_MESSAGE = "I am satisfied with my care."
MEMORY_CLEARED_MESSAGE = "My recent memory banks have been cleared."


class ConversationSession:
    """The one ongoing conversation of a storage namespace

    Owns every pipeline stage and allows a single turn in flight at a time.
    """

    def __init__(
        self,
        memory: ConversationMemory,
        completion_client: CompletionClient,
        context_gate: Optional[ContextGate] = None,
        persona_deriver: Optional[PersonaDeriver] = None,
        prompt_assembler: Optional[PromptAssembler] = None,
        response_processor: Optional[ResponseProcessor] = None,
        recovery_policy: Optional[RecoveryPolicy] = None,
        state_manager: Optional[StateManager] = None,
        credential_prefix: str = "gsk_",
    ):
        self.memory = memory
        self.completion_client = completion_client
        self.state_manager = state_manager or StateManager()
        self.recovery_policy = recovery_policy or RecoveryPolicy(memory)
        self.credential_prefix = credential_prefix
        self.pipeline = TurnPipeline(
            memory=memory,
            completion_client=completion_client,
            context_gate=context_gate or ContextGate(),
            persona_deriver=persona_deriver or PersonaDeriver(),
            prompt_assembler=prompt_assembler or PromptAssembler(),
            response_processor=response_processor or ResponseProcessor(memory),
            recovery_policy=self.recovery_policy,
        )

    @classmethod
    def from_settings(cls, settings: Settings, store: Optional[KeyValueStore] = None) -> "ConversationSession":
        memory = ConversationMemory(
            store or JsonFileKeyValueStore(settings.storage_path),
            history_window=settings.history_window,
        )
        client = CompletionClient(
            url=settings.completion_url,
            model=settings.completion_model,
            temperature=settings.temperature,
            top_p=settings.top_p,
            max_tokens=settings.max_tokens,
            timeout=settings.request_timeout,
        )
        return cls(
            memory=memory,
            completion_client=client,
            context_gate=ContextGate(
                char_limit=settings.context_char_limit,
                fetch_timeout=settings.context_fetch_timeout,
            ),
            prompt_assembler=PromptAssembler(
                assistant_name=settings.assistant_name,
                char_limit=settings.context_char_limit,
            ),
            credential_prefix=settings.credential_prefix,
        )

    async def process_utterance(
        self,
        utterance: str,
        page: Optional[PageContextProvider] = None,
        on_update: Optional[UpdateCallback] = None,
    ) -> TurnResult:
        """Run one turn; every failure becomes a spoken message

        Raises:
            ValueError: blank utterance
            TurnInProgressError: another turn is still running
        """

        utterance = (utterance or "").strip()
        if not utterance:
            raise ValueError("Utterance is empty")

        turn_id = uuid.uuid4().hex[:12]
        await self.state_manager.begin_turn(turn_id)
        structlog.contextvars.bind_contextvars(turn_id=turn_id)
        final_status = TurnStatus.IDLE

        try:
            companion_logger.log_turn_event("turn_started", {"chars": len(utterance)})
            metrics.increment_counter("turns")

            try:
                credential = await self._require_credential()
            except ConfigurationMissing:
                logger.warning("No credential configured, skipping turn")
                return TurnResult(
                    text=NO_CREDENTIAL_MESSAGE,
                    speakable=to_speakable(NO_CREDENTIAL_MESSAGE),
                    outcome=TurnOutcome.UNCONFIGURED,
                )

            try:
                final_state = await self.pipeline.run(
                    utterance=utterance,
                    credential=credential,
                    page=page,
                    on_update=on_update,
                )
                result = final_state["result"]
            except Exception as e:
                logger.exception("Turn failed before a reply was obtained")
                message, reset = await self.recovery_policy.recover(e)
                result = TurnResult(
                    text=message,
                    speakable=to_speakable(message),
                    outcome=TurnOutcome.RESET if reset else TurnOutcome.RECOVERED,
                )

            if result.outcome != TurnOutcome.COMPLETED:
                final_status = TurnStatus.ERROR

            companion_logger.log_turn_event(
                "turn_finished",
                {"outcome": result.outcome.value, "emotion": result.emotion.value},
            )
            return result

        finally:
            await self.state_manager.end_turn(final_status)
            structlog.contextvars.unbind_contextvars("turn_id")

    async def _require_credential(self) -> str:
        credential = await self.memory.get_credential()
        if not credential:
            raise ConfigurationMissing("No completion credential configured")
        return credential

    async def register_credential(self, credential: str) -> str:
        """Validate and persist the completion credential

        Raises:
            InvalidCredentialError: empty, or missing the expected prefix
        """

        credential = (credential or "").strip()
        if not credential or not credential.startswith(self.credential_prefix):
            raise InvalidCredentialError(
                f"Invalid key. It must start with '{self.credential_prefix}'"
            )

        await self.memory.set_credential(credential)
        companion_logger.log_memory_update("credential", "set")
        return CREDENTIAL_SAVED_MESSAGE

    async def reset_memory(self) -> str:
        """Clear recent conversation history; stored facts are kept"""

        await self.memory.clear_history()
        companion_logger.log_memory_update("conversation_history", "clear")
        return MEMORY_CLEARED_MESSAGE
