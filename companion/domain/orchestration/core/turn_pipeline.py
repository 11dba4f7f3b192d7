from typing import TypedDict, List, Dict, Any, Optional, Literal, Callable, Awaitable
from langgraph.graph import StateGraph, END
import structlog

from companion.domain.context.context_gate import ContextGate, PageContextProvider
from companion.domain.context.memory.conversation_memory import ConversationMemory
from companion.domain.context.persona import PersonaDeriver
from companion.domain.context.prompt_assembler import PromptAssembler
from companion.domain.errors import RequestFailed
from companion.domain.models.conversation import (
    ConversationTurn, PersonaTone, PromptContext, TurnOutcome, TurnResult
)
from companion.domain.recovery.recovery_policy import RecoveryPolicy
from companion.domain.response.response_processor import ResponseProcessor
from companion.domain.response.speech import to_speakable
from companion.infrastructure.llm.completion_client import CompletionClient

logger = structlog.get_logger(__name__)

UpdateCallback = Callable[[str, Dict[str, Any]], Awaitable[None]]


class TurnState(TypedDict):
    """State carried through one conversation turn"""
    utterance: str
    credential: str
    page: Optional[PageContextProvider]
    wants_context: bool
    context_snippet: str
    user_facts: str
    history: List[ConversationTurn]
    persona: PersonaTone
    messages: List[ConversationTurn]
    reply: Optional[str]
    error: Optional[RequestFailed]
    result: Optional[TurnResult]


class TurnPipeline:
    """One utterance in, one speakable result out"""

    def __init__(
        self,
        memory: ConversationMemory,
        completion_client: CompletionClient,
        context_gate: ContextGate,
        persona_deriver: PersonaDeriver,
        prompt_assembler: PromptAssembler,
        response_processor: ResponseProcessor,
        recovery_policy: RecoveryPolicy,
    ):
        self.memory = memory
        self.completion_client = completion_client
        self.context_gate = context_gate
        self.persona_deriver = persona_deriver
        self.prompt_assembler = prompt_assembler
        self.response_processor = response_processor
        self.recovery_policy = recovery_policy
        self.workflow = self._create_workflow()

    def _create_workflow(self):
        """Create the turn graph"""

        workflow = StateGraph(TurnState)

        workflow.add_node("detect_triggers", self.detect_triggers_node)
        workflow.add_node("gather_context", self.gather_context_node)
        workflow.add_node("load_memory", self.load_memory_node)
        workflow.add_node("derive_persona", self.derive_persona_node)
        workflow.add_node("assemble_prompt", self.assemble_prompt_node)
        workflow.add_node("request_completion", self.request_completion_node)
        workflow.add_node("process_response", self.process_response_node)
        workflow.add_node("recover", self.recover_node)

        workflow.set_entry_point("detect_triggers")

        workflow.add_edge("detect_triggers", "gather_context")
        workflow.add_edge("gather_context", "load_memory")
        workflow.add_edge("load_memory", "derive_persona")
        workflow.add_edge("derive_persona", "assemble_prompt")
        workflow.add_edge("assemble_prompt", "request_completion")

        workflow.add_conditional_edges(
            "request_completion",
            self.check_completion,
            {
                "success": "process_response",
                "failure": "recover"
            }
        )

        workflow.add_edge("process_response", END)
        workflow.add_edge("recover", END)

        return workflow.compile()

    async def detect_triggers_node(self, state: TurnState) -> Dict[str, Any]:
        wants = state.get("page") is not None and self.context_gate.wants_context(state["utterance"])
        return {"wants_context": wants}

    async def gather_context_node(self, state: TurnState) -> Dict[str, Any]:
        if not state["wants_context"]:
            return {"context_snippet": ""}
        snippet = await self.context_gate.acquire(state["utterance"], state["page"])
        return {"context_snippet": snippet}

    async def load_memory_node(self, state: TurnState) -> Dict[str, Any]:
        user_facts = await self.memory.get_user_facts()
        history = await self.memory.get_history()
        return {"user_facts": user_facts, "history": history}

    async def derive_persona_node(self, state: TurnState) -> Dict[str, Any]:
        persona = self.persona_deriver.derive(state["user_facts"])
        logger.debug("Persona derived", persona=persona.value)
        return {"persona": persona}

    async def assemble_prompt_node(self, state: TurnState) -> Dict[str, Any]:
        context = PromptContext(
            utterance=state["utterance"],
            persona=state["persona"],
            user_facts=state["user_facts"],
            context_snippet=state["context_snippet"],
            history=state["history"],
        )
        return {"messages": self.prompt_assembler.build_messages(context)}

    async def request_completion_node(self, state: TurnState) -> Dict[str, Any]:
        try:
            reply = await self.completion_client.complete(state["messages"], state["credential"])
        except RequestFailed as e:
            return {"error": e}
        return {"reply": reply}

    async def process_response_node(self, state: TurnState) -> Dict[str, Any]:
        processed = await self.response_processor.process(
            reply=state["reply"],
            user_facts=state["user_facts"],
            history=state["history"],
            utterance=state["utterance"],
        )
        result = TurnResult(
            text=processed.text,
            speakable=to_speakable(processed.text),
            emotion=processed.emotion,
            outcome=TurnOutcome.COMPLETED,
        )
        return {"result": result}

    async def recover_node(self, state: TurnState) -> Dict[str, Any]:
        message, reset = await self.recovery_policy.recover(state["error"])
        result = TurnResult(
            text=message,
            speakable=to_speakable(message),
            outcome=TurnOutcome.RESET if reset else TurnOutcome.RECOVERED,
        )
        return {"result": result}

    def check_completion(self, state: TurnState) -> Literal["success", "failure"]:
        return "failure" if state.get("error") is not None else "success"

    async def run(
        self,
        utterance: str,
        credential: str,
        page: Optional[PageContextProvider] = None,
        on_update: Optional[UpdateCallback] = None,
    ) -> Dict[str, Any]:
        """Run one turn and return the final state"""

        initial_state: TurnState = {
            "utterance": utterance,
            "credential": credential,
            "page": page,
            "wants_context": False,
            "context_snippet": "",
            "user_facts": "",
            "history": [],
            "persona": PersonaTone.GENTLE,
            "messages": [],
            "reply": None,
            "error": None,
            "result": None,
        }
        final_state: Dict[str, Any] = dict(initial_state)

        async for chunk in self.workflow.astream(initial_state, stream_mode="updates"):
            for node_id, update in chunk.items():
                if not update:
                    continue
                final_state.update(update)
                if on_update is not None:
                    await on_update(node_id, update)

        return final_state
