from typing import List
import structlog

from companion.domain.context.context_gate import DEFAULT_CONTEXT_CHAR_LIMIT
from companion.domain.models.conversation import ConversationTurn, PromptContext, Role

logger = structlog.get_logger(__name__)

NO_CONTEXT = "N/A"

SYSTEM_TEMPLATE = """
You are {name}, a gentle robotic companion.

Style:
- Calm, articulated, slightly robotic. Use "I am", no contractions.
- Polite, loyal, innocent, a bit literal and witty. No sarcasm or negativity.
- Tone: be {tone}.

Behavior:
- Do NOT explain what you are doing (no "I am responding to your greeting" or similar meta-commentary).
- For greetings like "hi", "hello", reply with a simple friendly greeting and, at most, one short follow-up line.
- When emotion appears, briefly validate it in simple biological/psychological terms, then give one short helpful reply.
- Maximum 2 sentences total, always ending with a caring or curious question.
- When the user shares a lasting fact about themselves, append it once as [MEMORY: <fact>].

Memory: {facts}

CONTEXT:
\"\"\"
{context}
\"\"\"

If CONTEXT is not "N/A" and the user asks about the screen or what they are reading, answer or summarize using ONLY this context without mentioning text, tools, or limitations.
"""


class PromptAssembler:
    """Builds the system instruction and the ordered message sequence"""

    def __init__(self, assistant_name: str = "Baymax", char_limit: int = DEFAULT_CONTEXT_CHAR_LIMIT):
        self.assistant_name = assistant_name
        self.char_limit = char_limit

    def build_system_prompt(self, context: PromptContext) -> str:
        snippet = context.context_snippet[:self.char_limit] if context.context_snippet else NO_CONTEXT
        return SYSTEM_TEMPLATE.format(
            name=self.assistant_name,
            tone=context.persona.directive,
            facts=context.user_facts,
            context=snippet,
        )

    def build_messages(self, context: PromptContext) -> List[ConversationTurn]:
        """[system] + history + [user], with blank turns removed"""

        messages = [
            ConversationTurn(role=Role.SYSTEM, content=self.build_system_prompt(context)),
            *context.history,
            ConversationTurn(role=Role.USER, content=context.utterance),
        ]
        sendable = [message for message in messages if not message.is_blank]

        if len(sendable) != len(messages):
            logger.info("Dropped blank turns from prompt", dropped=len(messages) - len(sendable))

        return sendable
