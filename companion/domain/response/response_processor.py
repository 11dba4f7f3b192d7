from typing import Iterable, List, Optional, Tuple
import re
import structlog

from companion.domain.context.memory.conversation_memory import ConversationMemory, FACT_SEPARATOR
from companion.domain.models.conversation import (
    ConversationTurn, Emotion, ProcessedReply, Role
)
from companion.infrastructure.observability.logging import companion_logger

logger = structlog.get_logger(__name__)

MEMORY_DIRECTIVE = re.compile(r"\[MEMORY:\s*(.*?)\]")

POSITIVE_WORDS = ("satisfied", "happy", "good", "of course", "can help")
CURIOUS_WORDS = ("diagnose", "scan", "what", "why", "curious")


class EmotionClassifier:
    """Keyword lexicon lookup; positive terms win over curious ones"""

    def __init__(self, positive: Iterable[str] = POSITIVE_WORDS, curious: Iterable[str] = CURIOUS_WORDS):
        self.lexicon: List[Tuple[Emotion, Tuple[str, ...]]] = [
            (Emotion.HAPPY, tuple(word.lower() for word in positive)),
            (Emotion.CURIOUS, tuple(word.lower() for word in curious)),
        ]

    def classify(self, text: str) -> Emotion:
        lowered = (text or "").lower()
        for emotion, words in self.lexicon:
            if any(word in lowered for word in words):
                return emotion
        return Emotion.NEUTRAL


def extract_memory(reply: str) -> Tuple[str, Optional[str]]:
    """Split a reply into its spoken text and the first memory fact

    Only the first directive yields a fact; every directive is removed from
    the text.
    """
    match = MEMORY_DIRECTIVE.search(reply)
    if not match:
        return reply, None

    fact = match.group(1).strip() or None
    cleaned = MEMORY_DIRECTIVE.sub("", reply)
    cleaned = re.sub(r"[ \t]{2,}", " ", cleaned).strip()
    return cleaned, fact


class ResponseProcessor:
    """Turns a raw reply into persisted memory and a clean, tagged reply"""

    def __init__(self, memory: ConversationMemory, classifier: Optional[EmotionClassifier] = None):
        self.memory = memory
        self.classifier = classifier or EmotionClassifier()

    async def process(
        self,
        reply: str,
        user_facts: str,
        history: List[ConversationTurn],
        utterance: str,
    ) -> ProcessedReply:
        text, fact = extract_memory(reply)

        if fact:
            user_facts = f"{user_facts}{FACT_SEPARATOR}{fact}"
        elif text != reply:
            logger.info("Memory directive carried no fact, ignoring it")

        updated = list(history) + [
            ConversationTurn(role=Role.USER, content=utterance),
            ConversationTurn(role=Role.ASSISTANT, content=text),
        ]
        # Facts and history land together or not at all
        window = await self.memory.commit_turn(updated, user_facts if fact else None)

        if fact:
            companion_logger.log_memory_update("user_facts", "append", {"fact": fact})
        companion_logger.log_memory_update(
            "conversation_history", "append", {"entries": len(window)}
        )

        return ProcessedReply(
            text=text,
            emotion=self.classifier.classify(text),
            extracted_fact=fact,
            user_facts=user_facts,
            history=window,
        )
