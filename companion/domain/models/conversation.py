from typing import Dict, List, Optional
from pydantic import BaseModel, Field, field_validator
from enum import Enum


class Role(str, Enum):
    """Conversation turn roles"""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class PersonaTone(str, Enum):
    """Tone selected from the user's stored facts"""
    GENTLE = "gentle"
    CHILD = "child"
    ELDER = "elder"

    @property
    def directive(self) -> str:
        return TONE_DIRECTIVES[self]


TONE_DIRECTIVES: Dict[PersonaTone, str] = {
    PersonaTone.GENTLE: "gentle",
    PersonaTone.CHILD: "simple, using smaller words, like explaining to a child",
    PersonaTone.ELDER: "extra patient, clear, and slightly louder",
}


class Emotion(str, Enum):
    """Emotion tag handed to the renderer"""
    HAPPY = "happy"
    CURIOUS = "curious"
    NEUTRAL = "neutral"


class TurnOutcome(str, Enum):
    """How a turn ended"""
    COMPLETED = "completed"
    RECOVERED = "recovered"
    RESET = "reset"
    UNCONFIGURED = "unconfigured"


class ConversationTurn(BaseModel):
    """One role-tagged message in the conversation"""
    role: Role
    content: str = ""

    @field_validator("content", mode="before")
    @classmethod
    def _trim_content(cls, value: Optional[str]) -> str:
        return (value or "").strip()

    @property
    def is_blank(self) -> bool:
        return not self.content

    def to_wire(self) -> Dict[str, str]:
        """Shape expected by the chat-completion endpoint"""
        return {"role": self.role.value, "content": self.content}


class PromptContext(BaseModel):
    """Everything needed to build one request; discarded after the turn"""
    utterance: str
    persona: PersonaTone = PersonaTone.GENTLE
    user_facts: str
    context_snippet: str = ""
    history: List[ConversationTurn] = Field(default_factory=list)


class ProcessedReply(BaseModel):
    """Result of post-processing a raw assistant reply"""
    text: str
    emotion: Emotion = Emotion.NEUTRAL
    extracted_fact: Optional[str] = None
    user_facts: str
    history: List[ConversationTurn] = Field(default_factory=list)


class TurnResult(BaseModel):
    """What the surrounding application renders after a turn"""
    text: str = Field(description="Reply text, directive-free")
    speakable: str = Field(description="Text shaped for speech synthesis")
    emotion: Emotion = Field(default=Emotion.NEUTRAL)
    outcome: TurnOutcome = Field(default=TurnOutcome.COMPLETED)
