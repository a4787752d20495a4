"""
Conversation Types

Messages, conversations, the per-context analysis cursor and the window
slice handed to extraction.
"""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class Message(BaseModel):
    role: MessageRole
    content: str

    def format(self) -> str:
        speaker = "User" if self.role == MessageRole.USER else "Assistant"
        return f"{speaker}: {self.content}"


class Conversation(BaseModel):
    """An ever-growing list of chat messages."""

    id: str
    messages: list[Message] = Field(default_factory=list)

    def add_user(self, content: str) -> "Conversation":
        self.messages.append(Message(role=MessageRole.USER, content=content))
        return self

    def add_assistant(self, content: str) -> "Conversation":
        self.messages.append(Message(role=MessageRole.ASSISTANT, content=content))
        return self

    def __len__(self) -> int:
        return len(self.messages)


class AnalysisState(BaseModel):
    """
    Per-context analysis cursor.

    Immutable: WindowTracker operations return a new record instead of
    mutating this one. `last_analyzed_message_count` never decreases.
    """

    context_id: str
    last_analyzed_message_count: int = Field(default=0, ge=0)
    window_size: int = 10
    overlap_size: int = 2
    trigger_interval: int = 10
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)


class ConversationWindow(BaseModel):
    """
    A bounded slice of conversation submitted for extraction.

    `start` includes the overlap; `new_start` is where unanalyzed content begins.
    """

    conversation_id: str
    start: int
    new_start: int
    end: int
    messages: list[Message] = Field(default_factory=list)

    @property
    def overlap(self) -> int:
        return self.new_start - self.start

    @property
    def chunk_id(self) -> str:
        """Deterministic grounding id, so replays ground to the same chunk."""
        return f"{self.conversation_id}:{self.start}-{self.end}"

    @property
    def text(self) -> str:
        return "\n".join(m.format() for m in self.messages)

    @property
    def is_empty(self) -> bool:
        return self.end <= self.new_start
