"""
Conversation models - Persisted provider dialogue per (area, specialty).
"""

from datetime import datetime, timezone
from typing import List, Literal

from pydantic import BaseModel, Field

# "user" turns are our requests, "model" turns are the provider's responses
ConversationRole = Literal["user", "model"]


class ConversationPart(BaseModel):
    text: str = Field(..., min_length=1)


class ConversationTurn(BaseModel):
    """One request or response in the discovery dialogue."""
    role: ConversationRole
    parts: List[ConversationPart] = Field(..., min_length=1)

    @classmethod
    def from_text(cls, role: ConversationRole, text: str) -> "ConversationTurn":
        return cls(role=role, parts=[ConversationPart(text=text)])


class DiscoveryConversation(BaseModel):
    """Validated conversation state for one (area, specialty) key."""
    area: str
    specialty: str
    history: List[ConversationTurn] = Field(default_factory=list)
    total_vendors_found: int = 0
    dropped_turns: int = Field(
        default=0,
        description="Stored turns discarded because they failed validation",
    )
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
