"""Participant identity helpers."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from marketchat.schemas.conversation import ConversationState


class Role(str, Enum):
    """Participant role in a conversation."""

    CUSTOMER = "customer"
    SELLER = "seller"

    @property
    def counterpart(self) -> "Role":
        return Role.SELLER if self is Role.CUSTOMER else Role.CUSTOMER


def normalize_identifier(value: str) -> str:
    """Normalize a user identifier (usually an email) for comparison."""
    return value.strip().casefold()


@dataclass(frozen=True)
class Actor:
    """The current user as supplied by the UI: normalized id plus role."""

    id: str
    role: Role

    def __post_init__(self) -> None:
        object.__setattr__(self, "id", normalize_identifier(self.id))
        object.__setattr__(self, "role", Role(self.role))

    @property
    def counterpart_role(self) -> Role:
        return self.role.counterpart

    def participates_in(self, conversation: ConversationState) -> bool:
        """Check the actor is the conversation's participant for its role."""
        if self.role is Role.CUSTOMER:
            return conversation.customer_id == self.id
        return conversation.seller_id == self.id
