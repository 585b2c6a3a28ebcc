"""Common API dependencies."""

from typing import Annotated

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from marketchat.core.exceptions import BadRequestError, MissingIdentityError, UnauthorizedError
from marketchat.core.identity import Actor, Role
from marketchat.db.session import get_db


async def get_current_actor(
    x_user_id: Annotated[str | None, Header()] = None,
    x_user_role: Annotated[str | None, Header()] = None,
) -> Actor:
    """Build the acting user from the identity headers set by the gateway.

    Authentication happens upstream; this only normalizes what it forwards.
    """
    if not x_user_id or not x_user_id.strip() or not x_user_role:
        raise MissingIdentityError()
    try:
        role = Role(x_user_role.strip().lower())
    except ValueError:
        raise BadRequestError(f"Unknown role '{x_user_role}'") from None
    return Actor(id=x_user_id, role=role)


def require_participant(actor: Actor, conversation) -> None:
    """Raise unless the actor is the conversation's customer or seller."""
    if not actor.participates_in(conversation):
        raise UnauthorizedError("You are not a participant of this conversation")


# Type aliases for dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db)]
CurrentActor = Annotated[Actor, Depends(get_current_actor)]
