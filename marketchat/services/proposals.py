"""Offer and test-drive negotiation.

Offers and test-drive requests are both proposals: a message that starts
``pending`` and is resolved at most once by the counterparty. The status shown
on a proposal is never edited directly. Each conversation log is projected to
``ProposalCreated`` / ``ProposalResolved`` events and folded into one
``ProposalState`` per proposal, and ``materialize`` writes the folded status
back onto the proposal payloads.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Iterable, Iterator, Union

from marketchat.core.exceptions import (
    InvalidDecisionError,
    InvalidStateError,
    NotFoundError,
    UnauthorizedError,
)
from marketchat.core.identity import Actor
from marketchat.schemas.conversation import Conversation
from marketchat.schemas.message import (
    ChatMessage,
    MessageType,
    OfferMessage,
    OfferResponseMessage,
    ProposalMessage,
    ProposalStatus,
    ResponseMessage,
    ResponsePayload,
    SenderRole,
    TestDriveResponseMessage,
    is_proposal,
    is_response,
)


@dataclass(frozen=True)
class ProposalRule:
    """What a proposal type allows and how its outcome reads."""

    proposal_type: MessageType
    response_type: MessageType
    decisions: frozenset[ProposalStatus]
    label: str


OFFER_RULE = ProposalRule(
    proposal_type=MessageType.OFFER,
    response_type=MessageType.OFFER_RESPONSE,
    decisions=frozenset(
        {ProposalStatus.ACCEPTED, ProposalStatus.REJECTED, ProposalStatus.COUNTERED}
    ),
    label="Offer",
)

TEST_DRIVE_RULE = ProposalRule(
    proposal_type=MessageType.TEST_DRIVE_REQUEST,
    response_type=MessageType.TEST_DRIVE_RESPONSE,
    decisions=frozenset({ProposalStatus.CONFIRMED, ProposalStatus.REJECTED}),
    label="Test drive request",
)

RULES = {rule.proposal_type: rule for rule in (OFFER_RULE, TEST_DRIVE_RULE)}


def format_inr(amount: int) -> str:
    """Format an amount with Indian digit grouping (5,50,000)."""
    digits = str(abs(amount))
    if len(digits) > 3:
        head, tail = digits[:-3], digits[-3:]
        groups = []
        while len(head) > 2:
            groups.insert(0, head[-2:])
            head = head[:-2]
        if head:
            groups.insert(0, head)
        digits = ",".join(groups) + "," + tail
    return f"-{digits}" if amount < 0 else digits


def describe_offer(price: int) -> str:
    return f"Offer: ₹{format_inr(price)}"


def describe_test_drive(date: str, time: str) -> str:
    return f"Test drive requested for {date} at {time}"


def response_text(
    rule: ProposalRule,
    decision: ProposalStatus,
    counter_price: int | None = None,
    vehicle_name: str | None = None,
) -> str:
    """Human readable summary appended to the log when a proposal is resolved."""
    vehicle = vehicle_name or "the vehicle"
    if rule is TEST_DRIVE_RULE:
        if decision is ProposalStatus.CONFIRMED:
            return f"Test drive confirmed for {vehicle}. We'll contact you shortly."
        return f"Test drive request declined for {vehicle}."
    if decision is ProposalStatus.ACCEPTED:
        return "Offer accepted! The deal is confirmed."
    if decision is ProposalStatus.COUNTERED:
        return f"Counter-offer made: ₹{format_inr(counter_price)}"
    return "Offer declined. Thank you for your interest."


# Events


@dataclass(frozen=True)
class ProposalCreated:
    proposal_id: int
    kind: MessageType
    proposer: SenderRole
    price: int | None
    # Resolution already recorded on the payload (e.g. by the backend)
    status: ProposalStatus
    counter_price: int | None
    resolved_at: datetime | None


@dataclass(frozen=True)
class ProposalResolved:
    proposal_id: int
    response_id: int
    responder: SenderRole
    status: ProposalStatus
    counter_price: int | None
    at: datetime


ProposalEvent = Union[ProposalCreated, ProposalResolved]


@dataclass(frozen=True)
class ProposalState:
    proposal_id: int
    kind: MessageType
    proposer: SenderRole
    price: int | None
    status: ProposalStatus = ProposalStatus.PENDING
    counter_price: int | None = None
    resolved_at: datetime | None = None
    resolved_by: int | None = None

    @property
    def is_pending(self) -> bool:
        return self.status is ProposalStatus.PENDING


def events_from(messages: Iterable[ChatMessage]) -> Iterator[ProposalEvent]:
    """Project a message log, in log order, to proposal events."""
    for message in messages:
        if is_proposal(message):
            payload = message.payload
            yield ProposalCreated(
                proposal_id=message.id,
                kind=message.type,
                proposer=message.sender,
                price=getattr(payload, "price", None),
                status=payload.status,
                counter_price=getattr(payload, "counter_price", None),
                resolved_at=payload.resolved_at,
            )
        elif is_response(message):
            yield ProposalResolved(
                proposal_id=message.payload.original_message_id,
                response_id=message.id,
                responder=message.sender,
                status=message.payload.status,
                counter_price=message.payload.counter_price,
                at=message.timestamp,
            )


def reduce(states: dict[int, ProposalState], event: ProposalEvent) -> dict[int, ProposalState]:
    """Apply one event. Returns a new mapping; ``states`` is left untouched."""
    if isinstance(event, ProposalCreated):
        if event.proposal_id in states:
            return states
        state = ProposalState(
            proposal_id=event.proposal_id,
            kind=event.kind,
            proposer=event.proposer,
            price=event.price,
            status=event.status,
            counter_price=event.counter_price,
            resolved_at=event.resolved_at,
        )
        return {**states, event.proposal_id: state}

    state = states.get(event.proposal_id)
    if state is None or not state.is_pending:
        return states
    rule = RULES[state.kind]
    if event.status not in rule.decisions or event.responder == state.proposer:
        return states
    resolved = replace(
        state,
        status=event.status,
        counter_price=event.counter_price if event.status is ProposalStatus.COUNTERED else None,
        resolved_at=state.resolved_at or event.at,
        resolved_by=event.response_id,
    )
    return {**states, event.proposal_id: resolved}


def fold(messages: Iterable[ChatMessage]) -> dict[int, ProposalState]:
    """Fold a conversation log into the current state of every proposal."""
    states: dict[int, ProposalState] = {}
    for event in events_from(messages):
        states = reduce(states, event)
    return states


def materialize(messages: list[ChatMessage]) -> list[ChatMessage]:
    """Write the folded proposal status back onto each proposal payload."""
    states = fold(messages)
    result = []
    for message in messages:
        state = states.get(message.id) if is_proposal(message) else None
        if state is not None:
            update = {"status": state.status, "resolved_at": state.resolved_at}
            if message.type is MessageType.OFFER:
                update["counter_price"] = state.counter_price
            payload = message.payload.model_copy(update=update)
            if payload != message.payload:
                message = message.model_copy(update={"payload": payload})
        result.append(message)
    return result


def check_response(
    conversation: Conversation,
    message_id: int,
    decision: str | ProposalStatus,
    actor: Actor,
    rule: ProposalRule,
    counter_price: int | None = None,
) -> tuple[ProposalMessage, ProposalStatus]:
    """Validate a response to a proposal before anything is mutated.

    Args:
        conversation: Conversation holding the proposal
        message_id: Id of the proposal message
        decision: Requested outcome
        actor: Participant responding
        rule: Rule of the expected proposal type
        counter_price: New price, required when countering

    Returns:
        Tuple of (proposal message, parsed decision)

    Raises:
        NotFoundError: The message is not in the conversation
        InvalidDecisionError: Wrong proposal type, decision or counter price
        InvalidStateError: The proposal is no longer pending
        UnauthorizedError: The actor is not the counterparty of the proposer
    """
    message = next((m for m in conversation.messages if m.id == message_id), None)
    if message is None:
        raise NotFoundError("Message", f"{conversation.id}/{message_id}")
    if message.type is not rule.proposal_type:
        raise InvalidDecisionError(f"Message {message_id} is not a {rule.label.lower()}")

    try:
        status = ProposalStatus(decision)
    except ValueError:
        raise InvalidDecisionError(f"Unknown decision '{decision}'") from None
    if status not in rule.decisions:
        raise InvalidDecisionError(f"'{status.value}' is not a valid response to a {rule.label.lower()}")

    state = fold(conversation.messages)[message_id]
    if not state.is_pending:
        raise InvalidStateError(f"{rule.label} {message_id} is already {state.status.value}")

    if not actor.participates_in(conversation) or actor.role.value == state.proposer.value:
        raise UnauthorizedError(f"Only the counterparty may respond to this {rule.label.lower()}")

    if status is ProposalStatus.COUNTERED:
        if isinstance(counter_price, bool) or not isinstance(counter_price, int) or counter_price <= 0:
            raise InvalidDecisionError("Counter price must be a positive integer")
        if counter_price == state.price:
            raise InvalidDecisionError("Counter price must differ from the offered price")
    elif counter_price is not None:
        raise InvalidDecisionError("Counter price is only allowed when countering")

    return message, status


def build_response(
    rule: ProposalRule,
    proposal: ProposalMessage,
    decision: ProposalStatus,
    *,
    message_id: int,
    responder: SenderRole,
    timestamp: datetime,
    counter_price: int | None = None,
    vehicle_name: str | None = None,
) -> ResponseMessage:
    """Build the response message that resolves ``proposal``."""
    message_class = (
        OfferResponseMessage if isinstance(proposal, OfferMessage) else TestDriveResponseMessage
    )
    return message_class(
        id=message_id,
        sender=responder,
        body=response_text(rule, decision, counter_price, vehicle_name),
        timestamp=timestamp,
        payload=ResponsePayload(
            original_message_id=proposal.id,
            status=decision,
            counter_price=counter_price if decision is ProposalStatus.COUNTERED else None,
        ),
    )
