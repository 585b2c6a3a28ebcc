"""Unit tests for ConversationService."""

from unittest.mock import call

import pytest

from marketchat.core.exceptions import (
    BadRequestError,
    InvalidDecisionError,
    InvalidStateError,
    NotFoundError,
    UnauthorizedError,
)
from marketchat.core.identity import Actor, Role
from marketchat.schemas import DeliveryStatus, MessageType, ProposalStatus
from marketchat.services import ConversationService, LocalCache


@pytest.fixture
async def conversation(customer_service, vehicle):
    conversation = customer_service.start_conversation("Dealer@Motors.in", vehicle, "Asha")
    await customer_service.flush()
    return conversation


class TestStartConversation:
    """Tests for opening conversations."""

    @pytest.mark.asyncio
    async def test_start_creates_conversation_once(self, customer_service, backend, vehicle):
        """Test that the same customer and vehicle reuse one conversation."""
        first = customer_service.start_conversation("Dealer@Motors.in", vehicle, "Asha")
        second = customer_service.start_conversation("dealer@motors.in", vehicle, "Asha")
        await customer_service.flush()

        assert first.id == second.id
        assert first.customer_id == "asha.buyer@example.com"
        assert first.seller_id == "dealer@motors.in"
        assert first.vehicle_price == 600000
        assert list(backend.conversations) == [first.id]
        assert backend.calls_to("put_conversation") == [first.id]

    @pytest.mark.asyncio
    async def test_seller_cannot_start(self, seller_service, vehicle):
        with pytest.raises(UnauthorizedError):
            seller_service.start_conversation("dealer@motors.in", vehicle, "Asha")

    @pytest.mark.asyncio
    async def test_non_participant_cannot_read(self, conversation, backend, policy, sleep):
        """Test that another seller cannot open the conversation."""
        other = ConversationService(Actor("other@motors.in", Role.SELLER), backend, policy=policy, sleep=sleep)
        other.store.put(conversation)

        with pytest.raises(UnauthorizedError):
            other.get_conversation(conversation.id)

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, customer_service):
        with pytest.raises(NotFoundError):
            customer_service.send_message("conv_missing", "Hello")


class TestMessages:
    """Tests for sending messages."""

    @pytest.mark.asyncio
    async def test_send_message_is_visible_immediately(self, customer_service, conversation, backend):
        """Test that a sent message shows up before the backend answers."""
        message = customer_service.send_message(conversation.id, "  Is it still available?  ")

        assert message.body == "Is it still available?"
        assert message.delivery is DeliveryStatus.SENDING
        assert customer_service.get_conversation(conversation.id).is_read_by_seller is False

        await customer_service.flush()

        stored = customer_service.get_conversation(conversation.id).messages[0]
        assert stored.delivery is DeliveryStatus.SENT
        assert backend.conversations[conversation.id].messages[0].body == "Is it still available?"

    @pytest.mark.asyncio
    async def test_empty_message_rejected(self, customer_service, conversation):
        with pytest.raises(BadRequestError):
            customer_service.send_message(conversation.id, "   ")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("price", [0, -5, True, 12.5])
    async def test_invalid_offer_price_rejected(self, customer_service, conversation, price):
        with pytest.raises(BadRequestError):
            customer_service.send_offer(conversation.id, price)

    @pytest.mark.asyncio
    async def test_seller_cannot_request_test_drive(self, seller_service, conversation):
        await seller_service.refresh()

        with pytest.raises(UnauthorizedError):
            seller_service.request_test_drive(conversation.id, "2026-11-02", "10:30")

    @pytest.mark.asyncio
    async def test_network_failure_keeps_message(self, customer_service, conversation, backend, sleep, warnings):
        """Test that an unreachable backend leaves the message in place, marked failed."""
        backend.offline = True

        message = customer_service.send_message(conversation.id, "Hello")
        await customer_service.flush()

        local = customer_service.store.find_by_client_ref(conversation.id, message.client_ref)
        assert local.delivery is DeliveryStatus.FAILED
        assert sleep.await_args_list[:3] == [call(1.0), call(2.0), call(4.0)]
        assert customer_service.pending_status()["count"] >= 1
        assert warnings

        backend.offline = False
        await customer_service.retry_pending()

        assert customer_service.pending_status()["count"] == 0
        assert [m.client_ref for m in backend.conversations[conversation.id].messages] == [message.client_ref]
        local = customer_service.store.find_by_client_ref(conversation.id, message.client_ref)
        assert local.delivery is DeliveryStatus.SENT


class TestNegotiation:
    """Tests for the offer and test-drive flows between two participants."""

    @pytest.mark.asyncio
    async def test_counter_offer_flow(self, customer_service, seller_service, conversation, backend):
        """Test offer, counter-offer and a repeated response on the same offer."""
        offer = customer_service.send_offer(conversation.id, 500000)
        await customer_service.flush()
        assert offer.body == "Offer: ₹5,00,000"
        assert backend.conversations[conversation.id].is_read_by_seller is False

        await seller_service.refresh()
        offer_id = seller_service.get_conversation(conversation.id).messages[0].id
        response = seller_service.respond_to_offer(conversation.id, offer_id, "countered", 550000)

        local = seller_service.get_conversation(conversation.id)
        assert local.messages[0].payload.status is ProposalStatus.COUNTERED
        assert local.messages[0].payload.counter_price == 550000
        assert response.type is MessageType.OFFER_RESPONSE
        assert response.body == "Counter-offer made: ₹5,50,000"
        assert response.payload.original_message_id == offer_id
        assert local.is_read_by_customer is False

        await seller_service.flush()
        remote = backend.conversations[conversation.id]
        assert remote.messages[0].payload.status is ProposalStatus.COUNTERED
        assert [n.recipient_id for n in backend.notifications.values()] == [
            "dealer@motors.in",
            "asha.buyer@example.com",
        ]

        await customer_service.refresh()
        assert customer_service.notifications(unread_only=True)[0].target_id == conversation.id
        with pytest.raises(InvalidStateError):
            customer_service.respond_to_offer(conversation.id, offer_id, "accepted")

    @pytest.mark.asyncio
    async def test_proposer_cannot_respond(self, customer_service, conversation):
        offer = customer_service.send_offer(conversation.id, 500000)

        with pytest.raises(UnauthorizedError):
            customer_service.respond_to_offer(conversation.id, offer.id, "accepted")

    @pytest.mark.asyncio
    async def test_counter_requires_new_price(self, customer_service, seller_service, conversation):
        customer_service.send_offer(conversation.id, 500000)
        await customer_service.flush()
        await seller_service.refresh()
        offer_id = seller_service.get_conversation(conversation.id).messages[0].id

        with pytest.raises(InvalidDecisionError):
            seller_service.respond_to_offer(conversation.id, offer_id, "countered")
        with pytest.raises(InvalidDecisionError):
            seller_service.respond_to_offer(conversation.id, offer_id, "countered", 500000)
        with pytest.raises(InvalidDecisionError):
            seller_service.respond_to_offer(conversation.id, offer_id, "maybe")

        assert seller_service.get_conversation(conversation.id).messages[0].payload.status is (
            ProposalStatus.PENDING
        )

    @pytest.mark.asyncio
    async def test_test_drive_confirmation(self, customer_service, seller_service, conversation, backend):
        request = customer_service.request_test_drive(conversation.id, "2026-11-02", "10:30")
        await customer_service.flush()
        assert request.body == "Test drive requested for 2026-11-02 at 10:30"

        await seller_service.refresh()
        request_id = seller_service.get_conversation(conversation.id).messages[0].id
        with pytest.raises(InvalidDecisionError):
            seller_service.respond_to_test_drive(conversation.id, request_id, "accepted")
        response = seller_service.respond_to_test_drive(conversation.id, request_id, "confirmed")
        await seller_service.flush()

        assert response.body == "Test drive confirmed for Maruti Swift VXi. We'll contact you shortly."
        assert backend.conversations[conversation.id].messages[0].payload.status is ProposalStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_active_recipient_is_not_notified(self, customer_service, conversation, backend):
        customer_service.send_message(conversation.id, "Hello", recipient_active=True)
        await customer_service.flush()

        assert backend.calls_to("create_notification") == []


class TestReadStateAndPresence:
    """Tests for read flags, flags and typing."""

    @pytest.mark.asyncio
    async def test_mark_read_is_idempotent(self, customer_service, seller_service, conversation, backend):
        customer_service.send_message(conversation.id, "Hello")
        await customer_service.flush()
        await seller_service.refresh()

        first = seller_service.mark_read(conversation.id)
        second = seller_service.mark_read(conversation.id)
        await seller_service.flush()

        assert first.is_read_by_seller is True
        assert second == first
        assert backend.calls_to("put_conversation") == [conversation.id, conversation.id]
        assert backend.conversations[conversation.id].is_read_by_seller is True

    @pytest.mark.asyncio
    async def test_mark_read_unknown_conversation(self, customer_service):
        assert customer_service.mark_read("conv_missing") is None

    @pytest.mark.asyncio
    async def test_flag_conversation(self, customer_service, conversation, backend):
        flagged = customer_service.set_flag(conversation.id, reason="Suspicious price")
        await customer_service.flush()

        assert flagged.is_flagged is True
        assert flagged.flag_reason == "Suspicious price"
        assert backend.conversations[conversation.id].is_flagged is True

    @pytest.mark.asyncio
    async def test_typing_cleared_by_sending(self, customer_service, conversation):
        customer_service.set_typing(conversation.id)
        assert customer_service.is_typing(conversation.id, Role.CUSTOMER) is True
        assert customer_service.is_typing(conversation.id) is False

        customer_service.send_message(conversation.id, "Hello")

        assert customer_service.is_typing(conversation.id, Role.CUSTOMER) is False


class TestNotifications:
    """Tests for the participant's notifications."""

    @pytest.mark.asyncio
    async def test_mark_notifications_read(self, customer_service, seller_service, conversation, backend):
        customer_service.send_message(conversation.id, "Hello")
        await customer_service.flush()
        await seller_service.refresh()
        [notification] = seller_service.notifications(unread_only=True)

        assert notification.message == "New message from Asha: Hello..."
        assert seller_service.mark_notifications_read([notification.id, 999]) == [notification.id]
        assert seller_service.mark_all_notifications_read() == []
        await seller_service.flush()

        assert backend.notifications[notification.id].is_read is True
        assert seller_service.notifications(unread_only=True) == []


class TestLoad:
    """Tests for restoring the engine from the local cache."""

    @pytest.mark.asyncio
    async def test_load_from_cache(self, customer, customer_service, conversation, backend, redis, policy, sleep):
        """Test that a new session starts from the cached snapshot."""
        backend.offline = True
        message = customer_service.send_message(conversation.id, "Hello")
        await customer_service.flush()

        restored = ConversationService(
            customer, backend, LocalCache(redis, customer.id), policy=policy, sleep=sleep
        )
        try:
            assert await restored.load() is True
            local = restored.store.find_by_client_ref(conversation.id, message.client_ref)
            assert local.body == "Hello"
            assert local.delivery is DeliveryStatus.FAILED
            assert restored.pending_status()["kinds"] == {"append_message": 1, "create_notification": 1}
        finally:
            await restored.close()

    @pytest.mark.asyncio
    async def test_load_without_cache(self, seller_service):
        assert await seller_service.load() is False
        await seller_service.flush()

        assert seller_service.conversations() == []
