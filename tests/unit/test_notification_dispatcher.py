"""Unit tests for notification text, dispatch and the inbox."""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from marketchat.core.identity import Role
from marketchat.schemas import (
    Conversation,
    Notification,
    OfferMessage,
    OfferPayload,
    SenderRole,
    TextMessage,
    utcnow,
)
from marketchat.services.notification_dispatcher import (
    NotificationDispatcher,
    NotificationInbox,
    notification_text,
)
from marketchat.services.reconciliation import CreateNotification


@pytest.fixture
def conversation() -> Conversation:
    return Conversation(
        id="conv_1",
        customer_id="asha.buyer@example.com",
        customer_name="Asha",
        seller_id="dealer@motors.in",
        vehicle_id=42,
        vehicle_name="Maruti Swift VXi",
    )


@pytest.fixture
def reconciler() -> MagicMock:
    return MagicMock()


def text(body: str, sender=SenderRole.CUSTOMER) -> TextMessage:
    return TextMessage(id=1, sender=sender, body=body, timestamp=utcnow())


class TestNotificationText:
    """Tests for notification wording."""

    def test_offer_text(self, conversation):
        offer = OfferMessage(
            id=1,
            sender=SenderRole.CUSTOMER,
            body="Offer: 500000",
            timestamp=utcnow(),
            payload=OfferPayload(price=500000),
        )

        assert notification_text(conversation, offer, Role.CUSTOMER) == (
            "New offer from Asha: ₹5,00,000"
        )

    def test_message_text_is_truncated(self, conversation):
        body = "x" * 80

        result = notification_text(conversation, text(body, SenderRole.SELLER), Role.SELLER, 50)

        assert result == f"New message from Seller: {'x' * 50}..."


class TestNotificationDispatcher:
    """Tests for dispatch rules."""

    def test_notifies_counterpart(self, conversation, reconciler, customer):
        dispatcher = NotificationDispatcher(reconciler)

        dispatcher.dispatch(conversation, text("Hello"), customer, recipient_active=False)

        mutation = reconciler.commit.call_args.args[0]
        assert isinstance(mutation, CreateNotification)
        assert mutation.notification.recipient_id == "dealer@motors.in"
        assert mutation.notification.target_id == "conv_1"
        assert mutation.notification.message == "New message from Asha: Hello..."

    def test_active_recipient_is_not_notified(self, conversation, reconciler, seller):
        dispatcher = NotificationDispatcher(reconciler)

        result = dispatcher.dispatch(
            conversation, text("Hi", SenderRole.SELLER), seller, recipient_active=True
        )

        assert result is None
        reconciler.commit.assert_not_called()

    def test_actor_is_never_notified(self, reconciler, seller):
        # A dealer browsing as a customer on their own listing
        own = Conversation(
            id="conv_2",
            customer_id="dealer@motors.in",
            customer_name="Dealer",
            seller_id="dealer@motors.in",
            vehicle_id=7,
            vehicle_name="Honda City",
        )

        result = NotificationDispatcher(reconciler).dispatch(own, text("Hi", SenderRole.SELLER), seller)

        assert result is None
        reconciler.commit.assert_not_called()


class TestNotificationInbox:
    """Tests for the received notification list."""

    @pytest.fixture
    def inbox(self) -> NotificationInbox:
        inbox = NotificationInbox("Asha.Buyer@Example.com")
        now = utcnow()
        inbox.load(
            [
                Notification(
                    id=i,
                    recipient_id="asha.buyer@example.com",
                    target_id="conv_1",
                    message=f"Notification {i}",
                    created_at=now + timedelta(seconds=i),
                )
                for i in (1, 2, 3)
            ]
        )
        return inbox

    def test_unread_newest_first(self, inbox):
        assert [n.id for n in inbox.unread()] == [3, 2, 1]

    def test_mark_read_only_flips_unread(self, inbox):
        assert inbox.mark_read([1, 2]) == [1, 2]
        assert inbox.mark_read([1, 2, 99]) == []
        assert [n.id for n in inbox.unread()] == [3]

    def test_mark_all_read(self, inbox):
        inbox.mark_read([2])

        assert sorted(inbox.mark_all_read()) == [1, 3]
        assert inbox.unread() == []

    def test_merge_never_reverts_read(self, inbox):
        inbox.mark_read([1])
        stale = inbox.get(1).model_copy(update={"is_read": False})
        new = stale.model_copy(update={"id": 4, "message": "New"})

        inbox.merge([stale, new])

        assert inbox.get(1).is_read is True
        assert inbox.get(4).is_read is False

    def test_snapshot_restore(self, inbox):
        inbox.mark_read([2])
        restored = NotificationInbox("asha.buyer@example.com")

        restored.restore(inbox.snapshot())

        assert [n.id for n in restored.unread()] == [3, 1]
