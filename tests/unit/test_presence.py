"""Unit tests for TypingTracker."""

import pytest

from marketchat.core.identity import Role
from marketchat.services.presence import TypingTracker


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def tracker(clock) -> TypingTracker:
    return TypingTracker(ttl=4.0, timer=clock)


class TestTypingTracker:
    """Tests for TypingTracker."""

    def test_typing_is_reported_within_ttl(self, tracker, clock):
        tracker.set_typing("conv_1", Role.SELLER)
        clock.now += 3.9

        assert tracker.is_typing("conv_1", Role.SELLER) is True
        assert tracker.is_typing("conv_1", Role.CUSTOMER) is False

    def test_typing_expires_after_ttl(self, tracker, clock):
        tracker.set_typing("conv_1", Role.SELLER)
        clock.now += 4.1

        assert tracker.is_typing("conv_1", Role.SELLER) is False

    def test_set_typing_refreshes_ttl(self, tracker, clock):
        tracker.set_typing("conv_1", Role.CUSTOMER)
        clock.now += 3
        tracker.set_typing("conv_1", Role.CUSTOMER)
        clock.now += 3

        assert tracker.is_typing("conv_1", Role.CUSTOMER) is True

    def test_clear_typing(self, tracker):
        tracker.set_typing("conv_1", Role.CUSTOMER)
        tracker.clear_typing("conv_1", Role.CUSTOMER)
        tracker.clear_typing("conv_1", Role.CUSTOMER)

        assert tracker.is_typing("conv_1", Role.CUSTOMER) is False

    def test_typing_roles_per_conversation(self, tracker, clock):
        tracker.set_typing("conv_1", Role.CUSTOMER)
        tracker.set_typing("conv_1", Role.SELLER)
        tracker.set_typing("conv_2", Role.SELLER)

        assert tracker.typing_roles("conv_1") == {Role.CUSTOMER, Role.SELLER}

        clock.now += 10
        tracker.expire()

        assert tracker.typing_roles("conv_1") == set()
