"""Tests for the provider circuit breaker."""

import pytest

from app.providers.health import ProviderHealthTracker


@pytest.fixture
def tracker(fake_clock):
    return ProviderHealthTracker(failure_threshold=3, recovery_time=300.0, clock=fake_clock)


@pytest.mark.unit
class TestProviderHealthTracker:
    """Threshold, recovery window and reset behaviour."""

    def test_unknown_provider_is_healthy(self, tracker):
        assert tracker.is_healthy("replicate")
        assert tracker.get("replicate").consecutive_failures == 0

    def test_stays_healthy_below_threshold(self, tracker):
        tracker.mark_failure("replicate")
        health = tracker.mark_failure("replicate")

        assert health.consecutive_failures == 2
        assert health.healthy
        assert tracker.is_healthy("replicate")

    def test_threshold_opens_circuit(self, tracker):
        for _ in range(3):
            tracker.mark_failure("replicate")

        assert not tracker.is_healthy("replicate")
        assert tracker.get("replicate").healthy is False

    def test_recovers_after_window(self, tracker, fake_clock):
        for _ in range(3):
            tracker.mark_failure("replicate")

        fake_clock.advance(299)
        assert not tracker.is_healthy("replicate")

        fake_clock.advance(1)
        assert tracker.is_healthy("replicate")
        assert tracker.get("replicate").consecutive_failures == 0

    def test_success_resets_failures(self, tracker):
        tracker.mark_failure("fal")
        tracker.mark_failure("fal")
        health = tracker.mark_success("fal")

        assert health.consecutive_failures == 0
        assert health.successes == 1
        assert tracker.mark_failure("fal").healthy

    def test_status_and_reset(self, tracker):
        tracker.mark_failure("fal")
        tracker.mark_success("replicate")

        assert set(tracker.status()) == {"fal", "replicate"}

        tracker.reset("fal")
        assert set(tracker.status()) == {"replicate"}

        tracker.reset()
        assert tracker.status() == {}

    def test_returned_state_is_a_copy(self, tracker):
        health = tracker.mark_failure("fal")
        health.consecutive_failures = 99
        assert tracker.get("fal").consecutive_failures == 1
