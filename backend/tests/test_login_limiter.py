"""
Login Attempt Tracker Tests
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from account_trust.login_limiter import LoginAttemptTracker


class FakeTime:
    def __init__(self):
        self.now = 1_000_000.0

    def __call__(self):
        return self.now


class TestLoginAttemptTracker:

    @pytest.fixture
    def time_fn(self):
        return FakeTime()

    @pytest.fixture
    def tracker(self, time_fn):
        return LoginAttemptTracker(max_attempts=5, window_seconds=60, time_fn=time_fn)

    def test_sixth_attempt_in_window_is_refused(self, tracker):
        assert all(tracker.hit("1.2.3.4") for _ in range(5))
        assert not tracker.hit("1.2.3.4")

    def test_keys_are_independent(self, tracker):
        for _ in range(6):
            tracker.hit("1.2.3.4")
        assert tracker.hit("5.6.7.8")

    def test_window_slides(self, tracker, time_fn):
        for _ in range(5):
            tracker.hit("1.2.3.4")
            time_fn.now += 10

        # Refused attempts count too, so two stamps must age out
        assert not tracker.hit("1.2.3.4")
        time_fn.now += 21
        assert tracker.hit("1.2.3.4")

    def test_reset(self, tracker):
        for _ in range(6):
            tracker.hit("1.2.3.4")
        tracker.reset("1.2.3.4")
        assert tracker.hit("1.2.3.4")

    def test_purge_drops_idle_keys(self, tracker, time_fn):
        tracker.hit("1.2.3.4")
        time_fn.now += 30
        tracker.hit("5.6.7.8")

        time_fn.now += 31
        assert tracker.purge() == 1
        assert len(tracker) == 1
