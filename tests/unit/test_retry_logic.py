"""
Tests for the exponential backoff policy.
"""

import random

import pytest

from feedpulse.recovery.retry_logic import BackoffPolicy


class TestBackoffPolicy:

    def test_doubles_per_failure(self):
        policy = BackoffPolicy(base_delay=60, max_delay=3600, jitter=0)
        assert [policy.calculate_delay(n) for n in (1, 2, 3, 4)] == [60, 120, 240, 480]

    def test_capped(self):
        policy = BackoffPolicy(base_delay=60, max_delay=600, jitter=0)
        assert policy.calculate_delay(5) == 600
        assert policy.calculate_delay(50) == 600

    def test_huge_failure_count_does_not_overflow(self):
        policy = BackoffPolicy(base_delay=60, max_delay=600, jitter=0)
        assert policy.raw_delay(10_000) == 600

    def test_retry_after_extends_delay(self):
        policy = BackoffPolicy(base_delay=60, max_delay=600, jitter=0)
        assert policy.calculate_delay(1, retry_after=900) == 900
        assert policy.calculate_delay(3, retry_after=10) == 240

    @pytest.mark.parametrize("failure_count", [1, 2, 3, 10])
    def test_jitter_stays_within_bounds(self, failure_count):
        policy = BackoffPolicy(base_delay=60, max_delay=600, jitter=0.1)
        rng = random.Random(42)
        raw = policy.raw_delay(failure_count)
        for _ in range(50):
            delay = policy.calculate_delay(failure_count, rng=rng)
            assert raw * 0.9 <= delay <= min(raw * 1.1, 600)

    def test_seeded_rng_is_deterministic(self):
        policy = BackoffPolicy(jitter=0.5)
        first = policy.calculate_delay(2, rng=random.Random(7))
        second = policy.calculate_delay(2, rng=random.Random(7))
        assert first == second

    def test_from_settings(self, polling_settings):
        policy = BackoffPolicy.from_settings(polling_settings)
        assert policy.base_delay == 60
        assert policy.max_delay == 600
        assert policy.jitter == 0.0
