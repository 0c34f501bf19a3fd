"""
Unit tests for BackoffPolicy.

Reconnect delays must never decrease with the attempt number, never exceed
the cap, and the first retry waits at least the base delay.
"""

import random

import pytest

from foobot.core.session.backoff import BackoffPolicy


class TestBackoffBounds:
    """Delays stay within [base, maximum]."""

    def test_first_attempt_waits_at_least_base(self):
        policy = BackoffPolicy(base=1.0, maximum=30.0, jitter=0.5)
        rng = random.Random(7)

        for _ in range(100):
            assert policy.delay(1, rng) >= 1.0

    def test_never_exceeds_cap(self):
        policy = BackoffPolicy(base=1.0, maximum=30.0, jitter=1.0)
        rng = random.Random(1)

        for attempt in range(1, 200):
            assert policy.delay(attempt, rng) <= 30.0

    def test_huge_attempt_numbers_stay_finite(self):
        policy = BackoffPolicy(base=2.0, maximum=300.0, jitter=0.2)

        assert policy.delay(10_000, random.Random(0)) == pytest.approx(300.0)

    def test_no_jitter_is_exact_exponential(self):
        policy = BackoffPolicy(base=0.5, maximum=100.0, jitter=0.0)
        rng = random.Random(0)

        assert [policy.delay(n, rng) for n in range(1, 6)] == [0.5, 1.0, 2.0, 4.0, 8.0]


class TestBackoffMonotonic:
    """Delays are non-decreasing for any random sequence."""

    @pytest.mark.parametrize("seed", range(20))
    @pytest.mark.parametrize("jitter", [0.0, 0.2, 0.5, 1.0])
    def test_non_decreasing(self, seed, jitter):
        policy = BackoffPolicy(base=0.25, maximum=60.0, jitter=jitter)
        rng = random.Random(seed)

        delays = [policy.delay(attempt, rng) for attempt in range(1, 40)]

        assert delays == sorted(delays)

    def test_worst_case_jitter_followed_by_no_jitter(self, mocker):
        """U close to 1 then U = 0 is the tightest case; still non-decreasing."""
        policy = BackoffPolicy(base=1.0, maximum=1000.0, jitter=1.0)
        rng = mocker.Mock(spec=random.Random)
        rng.random.side_effect = [0.999999, 0.0, 0.999999, 0.0]

        delays = [policy.delay(attempt, rng) for attempt in range(1, 5)]

        assert delays == sorted(delays)


class TestBackoffValidation:
    def test_rejects_cap_below_base(self):
        with pytest.raises(ValueError):
            BackoffPolicy(base=10.0, maximum=1.0)

    def test_rejects_jitter_above_one(self):
        with pytest.raises(ValueError):
            BackoffPolicy(jitter=1.5)
