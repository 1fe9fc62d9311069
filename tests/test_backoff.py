"""Unit tests for the reconnect backoff policy."""

import random

import pytest

from basekit.realtime.backoff import Backoff


class TestBackoff:
    """Test exponential growth, cap and jitter bounds."""

    def test_exponential_growth_without_jitter(self):
        """Test delays double per attempt."""
        backoff = Backoff(base_delay=1.0, max_delay=100.0, jitter=0)

        assert [backoff.compute(n) for n in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped_at_max_delay(self):
        """Test delays never exceed max_delay."""
        backoff = Backoff(base_delay=1.0, max_delay=30.0, jitter=0)

        assert backoff.compute(10) == 30.0
        assert backoff.compute(10_000) == 30.0

    def test_jitter_stays_within_bounds(self):
        """Test jittered delays stay within +/- jitter of the nominal delay."""
        backoff = Backoff(base_delay=2.0, max_delay=60.0, jitter=0.5, rng=random.Random(42))

        delays = [backoff.compute(2) for _ in range(200)]

        assert all(4.0 <= d <= 12.0 for d in delays)
        assert len(set(delays)) > 1

    def test_jitter_never_exceeds_cap(self):
        """Test positive jitter is clamped at the cap."""
        backoff = Backoff(base_delay=1.0, max_delay=5.0, jitter=1.0, rng=random.Random(7))

        assert all(0.0 <= backoff.compute(8) <= 5.0 for _ in range(100))

    @pytest.mark.parametrize(
        "kwargs",
        [{"base_delay": 0}, {"max_delay": -1}, {"jitter": 1.5}],
    )
    def test_invalid_parameters(self, kwargs):
        """Test nonsensical settings are rejected."""
        with pytest.raises(ValueError):
            Backoff(**kwargs)
