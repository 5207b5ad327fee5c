"""Unit tests for TwapAggregator."""

import random

import pytest

from twap_oracle.src.errors import InsufficientCoverageError
from twap_oracle.src.Pool import Pool
from twap_oracle.src.PriceSampler import PriceObservation
from twap_oracle.src.TwapAggregator import ObservationWindow, TwapAggregator

POOL = Pool("0x" + "a1" * 20, label="A")
OTHER = Pool("0x" + "b2" * 20, label="B")


def obs(price: int, timestamp: int, pool: Pool = POOL) -> PriceObservation:
    return PriceObservation(pool, price, timestamp, timestamp // 6)


class TestTwapAggregatorInit:
    """Test TwapAggregator initialization."""

    def test_values_stored(self) -> None:
        agg = TwapAggregator(window_duration=1800, min_coverage=600)
        assert agg.window_duration == 1800
        assert agg.min_coverage == 600

    def test_invalid_window(self) -> None:
        with pytest.raises(ValueError, match="window_duration must be positive"):
            TwapAggregator(window_duration=0, min_coverage=1)

    def test_invalid_min_coverage(self) -> None:
        with pytest.raises(ValueError, match="min_coverage must be positive"):
            TwapAggregator(window_duration=600, min_coverage=0)

    def test_min_coverage_exceeds_window(self) -> None:
        with pytest.raises(ValueError, match="must not exceed window_duration"):
            TwapAggregator(window_duration=600, min_coverage=601)


class TestTwapAggregatorCompute:
    """Test TWAP computation."""

    def test_time_weighted_average(self) -> None:
        """Each price is weighted by how long it was in effect."""
        agg = TwapAggregator(window_duration=600, min_coverage=600)
        for price, t in [(100, 0), (102, 300), (101, 600)]:
            assert agg.record(POOL, obs(price, t))

        result = agg.compute(POOL, now=600)
        assert result.price == 101
        assert result.coverage == 600
        assert result.computed_at == 600
        assert result.observation_count == 3
        assert result.pool == POOL

    def test_last_observation_holds_until_now(self) -> None:
        agg = TwapAggregator(window_duration=1000, min_coverage=100)
        agg.record(POOL, obs(100, 0))
        agg.record(POOL, obs(200, 100))

        # 100 for 100s, 200 for 300s
        result = agg.compute(POOL, now=400)
        assert result.price == (100 * 100 + 200 * 300) // 400
        assert result.computed_at == 400

    def test_clock_behind_last_observation(self) -> None:
        """A lagging clock never produces negative weights."""
        agg = TwapAggregator(window_duration=1000, min_coverage=100)
        agg.record(POOL, obs(100, 0))
        agg.record(POOL, obs(300, 100))

        result = agg.compute(POOL, now=50)
        assert result.price == 100
        assert result.computed_at == 100

    def test_integer_floor_division(self) -> None:
        agg = TwapAggregator(window_duration=1000, min_coverage=3)
        agg.record(POOL, obs(10, 0))
        agg.record(POOL, obs(11, 1))
        agg.record(POOL, obs(11, 3))

        # (10*1 + 11*2) // 3 = 10
        assert agg.compute(POOL, now=3).price == 10

    def test_boundedness(self) -> None:
        """The TWAP lies between the min and max observed price."""
        rng = random.Random(1234)
        for _ in range(50):
            agg = TwapAggregator(window_duration=10_000, min_coverage=1)
            t = 0
            prices = []
            for _ in range(rng.randint(2, 20)):
                price = rng.randint(1, 10**24)
                prices.append(price)
                agg.record(POOL, obs(price, t))
                t += rng.randint(1, 400)

            result = agg.compute(POOL, now=t)
            assert min(prices) <= result.price <= max(prices)

    def test_single_observation_fails(self) -> None:
        agg = TwapAggregator(window_duration=600, min_coverage=60)
        agg.record(POOL, obs(100, 0))

        with pytest.raises(InsufficientCoverageError) as exc_info:
            agg.compute(POOL, now=600)
        assert exc_info.value.observations == 1
        assert exc_info.value.coverage == 0
        assert exc_info.value.required == 60

    def test_empty_window_fails(self) -> None:
        agg = TwapAggregator(window_duration=600, min_coverage=60)
        with pytest.raises(InsufficientCoverageError):
            agg.compute(POOL, now=0)

    def test_exact_min_coverage_succeeds(self) -> None:
        """Coverage equal to the minimum is sufficient."""
        agg = TwapAggregator(window_duration=1800, min_coverage=600)
        agg.record(POOL, obs(100, 0))
        agg.record(POOL, obs(100, 600))

        result = agg.compute(POOL, now=600)
        assert result.coverage == 600
        assert result.price == 100

    def test_coverage_just_below_minimum_fails(self) -> None:
        agg = TwapAggregator(window_duration=1800, min_coverage=600)
        agg.record(POOL, obs(100, 0))
        agg.record(POOL, obs(100, 599))

        with pytest.raises(InsufficientCoverageError, match="insufficient coverage"):
            agg.compute(POOL, now=599)

    def test_pools_are_independent(self) -> None:
        agg = TwapAggregator(window_duration=600, min_coverage=100)
        agg.record(POOL, obs(100, 0))
        agg.record(POOL, obs(100, 100))
        agg.record(OTHER, obs(5, 0, OTHER))

        assert agg.compute(POOL, now=100).price == 100
        with pytest.raises(InsufficientCoverageError):
            agg.compute(OTHER, now=100)


class TestTwapAggregatorWindow:
    """Test observation ordering and eviction."""

    def test_out_of_order_rejected(self) -> None:
        agg = TwapAggregator(window_duration=600, min_coverage=60)
        assert agg.record(POOL, obs(100, 100))
        assert not agg.record(POOL, obs(200, 50))
        assert [o.price for o in agg.window(POOL)] == [100]

    def test_same_timestamp_replaces_tail(self) -> None:
        agg = TwapAggregator(window_duration=600, min_coverage=60)
        agg.record(POOL, obs(100, 0))
        agg.record(POOL, obs(100, 60))
        assert agg.record(POOL, obs(105, 60))

        assert [(o.price, o.timestamp) for o in agg.window(POOL)] == [(100, 0), (105, 60)]

    def test_evicts_strictly_older_only(self) -> None:
        """An entry exactly at now - window is kept."""
        agg = TwapAggregator(window_duration=600, min_coverage=600)
        agg.record(POOL, obs(100, 0))
        agg.record(POOL, obs(102, 300))
        agg.record(POOL, obs(101, 600))

        assert [o.timestamp for o in agg.window(POOL)] == [0, 300, 600]
        assert agg.compute(POOL, now=600).coverage == 600

        agg.record(POOL, obs(101, 601))
        assert [o.timestamp for o in agg.window(POOL)] == [300, 600, 601]

    def test_compute_evicts_relative_to_now(self) -> None:
        agg = TwapAggregator(window_duration=600, min_coverage=300)
        agg.record(POOL, obs(100, 0))
        agg.record(POOL, obs(100, 300))
        agg.record(POOL, obs(100, 600))

        with pytest.raises(InsufficientCoverageError):
            agg.compute(POOL, now=1200)
        assert [o.timestamp for o in agg.window(POOL)] == [600]

    def test_reset(self) -> None:
        agg = TwapAggregator(window_duration=600, min_coverage=60)
        agg.record(POOL, obs(100, 0))
        agg.reset(POOL)
        assert agg.window(POOL) == []


class TestObservationWindow:
    """Test the ObservationWindow container."""

    def test_coverage_and_tail(self) -> None:
        window = ObservationWindow(600)
        assert window.tail is None
        assert window.coverage == 0

        window.append(obs(1, 10))
        window.append(obs(2, 70))
        assert len(window) == 2
        assert window.tail.price == 2
        assert window.coverage == 60

    def test_evict_returns_count(self) -> None:
        window = ObservationWindow(100)
        for t in (0, 50, 100, 150):
            window.append(obs(1, t))

        assert window.evict(150) == 1
        assert [o.timestamp for o in window] == [50, 100, 150]
