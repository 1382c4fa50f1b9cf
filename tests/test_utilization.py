"""Tests for the worker utilization shedder."""

import threading

import pytest

from fleetguard.app.exceptions import WorkerOverloadedError
from fleetguard.app.limiters.utilization import UtilizationShedder
from fleetguard.app.models import EventKind, Outcome

FLOOR = -28 / 120


def never_drop():
    return 0.999999


@pytest.fixture
def shedder(clock, sink):
    return UtilizationShedder(sink=sink, clock=clock, rng=never_drop)


def run(shedder, clock, utilization, seconds, step=8):
    """Feed one sample every `step` seconds for `seconds` seconds."""
    elapsed = 0
    while elapsed < seconds:
        clock.advance(step)
        elapsed += step
        shedder.check(utilization)
    return shedder.shedding_amount


class TestShedderController:
    """Tests for the shedding amount feedback loop."""

    def test_starts_at_zero(self, shedder):
        state = shedder.state
        assert state.shedding_amount == 0.0
        assert state.shedding_amount_derivative == 0.0
        assert shedder.resting_floor == pytest.approx(FLOOR)

    def test_derivative_bands(self, shedder):
        """Test the piecewise rate of change at the band edges."""
        assert shedder.derivative(0.0) == pytest.approx(-1 / 120)
        assert shedder.derivative(0.35) == pytest.approx(-0.5 / 120)
        assert shedder.derivative(0.7) == 0
        assert shedder.derivative(0.79) == 0
        assert shedder.derivative(0.8) == 0
        assert shedder.derivative(0.9) == pytest.approx(0.5 / 120)
        assert shedder.derivative(1.0) == pytest.approx(1 / 120)

    def test_derivative_is_clamped(self, shedder):
        assert shedder.derivative(1.5) == pytest.approx(1 / 120)
        assert shedder.derivative(-1.0) == pytest.approx(-1 / 120)

    def test_dead_zone_freezes_amount(self, shedder, clock, sink):
        """Test that utilization between good and bad leaves the amount alone."""
        run(shedder, clock, 1.0, 40)
        before = shedder.shedding_amount
        sink.clear()

        assert run(shedder, clock, 0.75, 80) == before
        assert sink.of_kind(EventKind.SHEDDING_CHANGED) == []

    def test_full_utilization_reaches_full_shedding(self, shedder, clock):
        """Test that 100% utilization takes the amount from 0 to 1 in 120s."""
        assert run(shedder, clock, 1.0, 112) < 1.0
        assert run(shedder, clock, 1.0, 8) == pytest.approx(1.0)
        assert run(shedder, clock, 1.0, 80) == 1.0

    def test_idle_recovers_to_zero_then_floor(self, shedder, clock):
        """Test that idleness undoes full shedding in 120s and then banks the grace."""
        run(shedder, clock, 1.0, 120)

        assert run(shedder, clock, 0.0, 120) == pytest.approx(0.0, abs=1e-9)
        assert run(shedder, clock, 0.0, 32) == pytest.approx(FLOOR)
        assert run(shedder, clock, 0.0, 80) == pytest.approx(FLOOR)

    def test_recovery_from_floor_takes_grace_period(self, shedder, clock):
        """Test that a busy spell must first pay back the negative floor."""
        run(shedder, clock, 0.0, 40)
        assert shedder.shedding_amount == pytest.approx(FLOOR)

        clock.advance(28)
        decision = shedder.check(1.0)
        assert decision.shedding_amount == pytest.approx(0.0, abs=1e-9)
        assert decision.drop_chance == pytest.approx(0.0, abs=1e-9)

    def test_monotone_within_bands(self, shedder, clock):
        run(shedder, clock, 1.0, 60)
        amounts = []
        for _ in range(10):
            clock.advance(8)
            amounts.append(shedder.check(0.3).shedding_amount)
        assert amounts == sorted(amounts, reverse=True)

        amounts = []
        for _ in range(10):
            clock.advance(8)
            amounts.append(shedder.check(0.95).shedding_amount)
        assert amounts == sorted(amounts)

    def test_single_check_integrates_at_most_grace(self, shedder, clock):
        """Test that a long gap between checks counts as only grace seconds."""
        clock.advance(1000)
        assert shedder.check(1.0).shedding_amount == pytest.approx(28 / 120)

    def test_backward_clock_changes_nothing(self, shedder, clock):
        run(shedder, clock, 1.0, 16)
        before = shedder.shedding_amount

        clock.advance(-100)
        assert shedder.check(1.0).shedding_amount == before

    def test_amount_stays_in_bounds(self, shedder, clock):
        samples = [0.0, 1.0, 0.75, 0.2, 0.95, 1.0, 0.5]
        for i in range(300):
            clock.advance(3 + i % 11)
            amount = shedder.check(samples[i % len(samples)]).shedding_amount
            assert FLOOR - 1e-9 <= amount <= 1.0

    def test_concurrent_checks_integrate_elapsed_once(self, clock, sink):
        """Test that racing threads integrate the same interval only once."""
        shedder = UtilizationShedder(sink=sink, clock=clock, rng=never_drop)
        clock.now = 8
        barrier = threading.Barrier(10)

        def worker():
            barrier.wait()
            shedder.check(1.0)

        threads = [threading.Thread(target=worker) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert shedder.shedding_amount == pytest.approx(8 / 120)
        assert len(sink.of_kind(EventKind.SHEDDING_CHANGED)) == 1

    def test_rejects_invalid_thresholds(self):
        with pytest.raises(ValueError):
            UtilizationShedder(good=0.8, bad=0.7)
        with pytest.raises(ValueError):
            UtilizationShedder(good=0.0, bad=0.5)
        with pytest.raises(ValueError):
            UtilizationShedder(good=0.5, bad=1.0)
        with pytest.raises(ValueError):
            UtilizationShedder(full_shed_seconds=0)
        with pytest.raises(ValueError):
            UtilizationShedder(grace_seconds=-1)


class TestShedderDrops:
    """Tests for the probabilistic drop decision."""

    @pytest.fixture
    def half_shedding(self, clock, sink):
        """Shedder whose amount is exactly 0.5, with a scripted random source."""
        draws = []
        shedder = UtilizationShedder(
            full_shed_seconds=2,
            grace_seconds=1,
            sink=sink,
            clock=clock,
            rng=lambda: draws.pop(0),
        )
        draws.append(0.99)
        clock.advance(1)
        assert shedder.check(1.0).shedding_amount == 0.5
        return shedder, draws

    def test_draw_below_amount_drops(self, half_shedding, sink):
        shedder, draws = half_shedding
        draws.append(0.49)

        decision = shedder.check(0.75)
        assert decision.outcome is Outcome.WORKER_OVERLOADED
        assert decision.allowed is False
        assert decision.drop_chance == 0.5

        rejections = sink.of_kind(EventKind.REJECTED)
        assert len(rejections) == 1
        assert rejections[0].reason == "worker_overloaded"

    def test_draw_at_amount_admits(self, half_shedding):
        shedder, draws = half_shedding
        draws.append(0.5)

        decision = shedder.check(0.75)
        assert decision.outcome is Outcome.ADMITTED

    def test_non_positive_amount_never_drops(self, clock, sink):
        shedder = UtilizationShedder(sink=sink, clock=clock, rng=lambda: 0.0)

        assert shedder.check(1.0).allowed is True
        run(shedder, clock, 0.0, 80)
        decision = shedder.check(0.0)
        assert decision.allowed is True
        assert decision.drop_chance == 0.0
        assert decision.shedding_amount < 0

    def test_check_or_raise(self, half_shedding):
        shedder, draws = half_shedding
        draws.append(0.1)

        with pytest.raises(WorkerOverloadedError) as exc_info:
            shedder.check_or_raise(0.75)
        assert exc_info.value.status_code == 503
        assert exc_info.value.drop_chance == 0.5

        draws.append(0.9)
        assert shedder.check_or_raise(0.75).allowed is True


class TestShedderEvents:
    """Tests for shedding change reporting."""

    def test_reports_only_changes(self, shedder, clock, sink):
        shedder.check(1.0)
        assert sink.of_kind(EventKind.SHEDDING_CHANGED) == []

        clock.advance(8)
        shedder.check(1.0)
        changes = sink.of_kind(EventKind.SHEDDING_CHANGED)
        assert len(changes) == 1
        assert changes[0].identity is None

        clock.advance(8)
        shedder.check(0.75)
        assert len(sink.of_kind(EventKind.SHEDDING_CHANGED)) == 1

    def test_saturated_amount_is_not_a_change(self, shedder, clock, sink):
        run(shedder, clock, 1.0, 160)
        sink.clear()

        run(shedder, clock, 1.0, 40)
        assert sink.of_kind(EventKind.SHEDDING_CHANGED) == []
