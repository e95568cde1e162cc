"""Tests for multi-window budget governance."""

from datetime import datetime, timezone

import pytest

from scrapecascade.core import events
from scrapecascade.core.events import EventBus
from scrapecascade.core.exceptions import BudgetExceededError
from scrapecascade.services.budget import BudgetGovernor, window_bounds

from tests.conftest import FakeUTC, Recorder


def _governor(utc, hourly=1.0, daily=10.0, monthly=100.0, bus=None, thresholds=(50, 75, 90, 100)):
    return BudgetGovernor(hourly, daily, monthly, alert_thresholds=thresholds, bus=bus, now=utc)


class TestWindowBounds:
    def test_hour(self):
        now = datetime(2026, 3, 15, 12, 30, 5, tzinfo=timezone.utc)
        start, end = window_bounds("hour", now)
        assert start == datetime(2026, 3, 15, 12, tzinfo=timezone.utc)
        assert end == datetime(2026, 3, 15, 13, tzinfo=timezone.utc)

    def test_month_rolls_over_year(self):
        now = datetime(2026, 12, 31, 23, 59, tzinfo=timezone.utc)
        start, end = window_bounds("month", now)
        assert start == datetime(2026, 12, 1, tzinfo=timezone.utc)
        assert end == datetime(2027, 1, 1, tzinfo=timezone.utc)


class TestReservation:
    def test_reserve_is_all_or_nothing(self):
        utc = FakeUTC()
        gov = _governor(utc, hourly=1.0, daily=1.0, monthly=1.0)
        gov.windows["month"].spent = 0.99

        with pytest.raises(BudgetExceededError) as exc:
            gov.check_and_reserve(0.05)
        assert exc.value.window == "monthly"
        assert all(w.reserved == 0 for w in gov.windows.values())

    def test_scenario_c_monthly_ceiling(self):
        """Monthly limit $10, spent $9.98, estimate $0.05 -> BudgetExceeded('monthly')."""
        utc = FakeUTC()
        bus = EventBus()
        rec = Recorder(bus)
        gov = _governor(utc, hourly=10.0, daily=10.0, monthly=10.0, bus=bus)
        gov.windows["month"].spent = 9.98

        with pytest.raises(BudgetExceededError) as exc:
            gov.check_and_reserve(0.05)
        assert exc.value.window == "monthly"
        exceeded = rec.of(events.BUDGET_EXCEEDED)
        assert exceeded[0].payload["window"] == "monthly"

    def test_reservations_count_against_limit(self):
        gov = _governor(FakeUTC(), hourly=0.05)
        gov.check_and_reserve(0.03)
        with pytest.raises(BudgetExceededError) as exc:
            gov.check_and_reserve(0.03)
        assert exc.value.window == "hourly"

    def test_release_frees_reservation(self):
        gov = _governor(FakeUTC(), hourly=0.05)
        res = gov.check_and_reserve(0.05)
        gov.release(res)
        gov.release(res)  # second release is a no-op
        assert gov.windows["hour"].reserved == 0
        gov.check_and_reserve(0.05)

    def test_exact_limit_allowed(self):
        gov = _governor(FakeUTC(), hourly=0.05)
        res = gov.check_and_reserve(0.05)
        gov.record_actual_cost(0.05, res)
        assert gov.windows["hour"].spent == pytest.approx(0.05)

    def test_record_actual_reconciles_estimate(self):
        gov = _governor(FakeUTC())
        res = gov.check_and_reserve(0.05)
        gov.record_actual_cost(0.02, res)
        for w in gov.windows.values():
            assert w.reserved == 0
            assert w.spent == pytest.approx(0.02)

    def test_negative_cost_never_reduces_spend(self):
        gov = _governor(FakeUTC())
        gov.record_actual_cost(0.5)
        gov.record_actual_cost(-1.0)
        assert gov.windows["hour"].spent == pytest.approx(0.5)

    def test_spend_never_exceeds_limit_under_guard(self):
        gov = _governor(FakeUTC(), hourly=0.1)
        admitted = 0
        for _ in range(20):
            try:
                res = gov.check_and_reserve(0.03)
            except BudgetExceededError:
                continue
            gov.record_actual_cost(0.03, res)
            admitted += 1
        assert admitted == 3
        assert gov.windows["hour"].spent <= 0.1

    def test_charge_above_reservation_is_capped(self):
        gov = _governor(FakeUTC(), hourly=0.03)
        res = gov.check_and_reserve(0.025)
        gov.record_actual_cost(0.031, res)

        w = gov.windows["hour"]
        assert w.spent == pytest.approx(0.025)
        assert w.spent <= w.limit
        assert w.reserved == 0
        assert gov.overshoot == pytest.approx(0.006)

    def test_unreserved_cost_booked_in_full(self):
        gov = _governor(FakeUTC())
        gov.record_actual_cost(0.031)
        assert gov.windows["hour"].spent == pytest.approx(0.031)
        assert gov.overshoot == 0


class TestWindowReset:
    def test_reset_at_boundary(self):
        utc = FakeUTC()
        bus = EventBus()
        rec = Recorder(bus)
        gov = _governor(utc, bus=bus)
        gov.record_actual_cost(0.5)

        utc.advance(hours=1)
        assert gov.reset_expired_windows() == ["hourly"]
        assert gov.windows["hour"].spent == 0
        assert gov.windows["day"].spent == pytest.approx(0.5)
        assert [e.payload["window"] for e in rec.of(events.WINDOW_RESET)] == ["hourly"]

    def test_reset_twice_in_same_window_is_idempotent(self):
        utc = FakeUTC()
        gov = _governor(utc)
        utc.advance(hours=1)
        gov.reset_expired_windows()
        gov.record_actual_cost(0.3)

        assert gov.reset_expired_windows() == []
        assert gov.windows["hour"].spent == pytest.approx(0.3)

    def test_spend_monotonic_within_window(self):
        utc = FakeUTC()
        gov = _governor(utc)
        previous = 0.0
        for cost in (0.1, 0.0, 0.2, 0.05):
            gov.record_actual_cost(cost)
            gov.reset_expired_windows()
            assert gov.windows["hour"].spent >= previous
            previous = gov.windows["hour"].spent

    def test_reset_applied_lazily_on_admission(self):
        utc = FakeUTC()
        gov = _governor(utc, hourly=0.05)
        gov.record_actual_cost(0.05)
        utc.advance(hours=1)
        gov.check_and_reserve(0.05)


class TestAlerts:
    def test_alerts_are_edge_triggered(self):
        utc = FakeUTC()
        bus = EventBus()
        rec = Recorder(bus)
        gov = _governor(utc, hourly=1.0, daily=1.0, monthly=1.0, bus=bus, thresholds=(50,))

        gov.record_actual_cost(0.6)
        gov.record_actual_cost(0.01)
        gov.record_actual_cost(0.01)

        alerts = rec.of(events.BUDGET_ALERT)
        assert sorted(a.payload["window"] for a in alerts) == ["daily", "hourly", "monthly"]
        assert all(a.payload["threshold"] == 50 for a in alerts)

    def test_one_crossing_fires_every_passed_threshold_once(self):
        bus = EventBus()
        rec = Recorder(bus)
        gov = _governor(FakeUTC(), hourly=1.0, daily=10.0, monthly=100.0, bus=bus)
        gov.record_actual_cost(0.8)

        hourly = [a.payload["threshold"] for a in rec.of(events.BUDGET_ALERT)
                  if a.payload["window"] == "hourly"]
        assert hourly == [50, 75]

    def test_alerts_rearm_after_reset(self):
        utc = FakeUTC()
        bus = EventBus()
        rec = Recorder(bus)
        gov = _governor(utc, hourly=1.0, bus=bus, thresholds=(50,))
        gov.record_actual_cost(0.6)
        utc.advance(hours=1)
        gov.record_actual_cost(0.6)

        hourly = [a for a in rec.of(events.BUDGET_ALERT) if a.payload["window"] == "hourly"]
        assert len(hourly) == 2


class TestSnapshot:
    def test_restore_same_period(self):
        utc = FakeUTC()
        gov = _governor(utc)
        gov.record_actual_cost(0.4)
        data = gov.snapshot()

        fresh = _governor(utc)
        fresh.restore(data)
        assert fresh.windows["month"].spent == pytest.approx(0.4)

    def test_restore_ignores_past_periods(self):
        utc = FakeUTC()
        gov = _governor(utc)
        gov.record_actual_cost(0.4)
        data = gov.snapshot()

        utc.advance(hours=2)
        fresh = _governor(utc)
        fresh.restore(data)
        assert fresh.windows["hour"].spent == 0
        assert fresh.windows["day"].spent == pytest.approx(0.4)

    def test_restore_ignores_corrupt_data(self):
        gov = _governor(FakeUTC())
        gov.restore({"hour": {"spent": "lots"}, "day": "nope", "month": {}})
        assert all(w.spent == 0 for w in gov.windows.values())
