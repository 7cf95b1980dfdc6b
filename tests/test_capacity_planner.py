"""
Capacity planner tests — daily ledger, pro-rated windows, overrides.
"""

import logging
from datetime import datetime, time, timedelta, timezone

import pytest

from radiopharm.core.exceptions import CapacityExceeded, GuardViolation, ValidationError
from radiopharm.models import db
from radiopharm.models.audit import AuditEntry
from radiopharm.services import capacity_planner


@pytest.fixture()
def day():
    return datetime.now(timezone.utc).date() + timedelta(days=2)


def _at(day, hour, minute=0):
    return datetime.combine(day, time(hour, minute), tzinfo=timezone.utc)


class TestReserve:
    def test_second_reservation_over_capacity_is_rejected(self, day):
        capacity_planner.reserve(day, 240, "TENTATIVE")

        with pytest.raises(CapacityExceeded) as exc:
            capacity_planner.reserve(day, 260, "TENTATIVE")

        assert exc.value.details["used_minutes"] == 240
        assert exc.value.details["total_capacity_minutes"] == 480
        snap = capacity_planner.capacity_snapshot(day)
        assert snap["reserved_minutes"] == 240
        assert snap["committed_minutes"] == 0

    def test_exactly_full_day_is_admitted(self, day):
        capacity_planner.reserve(day, 240, "TENTATIVE")
        capacity_planner.reserve(day, 240, "COMMITTED")

        snap = capacity_planner.capacity_snapshot(day)
        assert snap["available_minutes"] == 0
        assert capacity_planner.utilization(day) == pytest.approx(100.0)

    def test_capacity_invariant_holds_after_every_call(self, day):
        for minutes in (100, 120, 90, 60, 80, 50, 40):
            try:
                capacity_planner.reserve(day, minutes, "TENTATIVE")
            except CapacityExceeded:
                pass
            snap = capacity_planner.capacity_snapshot(day)
            assert snap["reserved_minutes"] + snap["committed_minutes"] <= snap["total_capacity_minutes"]

    def test_committed_mode_counts_against_capacity(self, day):
        capacity_planner.reserve(day, 400, "COMMITTED")
        with pytest.raises(CapacityExceeded):
            capacity_planner.reserve(day, 100, "TENTATIVE")

    def test_past_date_rejected(self):
        yesterday = datetime.now(timezone.utc).date() - timedelta(days=1)
        with pytest.raises(ValidationError):
            capacity_planner.reserve(yesterday, 10, "TENTATIVE")

    @pytest.mark.parametrize("minutes", [0, -30])
    def test_non_positive_minutes_rejected(self, day, minutes):
        with pytest.raises(ValidationError):
            capacity_planner.reserve(day, minutes, "TENTATIVE")

    def test_unknown_mode_rejected(self, day):
        with pytest.raises(ValidationError):
            capacity_planner.reserve(day, 10, "MAYBE")

    def test_string_date_accepted(self, day):
        reservation = capacity_planner.reserve(day.isoformat(), 30, "TENTATIVE")
        assert reservation.day == day

    def test_reserve_writes_audit_and_publishes(self, day, published):
        reservation = capacity_planner.reserve(day, 30, "TENTATIVE", actor="planner")

        assert [e["action"] for e in published] == ["capacity.reserve"]
        assert published[0]["entity_id"] == str(reservation.id)
        assert published[0]["actor"] == "planner"


class TestOverride:
    def test_override_admits_and_is_recorded(self, day, caplog):
        capacity_planner.reserve(day, 450, "TENTATIVE")

        with caplog.at_level(logging.WARNING, logger="radiopharm.services.capacity_planner"):
            reservation = capacity_planner.reserve(day, 60, "TENTATIVE", override=True, actor="supervisor")

        assert reservation.is_override is True
        assert capacity_planner.capacity_snapshot(day)["reserved_minutes"] == 510
        assert any("override" in r.getMessage().lower() for r in caplog.records)

        entries = db.session.execute(
            db.select(AuditEntry).where(AuditEntry.action == "capacity.override")
        ).scalars().all()
        assert len(entries) == 1
        assert entries[0].actor == "supervisor"
        assert entries[0].diff["used_before"] == 450

    def test_override_within_capacity_is_not_flagged(self, day):
        reservation = capacity_planner.reserve(day, 60, "TENTATIVE", override=True)
        assert reservation.is_override is False


class TestCommitRelease:
    def test_commit_moves_minutes(self, day):
        reservation = capacity_planner.reserve(day, 120, "TENTATIVE")

        committed = capacity_planner.commit(reservation.id)

        assert committed.status == "COMMITTED"
        snap = capacity_planner.capacity_snapshot(day)
        assert snap["reserved_minutes"] == 0
        assert snap["committed_minutes"] == 120

    def test_commit_twice_is_guarded(self, day):
        reservation = capacity_planner.reserve(day, 120, "TENTATIVE")
        capacity_planner.commit(reservation.id)
        with pytest.raises(GuardViolation):
            capacity_planner.commit(reservation.id)

    def test_release_tentative_frees_capacity(self, day):
        reservation = capacity_planner.reserve(day, 300, "TENTATIVE")
        capacity_planner.release(reservation.id)

        assert capacity_planner.capacity_snapshot(day)["reserved_minutes"] == 0
        capacity_planner.reserve(day, 480, "TENTATIVE")

    def test_release_committed_frees_capacity(self, day):
        reservation = capacity_planner.reserve(day, 300, "COMMITTED")
        released = capacity_planner.release(reservation.id)

        assert released.status == "RELEASED"
        assert released.released_at is not None
        assert capacity_planner.capacity_snapshot(day)["committed_minutes"] == 0

    def test_released_handle_cannot_be_reused(self, day):
        reservation = capacity_planner.reserve(day, 30, "TENTATIVE")
        capacity_planner.release(reservation.id)

        with pytest.raises(GuardViolation):
            capacity_planner.release(reservation.id)
        with pytest.raises(GuardViolation):
            capacity_planner.commit(reservation.id)


class TestWindows:
    def test_split_inside_one_day(self, day):
        shares = capacity_planner.split_window(_at(day, 8), _at(day, 9, 30))
        assert shares == [(day, 90)]

    def test_window_across_midnight_is_pro_rated(self, day):
        reservations = capacity_planner.reserve_window(_at(day, 23), _at(day, 23) + timedelta(hours=2), "TENTATIVE")

        assert [(r.day, r.minutes) for r in reservations] == [
            (day, pytest.approx(60)),
            (day + timedelta(days=1), pytest.approx(60)),
        ]

    def test_explicit_minutes_scaled_by_share(self, day):
        shares = capacity_planner.split_window(_at(day, 22), _at(day, 22) + timedelta(hours=3), minutes=90)
        assert shares[0][1] == pytest.approx(60)
        assert shares[1][1] == pytest.approx(30)

    def test_multi_day_window_is_all_or_nothing(self, day):
        next_day = day + timedelta(days=1)
        capacity_planner.reserve(next_day, 470, "TENTATIVE")

        with pytest.raises(CapacityExceeded):
            capacity_planner.reserve_window(_at(day, 23), _at(day, 23) + timedelta(hours=2), "TENTATIVE")

        assert capacity_planner.capacity_snapshot(day)["reserved_minutes"] == 0
        assert capacity_planner.capacity_snapshot(next_day)["reserved_minutes"] == 470

    def test_empty_window_rejected(self, day):
        with pytest.raises(ValidationError):
            capacity_planner.split_window(_at(day, 9), _at(day, 9))


class TestQueries:
    def test_utilization_of_untouched_day_is_zero(self, day):
        assert capacity_planner.utilization(day) == 0.0

    def test_utilization_percent(self, day):
        capacity_planner.reserve(day, 120, "TENTATIVE")
        capacity_planner.reserve(day, 120, "COMMITTED")
        assert capacity_planner.utilization(day) == pytest.approx(50.0)

    def test_calendar_covers_range(self, day):
        capacity_planner.reserve(day, 60, "TENTATIVE")
        days = capacity_planner.calendar(day, day + timedelta(days=2))

        assert [d["date"] for d in days] == [(day + timedelta(days=i)).isoformat() for i in range(3)]
        assert days[0]["reserved_minutes"] == 60
        assert days[1]["reserved_minutes"] == 0

    def test_calendar_rejects_inverted_range(self, day):
        with pytest.raises(ValidationError):
            capacity_planner.calendar(day, day - timedelta(days=1))

    def test_set_daily_capacity(self, day):
        capacity_planner.set_daily_capacity(day, 600)
        capacity_planner.reserve(day, 550, "TENTATIVE")
        assert capacity_planner.capacity_snapshot(day)["available_minutes"] == 50

    def test_set_daily_capacity_below_usage_rejected(self, day):
        capacity_planner.reserve(day, 300, "TENTATIVE")
        with pytest.raises(CapacityExceeded):
            capacity_planner.set_daily_capacity(day, 200)
