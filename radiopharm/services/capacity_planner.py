"""
Capacity Planner — Service Layer.

Tracks production minutes per calendar day (UTC) against a fixed daily
capacity and admits or rejects holds.

Business rules:
    - A hold is rejected when reserved + committed + minutes > total for its
      day, unless the caller passes override=True. Overrides are admitted
      but recorded as ``capacity.override`` audit entries and logged at
      WARNING.
    - Holds against a day before today are rejected (historical decay
      recomputes are allowed, scheduling against the past is not).
    - A window spanning midnight holds minutes on every day it touches,
      pro-rated by the share of the window inside each day. Multi-day holds
      are all-or-nothing.
    - TENTATIVE holds never expire. They are committed or released
      explicitly; sweeping abandoned holds is an operational concern.

Public functions lock the affected day(s), run in one transaction and
publish their audit entries after commit. The ``*_in_session`` variants
only flush; the fulfillment state machine uses them inside its own
transaction.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone

from flask import current_app
from sqlalchemy import select

from radiopharm.core.exceptions import (
    CapacityExceeded,
    GuardViolation,
    NotFoundError,
    ValidationError,
)
from radiopharm.models import db
from radiopharm.models.audit import write_audit
from radiopharm.models.capacity import (
    ACTIVE_RESERVATION_STATUSES,
    RESERVATION_MODES,
    CapacityDay,
    CapacityReservation,
)
from radiopharm.services import event_sink
from radiopharm.services.concurrency import atomic, entity_lock
from radiopharm.utils.helpers import as_utc, parse_date, utcnow

logger = logging.getLogger(__name__)

# Pro-rated minutes are floats; tolerate representation error at the boundary.
_EPSILON = 1e-9


# ── Private helpers ──────────────────────────────────────────────────────────


def capacity_key(day: date) -> str:
    return f"capacity:{day.isoformat()}"


def _default_capacity() -> float:
    return float(current_app.config.get("DAILY_CAPACITY_MINUTES", 480))


def _coerce_day(value) -> date:
    day = parse_date(value)
    if day is None:
        raise ValidationError("date must be YYYY-MM-DD", details={"date": str(value)})
    return day


def _validate_mode(mode: str) -> str:
    mode = (mode or "").upper()
    if mode not in RESERVATION_MODES:
        raise ValidationError(
            f"mode must be one of {sorted(RESERVATION_MODES)}", details={"mode": mode},
        )
    return mode


def _get_day(day: date, *, create: bool = False) -> CapacityDay | None:
    row = db.session.execute(
        select(CapacityDay).where(CapacityDay.day == day).with_for_update()
    ).scalar_one_or_none()
    if row is None and create:
        row = CapacityDay(
            day=day,
            total_capacity_minutes=_default_capacity(),
            reserved_minutes=0,
            committed_minutes=0,
        )
        db.session.add(row)
        db.session.flush()
    return row


def _get_reservation(reservation_id: int) -> CapacityReservation:
    reservation = db.session.get(CapacityReservation, reservation_id, with_for_update=True)
    if reservation is None:
        raise NotFoundError(resource="CapacityReservation", resource_id=reservation_id)
    return reservation


def split_window(start: datetime, end: datetime, minutes: float | None = None) -> list[tuple[date, float]]:
    """Split [start, end) into per-day minute shares.

    Args:
        start, end: Window bounds; naive values are taken as UTC.
        minutes: Minutes to hold over the whole window. Defaults to the window
            length; when given, each day receives minutes × (share of window).

    Returns:
        [(day, minutes_on_day), ...] in ascending day order, days with a zero
        share omitted.
    """
    start, end = as_utc(start), as_utc(end)
    if end <= start:
        raise ValidationError(
            "window end must be after start",
            details={"start": start.isoformat(), "end": end.isoformat()},
        )
    window_minutes = (end - start).total_seconds() / 60
    total = window_minutes if minutes is None else float(minutes)

    shares = []
    cursor = start
    while cursor < end:
        next_midnight = datetime.combine(
            cursor.date() + timedelta(days=1), time.min, tzinfo=timezone.utc,
        )
        segment_end = min(end, next_midnight)
        segment_minutes = (segment_end - cursor).total_seconds() / 60
        share = total * segment_minutes / window_minutes
        if share > 0:
            shares.append((cursor.date(), share))
        cursor = segment_end
    return shares


# ── Session-level operations (flush only) ────────────────────────────────────


def reserve_in_session(
    day: date,
    minutes: float,
    mode: str,
    *,
    batch_id: int | None = None,
    order_id: int | None = None,
    override: bool = False,
    actor: str = "system",
    audit: list | None = None,
) -> CapacityReservation:
    """Admit one hold against *day*. Caller holds the day lock and the transaction."""
    mode = _validate_mode(mode)
    if minutes is None or minutes <= 0:
        raise ValidationError("minutes must be positive", details={"minutes": minutes})
    if day < utcnow().date():
        raise ValidationError(
            "Cannot reserve capacity for a past date", details={"date": day.isoformat()},
        )

    ledger = _get_day(day, create=True)
    used = ledger.used_minutes
    exceeds = used + minutes > ledger.total_capacity_minutes + _EPSILON

    if exceeds and not override:
        raise CapacityExceeded(day, minutes, used, ledger.total_capacity_minutes)

    if mode == "TENTATIVE":
        ledger.reserved_minutes = (ledger.reserved_minutes or 0) + minutes
    else:
        ledger.committed_minutes = (ledger.committed_minutes or 0) + minutes

    now = utcnow()
    reservation = CapacityReservation(
        day=day,
        minutes=minutes,
        status=mode,
        is_override=bool(exceeds and override),
        batch_id=batch_id,
        order_id=order_id,
        created_by=actor or "system",
        committed_at=now if mode == "COMMITTED" else None,
    )
    db.session.add(reservation)
    db.session.flush()

    entries = audit if audit is not None else []
    if exceeds:
        logger.warning(
            "Capacity override on %s: %.1f + %.1f > %.1f",
            day, used, minutes, ledger.total_capacity_minutes,
            extra={"event_type": "capacity.override", "entity_type": "capacity",
                   "entity_id": reservation.id, "actor": actor},
        )
        entries.append(write_audit(
            entity_type="capacity",
            entity_id=reservation.id,
            action="capacity.override",
            actor=actor,
            diff={
                "date": day.isoformat(),
                "minutes": minutes,
                "used_before": used,
                "total_capacity_minutes": ledger.total_capacity_minutes,
            },
        ).to_dict())
    entries.append(write_audit(
        entity_type="capacity",
        entity_id=reservation.id,
        action="capacity.reserve",
        actor=actor,
        to_status=mode,
        diff={"date": day.isoformat(), "minutes": minutes,
              "batch_id": batch_id, "order_id": order_id},
    ).to_dict())

    logger.info(
        "Capacity reserved: %s %.1f min (%s)", day, minutes, mode,
        extra={"event_type": "capacity.reserve", "entity_type": "capacity",
               "entity_id": reservation.id, "actor": actor},
    )
    return reservation


def reserve_window_in_session(
    start: datetime,
    end: datetime,
    mode: str,
    *,
    minutes: float | None = None,
    batch_id: int | None = None,
    order_id: int | None = None,
    override: bool = False,
    actor: str = "system",
    audit: list | None = None,
) -> list[CapacityReservation]:
    """Hold a window across every day it touches. Caller holds the day locks."""
    return [
        reserve_in_session(
            day, share, mode,
            batch_id=batch_id, order_id=order_id,
            override=override, actor=actor, audit=audit,
        )
        for day, share in split_window(start, end, minutes)
    ]


def commit_in_session(reservation: CapacityReservation, *, actor: str = "system", audit: list | None = None):
    """Promote a TENTATIVE hold to COMMITTED."""
    if reservation.status != "TENTATIVE":
        raise GuardViolation(
            "reservation", reservation.id, reservation.status, "COMMITTED",
            "only TENTATIVE reservations can be committed",
        )
    ledger = _get_day(reservation.day, create=True)
    ledger.reserved_minutes = max(0.0, (ledger.reserved_minutes or 0) - reservation.minutes)
    ledger.committed_minutes = (ledger.committed_minutes or 0) + reservation.minutes
    reservation.status = "COMMITTED"
    reservation.committed_at = utcnow()
    db.session.flush()

    entry = write_audit(
        entity_type="capacity",
        entity_id=reservation.id,
        action="capacity.commit",
        actor=actor,
        from_status="TENTATIVE",
        to_status="COMMITTED",
        diff={"date": reservation.day.isoformat(), "minutes": reservation.minutes},
    ).to_dict()
    if audit is not None:
        audit.append(entry)
    logger.info(
        "Capacity committed: reservation %s", reservation.id,
        extra={"event_type": "capacity.commit", "entity_type": "capacity",
               "entity_id": reservation.id, "actor": actor},
    )
    return reservation


def release_in_session(reservation: CapacityReservation, *, actor: str = "system", audit: list | None = None):
    """Return a TENTATIVE or COMMITTED hold's minutes to its day."""
    if reservation.status not in ACTIVE_RESERVATION_STATUSES:
        raise GuardViolation(
            "reservation", reservation.id, reservation.status, "RELEASED",
            "reservation is already released",
        )
    ledger = _get_day(reservation.day, create=True)
    previous = reservation.status
    if previous == "TENTATIVE":
        ledger.reserved_minutes = max(0.0, (ledger.reserved_minutes or 0) - reservation.minutes)
    else:
        ledger.committed_minutes = max(0.0, (ledger.committed_minutes or 0) - reservation.minutes)
    reservation.status = "RELEASED"
    reservation.released_at = utcnow()
    db.session.flush()

    entry = write_audit(
        entity_type="capacity",
        entity_id=reservation.id,
        action="capacity.release",
        actor=actor,
        from_status=previous,
        to_status="RELEASED",
        diff={"date": reservation.day.isoformat(), "minutes": reservation.minutes},
    ).to_dict()
    if audit is not None:
        audit.append(entry)
    logger.info(
        "Capacity released: reservation %s (%s)", reservation.id, previous,
        extra={"event_type": "capacity.release", "entity_type": "capacity",
               "entity_id": reservation.id, "actor": actor},
    )
    return reservation


def active_reservations(*, batch_id: int | None = None, order_id: int | None = None) -> list[CapacityReservation]:
    """Active (TENTATIVE/COMMITTED) holds tied to a batch and/or order."""
    stmt = select(CapacityReservation).where(
        CapacityReservation.status.in_(ACTIVE_RESERVATION_STATUSES)
    )
    if batch_id is not None:
        stmt = stmt.where(CapacityReservation.batch_id == batch_id)
    if order_id is not None:
        stmt = stmt.where(CapacityReservation.order_id == order_id)
    return list(
        db.session.execute(stmt.order_by(CapacityReservation.id)).scalars().all()
    )


# ── Public API ───────────────────────────────────────────────────────────────


def reserve(
    day,
    minutes: float,
    mode: str = "TENTATIVE",
    *,
    batch_id: int | None = None,
    order_id: int | None = None,
    override: bool = False,
    actor: str = "system",
) -> CapacityReservation:
    """Reserve *minutes* on *day*.

    Returns:
        The CapacityReservation handle.

    Raises:
        CapacityExceeded: the hold does not fit and override is False.
        ValidationError: bad mode, non-positive minutes, or a past date.
    """
    day = _coerce_day(day)
    audit: list[dict] = []
    with entity_lock(capacity_key(day)), atomic():
        reservation = reserve_in_session(
            day, minutes, mode,
            batch_id=batch_id, order_id=order_id,
            override=override, actor=actor, audit=audit,
        )
    event_sink.publish(audit)
    return reservation


def reserve_window(
    start: datetime,
    end: datetime,
    mode: str = "TENTATIVE",
    *,
    minutes: float | None = None,
    batch_id: int | None = None,
    order_id: int | None = None,
    override: bool = False,
    actor: str = "system",
) -> list[CapacityReservation]:
    """Reserve a time window, pro-rated across the days it spans (all-or-nothing)."""
    shares = split_window(start, end, minutes)
    audit: list[dict] = []
    with entity_lock(*(capacity_key(day) for day, _ in shares)), atomic():
        reservations = [
            reserve_in_session(
                day, share, mode,
                batch_id=batch_id, order_id=order_id,
                override=override, actor=actor, audit=audit,
            )
            for day, share in shares
        ]
    event_sink.publish(audit)
    return reservations


def commit(reservation_id: int, *, actor: str = "system") -> CapacityReservation:
    """Promote a TENTATIVE hold to COMMITTED."""
    day = _get_reservation(reservation_id).day
    audit: list[dict] = []
    with entity_lock(capacity_key(day)), atomic():
        reservation = commit_in_session(_get_reservation(reservation_id), actor=actor, audit=audit)
    event_sink.publish(audit)
    return reservation


def release(reservation_id: int, *, actor: str = "system") -> CapacityReservation:
    """Release a TENTATIVE or COMMITTED hold."""
    day = _get_reservation(reservation_id).day
    audit: list[dict] = []
    with entity_lock(capacity_key(day)), atomic():
        reservation = release_in_session(_get_reservation(reservation_id), actor=actor, audit=audit)
    event_sink.publish(audit)
    return reservation


def utilization(day) -> float:
    """Percent of *day*'s capacity held (reserved + committed); 0.0 if untouched."""
    ledger = db.session.execute(
        select(CapacityDay).where(CapacityDay.day == _coerce_day(day))
    ).scalar_one_or_none()
    return ledger.utilization_percent if ledger else 0.0


def capacity_snapshot(day) -> dict:
    """Ledger figures for *day* (defaults when nothing is booked yet)."""
    day = _coerce_day(day)
    ledger = db.session.execute(
        select(CapacityDay).where(CapacityDay.day == day)
    ).scalar_one_or_none()
    if ledger is None:
        total = _default_capacity()
        return {
            "date": day.isoformat(),
            "total_capacity_minutes": total,
            "reserved_minutes": 0.0,
            "committed_minutes": 0.0,
            "available_minutes": total,
            "utilization_percent": 0.0,
        }
    return ledger.to_dict()


def calendar(start_day, end_day) -> list[dict]:
    """Snapshots for every day in [start_day, end_day], inclusive."""
    start_day, end_day = _coerce_day(start_day), _coerce_day(end_day)
    if end_day < start_day:
        raise ValidationError("end date must not precede start date")
    if (end_day - start_day).days > 366:
        raise ValidationError("calendar range is limited to one year")
    days = []
    cursor = start_day
    while cursor <= end_day:
        days.append(capacity_snapshot(cursor))
        cursor += timedelta(days=1)
    return days


def set_daily_capacity(day, total_minutes: float, *, actor: str = "system") -> CapacityDay:
    """Change one day's total capacity (e.g. planned maintenance).

    The new total may not drop below minutes already held on that day.
    """
    day = _coerce_day(day)
    if total_minutes is None or total_minutes <= 0:
        raise ValidationError("total_minutes must be positive", details={"total_minutes": total_minutes})
    audit: list[dict] = []
    with entity_lock(capacity_key(day)), atomic():
        ledger = _get_day(day, create=True)
        if ledger.used_minutes > total_minutes + _EPSILON:
            raise CapacityExceeded(day, 0, ledger.used_minutes, total_minutes)
        previous = ledger.total_capacity_minutes
        ledger.total_capacity_minutes = float(total_minutes)
        audit.append(write_audit(
            entity_type="capacity",
            entity_id=day.isoformat(),
            action="capacity.configure",
            actor=actor,
            diff={"total_capacity_minutes": {"old": previous, "new": float(total_minutes)}},
        ).to_dict())
    logger.info(
        "Daily capacity set: %s → %.1f min", day, total_minutes,
        extra={"event_type": "capacity.configure", "actor": actor},
    )
    event_sink.publish(audit)
    return ledger
