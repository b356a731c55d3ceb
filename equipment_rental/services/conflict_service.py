from __future__ import annotations

import math
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from equipment_rental.models.rental_models import Reservation
from equipment_rental.services.errors import ValidationError

# Only these states hold the equipment; pending requests never block.
BLOCKING_STATES = ("approved", "active")
SECONDS_PER_DAY = 86400


def intervals_overlap(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    # Half-open [start, end): touching boundaries are not an overlap.
    return start_a < end_b and end_a > start_b


def validate_interval(start: datetime | None, end: datetime | None) -> None:
    if start is None or end is None:
        raise ValidationError("startDate and endDate are required.")
    if (start.tzinfo is None) != (end.tzinfo is None):
        raise ValidationError("startDate and endDate must both carry a UTC offset or both omit it.", startDate=start, endDate=end)
    if end <= start:
        raise ValidationError("endDate must be after startDate.", startDate=start, endDate=end)


def has_conflict(
    db: Session,
    equipment_id: int,
    start: datetime,
    end: datetime,
    exclude_reservation_id: int | None = None,
) -> bool:
    validate_interval(start, end)
    stmt = (
        select(Reservation.ReservationID)
        .where(Reservation.EquipmentID == equipment_id)
        .where(Reservation.Status.in_(BLOCKING_STATES))
        .where(Reservation.StartDate < end)
        .where(Reservation.EndDate > start)
    )
    if exclude_reservation_id is not None:
        stmt = stmt.where(Reservation.ReservationID != exclude_reservation_id)
    return db.execute(stmt.limit(1)).first() is not None


def find_conflicting_reservations(
    db: Session,
    equipment_id: int,
    start: datetime,
    end: datetime,
    exclude_reservation_id: int | None = None,
) -> list[Reservation]:
    validate_interval(start, end)
    stmt = (
        select(Reservation)
        .where(Reservation.EquipmentID == equipment_id)
        .where(Reservation.Status.in_(BLOCKING_STATES))
        .where(Reservation.StartDate < end)
        .where(Reservation.EndDate > start)
        .order_by(Reservation.StartDate)
    )
    if exclude_reservation_id is not None:
        stmt = stmt.where(Reservation.ReservationID != exclude_reservation_id)
    return list(db.execute(stmt).scalars().all())


def interval_days(start: datetime, end: datetime) -> int:
    seconds = (end - start).total_seconds()
    return max(1, math.ceil(seconds / SECONDS_PER_DAY))
