from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from equipment_rental.models.rental_models import Equipment, Maintenance, Reservation
from equipment_rental.services.conflict_service import BLOCKING_STATES, has_conflict, interval_days, validate_interval
from equipment_rental.services.errors import ConflictError, NotFoundError, ValidationError

EQUIPMENT_STATES = {"available", "rented", "maintenance", "inactive"}
EQUIPMENT_CATEGORIES = {"excavator", "bulldozer", "crane", "loader", "compactor", "other"}

LOGGER = logging.getLogger("equipment_rental.equipment")


def get_equipment_or_raise(db: Session, equipment_id: int) -> Equipment:
    equipment = db.get(Equipment, equipment_id)
    if not equipment:
        raise NotFoundError("Equipment not found.", equipmentID=equipment_id)
    return equipment


def is_available(
    db: Session,
    equipment_id: int,
    start: datetime | None = None,
    end: datetime | None = None,
) -> bool:
    equipment = get_equipment_or_raise(db, equipment_id)
    if equipment.Status != "available":
        return False
    if start is None and end is None:
        return True
    return not has_conflict(db, equipment_id, start, end)


def check_availability(db: Session, equipment_id: int, start: datetime, end: datetime) -> dict:
    validate_interval(start, end)
    equipment = get_equipment_or_raise(db, equipment_id)
    conflicts = has_conflict(db, equipment_id, start, end)
    available = equipment.Status == "available" and not conflicts
    days = interval_days(start, end)
    return {
        "available": available,
        "conflicts": conflicts,
        "equipment": {
            "equipmentID": equipment.EquipmentID,
            "name": equipment.Name,
            "status": equipment.Status,
            "dailyRate": equipment.DailyRate,
        },
        "period": {"startDate": start, "endDate": end, "days": days},
        "estimatedCost": days * float(equipment.DailyRate or 0) if available else None,
    }


def set_equipment_status(equipment: Equipment, status: str, now: datetime | None = None) -> None:
    if equipment.Status == status:
        return
    LOGGER.info("Equipment %s status %s -> %s", equipment.EquipmentID, equipment.Status, status)
    equipment.Status = status
    equipment.UpdatedDate = now or datetime.now()


def has_other_active_reservation(db: Session, equipment_id: int, exclude_reservation_id: int | None = None) -> bool:
    stmt = (
        select(Reservation.ReservationID)
        .where(Reservation.EquipmentID == equipment_id)
        .where(Reservation.Status == "active")
    )
    if exclude_reservation_id is not None:
        stmt = stmt.where(Reservation.ReservationID != exclude_reservation_id)
    return db.execute(stmt.limit(1)).first() is not None


def has_other_holder(
    db: Session,
    equipment_id: int,
    now: datetime,
    exclude_reservation_id: int | None = None,
) -> bool:
    """True when an active reservation, or an approved one covering ``now``, still holds the equipment."""
    if has_other_active_reservation(db, equipment_id, exclude_reservation_id):
        return True
    stmt = (
        select(Reservation.ReservationID)
        .where(Reservation.EquipmentID == equipment_id)
        .where(Reservation.Status == "approved")
        .where(Reservation.StartDate <= now)
        .where(Reservation.EndDate >= now)
    )
    if exclude_reservation_id is not None:
        stmt = stmt.where(Reservation.ReservationID != exclude_reservation_id)
    return db.execute(stmt.limit(1)).first() is not None


def has_other_maintenance_in_progress(db: Session, equipment_id: int, exclude_maintenance_id: int | None = None) -> bool:
    stmt = (
        select(Maintenance.MaintenanceID)
        .where(Maintenance.EquipmentID == equipment_id)
        .where(Maintenance.Status == "in_progress")
    )
    if exclude_maintenance_id is not None:
        stmt = stmt.where(Maintenance.MaintenanceID != exclude_maintenance_id)
    return db.execute(stmt.limit(1)).first() is not None


def change_equipment_status(db: Session, equipment: Equipment, status: str, now: datetime | None = None) -> None:
    """Manual status change. Refuses states that contradict the reservations and maintenance on record."""
    now = now or datetime.now()
    if status not in EQUIPMENT_STATES:
        raise ValidationError(f"Unknown equipment status '{status}'.", status=status)
    if status == equipment.Status:
        return
    holder = equipment.EquipmentID is not None and has_other_holder(db, equipment.EquipmentID, now)
    if status == "available":
        if holder:
            raise ConflictError("Equipment is held by an approved or active reservation.", equipmentID=equipment.EquipmentID)
        if equipment.EquipmentID is not None and has_other_maintenance_in_progress(db, equipment.EquipmentID):
            raise ConflictError("Equipment has maintenance in progress.", equipmentID=equipment.EquipmentID)
    if status == "rented" and not holder:
        raise ConflictError("Equipment can only be rented through a reservation.", equipmentID=equipment.EquipmentID)
    set_equipment_status(equipment, status, now)


def ensure_equipment_deletable(db: Session, equipment_id: int) -> None:
    blocking = db.execute(
        select(Reservation.ReservationID)
        .where(Reservation.EquipmentID == equipment_id)
        .where(Reservation.Status.in_(BLOCKING_STATES))
        .limit(1)
    ).first()
    if blocking is not None:
        raise ConflictError("Cannot delete equipment with approved or active reservations.", equipmentID=equipment_id)


def serialize_equipment(equipment: Equipment) -> dict:
    return {
        "equipmentID": equipment.EquipmentID,
        "name": equipment.Name,
        "description": equipment.Description,
        "category": equipment.Category,
        "brand": equipment.Brand,
        "model": equipment.Model,
        "year": equipment.Year,
        "dailyRate": equipment.DailyRate,
        "status": equipment.Status,
        "city": equipment.City,
        "minimumRentalDays": equipment.MinimumRentalDays,
        "maximumRentalDays": equipment.MaximumRentalDays,
        "isAvailable": equipment.Status == "available",
        "createdDate": equipment.CreatedDate,
        "updatedDate": equipment.UpdatedDate,
    }


def map_equipment_field(field: str) -> str:
    mapping = {
        "equipmentID": "EquipmentID",
        "name": "Name",
        "description": "Description",
        "category": "Category",
        "brand": "Brand",
        "model": "Model",
        "year": "Year",
        "dailyRate": "DailyRate",
        "status": "Status",
        "city": "City",
        "minimumRentalDays": "MinimumRentalDays",
        "maximumRentalDays": "MaximumRentalDays",
    }
    return mapping.get(field, field)
