from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from equipment_rental.models.rental_models import Maintenance
from equipment_rental.services.equipment_service import (
    get_equipment_or_raise,
    has_other_active_reservation,
    has_other_maintenance_in_progress,
    set_equipment_status,
)
from equipment_rental.services.errors import InvalidStateError, NotFoundError, ValidationError
from equipment_rental.services.rental_service import log_audit

MAINTENANCE_TYPES = {"preventive", "corrective", "emergency"}
MAINTENANCE_STATES = {"scheduled", "in_progress", "completed", "cancelled"}
MAINTENANCE_PRIORITIES = {"low", "medium", "high", "critical"}
MAINTENANCE_TRANSITIONS = {
    "scheduled": {"in_progress", "cancelled"},
    "in_progress": {"completed", "cancelled"},
    "completed": set(),
    "cancelled": set(),
}

LOGGER = logging.getLogger("equipment_rental.maintenance")


def _transition(record: Maintenance, target_state: str, now: datetime) -> None:
    current = record.Status
    if target_state not in MAINTENANCE_TRANSITIONS.get(current, set()):
        raise InvalidStateError(
            f"Invalid maintenance transition: {current} -> {target_state}",
            maintenanceID=record.MaintenanceID,
        )
    record.Status = target_state
    record.UpdatedDate = now


def _release_equipment(db: Session, record: Maintenance, now: datetime) -> None:
    equipment = record.Equipment
    if equipment.Status != "maintenance":
        return
    if has_other_maintenance_in_progress(db, equipment.EquipmentID, record.MaintenanceID):
        LOGGER.info(
            "Equipment %s stays in maintenance: another job is still in progress",
            equipment.EquipmentID,
        )
        return
    if has_other_active_reservation(db, equipment.EquipmentID):
        set_equipment_status(equipment, "rented", now)
    else:
        set_equipment_status(equipment, "available", now)


def get_maintenance_or_raise(db: Session, maintenance_id: int) -> Maintenance:
    stmt = (
        select(Maintenance)
        .options(selectinload(Maintenance.Equipment))
        .where(Maintenance.MaintenanceID == maintenance_id)
    )
    record = db.execute(stmt).scalars().first()
    if not record:
        raise NotFoundError("Maintenance record not found.", maintenanceID=maintenance_id)
    return record


def schedule_maintenance(
    db: Session,
    *,
    equipment_id: int,
    maintenance_type: str,
    title: str,
    description: str,
    scheduled_date: datetime,
    priority: str = "medium",
    estimated_duration: float | None = None,
    technician_id: int | None = None,
    assigned_by: int | None = None,
    notes: str | None = None,
    now: datetime | None = None,
) -> Maintenance:
    now = now or datetime.now()
    if maintenance_type not in MAINTENANCE_TYPES:
        raise ValidationError(f"Unknown maintenance type '{maintenance_type}'.")
    if priority not in MAINTENANCE_PRIORITIES:
        raise ValidationError(f"Unknown maintenance priority '{priority}'.")
    if not (title or "").strip():
        raise ValidationError("title is required.")
    get_equipment_or_raise(db, equipment_id)

    record = Maintenance(
        EquipmentID=equipment_id,
        MaintenanceType=maintenance_type,
        Status="scheduled",
        Priority=priority,
        Title=title.strip(),
        Description=description,
        ScheduledDate=scheduled_date,
        EstimatedDuration=estimated_duration,
        TechnicianID=technician_id,
        AssignedBy=assigned_by,
        Notes=notes,
        CreatedDate=now,
        UpdatedDate=now,
    )
    db.add(record)
    db.flush()
    log_audit(db, "Maintenance", record.MaintenanceID, "ScheduleMaintenance", record.Title, user_id=assigned_by, now=now)
    db.commit()
    db.refresh(record)
    LOGGER.info("Maintenance %s scheduled for equipment %s on %s", record.MaintenanceID, equipment_id, scheduled_date)
    return record


def start_maintenance(db: Session, maintenance_id: int, actor_id: int | None = None, now: datetime | None = None) -> Maintenance:
    now = now or datetime.now()
    record = get_maintenance_or_raise(db, maintenance_id)
    _transition(record, "in_progress", now)
    record.ActualStart = now
    set_equipment_status(record.Equipment, "maintenance", now)
    log_audit(db, "Maintenance", maintenance_id, "StartMaintenance", None, user_id=actor_id, now=now)
    db.commit()
    LOGGER.info("Maintenance %s started on equipment %s", maintenance_id, record.EquipmentID)
    return record


def complete_maintenance(
    db: Session,
    maintenance_id: int,
    *,
    work_performed: str | None = None,
    labor_cost: float | None = None,
    parts_cost: float | None = None,
    external_cost: float | None = None,
    next_maintenance_date: datetime | None = None,
    actor_id: int | None = None,
    now: datetime | None = None,
) -> Maintenance:
    now = now or datetime.now()
    record = get_maintenance_or_raise(db, maintenance_id)
    _transition(record, "completed", now)
    record.ActualEnd = now
    if work_performed is not None:
        record.WorkPerformed = work_performed
    if labor_cost is not None:
        record.LaborCost = labor_cost
    if parts_cost is not None:
        record.PartsCost = parts_cost
    if external_cost is not None:
        record.ExternalCost = external_cost
    if next_maintenance_date is not None:
        record.NextMaintenanceDate = next_maintenance_date
    _release_equipment(db, record, now)
    log_audit(db, "Maintenance", maintenance_id, "CompleteMaintenance", work_performed, user_id=actor_id, now=now)
    db.commit()
    LOGGER.info("Maintenance %s completed; equipment %s is %s", maintenance_id, record.EquipmentID, record.Equipment.Status)
    return record


def cancel_maintenance(
    db: Session,
    maintenance_id: int,
    reason: str | None = None,
    actor_id: int | None = None,
    now: datetime | None = None,
) -> Maintenance:
    now = now or datetime.now()
    record = get_maintenance_or_raise(db, maintenance_id)
    was_in_progress = record.Status == "in_progress"
    _transition(record, "cancelled", now)
    if reason:
        note = f"Cancelled: {reason}"
        record.Notes = f"{record.Notes}\n{note}" if record.Notes else note
    if was_in_progress:
        _release_equipment(db, record, now)
    log_audit(db, "Maintenance", maintenance_id, "CancelMaintenance", reason, user_id=actor_id, now=now)
    db.commit()
    LOGGER.info("Maintenance %s cancelled", maintenance_id)
    return record


def list_maintenance(db: Session, *, equipment_id: int | None = None, status: str | None = None) -> list[Maintenance]:
    stmt = select(Maintenance).options(selectinload(Maintenance.Equipment))
    if equipment_id is not None:
        stmt = stmt.where(Maintenance.EquipmentID == equipment_id)
    if status:
        stmt = stmt.where(Maintenance.Status == status)
    return list(db.execute(stmt.order_by(Maintenance.ScheduledDate)).scalars().all())


def get_overdue_maintenance(db: Session, now: datetime) -> list[Maintenance]:
    stmt = (
        select(Maintenance)
        .options(selectinload(Maintenance.Equipment))
        .where(Maintenance.Status == "scheduled")
        .where(Maintenance.ScheduledDate < now)
        .order_by(Maintenance.ScheduledDate)
    )
    return list(db.execute(stmt).scalars().all())


def total_cost(record: Maintenance) -> float:
    return float(record.LaborCost or 0) + float(record.PartsCost or 0) + float(record.ExternalCost or 0)


def serialize_maintenance(record: Maintenance) -> dict:
    return {
        "maintenanceID": record.MaintenanceID,
        "equipmentID": record.EquipmentID,
        "equipmentName": record.Equipment.Name if record.Equipment else None,
        "type": record.MaintenanceType,
        "status": record.Status,
        "priority": record.Priority,
        "title": record.Title,
        "description": record.Description,
        "scheduledDate": record.ScheduledDate,
        "estimatedDuration": record.EstimatedDuration,
        "actualStart": record.ActualStart,
        "actualEnd": record.ActualEnd,
        "technicianID": record.TechnicianID,
        "assignedBy": record.AssignedBy,
        "laborCost": record.LaborCost,
        "partsCost": record.PartsCost,
        "externalCost": record.ExternalCost,
        "totalCost": total_cost(record),
        "workPerformed": record.WorkPerformed,
        "nextMaintenanceDate": record.NextMaintenanceDate,
        "notes": record.Notes,
    }
