from __future__ import annotations

import logging
import os
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from equipment_rental.models.rental_models import AuditLog, Reservation, User
from equipment_rental.services.conflict_service import has_conflict, interval_days, validate_interval
from equipment_rental.services.equipment_service import (
    get_equipment_or_raise,
    has_other_active_reservation,
    has_other_holder,
    set_equipment_status,
)
from equipment_rental.services.errors import ConflictError, InvalidStateError, NotFoundError
from equipment_rental.services.notification_service import notify_reservation_event

RESERVATION_STATES = {"pending", "approved", "rejected", "active", "completed", "cancelled"}
TERMINAL_STATES = {"rejected", "completed", "cancelled"}
STATE_TRANSITIONS = {
    "pending": {"approved", "rejected", "cancelled"},
    "approved": {"active", "cancelled"},
    "active": {"completed"},
    "rejected": set(),
    "completed": set(),
    "cancelled": set(),
}
CANCELLABLE_STATES = {"pending", "approved"}
DEFAULT_DELIVERY_COST = 50.0

LOGGER = logging.getLogger("equipment_rental.reservations")


def delivery_flat_cost() -> float:
    raw = (os.environ.get("DELIVERY_FLAT_COST") or "").strip()
    if not raw:
        return DEFAULT_DELIVERY_COST
    try:
        return float(raw)
    except ValueError:
        LOGGER.warning("Ignoring malformed DELIVERY_FLAT_COST=%r; using %s", raw, DEFAULT_DELIVERY_COST)
        return DEFAULT_DELIVERY_COST


def log_audit(
    db: Session,
    entity_type: str,
    entity_id: int,
    action: str,
    details: str | None = None,
    user_id: int | None = None,
    now: datetime | None = None,
) -> None:
    db.add(
        AuditLog(
            EntityType=entity_type,
            EntityID=entity_id,
            Action=action,
            Details=details,
            UserID=user_id,
            CreatedAt=now or datetime.now(),
        )
    )


def generate_reservation_number(db: Session, prefix: str = "RSV") -> str:
    token = (prefix or "RSV").upper()
    last = db.execute(
        select(Reservation)
        .where(Reservation.ReservationNumber.like(f"{token}-%"))
        .order_by(Reservation.ReservationID.desc())
    ).scalars().first()
    next_number = 1
    if last and last.ReservationNumber:
        raw = last.ReservationNumber.replace(f"{token}-", "")
        try:
            next_number = int(raw) + 1
        except ValueError:
            next_number = 1
    return f"{token}-{next_number:03d}"


def recalc_reservation_costs(reservation: Reservation) -> None:
    validate_interval(reservation.StartDate, reservation.EndDate)
    days = interval_days(reservation.StartDate, reservation.EndDate)
    daily = float(reservation.DailyRate or 0)
    delivery = float(reservation.DeliveryCost or 0)
    reservation.NumberOfDays = days
    reservation.TotalCost = days * daily + delivery


def transition_state(reservation: Reservation, target_state: str, now: datetime | None = None) -> None:
    current = reservation.Status
    if current not in STATE_TRANSITIONS or target_state not in STATE_TRANSITIONS[current]:
        raise InvalidStateError(
            f"Invalid state transition: {current} -> {target_state}",
            reservationID=reservation.ReservationID,
        )
    reservation.Status = target_state
    reservation.UpdatedDate = now or datetime.now()


def _require_state(reservation: Reservation, allowed: set[str], action: str) -> None:
    if reservation.Status not in allowed:
        LOGGER.warning(
            "Rejected %s on reservation %s: status is %s",
            action,
            reservation.ReservationID,
            reservation.Status,
        )
        raise InvalidStateError(
            f"Cannot {action} a reservation in status '{reservation.Status}'.",
            reservationID=reservation.ReservationID,
            status=reservation.Status,
        )


def _commit_transition(db: Session, reservation: Reservation, action: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        LOGGER.error(
            "%s failed to persist for reservation %s (equipment %s); reservation and equipment may disagree",
            action,
            reservation.ReservationID,
            reservation.EquipmentID,
        )
        raise


def get_reservation_or_raise(db: Session, reservation_id: int) -> Reservation:
    stmt = (
        select(Reservation)
        .options(selectinload(Reservation.Equipment), selectinload(Reservation.Client))
        .where(Reservation.ReservationID == reservation_id)
    )
    reservation = db.execute(stmt).scalars().first()
    if not reservation:
        raise NotFoundError("Reservation not found.", reservationID=reservation_id)
    return reservation


def create_reservation(
    db: Session,
    *,
    equipment_id: int,
    client_id: int,
    start_date: datetime,
    end_date: datetime,
    delivery_required: bool = False,
    notes: str | None = None,
    delivery_address: dict | None = None,
    now: datetime | None = None,
) -> Reservation:
    now = now or datetime.now()
    validate_interval(start_date, end_date)

    equipment = get_equipment_or_raise(db, equipment_id)
    client = db.get(User, client_id)
    if not client:
        raise NotFoundError("Client not found.", clientID=client_id)
    if equipment.Status != "available":
        LOGGER.info("Create refused: equipment %s is %s", equipment_id, equipment.Status)
        raise ConflictError("Equipment is not available.", equipmentID=equipment_id, status=equipment.Status)
    if has_conflict(db, equipment_id, start_date, end_date):
        LOGGER.info("Create refused: equipment %s has conflicting dates %s..%s", equipment_id, start_date, end_date)
        raise ConflictError(
            "Requested dates conflict with another reservation.",
            equipmentID=equipment_id,
            startDate=start_date,
            endDate=end_date,
        )

    address = delivery_address or {}
    reservation = Reservation(
        ReservationNumber=generate_reservation_number(db),
        EquipmentID=equipment_id,
        ClientID=client_id,
        StartDate=start_date,
        EndDate=end_date,
        Status="pending",
        DailyRate=float(equipment.DailyRate or 0),
        DeliveryRequired=bool(delivery_required),
        DeliveryCost=delivery_flat_cost() if delivery_required else 0.0,
        DeliveryStreet=address.get("street"),
        DeliveryCity=address.get("city"),
        DeliveryPostalCode=address.get("postalCode"),
        Notes=notes,
        PaymentStatus="unpaid",
        CreatedDate=now,
        UpdatedDate=now,
    )
    recalc_reservation_costs(reservation)
    db.add(reservation)
    db.flush()
    log_audit(
        db,
        "Reservation",
        reservation.ReservationID,
        "CreateReservation",
        f"Created for equipment {equipment_id}: {start_date:%Y-%m-%d} -> {end_date:%Y-%m-%d}",
        user_id=client_id,
        now=now,
    )
    _commit_transition(db, reservation, "CreateReservation")
    db.refresh(reservation)
    LOGGER.info(
        "Reservation %s created by client %s for equipment %s",
        reservation.ReservationID,
        client_id,
        equipment_id,
    )

    notify_reservation_event(db, reservation, "ReservationCreated", now=now)
    return reservation


def approve_reservation(db: Session, reservation_id: int, approver_id: int | None, now: datetime | None = None) -> Reservation:
    now = now or datetime.now()
    reservation = get_reservation_or_raise(db, reservation_id)
    _require_state(reservation, {"pending"}, "approve")

    if has_conflict(db, reservation.EquipmentID, reservation.StartDate, reservation.EndDate, reservation.ReservationID):
        LOGGER.warning(
            "Approve refused for reservation %s: dates now conflict on equipment %s",
            reservation_id,
            reservation.EquipmentID,
        )
        raise ConflictError(
            "Requested dates conflict with another reservation.",
            reservationID=reservation_id,
            equipmentID=reservation.EquipmentID,
        )

    transition_state(reservation, "approved", now)
    reservation.ApprovedBy = approver_id
    reservation.ApprovedAt = now
    if reservation.StartDate <= now <= reservation.EndDate:
        set_equipment_status(reservation.Equipment, "rented", now)
    log_audit(db, "Reservation", reservation_id, "ApproveReservation", f"Approved by {approver_id}", user_id=approver_id, now=now)
    _commit_transition(db, reservation, "ApproveReservation")
    LOGGER.info("Reservation %s approved by %s", reservation_id, approver_id)

    notify_reservation_event(db, reservation, "ReservationApproved", now=now)
    return reservation


def reject_reservation(
    db: Session,
    reservation_id: int,
    reason: str | None,
    actor_id: int | None = None,
    now: datetime | None = None,
) -> Reservation:
    now = now or datetime.now()
    reservation = get_reservation_or_raise(db, reservation_id)
    _require_state(reservation, {"pending"}, "reject")

    transition_state(reservation, "rejected", now)
    reservation.RejectionReason = reason
    log_audit(db, "Reservation", reservation_id, "RejectReservation", f"Rejected: {reason or '-'}", user_id=actor_id, now=now)
    _commit_transition(db, reservation, "RejectReservation")
    LOGGER.info("Reservation %s rejected by %s", reservation_id, actor_id)

    notify_reservation_event(db, reservation, "ReservationRejected", now=now)
    return reservation


def cancel_reservation(
    db: Session,
    reservation_id: int,
    reason: str | None,
    requested_by_role: str,
    requester_id: int | None = None,
    now: datetime | None = None,
) -> Reservation:
    now = now or datetime.now()
    reservation = get_reservation_or_raise(db, reservation_id)
    if requested_by_role == "client" and reservation.ClientID != requester_id:
        raise NotFoundError("Reservation not found.", reservationID=reservation_id)
    _require_state(reservation, CANCELLABLE_STATES, "cancel")

    transition_state(reservation, "cancelled", now)
    reservation.CancellationReason = reason
    reservation.CancelledBy = requested_by_role

    equipment = reservation.Equipment
    if equipment.Status == "rented" and not has_other_holder(db, equipment.EquipmentID, now, reservation.ReservationID):
        set_equipment_status(equipment, "available", now)
    log_audit(
        db,
        "Reservation",
        reservation_id,
        "CancelReservation",
        f"Cancelled by {requested_by_role}: {reason or '-'}",
        user_id=requester_id,
        now=now,
    )
    _commit_transition(db, reservation, "CancelReservation")
    LOGGER.info("Reservation %s cancelled by %s %s", reservation_id, requested_by_role, requester_id)

    notify_reservation_event(db, reservation, "ReservationCancelled", now=now)
    return reservation


def activate_reservation(db: Session, reservation: Reservation, now: datetime | None = None) -> None:
    now = now or datetime.now()
    transition_state(reservation, "active", now)
    set_equipment_status(reservation.Equipment, "rented", now)
    log_audit(db, "Reservation", reservation.ReservationID, "ActivateReservation", "Rental period started", now=now)


def finish_reservation(db: Session, reservation: Reservation, now: datetime | None = None, actor_id: int | None = None) -> None:
    now = now or datetime.now()
    transition_state(reservation, "completed", now)
    equipment = reservation.Equipment
    # Never pull equipment out of maintenance/inactive on completion.
    if equipment.Status == "rented" and not has_other_active_reservation(db, equipment.EquipmentID, reservation.ReservationID):
        set_equipment_status(equipment, "available", now)
    log_audit(db, "Reservation", reservation.ReservationID, "CompleteReservation", "Rental period ended", user_id=actor_id, now=now)


def complete_reservation(db: Session, reservation_id: int, actor_id: int | None = None, now: datetime | None = None) -> Reservation:
    reservation = get_reservation_or_raise(db, reservation_id)
    _require_state(reservation, {"active"}, "complete")
    finish_reservation(db, reservation, now, actor_id)
    _commit_transition(db, reservation, "CompleteReservation")
    LOGGER.info("Reservation %s completed by %s", reservation_id, actor_id)
    return reservation


def list_reservations(
    db: Session,
    *,
    client_id: int | None = None,
    status: str | None = None,
    equipment_id: int | None = None,
    start_from: datetime | None = None,
    start_to: datetime | None = None,
) -> list[Reservation]:
    stmt = select(Reservation).options(selectinload(Reservation.Equipment), selectinload(Reservation.Client))
    if client_id is not None:
        stmt = stmt.where(Reservation.ClientID == client_id)
    if status:
        stmt = stmt.where(Reservation.Status == status)
    if equipment_id is not None:
        stmt = stmt.where(Reservation.EquipmentID == equipment_id)
    if start_from is not None:
        stmt = stmt.where(Reservation.StartDate >= start_from)
    if start_to is not None:
        stmt = stmt.where(Reservation.StartDate <= start_to)
    stmt = stmt.order_by(Reservation.CreatedDate.desc(), Reservation.ReservationID.desc())
    return list(db.execute(stmt).scalars().all())


def get_current_active_reservations(db: Session, now: datetime) -> list[Reservation]:
    stmt = (
        select(Reservation)
        .options(selectinload(Reservation.Equipment), selectinload(Reservation.Client))
        .where(Reservation.Status == "active")
        .where(Reservation.StartDate <= now)
        .where(Reservation.EndDate >= now)
        .order_by(Reservation.EndDate)
    )
    return list(db.execute(stmt).scalars().all())


def serialize_reservation(reservation: Reservation) -> dict:
    equipment = reservation.Equipment
    client = reservation.Client
    return {
        "reservationID": reservation.ReservationID,
        "reservationNumber": reservation.ReservationNumber,
        "equipmentID": reservation.EquipmentID,
        "clientID": reservation.ClientID,
        "status": reservation.Status,
        "startDate": reservation.StartDate,
        "endDate": reservation.EndDate,
        "dailyRate": reservation.DailyRate,
        "numberOfDays": reservation.NumberOfDays,
        "deliveryRequired": bool(reservation.DeliveryRequired),
        "deliveryCost": reservation.DeliveryCost,
        "totalCost": reservation.TotalCost,
        "deliveryAddress": {
            "street": reservation.DeliveryStreet,
            "city": reservation.DeliveryCity,
            "postalCode": reservation.DeliveryPostalCode,
        },
        "notes": reservation.Notes,
        "adminNotes": reservation.AdminNotes,
        "approvedBy": reservation.ApprovedBy,
        "approvedAt": reservation.ApprovedAt,
        "rejectionReason": reservation.RejectionReason,
        "cancellationReason": reservation.CancellationReason,
        "cancelledBy": reservation.CancelledBy,
        "paymentStatus": reservation.PaymentStatus,
        "createdDate": reservation.CreatedDate,
        "updatedDate": reservation.UpdatedDate,
        "equipment": {
            "equipmentID": equipment.EquipmentID,
            "name": equipment.Name,
            "brand": equipment.Brand,
            "model": equipment.Model,
            "status": equipment.Status,
        } if equipment else None,
        "client": {
            "userID": client.UserID,
            "fullName": client.FullName,
            "email": client.Email,
        } if client else None,
    }
