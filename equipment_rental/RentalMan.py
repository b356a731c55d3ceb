import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select, text
from sqlalchemy.orm import Session

load_dotenv()

from equipment_rental.db.deps import get_rental_db
from equipment_rental.db.session import init_db
from equipment_rental.logging_config import configure_logging
from equipment_rental.models.rental_models import Equipment, User
from equipment_rental.schemas.equipment import UpsertEquipmentDto
from equipment_rental.schemas.maintenance import CompleteMaintenanceDto, ScheduleMaintenanceDto
from equipment_rental.schemas.reservations import CreateReservationDto, ReasonRequest, naive_local
from equipment_rental.services import maintenance_service, rental_service
from equipment_rental.services.equipment_service import (
    change_equipment_status,
    check_availability,
    ensure_equipment_deletable,
    get_equipment_or_raise,
    map_equipment_field,
    serialize_equipment,
)
from equipment_rental.services.errors import NotFoundError, RentalError
from equipment_rental.services.notification_service import (
    SmtpSender,
    dispatch_pending_notifications,
    get_pending_notifications,
    serialize_notification,
)
from equipment_rental.services.sweeper import JOB_FUNCTIONS, LifecycleSweeper, sweeper_enabled

LOGGER = logging.getLogger("equipment_rental.api")

_SWEEPER: LifecycleSweeper | None = None


@asynccontextmanager
async def lifespan(_app: FastAPI):
    global _SWEEPER
    configure_logging()
    init_db()
    if sweeper_enabled():
        _SWEEPER = LifecycleSweeper()
        _SWEEPER.start()
    try:
        yield
    finally:
        if _SWEEPER is not None:
            _SWEEPER.stop()
            _SWEEPER = None


app = FastAPI(lifespan=lifespan)


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:3000,http://localhost:3000",
)
_CORS_ALLOW_CREDENTIALS = str(os.environ.get("CORS_ALLOW_CREDENTIALS", "true")).strip().lower() in {"1", "true", "yes", "on"}
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RentalError)
async def _rental_error_handler(_request: Request, exc: RentalError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "errorKind": exc.error_kind},
    )


def get_notification_sender():
    return SmtpSender.from_env()


def _require_actor(db: Session, x_user_id: str | None) -> User:
    try:
        user_id = int(str(x_user_id or "").strip())
    except ValueError:
        user_id = 0
    if user_id <= 0:
        raise HTTPException(status_code=401, detail="Authentication required.")
    user = db.get(User, user_id)
    if not user or user.IsActive is False:
        raise HTTPException(status_code=401, detail="Authentication required.")
    return user


def _require_admin(db: Session, x_user_id: str | None) -> User:
    actor = _require_actor(db, x_user_id)
    if actor.Role != "admin":
        raise HTTPException(status_code=403, detail="Admin role required.")
    return actor


def _is_admin(user: User) -> bool:
    return user.Role == "admin"


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_rental_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.get("/api/equipment")
def get_equipment(
    status: str | None = Query(None),
    category: str | None = Query(None),
    city: str | None = Query(None),
    db: Session = Depends(get_rental_db),
):
    stmt = select(Equipment)
    if status:
        stmt = stmt.where(Equipment.Status == status)
    if category:
        stmt = stmt.where(Equipment.Category == category)
    if city:
        stmt = stmt.where(Equipment.City == city)
    items = db.execute(stmt.order_by(Equipment.Name)).scalars().all()
    return [serialize_equipment(item) for item in items]


@app.get("/api/equipment/{equipment_id}")
def get_equipment_item(equipment_id: int, db: Session = Depends(get_rental_db)):
    return serialize_equipment(get_equipment_or_raise(db, equipment_id))


@app.get("/api/equipment/{equipment_id}/availability")
def get_equipment_availability(
    equipment_id: int,
    start_date: datetime = Query(..., alias="startDate"),
    end_date: datetime = Query(..., alias="endDate"),
    db: Session = Depends(get_rental_db),
):
    return check_availability(db, equipment_id, naive_local(start_date), naive_local(end_date))


@app.post("/api/equipment")
def create_equipment(
    payload: UpsertEquipmentDto,
    db: Session = Depends(get_rental_db),
    x_user_id: str | None = Header(None, alias="X-User-ID"),
):
    actor = _require_admin(db, x_user_id)
    values = payload.model_dump()
    status = values.pop("status")
    equipment = Equipment(Status="available")
    for field, value in values.items():
        setattr(equipment, map_equipment_field(field), value)
    equipment.CreatedDate = datetime.now()
    equipment.UpdatedDate = datetime.now()
    db.add(equipment)
    db.flush()
    change_equipment_status(db, equipment, status)
    rental_service.log_audit(db, "Equipment", equipment.EquipmentID, "CreateEquipment", equipment.Name, user_id=actor.UserID)
    db.commit()
    db.refresh(equipment)
    return serialize_equipment(equipment)


@app.put("/api/equipment/{equipment_id}")
def update_equipment(
    equipment_id: int,
    payload: UpsertEquipmentDto,
    db: Session = Depends(get_rental_db),
    x_user_id: str | None = Header(None, alias="X-User-ID"),
):
    actor = _require_admin(db, x_user_id)
    equipment = get_equipment_or_raise(db, equipment_id)
    values = payload.model_dump(exclude_unset=True)
    status = values.pop("status", None)
    for field, value in values.items():
        setattr(equipment, map_equipment_field(field), value)
    if status is not None:
        change_equipment_status(db, equipment, status)
    equipment.UpdatedDate = datetime.now()
    rental_service.log_audit(db, "Equipment", equipment_id, "UpdateEquipment", None, user_id=actor.UserID)
    db.commit()
    db.refresh(equipment)
    return serialize_equipment(equipment)


@app.delete("/api/equipment/{equipment_id}")
def delete_equipment(
    equipment_id: int,
    db: Session = Depends(get_rental_db),
    x_user_id: str | None = Header(None, alias="X-User-ID"),
):
    actor = _require_admin(db, x_user_id)
    equipment = get_equipment_or_raise(db, equipment_id)
    ensure_equipment_deletable(db, equipment_id)
    db.delete(equipment)
    rental_service.log_audit(db, "Equipment", equipment_id, "DeleteEquipment", equipment.Name, user_id=actor.UserID)
    db.commit()
    return {"message": "Deleted"}


@app.get("/api/reservations")
def get_reservations(
    status: str | None = Query(None),
    equipment_id: int | None = Query(None, alias="equipmentID"),
    client_id: int | None = Query(None, alias="clientID"),
    db: Session = Depends(get_rental_db),
    x_user_id: str | None = Header(None, alias="X-User-ID"),
):
    actor = _require_actor(db, x_user_id)
    if not _is_admin(actor):
        client_id = actor.UserID
    reservations = rental_service.list_reservations(
        db,
        client_id=client_id,
        status=status,
        equipment_id=equipment_id,
    )
    return [rental_service.serialize_reservation(item) for item in reservations]


@app.get("/api/reservations/active")
def get_active_reservations(
    db: Session = Depends(get_rental_db),
    x_user_id: str | None = Header(None, alias="X-User-ID"),
):
    _require_admin(db, x_user_id)
    reservations = rental_service.get_current_active_reservations(db, datetime.now())
    return [rental_service.serialize_reservation(item) for item in reservations]


@app.get("/api/reservations/{reservation_id}")
def get_reservation(
    reservation_id: int,
    db: Session = Depends(get_rental_db),
    x_user_id: str | None = Header(None, alias="X-User-ID"),
):
    actor = _require_actor(db, x_user_id)
    reservation = rental_service.get_reservation_or_raise(db, reservation_id)
    if not _is_admin(actor) and reservation.ClientID != actor.UserID:
        raise NotFoundError("Reservation not found.", reservationID=reservation_id)
    return rental_service.serialize_reservation(reservation)


@app.post("/api/reservations", status_code=201)
def create_reservation(
    payload: CreateReservationDto,
    db: Session = Depends(get_rental_db),
    x_user_id: str | None = Header(None, alias="X-User-ID"),
):
    actor = _require_actor(db, x_user_id)
    client_id = actor.UserID
    if _is_admin(actor) and payload.clientID is not None:
        client_id = payload.clientID
    reservation = rental_service.create_reservation(
        db,
        equipment_id=payload.equipmentID,
        client_id=client_id,
        start_date=payload.startDate,
        end_date=payload.endDate,
        delivery_required=payload.deliveryRequired,
        notes=payload.notes,
        delivery_address=payload.deliveryAddress.model_dump() if payload.deliveryAddress else None,
    )
    return rental_service.serialize_reservation(reservation)


@app.post("/api/reservations/{reservation_id}/approve")
def approve_reservation(
    reservation_id: int,
    db: Session = Depends(get_rental_db),
    x_user_id: str | None = Header(None, alias="X-User-ID"),
):
    actor = _require_admin(db, x_user_id)
    reservation = rental_service.approve_reservation(db, reservation_id, actor.UserID)
    return rental_service.serialize_reservation(reservation)


@app.post("/api/reservations/{reservation_id}/reject")
def reject_reservation(
    reservation_id: int,
    payload: ReasonRequest,
    db: Session = Depends(get_rental_db),
    x_user_id: str | None = Header(None, alias="X-User-ID"),
):
    actor = _require_admin(db, x_user_id)
    reservation = rental_service.reject_reservation(db, reservation_id, payload.reason, actor_id=actor.UserID)
    return rental_service.serialize_reservation(reservation)


@app.post("/api/reservations/{reservation_id}/cancel")
def cancel_reservation(
    reservation_id: int,
    payload: ReasonRequest,
    db: Session = Depends(get_rental_db),
    x_user_id: str | None = Header(None, alias="X-User-ID"),
):
    actor = _require_actor(db, x_user_id)
    reservation = rental_service.cancel_reservation(
        db,
        reservation_id,
        payload.reason,
        requested_by_role="admin" if _is_admin(actor) else "client",
        requester_id=actor.UserID,
    )
    return rental_service.serialize_reservation(reservation)


@app.post("/api/reservations/{reservation_id}/complete")
def complete_reservation(
    reservation_id: int,
    db: Session = Depends(get_rental_db),
    x_user_id: str | None = Header(None, alias="X-User-ID"),
):
    actor = _require_admin(db, x_user_id)
    reservation = rental_service.complete_reservation(db, reservation_id, actor_id=actor.UserID)
    return rental_service.serialize_reservation(reservation)


@app.get("/api/maintenance")
def get_maintenance(
    equipment_id: int | None = Query(None, alias="equipmentID"),
    status: str | None = Query(None),
    db: Session = Depends(get_rental_db),
    x_user_id: str | None = Header(None, alias="X-User-ID"),
):
    _require_admin(db, x_user_id)
    records = maintenance_service.list_maintenance(db, equipment_id=equipment_id, status=status)
    return [maintenance_service.serialize_maintenance(record) for record in records]


@app.get("/api/maintenance/overdue")
def get_overdue_maintenance(
    db: Session = Depends(get_rental_db),
    x_user_id: str | None = Header(None, alias="X-User-ID"),
):
    _require_admin(db, x_user_id)
    records = maintenance_service.get_overdue_maintenance(db, datetime.now())
    return [maintenance_service.serialize_maintenance(record) for record in records]


@app.post("/api/maintenance", status_code=201)
def schedule_maintenance(
    payload: ScheduleMaintenanceDto,
    db: Session = Depends(get_rental_db),
    x_user_id: str | None = Header(None, alias="X-User-ID"),
):
    actor = _require_admin(db, x_user_id)
    record = maintenance_service.schedule_maintenance(
        db,
        equipment_id=payload.equipmentID,
        maintenance_type=payload.type,
        title=payload.title,
        description=payload.description,
        scheduled_date=payload.scheduledDate,
        priority=payload.priority,
        estimated_duration=payload.estimatedDuration,
        technician_id=payload.technicianID,
        assigned_by=actor.UserID,
        notes=payload.notes,
    )
    return maintenance_service.serialize_maintenance(record)


@app.post("/api/maintenance/{maintenance_id}/start")
def start_maintenance(
    maintenance_id: int,
    db: Session = Depends(get_rental_db),
    x_user_id: str | None = Header(None, alias="X-User-ID"),
):
    actor = _require_admin(db, x_user_id)
    record = maintenance_service.start_maintenance(db, maintenance_id, actor_id=actor.UserID)
    return maintenance_service.serialize_maintenance(record)


@app.post("/api/maintenance/{maintenance_id}/complete")
def complete_maintenance(
    maintenance_id: int,
    payload: CompleteMaintenanceDto,
    db: Session = Depends(get_rental_db),
    x_user_id: str | None = Header(None, alias="X-User-ID"),
):
    actor = _require_admin(db, x_user_id)
    record = maintenance_service.complete_maintenance(
        db,
        maintenance_id,
        work_performed=payload.workPerformed,
        labor_cost=payload.laborCost,
        parts_cost=payload.partsCost,
        external_cost=payload.externalCost,
        next_maintenance_date=payload.nextMaintenanceDate,
        actor_id=actor.UserID,
    )
    return maintenance_service.serialize_maintenance(record)


@app.post("/api/maintenance/{maintenance_id}/cancel")
def cancel_maintenance(
    maintenance_id: int,
    payload: ReasonRequest,
    db: Session = Depends(get_rental_db),
    x_user_id: str | None = Header(None, alias="X-User-ID"),
):
    actor = _require_admin(db, x_user_id)
    record = maintenance_service.cancel_maintenance(db, maintenance_id, payload.reason, actor_id=actor.UserID)
    return maintenance_service.serialize_maintenance(record)


@app.get("/api/notifications/pending")
def get_notifications_pending(
    db: Session = Depends(get_rental_db),
    x_user_id: str | None = Header(None, alias="X-User-ID"),
):
    _require_admin(db, x_user_id)
    return [serialize_notification(item) for item in get_pending_notifications(db)]


@app.post("/api/notifications/dispatch")
def dispatch_notifications(
    db: Session = Depends(get_rental_db),
    sender=Depends(get_notification_sender),
    x_user_id: str | None = Header(None, alias="X-User-ID"),
):
    _require_admin(db, x_user_id)
    if sender is None:
        raise HTTPException(status_code=503, detail="SMTP is not configured.")
    return dispatch_pending_notifications(db, sender)


@app.post("/api/sweeper/run/{job}")
def run_sweeper_job(
    job: str,
    at: datetime | None = Query(None),
    db: Session = Depends(get_rental_db),
    x_user_id: str | None = Header(None, alias="X-User-ID"),
):
    actor = _require_admin(db, x_user_id)
    job_function = JOB_FUNCTIONS.get(job)
    if job_function is None:
        raise HTTPException(status_code=404, detail=f"Unknown sweeper job '{job}'.")
    now = at or datetime.now()
    LOGGER.info("Sweeper job %s triggered by %s for %s", job, actor.UserID, now)
    return {"job": job, "at": now, "summary": job_function(db, now)}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "equipment_rental.RentalMan:app",
        host=os.environ.get("RENTAL_HOST", "127.0.0.1"),
        port=int(os.environ.get("RENTAL_PORT") or "8000"),
    )
