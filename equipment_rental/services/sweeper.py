"""
Scheduled lifecycle sweeps.

Batch jobs move reservations along with the calendar:
approved -> active once the start date is reached, active -> completed on the end date.
Activation also picks up approved reservations whose start day was missed,
so a later completion sweep can close them.
It also reports overdue maintenance and purges old sent notifications.

Each batch collects the eligible ids first and then handles every item in its
own commit, so one bad row never blocks the rest. The status guard makes a
re-run on the same day a no-op.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from equipment_rental.models.rental_models import Reservation
from equipment_rental.services import notification_service
from equipment_rental.services.maintenance_service import get_overdue_maintenance
from equipment_rental.services.rental_service import activate_reservation, finish_reservation

LOGGER = logging.getLogger("equipment_rental.sweeper")

JOB_ACTIVATE = "activate"
JOB_COMPLETE = "complete"
JOB_MAINTENANCE = "maintenance"
JOB_CLEANUP = "cleanup"
JOB_NAMES = (JOB_ACTIVATE, JOB_MAINTENANCE, JOB_COMPLETE, JOB_CLEANUP)

SUNDAY = 6


def _new_summary() -> dict:
    return {"processed": 0, "skipped": 0, "failed": 0, "ids": []}


def _day_bounds(now: datetime) -> tuple[datetime, datetime]:
    start_of_day = datetime.combine(now.date(), time.min)
    return start_of_day, start_of_day + timedelta(days=1)


def activate_starting_reservations(db: Session, now: datetime) -> dict:
    summary = _new_summary()
    _, next_day = _day_bounds(now)
    candidate_ids = db.execute(
        select(Reservation.ReservationID)
        .where(Reservation.Status == "approved")
        .where(Reservation.StartDate < next_day)
        .order_by(Reservation.ReservationID)
    ).scalars().all()

    for reservation_id in candidate_ids:
        try:
            reservation = db.get(Reservation, reservation_id, populate_existing=True)
            if reservation is None or reservation.Status != "approved":
                summary["skipped"] += 1
                continue
            activate_reservation(db, reservation, now)
            db.commit()
        except Exception:
            db.rollback()
            summary["failed"] += 1
            LOGGER.exception("Activation failed for reservation %s", reservation_id)
            continue
        summary["processed"] += 1
        summary["ids"].append(reservation_id)
        LOGGER.info("Reservation %s activated; equipment %s rented", reservation_id, reservation.EquipmentID)

    LOGGER.info("Activation sweep for %s: %s", now.date(), summary)
    return summary


def complete_ending_reservations(db: Session, now: datetime) -> dict:
    summary = _new_summary()
    end_of_day = datetime.combine(now.date(), time.max)
    candidate_ids = db.execute(
        select(Reservation.ReservationID)
        .where(Reservation.Status == "active")
        .where(Reservation.EndDate <= end_of_day)
        .order_by(Reservation.ReservationID)
    ).scalars().all()

    for reservation_id in candidate_ids:
        try:
            reservation = db.get(Reservation, reservation_id, populate_existing=True)
            if reservation is None or reservation.Status != "active":
                summary["skipped"] += 1
                continue
            finish_reservation(db, reservation, now)
            db.commit()
        except Exception:
            db.rollback()
            summary["failed"] += 1
            LOGGER.exception("Completion failed for reservation %s", reservation_id)
            continue
        summary["processed"] += 1
        summary["ids"].append(reservation_id)
        LOGGER.info("Reservation %s completed; equipment %s is %s", reservation_id, reservation.EquipmentID, reservation.Equipment.Status)

    LOGGER.info("Completion sweep for %s: %s", now.date(), summary)
    return summary


def scan_overdue_maintenance(db: Session, now: datetime) -> dict:
    summary = _new_summary()
    for record in get_overdue_maintenance(db, now):
        LOGGER.warning(
            "Maintenance %s on equipment %s is overdue (scheduled %s)",
            record.MaintenanceID,
            record.EquipmentID,
            record.ScheduledDate,
        )
        summary["processed"] += 1
        summary["ids"].append(record.MaintenanceID)
    return summary


def purge_sent_notifications(db: Session, now: datetime) -> dict:
    summary = _new_summary()
    try:
        summary["processed"] = notification_service.purge_sent_notifications(db, now)
    except Exception:
        db.rollback()
        summary["failed"] = 1
        LOGGER.exception("Notification cleanup failed")
    else:
        LOGGER.info("Purged %s sent notifications", summary["processed"])
    return summary


JOB_FUNCTIONS: dict[str, Callable[[Session, datetime], dict]] = {
    JOB_ACTIVATE: activate_starting_reservations,
    JOB_COMPLETE: complete_ending_reservations,
    JOB_MAINTENANCE: scan_overdue_maintenance,
    JOB_CLEANUP: purge_sent_notifications,
}


@dataclass
class JobTrigger:
    name: str
    hour: int
    minute: int = 0
    weekday: int | None = None

    def is_due(self, now: datetime) -> bool:
        if self.weekday is not None and now.weekday() != self.weekday:
            return False
        return (now.hour, now.minute) >= (self.hour, self.minute)


def _parse_hhmm(raw: str | None, default: tuple[int, int]) -> tuple[int, int]:
    value = (raw or "").strip()
    if not value:
        return default
    hour_text, _, minute_text = value.partition(":")
    hour, minute = int(hour_text), int(minute_text or "0")
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ValueError(f"Invalid trigger time '{value}'")
    return hour, minute


def load_triggers_from_env() -> list[JobTrigger]:
    activate = _parse_hhmm(os.environ.get("SWEEPER_ACTIVATE_AT"), (8, 0))
    maintenance = _parse_hhmm(os.environ.get("SWEEPER_MAINTENANCE_AT"), (9, 0))
    complete = _parse_hhmm(os.environ.get("SWEEPER_COMPLETE_AT"), (18, 0))
    cleanup = _parse_hhmm(os.environ.get("SWEEPER_CLEANUP_AT"), (2, 0))
    return [
        JobTrigger(JOB_ACTIVATE, *activate),
        JobTrigger(JOB_MAINTENANCE, *maintenance),
        JobTrigger(JOB_COMPLETE, *complete),
        JobTrigger(JOB_CLEANUP, *cleanup, weekday=SUNDAY),
    ]


def sweeper_enabled() -> bool:
    return str(os.environ.get("SWEEPER_ENABLED", "true")).strip().lower() in {"1", "true", "yes", "on"}


class LifecycleSweeper:
    """Daemon thread that fires each job once per day after its trigger time."""

    def __init__(
        self,
        session_factory: Callable[[], Session] | None = None,
        clock: Callable[[], datetime] | None = None,
        triggers: list[JobTrigger] | None = None,
        poll_seconds: float = 30.0,
    ) -> None:
        if session_factory is None:
            from equipment_rental.db.session import SessionLocalRental

            session_factory = SessionLocalRental
        self._session_factory = session_factory
        self._clock = clock or datetime.now
        self._triggers = triggers if triggers is not None else load_triggers_from_env()
        self._poll_seconds = poll_seconds
        self._stop_event = threading.Event()
        self._run_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._last_run: dict[str, date] = {}

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        # Jobs whose trigger already passed today wait for tomorrow.
        now = self._clock()
        for trigger in self._triggers:
            if trigger.is_due(now):
                self._last_run[trigger.name] = now.date()
        self._thread = threading.Thread(target=self._loop, name="lifecycle-sweeper", daemon=True)
        self._thread.start()
        LOGGER.info("Lifecycle sweeper started with %s", [(t.name, t.hour, t.minute, t.weekday) for t in self._triggers])

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        LOGGER.info("Lifecycle sweeper stopped")

    def due_jobs(self, now: datetime) -> list[str]:
        return [
            trigger.name
            for trigger in self._triggers
            if trigger.is_due(now) and self._last_run.get(trigger.name) != now.date()
        ]

    def run_job(self, name: str, now: datetime | None = None) -> dict:
        job = JOB_FUNCTIONS.get(name)
        if job is None:
            raise KeyError(name)
        now = now or self._clock()
        with self._run_lock:
            db = self._session_factory()
            try:
                summary = job(db, now)
            finally:
                db.close()
            self._last_run[name] = now.date()
        return summary

    def tick(self) -> dict[str, dict]:
        now = self._clock()
        results = {}
        for name in self.due_jobs(now):
            try:
                results[name] = self.run_job(name, now)
            except Exception:
                LOGGER.exception("Sweeper job %s crashed", name)
                self._last_run[name] = now.date()
        return results

    def _loop(self) -> None:
        while not self._stop_event.wait(self._poll_seconds):
            self.tick()
