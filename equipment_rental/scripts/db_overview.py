#!/usr/bin/env python3
"""Database overview and integrity checks for the equipment rental store."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from sqlalchemy import create_engine, func, inspect, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, aliased

from equipment_rental.models.rental_models import AuditLog, Equipment, Reservation
from equipment_rental.services.conflict_service import BLOCKING_STATES, interval_days
from equipment_rental.services.equipment_service import has_other_holder

EXPECTED_TABLES = [
    "Users",
    "Equipment",
    "Reservations",
    "Maintenance",
    "AuditLogs",
    "NotificationQueue",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "Equipment": ["EquipmentID", "Name", "DailyRate", "Status"],
    "Reservations": [
        "ReservationID",
        "ReservationNumber",
        "EquipmentID",
        "ClientID",
        "StartDate",
        "EndDate",
        "Status",
        "DailyRate",
        "NumberOfDays",
        "DeliveryCost",
        "TotalCost",
    ],
    "Maintenance": ["MaintenanceID", "EquipmentID", "Status", "ScheduledDate"],
    "AuditLogs": ["AuditID", "EntityType", "EntityID", "Action", "Details", "UserID", "CreatedAt"],
    "NotificationQueue": ["NotificationID", "ReservationID", "NotificationType", "SentAt"],
}


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _get_engine(db_url: str) -> Engine:
    return create_engine(db_url, pool_pre_ping=True, future=True)


def find_overlapping_reservations(db: Session) -> list[tuple[int, int]]:
    """Pairs of blocking reservations on the same equipment whose intervals overlap."""
    other = aliased(Reservation)
    stmt = (
        select(Reservation.ReservationID, other.ReservationID)
        .join(other, other.EquipmentID == Reservation.EquipmentID)
        .where(Reservation.ReservationID < other.ReservationID)
        .where(Reservation.Status.in_(BLOCKING_STATES))
        .where(other.Status.in_(BLOCKING_STATES))
        .where(Reservation.StartDate < other.EndDate)
        .where(Reservation.EndDate > other.StartDate)
        .order_by(Reservation.ReservationID)
    )
    return [(int(a), int(b)) for a, b in db.execute(stmt).all()]


def find_rented_without_holder(db: Session, now: datetime) -> list[int]:
    rented = db.execute(select(Equipment.EquipmentID).where(Equipment.Status == "rented")).scalars().all()
    return [equipment_id for equipment_id in rented if not has_other_holder(db, equipment_id, now)]


def find_stale_costs(db: Session) -> list[int]:
    stale = []
    for reservation in db.execute(select(Reservation)).scalars():
        days = interval_days(reservation.StartDate, reservation.EndDate)
        expected = days * float(reservation.DailyRate or 0) + float(reservation.DeliveryCost or 0)
        if reservation.NumberOfDays != days or abs(float(reservation.TotalCost or 0) - expected) > 0.005:
            stale.append(reservation.ReservationID)
    return stale


def _run_existence_checks(engine: Engine) -> list[CheckResult]:
    present = set(inspect(engine).get_table_names())
    return [
        CheckResult(f"table:{table}", table in present, "present" if table in present else "missing")
        for table in EXPECTED_TABLES
    ]


def _run_column_checks(engine: Engine) -> list[CheckResult]:
    inspector = inspect(engine)
    present = set(inspector.get_table_names())
    results: list[CheckResult] = []
    for table, expected in EXPECTED_COLUMNS.items():
        if table not in present:
            results.append(CheckResult(f"columns:{table}", False, "table missing"))
            continue
        actual = {column["name"] for column in inspector.get_columns(table)}
        missing = [name for name in expected if name not in actual]
        results.append(
            CheckResult(
                f"columns:{table}",
                not missing,
                "ok" if not missing else f"missing={','.join(missing)}",
            )
        )
    return results


def run_integrity_checks(db: Session, now: datetime) -> list[CheckResult]:
    overlaps = find_overlapping_reservations(db)
    orphaned = find_rented_without_holder(db, now)
    stale = find_stale_costs(db)
    return [
        CheckResult(
            "reservations:overlapping_blocking",
            not overlaps,
            f"count={len(overlaps)}" + (f" pairs={overlaps[:10]}" if overlaps else ""),
        ),
        CheckResult(
            "equipment:rented_without_holder",
            not orphaned,
            f"count={len(orphaned)}" + (f" ids={orphaned[:10]}" if orphaned else ""),
        ),
        CheckResult(
            "reservations:stale_costs",
            not stale,
            f"count={len(stale)}" + (f" ids={stale[:10]}" if stale else ""),
        ),
    ]


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_status_counts(db: Session) -> None:
    _print_section("Status Counts")
    for model in (Equipment, Reservation):
        rows = db.execute(select(model.Status, func.count()).group_by(model.Status).order_by(model.Status)).all()
        summary = ", ".join(f"{status}={count}" for status, count in rows) or "empty"
        print(f"{model.__tablename__}: {summary}")


def _print_samples(db: Session, sample_size: int) -> None:
    _print_section("Recent Audit Entries")
    rows = db.execute(
        select(AuditLog.AuditID, AuditLog.EntityType, AuditLog.EntityID, AuditLog.Action, AuditLog.CreatedAt)
        .order_by(AuditLog.AuditID.desc())
        .limit(max(1, sample_size))
    ).all()
    for row in rows:
        print(f"  - {tuple(row)}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Equipment rental DB overview")
    parser.add_argument("--db-url", default=os.environ.get("RENTAL_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    args = parser.parse_args()

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("RENTAL_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        with engine.connect():
            pass
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    existence = _run_existence_checks(engine)
    _print_results("Table Existence", existence)
    _print_results("Column Checks", _run_column_checks(engine))
    if not all(result.ok for result in existence):
        return 1

    with Session(engine) as db:
        integrity = run_integrity_checks(db, datetime.now())
        _print_results("Integrity Checks", integrity)
        _print_status_counts(db)
        _print_samples(db, args.samples)
    return 0 if all(result.ok for result in integrity) else 1


if __name__ == "__main__":
    sys.exit(main())
