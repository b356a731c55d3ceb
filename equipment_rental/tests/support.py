import os
from datetime import datetime

os.environ.setdefault("RENTAL_DB_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("SWEEPER_ENABLED", "false")

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from equipment_rental.db.base import Base
from equipment_rental.models.rental_models import Equipment, Maintenance, Reservation, User
from equipment_rental.services.conflict_service import interval_days


def make_session_factory():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    return engine, sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)


def add_user(db, full_name="Client One", email=None, role="client") -> User:
    user = User(
        FullName=full_name,
        Email=email or f"{full_name.lower().replace(' ', '.')}@example.com",
        Role=role,
        IsActive=True,
    )
    db.add(user)
    db.commit()
    return user


def add_equipment(db, name="Excavator CAT 320", daily_rate=100, status="available", category="excavator") -> Equipment:
    equipment = Equipment(
        Name=name,
        Category=category,
        DailyRate=daily_rate,
        Status=status,
        CreatedDate=datetime(2025, 1, 1),
        UpdatedDate=datetime(2025, 1, 1),
    )
    db.add(equipment)
    db.commit()
    return equipment


def add_reservation(db, equipment, client, start, end, status="approved", number=None) -> Reservation:
    """Insert a reservation row directly, bypassing the lifecycle checks."""
    days = interval_days(start, end)
    rate = float(equipment.DailyRate)
    reservation = Reservation(
        ReservationNumber=number or f"SEED-{start:%m%d}-{equipment.EquipmentID}-{client.UserID}",
        EquipmentID=equipment.EquipmentID,
        ClientID=client.UserID,
        StartDate=start,
        EndDate=end,
        Status=status,
        DailyRate=rate,
        NumberOfDays=days,
        DeliveryRequired=False,
        DeliveryCost=0,
        TotalCost=days * rate,
        CreatedDate=datetime(2025, 1, 1),
        UpdatedDate=datetime(2025, 1, 1),
    )
    db.add(reservation)
    db.commit()
    return reservation


def add_maintenance(db, equipment, scheduled_date, status="scheduled", title="Hydraulic service") -> Maintenance:
    record = Maintenance(
        EquipmentID=equipment.EquipmentID,
        MaintenanceType="preventive",
        Status=status,
        Priority="medium",
        Title=title,
        Description="Replace hydraulic filters",
        ScheduledDate=scheduled_date,
    )
    db.add(record)
    db.commit()
    return record
