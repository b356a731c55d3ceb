from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, Numeric, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from equipment_rental.db.base import Base


class User(Base):
    __tablename__ = "Users"

    UserID = Column(Integer, primary_key=True)
    FullName = Column(String(255), nullable=False)
    Email = Column(String(255), nullable=False, unique=True)
    Phone = Column(String(20))
    Role = Column(String(20), nullable=False, default="client")
    IsActive = Column(Boolean, default=True)
    CreatedDate = Column(DateTime, server_default=func.now())

    Reservations = relationship("Reservation", back_populates="Client", foreign_keys="Reservation.ClientID")


class Equipment(Base):
    __tablename__ = "Equipment"

    EquipmentID = Column(Integer, primary_key=True)
    Name = Column(String(100), nullable=False)
    Description = Column(String(1000))
    Category = Column(String(50), nullable=False, default="other")
    Brand = Column(String(100))
    Model = Column(String(100))
    Year = Column(Integer)
    DailyRate = Column(Numeric(10, 2), nullable=False)
    Status = Column(String(20), nullable=False, default="available")
    City = Column(String(100))
    MinimumRentalDays = Column(Integer, default=1)
    MaximumRentalDays = Column(Integer, default=30)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Reservations = relationship("Reservation", back_populates="Equipment", cascade="all, delete-orphan")
    MaintenanceRecords = relationship("Maintenance", back_populates="Equipment", cascade="all, delete-orphan")


class Reservation(Base):
    __tablename__ = "Reservations"
    __table_args__ = (
        Index("ix_reservations_equipment_dates", "EquipmentID", "StartDate", "EndDate"),
        Index("ix_reservations_client_status", "ClientID", "Status"),
    )

    ReservationID = Column(Integer, primary_key=True)
    ReservationNumber = Column(String(50), nullable=False)
    EquipmentID = Column(Integer, ForeignKey("Equipment.EquipmentID"), nullable=False)
    ClientID = Column(Integer, ForeignKey("Users.UserID"), nullable=False)
    StartDate = Column(DateTime, nullable=False)
    EndDate = Column(DateTime, nullable=False)
    Status = Column(String(20), nullable=False, default="pending")
    DailyRate = Column(Numeric(10, 2), nullable=False)
    NumberOfDays = Column(Integer, nullable=False)
    DeliveryRequired = Column(Boolean, default=False)
    DeliveryCost = Column(Numeric(10, 2), default=0)
    TotalCost = Column(Numeric(12, 2), nullable=False)
    DeliveryStreet = Column(String(255))
    DeliveryCity = Column(String(100))
    DeliveryPostalCode = Column(String(20))
    Notes = Column(String(500))
    AdminNotes = Column(String(500))
    ApprovedBy = Column(Integer, ForeignKey("Users.UserID"))
    ApprovedAt = Column(DateTime)
    RejectionReason = Column(String(500))
    CancellationReason = Column(String(500))
    CancelledBy = Column(String(20))
    PaymentStatus = Column(String(20), default="unpaid")
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Equipment = relationship("Equipment", back_populates="Reservations")
    Client = relationship("User", back_populates="Reservations", foreign_keys=[ClientID])
    Approver = relationship("User", foreign_keys=[ApprovedBy])


class Maintenance(Base):
    __tablename__ = "Maintenance"
    __table_args__ = (
        Index("ix_maintenance_equipment_scheduled", "EquipmentID", "ScheduledDate"),
        Index("ix_maintenance_status_priority", "Status", "Priority"),
    )

    MaintenanceID = Column(Integer, primary_key=True)
    EquipmentID = Column(Integer, ForeignKey("Equipment.EquipmentID"), nullable=False)
    MaintenanceType = Column(String(20), nullable=False)
    Status = Column(String(20), nullable=False, default="scheduled")
    Priority = Column(String(20), default="medium")
    Title = Column(String(100), nullable=False)
    Description = Column(String(1000), nullable=False)
    ScheduledDate = Column(DateTime, nullable=False)
    EstimatedDuration = Column(Numeric(6, 2))
    ActualStart = Column(DateTime)
    ActualEnd = Column(DateTime)
    TechnicianID = Column(Integer, ForeignKey("Users.UserID"))
    AssignedBy = Column(Integer, ForeignKey("Users.UserID"))
    LaborCost = Column(Numeric(10, 2), default=0)
    PartsCost = Column(Numeric(10, 2), default=0)
    ExternalCost = Column(Numeric(10, 2), default=0)
    WorkPerformed = Column(String(2000))
    NextMaintenanceDate = Column(DateTime)
    Notes = Column(String(1000))
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Equipment = relationship("Equipment", back_populates="MaintenanceRecords")


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    UserID = Column(Integer)
    CreatedAt = Column(DateTime, server_default=func.now())


class NotificationQueue(Base):
    __tablename__ = "NotificationQueue"

    NotificationID = Column(Integer, primary_key=True)
    ReservationID = Column(Integer)
    NotificationType = Column(String(50), nullable=False)
    Recipient = Column(String(255))
    Subject = Column(String(255))
    Payload = Column(String(2000))
    CreatedAt = Column(DateTime, server_default=func.now())
    SentAt = Column(DateTime)
    LastError = Column(String(500))
