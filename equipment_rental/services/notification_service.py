"""Outbound client notifications.

Lifecycle operations queue rows in ``NotificationQueue``; a dispatcher later
delivers them over SMTP. Queueing is best-effort: a failure is logged and
never undoes the reservation change that triggered it.
"""

from __future__ import annotations

import logging
import os
import smtplib
import ssl
from datetime import datetime, timedelta
from email.message import EmailMessage

from sqlalchemy import and_, delete, or_, select
from sqlalchemy.orm import Session

from equipment_rental.models.rental_models import NotificationQueue, Reservation

LOGGER = logging.getLogger("equipment_rental.notifications")

NOTIFICATION_RETENTION_DAYS = 180

_SUBJECTS = {
    "ReservationCreated": "Reservation {number} received",
    "ReservationApproved": "Reservation {number} approved",
    "ReservationRejected": "Reservation {number} rejected",
    "ReservationCancelled": "Reservation {number} cancelled",
}


def _build_body(reservation: Reservation, notification_type: str) -> str:
    equipment_name = reservation.Equipment.Name if reservation.Equipment else f"#{reservation.EquipmentID}"
    lines = [
        f"Reservation: {reservation.ReservationNumber}",
        f"Equipment: {equipment_name}",
        f"Dates: {reservation.StartDate:%Y-%m-%d} - {reservation.EndDate:%Y-%m-%d}",
        f"Days: {reservation.NumberOfDays}",
        f"Total cost: {float(reservation.TotalCost or 0):.2f}",
        f"Status: {reservation.Status}",
    ]
    if notification_type == "ReservationRejected" and reservation.RejectionReason:
        lines.append(f"Reason: {reservation.RejectionReason}")
    if notification_type == "ReservationCancelled" and reservation.CancellationReason:
        lines.append(f"Reason: {reservation.CancellationReason}")
    return "\n".join(lines)


def queue_notification(
    db: Session,
    *,
    reservation_id: int | None,
    notification_type: str,
    recipient: str | None,
    subject: str,
    payload: str,
    now: datetime | None = None,
) -> NotificationQueue:
    notification = NotificationQueue(
        ReservationID=reservation_id,
        NotificationType=notification_type,
        Recipient=recipient,
        Subject=subject,
        Payload=payload,
        CreatedAt=now or datetime.now(),
    )
    db.add(notification)
    return notification


def notify_reservation_event(
    db: Session,
    reservation: Reservation,
    notification_type: str,
    now: datetime | None = None,
) -> bool:
    try:
        recipient = reservation.Client.Email if reservation.Client else None
        subject = _SUBJECTS.get(notification_type, "Reservation {number} updated").format(
            number=reservation.ReservationNumber
        )
        queue_notification(
            db,
            reservation_id=reservation.ReservationID,
            notification_type=notification_type,
            recipient=recipient,
            subject=subject,
            payload=_build_body(reservation, notification_type),
            now=now,
        )
        db.commit()
        return True
    except Exception:
        db.rollback()
        LOGGER.exception(
            "Could not queue %s notification for reservation %s",
            notification_type,
            reservation.ReservationID,
        )
        return False


class SmtpSender:
    def __init__(
        self,
        host: str,
        port: int = 587,
        username: str | None = None,
        password: str | None = None,
        from_address: str | None = None,
        use_tls: bool = True,
        timeout: int = 20,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.from_address = from_address or username or "no-reply@localhost"
        self.use_tls = use_tls
        self.timeout = timeout

    @classmethod
    def from_env(cls) -> "SmtpSender | None":
        host = (os.environ.get("SMTP_HOST") or "").strip()
        if not host:
            return None
        return cls(
            host=host,
            port=int(os.environ.get("SMTP_PORT") or "587"),
            username=(os.environ.get("SMTP_USERNAME") or "").strip() or None,
            password=os.environ.get("SMTP_PASSWORD") or None,
            from_address=(os.environ.get("SMTP_FROM") or "").strip() or None,
            use_tls=str(os.environ.get("SMTP_USE_TLS", "true")).strip().lower() in {"1", "true", "yes", "on"},
        )

    def send(self, recipient: str, subject: str, body: str) -> None:
        message = EmailMessage()
        message["From"] = self.from_address
        message["To"] = recipient
        message["Subject"] = subject
        message.set_content(body)

        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
            if self.use_tls:
                server.starttls(context=ssl.create_default_context())
            if self.username and self.password:
                server.login(self.username, self.password)
            server.send_message(message)
        LOGGER.info("Email sent to %s: %s", recipient, subject)


def get_pending_notifications(db: Session) -> list[NotificationQueue]:
    return list(
        db.execute(
            select(NotificationQueue)
            .where(NotificationQueue.SentAt.is_(None))
            .order_by(NotificationQueue.NotificationID)
        ).scalars().all()
    )


def dispatch_pending_notifications(db: Session, sender, now: datetime | None = None) -> dict:
    summary = {"sent": 0, "failed": 0, "skipped": 0}
    for notification in get_pending_notifications(db):
        if not notification.Recipient:
            # Stays unsent; the retention purge drops it once it ages out.
            notification.LastError = "No recipient"
            summary["skipped"] += 1
            continue
        try:
            sender.send(notification.Recipient, notification.Subject or "", notification.Payload or "")
        except Exception as exc:
            notification.LastError = str(exc)[:500]
            summary["failed"] += 1
            LOGGER.error("Notification %s delivery failed: %s", notification.NotificationID, exc)
            continue
        notification.SentAt = now or datetime.now()
        notification.LastError = None
        summary["sent"] += 1
    db.commit()
    return summary


def purge_sent_notifications(db: Session, now: datetime, retention_days: int = NOTIFICATION_RETENTION_DAYS) -> int:
    cutoff = now - timedelta(days=retention_days)
    result = db.execute(
        delete(NotificationQueue).where(
            or_(
                NotificationQueue.SentAt < cutoff,
                and_(
                    NotificationQueue.SentAt.is_(None),
                    or_(NotificationQueue.Recipient.is_(None), NotificationQueue.Recipient == ""),
                    NotificationQueue.CreatedAt < cutoff,
                ),
            )
        )
    )
    db.commit()
    return int(result.rowcount or 0)


def serialize_notification(notification: NotificationQueue) -> dict:
    return {
        "notificationID": notification.NotificationID,
        "reservationID": notification.ReservationID,
        "type": notification.NotificationType,
        "recipient": notification.Recipient,
        "subject": notification.Subject,
        "payload": notification.Payload,
        "createdAt": notification.CreatedAt,
        "sentAt": notification.SentAt,
        "lastError": notification.LastError,
    }
