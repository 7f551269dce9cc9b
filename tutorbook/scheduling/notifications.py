"""Outbound lifecycle events.

The core only hands events to a dispatcher; delivering e-mail, SMS or
in-app messages is the dispatcher's business. A failing dispatcher never
undoes a transition that has already been committed.
"""

import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from tutorbook.models.appointment import Appointment, AppointmentStatus

logger = logging.getLogger(__name__)


class NotificationType(str, enum.Enum):
    BOOKED = "booked"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


STATUS_EVENT_TYPES = {
    AppointmentStatus.SCHEDULED: NotificationType.BOOKED,
    AppointmentStatus.CONFIRMED: NotificationType.CONFIRMED,
    AppointmentStatus.CANCELLED: NotificationType.CANCELLED,
    AppointmentStatus.COMPLETED: NotificationType.COMPLETED,
}


@dataclass(frozen=True)
class NotificationEvent:
    appointment_id: int
    event_type: NotificationType
    tutor_id: int
    student_id: int
    occurs_at: datetime
    actor_id: int
    old_status: Optional[AppointmentStatus]
    new_status: AppointmentStatus
    timestamp: datetime

    @classmethod
    def for_appointment(
        cls,
        appointment: Appointment,
        old_status: Optional[AppointmentStatus],
        actor_id: int,
        timestamp: datetime,
    ) -> "NotificationEvent":
        new_status = AppointmentStatus(appointment.status)
        return cls(
            appointment_id=appointment.id,
            event_type=STATUS_EVENT_TYPES[new_status],
            tutor_id=appointment.tutor_id,
            student_id=appointment.student_id,
            occurs_at=appointment.start_time,
            actor_id=actor_id,
            old_status=old_status,
            new_status=new_status,
            timestamp=timestamp,
        )

    def as_payload(self) -> dict:
        return {
            "appointment_id": self.appointment_id,
            "event_type": self.event_type.value,
            "tutor_id": self.tutor_id,
            "student_id": self.student_id,
            "occurs_at": self.occurs_at.isoformat(),
            "actor_id": self.actor_id,
            "old_status": self.old_status.value if self.old_status else None,
            "new_status": self.new_status.value,
            "timestamp": self.timestamp.isoformat(),
        }


class NotificationDispatcher(Protocol):
    def dispatch(self, event: NotificationEvent) -> None:
        ...


class LoggingNotificationDispatcher:
    """Default dispatcher: writes each event to the application log."""

    def dispatch(self, event: NotificationEvent) -> None:
        logger.info("appointment_%s %s", event.event_type.value, event.as_payload())


def dispatch_safely(dispatcher: NotificationDispatcher, event: NotificationEvent) -> bool:
    try:
        dispatcher.dispatch(event)
    except Exception:
        logger.exception(
            "Notification dispatch failed for appointment %s (%s); transition already committed.",
            event.appointment_id,
            event.event_type.value,
        )
        return False
    return True
