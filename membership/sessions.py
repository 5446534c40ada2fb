import logging
from typing import Optional
from uuid import UUID

from .errors import NotFoundError
from .models import (
    CourseEnrollment,
    EnrollmentWithSessions,
    ProgramType,
    ReservationStats,
    ScheduleEvent,
    ScheduleEventStatus,
    ScheduleEventType,
)
from .store import Collection, RecordStore

logger = logging.getLogger(__name__)

# Reservations that use up a session. Cancelled and no-show ones do not.
CONSUMING_STATUSES = frozenset({ScheduleEventStatus.ACTIVE, ScheduleEventStatus.COMPLETED})


class SessionAccounting:
    """Derives session usage from the reservation log; nothing here is stored."""

    def __init__(self, store: RecordStore):
        self.store = store

    def class_events(self, enrollment_id: UUID) -> list[ScheduleEvent]:
        return [
            e for e in self.store.query_by_field(Collection.SCHEDULE_EVENT, "enrollment_id", enrollment_id)
            if e.type == ScheduleEventType.CLASS
        ]

    def completed_sessions(self, enrollment_id: UUID) -> int:
        return sum(1 for e in self.class_events(enrollment_id) if e.status in CONSUMING_STATUSES)

    def remaining_sessions(self, enrollment: CourseEnrollment) -> int:
        if enrollment.program_type != ProgramType.COUNT or not enrollment.session_count:
            return 0
        used = enrollment.carried_sessions + self.completed_sessions(enrollment.id)
        return max(0, enrollment.session_count - used)

    def reservation_history(self, enrollment_id: UUID) -> list[ScheduleEvent]:
        return sorted(self.class_events(enrollment_id), key=lambda e: e.start_time, reverse=True)

    def reservation_stats(self, enrollment_id: UUID) -> ReservationStats:
        history = self.class_events(enrollment_id)
        return ReservationStats(
            total=len(history),
            active=sum(1 for e in history if e.status == ScheduleEventStatus.ACTIVE),
            completed=sum(1 for e in history if e.status == ScheduleEventStatus.COMPLETED),
            cancelled=sum(1 for e in history if e.status == ScheduleEventStatus.CANCELLED),
            noshow=sum(1 for e in history if e.status == ScheduleEventStatus.NOSHOW),
        )

    def with_sessions(self, enrollment: CourseEnrollment) -> EnrollmentWithSessions:
        return EnrollmentWithSessions(
            enrollment=enrollment,
            completed_sessions=self.completed_sessions(enrollment.id),
            remaining_sessions=self.remaining_sessions(enrollment),
        )

    def member_enrollments_with_sessions(self, member_id: UUID) -> list[EnrollmentWithSessions]:
        enrollments = self.store.query_by_field(Collection.COURSE_ENROLLMENT, "member_id", member_id)
        return [self.with_sessions(e) for e in enrollments]

    def set_event_status(self, event_id: UUID, status: ScheduleEventStatus) -> ScheduleEvent:
        event: Optional[ScheduleEvent] = self.store.get(Collection.SCHEDULE_EVENT, event_id)
        if event is None:
            raise NotFoundError(f"Schedule event {event_id} not found")
        if event.status != status:
            logger.info("Reservation %s: %s -> %s", event_id, event.status.value, status.value)
            event.status = status
            self.store.put(Collection.SCHEDULE_EVENT, event)
        return event
