"""
Unit Tests for Session Accounting

Sessions used are always replayed from the reservation log.
"""

import pytest
from datetime import date, datetime, timedelta, timezone
from uuid import UUID

from membership.errors import NotFoundError
from membership.models import (
    CourseEnrollment,
    ProgramType,
    ScheduleEvent,
    ScheduleEventStatus,
    ScheduleEventType,
)
from membership.sessions import SessionAccounting
from membership.store import Collection, RecordStore


MEMBER_ID = UUID("550e8400-e29b-41d4-a716-446655440000")
PRODUCT_ID = UUID("11111111-1111-1111-1111-111111111111")
ENROLLMENT_ID = UUID("aaaaaaaa-0000-0000-0000-000000000001")
OTHER_ENROLLMENT_ID = UUID("aaaaaaaa-0000-0000-0000-000000000002")
BASE_TIME = datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)


def make_enrollment(store, enrollment_id=ENROLLMENT_ID, program_type=ProgramType.COUNT, session_count=10, carried=0):
    enrollment = CourseEnrollment(
        id=enrollment_id,
        member_id=MEMBER_ID,
        member_name="김민수",
        product_id=PRODUCT_ID,
        product_name="PT 10회",
        applied_price=500_000,
        program_type=program_type,
        session_count=session_count if program_type == ProgramType.COUNT else None,
        carried_sessions=carried,
        start_date=date(2024, 3, 1),
        paid_amount=500_000,
    )
    store.put(Collection.COURSE_ENROLLMENT, enrollment)
    return enrollment


def book(store, enrollment_id=ENROLLMENT_ID, status=ScheduleEventStatus.COMPLETED,
         event_type=ScheduleEventType.CLASS, day=0):
    start = BASE_TIME + timedelta(days=day)
    event = ScheduleEvent(
        enrollment_id=enrollment_id,
        member_id=MEMBER_ID,
        type=event_type,
        status=status,
        start_time=start,
        end_time=start + timedelta(hours=1),
    )
    store.put(Collection.SCHEDULE_EVENT, event)
    return event


class TestCompletedSessions:
    """Tests for the derived session count."""

    def test_remaining_after_completed_and_cancelled(self):
        """Test 10 sessions, 3 completed and 1 cancelled leaves 7."""
        store = RecordStore()
        accounting = SessionAccounting(store)
        enrollment = make_enrollment(store)

        for day in range(3):
            book(store, day=day)
        book(store, status=ScheduleEventStatus.CANCELLED, day=4)

        assert accounting.completed_sessions(ENROLLMENT_ID) == 3
        assert accounting.remaining_sessions(enrollment) == 7

    def test_active_reservations_count(self):
        """Test that a booked, not yet attended class already uses a session."""
        store = RecordStore()
        accounting = SessionAccounting(store)
        make_enrollment(store)

        book(store, status=ScheduleEventStatus.ACTIVE)
        book(store, status=ScheduleEventStatus.NOSHOW, day=1)

        assert accounting.completed_sessions(ENROLLMENT_ID) == 1

    def test_unrelated_events_do_not_count(self):
        """Test that other enrollments and non-class events are ignored."""
        store = RecordStore()
        accounting = SessionAccounting(store)
        make_enrollment(store)
        make_enrollment(store, enrollment_id=OTHER_ENROLLMENT_ID)

        book(store)
        before = accounting.completed_sessions(ENROLLMENT_ID)

        book(store, enrollment_id=OTHER_ENROLLMENT_ID)
        book(store, event_type=ScheduleEventType.CONSULTATION, day=1)
        book(store, enrollment_id=None, day=2)

        assert accounting.completed_sessions(ENROLLMENT_ID) == before == 1

    def test_cancelling_an_active_event_returns_a_session(self):
        """Test that cancelling an active class drops the count by one."""
        store = RecordStore()
        accounting = SessionAccounting(store)
        make_enrollment(store)

        book(store)
        event = book(store, status=ScheduleEventStatus.ACTIVE, day=1)
        assert accounting.completed_sessions(ENROLLMENT_ID) == 2

        accounting.set_event_status(event.id, ScheduleEventStatus.CANCELLED)

        assert accounting.completed_sessions(ENROLLMENT_ID) == 1
        # Cancelled events stay in the log
        assert store.count(Collection.SCHEDULE_EVENT) == 2

    def test_duration_programs_have_no_remaining_sessions(self):
        """Test that remaining is 0 for duration programs."""
        store = RecordStore()
        accounting = SessionAccounting(store)
        enrollment = make_enrollment(store, program_type=ProgramType.DURATION)

        book(store)

        assert accounting.remaining_sessions(enrollment) == 0

    def test_carried_sessions_reduce_remaining(self):
        """Test that sessions carried over from a predecessor are subtracted."""
        store = RecordStore()
        accounting = SessionAccounting(store)
        enrollment = make_enrollment(store, carried=4)

        book(store)

        assert accounting.remaining_sessions(enrollment) == 5

    def test_remaining_never_negative(self):
        """Test that over-booking clamps remaining at zero."""
        store = RecordStore()
        accounting = SessionAccounting(store)
        enrollment = make_enrollment(store, session_count=2)

        for day in range(3):
            book(store, day=day)

        assert accounting.remaining_sessions(enrollment) == 0


class TestReservationReads:
    """Tests for reservation history and stats."""

    def test_history_newest_first(self):
        """Test reservation history ordering."""
        store = RecordStore()
        accounting = SessionAccounting(store)
        make_enrollment(store)

        first = book(store, day=0)
        last = book(store, day=5)

        history = accounting.reservation_history(ENROLLMENT_ID)

        assert [e.id for e in history] == [last.id, first.id]

    def test_stats_by_status(self):
        """Test per-status totals."""
        store = RecordStore()
        accounting = SessionAccounting(store)
        make_enrollment(store)

        book(store)
        book(store, status=ScheduleEventStatus.ACTIVE, day=1)
        book(store, status=ScheduleEventStatus.CANCELLED, day=2)
        book(store, status=ScheduleEventStatus.NOSHOW, day=3)

        stats = accounting.reservation_stats(ENROLLMENT_ID)

        assert (stats.total, stats.active, stats.completed, stats.cancelled, stats.noshow) == (4, 1, 1, 1, 1)

    def test_member_enrollments_with_sessions(self):
        """Test the per-member read model."""
        store = RecordStore()
        accounting = SessionAccounting(store)
        make_enrollment(store)
        book(store)

        [row] = accounting.member_enrollments_with_sessions(MEMBER_ID)

        assert row.completed_sessions == 1
        assert row.remaining_sessions == 9

    def test_unknown_event(self):
        """Test that status changes on unknown events fail."""
        accounting = SessionAccounting(RecordStore())

        with pytest.raises(NotFoundError):
            accounting.set_event_status(UUID("00000000-0000-0000-0000-000000000000"), ScheduleEventStatus.CANCELLED)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
