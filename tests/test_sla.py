"""
Tests for the SLA timer service
"""

import pytest
from datetime import timedelta

from grc_workflow.config import WorkflowSettings
from grc_workflow.events import WorkflowEvent
from grc_workflow.exceptions import TimerNotFoundError
from grc_workflow.models import TimerStatus
from grc_workflow.sla import SLATimerService


@pytest.fixture
def timers(storage, dispatcher, settings, clock):
    return SLATimerService(storage, dispatcher, settings, clock)


class TestCreateTimer:

    def test_create_timer(self, timers, recorded_events):
        timer = timers.create_timer("ex-1", 1)

        assert timer.status == TimerStatus.ACTIVE
        assert timer.duration_hours == 1
        assert timer.end_time == timer.start_time + timedelta(hours=1)
        assert timers.get_timer(timer.id) == timer
        assert recorded_events[-1].event_type == WorkflowEvent.TIMER_CREATED

    def test_default_duration_from_settings(self, timers):
        timer = timers.create_timer("ex-1")
        assert timer.duration_hours == 24
        assert timer.end_time - timer.start_time == timedelta(hours=24)

    def test_configured_default_duration(self, storage, clock):
        service = SLATimerService(storage, settings=WorkflowSettings(_env_file=None, default_sla_hours=72),
                                  clock=clock)
        assert service.create_timer("ex-1").duration_hours == 72

    def test_unknown_timer(self, timers):
        with pytest.raises(TimerNotFoundError):
            timers.get_timer("missing")


class TestTimerQueries:

    def test_find_overdue(self, timers, clock):
        short = timers.create_timer("ex-1", 1)
        long = timers.create_timer("ex-2", 5)
        now = clock.now

        assert timers.find_overdue(now) == []
        assert [t.id for t in timers.find_overdue(now + timedelta(hours=2))] == [short.id]
        assert [t.id for t in timers.find_overdue(now + timedelta(hours=6))] == [short.id, long.id]
        assert [t.id for t in timers.find_overdue(now + timedelta(hours=6), limit=1)] == [short.id]

    def test_find_overdue_uses_clock_by_default(self, timers, clock):
        timer = timers.create_timer("ex-1", 1)
        clock.advance(hours=1, minutes=1)
        assert [t.id for t in timers.find_overdue()] == [timer.id]

    def test_timer_for_execution_and_status_filter(self, timers):
        timer = timers.create_timer("ex-1", 1)
        assert timers.timer_for_execution("ex-1").id == timer.id
        assert timers.timer_for_execution("ex-2") is None

        timers.mark_completed(timer)
        assert timers.timer_for_execution("ex-1") is None
        assert timers.timer_for_execution("ex-1", status=None).id == timer.id
        assert [t.id for t in timers.list_timers(TimerStatus.COMPLETED)] == [timer.id]
        assert timers.list_timers(TimerStatus.ACTIVE) == []


class TestTimerTransitions:

    def test_mark_expired(self, timers, recorded_events):
        timer = timers.create_timer("ex-1", 1)
        expired = timers.mark_expired(timer)

        assert expired.status == TimerStatus.EXPIRED
        assert expired.expired_at is not None
        assert timers.get_timer(timer.id).status == TimerStatus.EXPIRED
        assert recorded_events[-1].event_type == WorkflowEvent.TIMER_EXPIRED
        assert recorded_events[-1].data["step_execution_id"] == "ex-1"

    def test_expired_timer_is_no_longer_overdue(self, timers, clock):
        timer = timers.create_timer("ex-1", 1)
        timers.mark_expired(timer)
        assert timers.find_overdue(clock.now + timedelta(hours=3)) == []

    def test_complete_for_execution(self, timers):
        timer = timers.create_timer("ex-1", 1)
        assert timers.complete_for_execution("ex-1").id == timer.id
        assert timers.get_timer(timer.id).status == TimerStatus.COMPLETED
        assert timers.complete_for_execution("ex-1") is None
