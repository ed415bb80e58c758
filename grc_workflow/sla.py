"""
SLA Timer Module

Timer records for sla_timer steps. This module only records deadlines and
state changes; it never polls the clock. Expiry is driven from outside
(``InstanceManager.expire_timer`` or the ``SLASweeper``).
"""

from datetime import datetime, timedelta
from typing import Callable, List, Optional
import uuid

from .config import WorkflowSettings, get_settings
from .events import EventDispatcher, WorkflowEvent
from .exceptions import TimerNotFoundError
from .logging_config import get_logger, log_action
from .models import SLATimer, TimerStatus, utcnow
from .storage import StorageInterface


TIMERS_TABLE = 'sla_timers'


class SLATimerService:
    """Creates, finds and transitions SLA timers"""

    def __init__(self, storage: StorageInterface,
                 dispatcher: Optional[EventDispatcher] = None,
                 settings: Optional[WorkflowSettings] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.storage = storage
        self.dispatcher = dispatcher or EventDispatcher(clock)
        self.settings = settings or get_settings()
        self._clock = clock or utcnow
        self.logger = get_logger("grc_workflow.sla")

    def create_timer(self, step_execution_id: str, duration_hours: Optional[float] = None) -> SLATimer:
        """Start an active timer; end_time = start_time + duration"""
        if duration_hours is None:
            duration_hours = self.settings.default_sla_hours

        now = self._clock()
        timer = SLATimer(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            step_execution_id=step_execution_id,
            duration_hours=duration_hours,
            start_time=now,
            end_time=now + timedelta(hours=duration_hours),
        )
        self.storage.save(TIMERS_TABLE, timer.id, timer.to_dict())

        self.logger.debug(f"SLA timer {timer.id} set for {duration_hours}h on execution {step_execution_id}")
        self.dispatcher.emit(
            WorkflowEvent.TIMER_CREATED, 'sla_timer', timer.id,
            {
                'step_execution_id': step_execution_id,
                'duration_hours': duration_hours,
                'end_time': timer.end_time.isoformat(),
            }
        )
        return timer

    def get_timer(self, timer_id: str) -> SLATimer:
        data = self.storage.load(TIMERS_TABLE, timer_id)
        if not data:
            raise TimerNotFoundError(timer_id)
        return SLATimer.from_dict(data)

    def timer_for_execution(self, step_execution_id: str,
                            status: Optional[TimerStatus] = TimerStatus.ACTIVE) -> Optional[SLATimer]:
        """The execution's timer, optionally restricted to a status"""
        filters = {'step_execution_id': step_execution_id}
        if status is not None:
            filters['status'] = status.value
        records = self.storage.find(TIMERS_TABLE, filters)
        if not records:
            return None
        return SLATimer.from_dict(records[0])

    def list_timers(self, status: Optional[TimerStatus] = None) -> List[SLATimer]:
        filters = {}
        if status is not None:
            filters['status'] = status.value
        timers = [SLATimer.from_dict(data) for data in self.storage.find(TIMERS_TABLE, filters)]
        return sorted(timers, key=lambda t: t.end_time)

    def find_overdue(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[SLATimer]:
        """Active timers whose deadline has passed, earliest deadline first"""
        now = now or self._clock()
        overdue = [t for t in self.list_timers(TimerStatus.ACTIVE) if t.is_overdue(now)]
        if limit is not None:
            overdue = overdue[:limit]
        return overdue

    def mark_expired(self, timer: SLATimer) -> SLATimer:
        now = self._clock()
        timer.status = TimerStatus.EXPIRED
        timer.expired_at = now
        timer.updated_at = now
        self.storage.save(TIMERS_TABLE, timer.id, timer.to_dict())

        log_action(
            self.logger, "warning", f"SLA timer {timer.id} expired",
            action="sla_expired", resource=f"sla_timer:{timer.id}",
            extra={'step_execution_id': timer.step_execution_id, 'end_time': timer.end_time.isoformat()}
        )
        self.dispatcher.emit(
            WorkflowEvent.TIMER_EXPIRED, 'sla_timer', timer.id,
            {'step_execution_id': timer.step_execution_id, 'expired_at': now.isoformat()}
        )
        return timer

    def mark_completed(self, timer: SLATimer) -> SLATimer:
        timer.status = TimerStatus.COMPLETED
        timer.updated_at = self._clock()
        self.storage.save(TIMERS_TABLE, timer.id, timer.to_dict())
        return timer

    def complete_for_execution(self, step_execution_id: str) -> Optional[SLATimer]:
        """Stop the execution's active timer, if any"""
        timer = self.timer_for_execution(step_execution_id)
        if timer is None:
            return None
        return self.mark_completed(timer)
