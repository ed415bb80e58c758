"""
SLA Sweeper

One-shot scan that expires every overdue SLA timer. The engine never
schedules itself; the host application calls ``run_once`` from whatever
scheduler it already has (cron, a worker loop, a management command).
"""

from datetime import datetime
from typing import List, Optional, Set

from .exceptions import WorkflowError
from .logging_config import get_logger, log_action
from .models import TimerStatus


class SLASweeper:
    """Expires overdue SLA timers through a WorkflowService"""

    def __init__(self, service, batch_size: Optional[int] = None):
        self.service = service
        self.batch_size = batch_size or service.settings.sla_sweep_batch_size
        self.logger = get_logger("grc_workflow.sweeper")

    def run_once(self, now: Optional[datetime] = None) -> List[str]:
        """
        Expire each timer overdue at ``now`` once.

        Returns the ids of the timers this run actually expired. A timer whose expiry
        raises is logged and left for the next run.
        """
        expired: List[str] = []
        attempted: Set[str] = set()

        while True:
            batch = [
                timer for timer in self.service.find_overdue_timers(now, limit=self.batch_size + len(attempted))
                if timer.id not in attempted
            ]
            if not batch:
                break

            for timer in batch:
                attempted.add(timer.id)
                try:
                    self.service.expire_timer(timer.id)
                except WorkflowError as e:
                    self.logger.error(f"Failed to expire SLA timer {timer.id}: {e}")
                    continue
                status = self.service.get_timer(timer.id).status
                if status != TimerStatus.EXPIRED:
                    self.logger.info(f"SLA timer {timer.id} left {status.value}; its instance had already moved on")
                    continue
                expired.append(timer.id)

        if expired:
            log_action(
                self.logger, "info", f"SLA sweep expired {len(expired)} timers",
                action="sla_sweep", extra={'timer_ids': expired}
            )
        return expired
