#!/usr/bin/env python3
"""
Example: Routing a new risk through a two-stage review

Builds the service from GRC_WORKFLOW_* settings (in-memory storage unless
GRC_WORKFLOW_DATABASE_URL points at SQLite or PostgreSQL), defines a review
workflow, and drives one instance through approval, a notification and an
SLA-bound remediation wait.
"""

import os
import sys
from datetime import timedelta

# Add the package root to the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from grc_workflow.approvers import StaticDirectory
from grc_workflow.config import get_settings
from grc_workflow.exceptions import WorkflowError
from grc_workflow.service import WorkflowService
from grc_workflow.sweeper import SLASweeper


def main():
    print("GRC Workflow - Risk review example")
    print("=" * 60)

    # 1. Configuration and wiring
    settings = get_settings()
    print(f"\n1. Database URL: {settings.database_url}")
    directory = StaticDirectory(roles={"risk_manager": ["carol", "dave"]})
    service = WorkflowService.from_settings(settings, directory=directory)
    service.dispatcher.subscribe_all(
        lambda event: print(f"   [event] {event.event_type.value} {event.entity_type}:{event.entity_id[:8]}")
    )

    # 2. Workflow definition
    print("\n2. Defining workflow")
    workflow = service.create_workflow("org-acme", {
        "name": "New risk review",
        "trigger_type": "risk_created",
        "steps": [
            {"order": 1, "name": "Risk manager review", "step_type": "approval",
             "approvers": [{"approver_type": "role", "approver_role": "risk_manager"}]},
            {"order": 2, "name": "Owner sign-off", "step_type": "approval",
             "approvers": [{"approver_type": "dynamic", "approver_key": "owner_id"}]},
            {"order": 3, "name": "Notify committee", "step_type": "notification",
             "config": {"recipients": ["risk-committee"]}},
            {"order": 4, "name": "Remediation window", "step_type": "sla_timer",
             "config": {"duration_hours": 72}},
        ],
    })
    print(f"   Workflow {workflow.display_id} with {len(workflow.steps)} steps")

    # 3. Trigger lookup and start
    print("\n3. Starting an instance for risk R-1042")
    candidates = service.list_workflows(org_id="org-acme", enabled=True, trigger_type="risk_created")
    instance = service.start(candidates[0].id, "risk", "R-1042",
                             context={"owner_id": "oscar", "score": 16}, started_by="alice")

    # 4. Votes
    print("\n4. Voting")
    try:
        pending = service.list_pending_votes("dave")
        service.cast_vote(pending[0].step_execution_id, "dave", "approved", comments="Scored correctly")
        pending = service.list_pending_votes("oscar")
        service.cast_vote(pending[0].step_execution_id, "oscar", "approved")
    except WorkflowError as e:
        print(f"   Vote refused: {e.code} {e.message}")

    # 5. External completion signal for the notification step
    print("\n5. Notification delivered")
    current = service.list_step_executions(instance.id)[-1]
    service.complete_step(current.id, {"delivered_to": 5}, completed_by="notifier")

    # 6. SLA sweep, as a scheduler would run it
    print("\n6. Sweeping overdue timers three days later")
    timer = service.list_timers()[0]
    expired = SLASweeper(service).run_once(timer.end_time + timedelta(minutes=1))
    print(f"   Expired timers: {len(expired)}")

    final = service.get_instance(instance.id)
    print(f"\n7. Instance {final.id[:8]} finished as {final.status.value}")
    for execution in service.list_step_executions(instance.id):
        print(f"   #{execution.sequence} {execution.status.value} {execution.error or ''}")

    service.close()
    print("=" * 60)


if __name__ == "__main__":
    main()
