"""
Workflow Service

Facade that wires the definition store, approver resolver, SLA timers, step
execution engine and instance manager over one storage backend and one event
dispatcher. This is the surface the host application calls.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from .approvers import ApproverDirectory, ApproverResolver
from .config import WorkflowSettings, get_settings
from .definitions import DefinitionStore
from .events import EventDispatcher
from .execution import StepExecutionEngine
from .instances import InstanceManager
from .logging_config import get_logger, setup_logging
from .models import (
    ApproverSpec, InstanceStatus, SLATimer, StepExecution, TimerStatus, TriggerType, Vote,
    VoteStatus, Workflow, WorkflowInstance, WorkflowStep, utcnow,
)
from .schemas import ApproverRequest, CreateWorkflowRequest, StepRequest, UpdateWorkflowRequest
from .sla import SLATimerService
from .storage import InMemoryStorage, StorageInterface, create_storage


class WorkflowService:
    """Workflow/approval engine entry point"""

    def __init__(self, storage: Optional[StorageInterface] = None,
                 directory: Optional[ApproverDirectory] = None,
                 dispatcher: Optional[EventDispatcher] = None,
                 settings: Optional[WorkflowSettings] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.settings = settings or get_settings()
        self.storage = storage or InMemoryStorage()
        clock = clock or utcnow
        self.dispatcher = dispatcher or EventDispatcher(clock)
        self.logger = get_logger("grc_workflow.service")

        self.definitions = DefinitionStore(self.storage, self.dispatcher, self.settings, clock)
        self.resolver = ApproverResolver(directory)
        self.timers = SLATimerService(self.storage, self.dispatcher, self.settings, clock)
        self.engine = StepExecutionEngine(
            self.storage, self.definitions, self.resolver, self.timers, self.dispatcher, clock
        )
        self.instances = InstanceManager(
            self.storage, self.definitions, self.engine, self.timers,
            self.dispatcher, self.settings, clock
        )

    @classmethod
    def from_settings(cls, settings: Optional[WorkflowSettings] = None,
                      directory: Optional[ApproverDirectory] = None,
                      dispatcher: Optional[EventDispatcher] = None) -> 'WorkflowService':
        """Build the service (storage and logging included) from settings"""
        settings = settings or get_settings()
        setup_logging(settings.log_level, log_format=settings.log_format, log_file=settings.log_file)
        storage = create_storage(settings.database_url)
        return cls(storage=storage, directory=directory, dispatcher=dispatcher, settings=settings)

    def close(self) -> None:
        self.storage.close()

    # Definitions

    def create_workflow(self, org_id: str,
                        definition: Union[CreateWorkflowRequest, Dict[str, Any]]) -> Workflow:
        return self.definitions.create_workflow(org_id, definition)

    def update_workflow(self, workflow_id: str,
                        changes: Union[UpdateWorkflowRequest, Dict[str, Any]]) -> Workflow:
        return self.definitions.update_workflow(workflow_id, changes)

    def add_step(self, workflow_id: str, step: Union[StepRequest, Dict[str, Any]]) -> WorkflowStep:
        return self.definitions.add_step(workflow_id, step)

    def add_approver(self, step_id: str, approver: Union[ApproverRequest, Dict[str, Any]]) -> ApproverSpec:
        return self.definitions.add_approver(step_id, approver)

    def set_enabled(self, workflow_id: str, enabled: bool) -> Workflow:
        """Enable or disable new starts; running instances are only cancelled when configured to"""
        workflow = self.definitions.set_enabled(workflow_id, enabled)
        if not enabled and self.settings.cancel_instances_on_disable:
            cancelled = self.instances.cancel_running_for_workflow(workflow_id, reason="workflow_disabled")
            if cancelled:
                self.logger.info(f"Cancelled {len(cancelled)} running instances of disabled workflow {workflow_id}")
        return workflow

    def get_workflow(self, workflow_id: str) -> Workflow:
        return self.definitions.get_workflow(workflow_id)

    def list_workflows(self, org_id: Optional[str] = None, enabled: Optional[bool] = None,
                       trigger_type: Optional[Union[TriggerType, str]] = None) -> List[Workflow]:
        return self.definitions.list_workflows(org_id=org_id, enabled=enabled, trigger_type=trigger_type)

    def list_steps(self, workflow_id: str) -> List[WorkflowStep]:
        self.definitions.get_workflow(workflow_id)
        return self.definitions.list_steps(workflow_id)

    def list_approvers(self, step_id: str) -> List[ApproverSpec]:
        self.definitions.get_step(step_id)
        return self.definitions.list_approvers(step_id)

    # Instances

    def start(self, workflow_id: str, resource_type: str, resource_id: str,
              context: Optional[Dict[str, Any]] = None,
              started_by: Optional[str] = None) -> WorkflowInstance:
        return self.instances.start(workflow_id, resource_type, resource_id, context, started_by)

    def cast_vote(self, step_execution_id: str, voter_id: str,
                  decision: Union[VoteStatus, str], comments: Optional[str] = None) -> None:
        self.instances.cast_vote(step_execution_id, voter_id, decision, comments)

    def expire_timer(self, timer_id: str) -> None:
        self.instances.expire_timer(timer_id)

    def cancel(self, instance_id: str, reason: Optional[str] = None,
               cancelled_by: Optional[str] = None) -> None:
        self.instances.cancel(instance_id, reason, cancelled_by)

    def complete_step(self, step_execution_id: str, result: Optional[Dict[str, Any]] = None,
                      completed_by: Optional[str] = None) -> None:
        self.instances.complete_step(step_execution_id, result, completed_by)

    def fail_step(self, step_execution_id: str, error: str) -> None:
        self.instances.fail_step(step_execution_id, error)

    def skip_step(self, step_execution_id: str, reason: Optional[str] = None) -> None:
        self.instances.skip_step(step_execution_id, reason)

    def get_instance(self, instance_id: str) -> WorkflowInstance:
        return self.instances.get_instance(instance_id)

    def list_instances(self, workflow_id: Optional[str] = None,
                       status: Optional[InstanceStatus] = None,
                       resource_type: Optional[str] = None,
                       resource_id: Optional[str] = None) -> List[WorkflowInstance]:
        return self.instances.list_instances(workflow_id, status, resource_type, resource_id)

    def list_instances_for_resource(self, resource_type: str, resource_id: str) -> List[WorkflowInstance]:
        return self.instances.list_instances_for_resource(resource_type, resource_id)

    def get_step_execution(self, step_execution_id: str) -> StepExecution:
        return self.instances.get_step_execution(step_execution_id)

    def list_step_executions(self, instance_id: str) -> List[StepExecution]:
        return self.instances.list_step_executions(instance_id)

    def list_votes(self, step_execution_id: str) -> List[Vote]:
        return self.instances.list_votes(step_execution_id)

    def list_pending_votes(self, voter_id: str) -> List[Vote]:
        return self.instances.list_pending_votes(voter_id)

    # SLA timers

    def get_timer(self, timer_id: str) -> SLATimer:
        return self.timers.get_timer(timer_id)

    def list_timers(self, status: Optional[TimerStatus] = None) -> List[SLATimer]:
        return self.timers.list_timers(status)

    def find_overdue_timers(self, now: Optional[datetime] = None,
                            limit: Optional[int] = None) -> List[SLATimer]:
        return self.timers.find_overdue(now, limit)
