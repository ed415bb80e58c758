"""
Workflow Instance Manager

Top-level lifecycle API for workflow instances: start, vote, expire, complete,
fail, skip and cancel, plus the instance queries.

Every mutation of an instance runs as one unit:

1. the instance's in-process lock is held,
2. inside ``storage.atomic()``,
3. the instance record is claimed by a compare-and-save on its ``version``
   before anything else is written.

Any exception rolls the whole unit back. A lost claim raises
ConcurrentModificationError; the unit is then re-run against fresh state, up
to ``max_conflict_retries`` times. Every backend holds its storage lock from
begin to commit, so managers of different services sharing one storage
object are serialized too. Operations against an instance that is already
terminal are logged and ignored.
"""

from datetime import datetime
from threading import Lock, RLock
from typing import Any, Callable, Dict, List, Optional, Union
import uuid

from .config import WorkflowSettings, get_settings
from .definitions import DefinitionStore
from .events import EventDispatcher, WorkflowEvent
from .exceptions import (
    ConcurrentModificationError, DuplicateInstanceError, InstanceNotFoundError,
    InvalidVoteError, NoStepsError, WorkflowDisabledError,
)
from .execution import StepExecutionEngine
from .logging_config import get_logger, log_action
from .models import (
    InstanceStatus, QuorumRule, StepExecution, TimerStatus, Vote, VoteStatus,
    WorkflowInstance, utcnow,
)
from . import quorum
from .sla import SLATimerService
from .storage import StorageInterface


INSTANCES_TABLE = 'workflow_instances'

_DECISIONS = {
    'approved': VoteStatus.APPROVED,
    'approve': VoteStatus.APPROVED,
    'rejected': VoteStatus.REJECTED,
    'reject': VoteStatus.REJECTED,
}


class InstanceManager:
    """Serializes and applies all operations on workflow instances"""

    def __init__(self, storage: StorageInterface, definitions: DefinitionStore,
                 engine: StepExecutionEngine, timers: SLATimerService,
                 dispatcher: Optional[EventDispatcher] = None,
                 settings: Optional[WorkflowSettings] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.storage = storage
        self.definitions = definitions
        self.engine = engine
        self.timers = timers
        self.dispatcher = dispatcher or EventDispatcher(clock)
        self.settings = settings or get_settings()
        self._clock = clock or utcnow
        self.logger = get_logger("grc_workflow.instances")

        self._locks: Dict[str, RLock] = {}
        self._locks_guard = Lock()

    # Lifecycle

    def start(self, workflow_id: str, resource_type: str, resource_id: str,
              context: Optional[Dict[str, Any]] = None,
              started_by: Optional[str] = None) -> WorkflowInstance:
        """
        Start a workflow against a resource and enter its first step.

        Raises:
            WorkflowNotFoundError: unknown workflow
            WorkflowDisabledError: workflow is disabled
            NoStepsError: workflow has no steps
            DuplicateInstanceError: concurrent instances are disallowed and
                one is already running for this workflow and resource
        """
        workflow = self.definitions.get_workflow(workflow_id)
        if not workflow.enabled:
            raise WorkflowDisabledError(workflow_id)
        if not workflow.steps:
            raise NoStepsError(workflow_id)

        with self._lock_for(f"start:{workflow_id}:{resource_type}:{resource_id}"):
            if not self.settings.allow_concurrent_instances:
                running = self.list_instances(workflow_id=workflow_id, status=InstanceStatus.RUNNING,
                                              resource_type=resource_type, resource_id=resource_id)
                if running:
                    raise DuplicateInstanceError(workflow_id, resource_type, resource_id, running[0].id)

            now = self._clock()
            instance = WorkflowInstance(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                workflow_id=workflow_id,
                resource_type=resource_type,
                resource_id=resource_id,
                status=InstanceStatus.RUNNING,
                started_at=now,
                started_by=started_by,
                context=dict(context or {}),
            )

            with self._lock_for(instance.id), self.storage.atomic():
                self.storage.save(INSTANCES_TABLE, instance.id, instance.to_dict())
                log_action(
                    self.logger, "info", f"Workflow {workflow.display_id} started for {resource_type}:{resource_id}",
                    user_id=started_by, action="instance_started",
                    resource=f"workflow_instance:{instance.id}",
                    extra={'workflow_id': workflow_id}
                )
                self.dispatcher.emit(
                    WorkflowEvent.INSTANCE_STARTED, 'workflow_instance', instance.id,
                    {
                        'workflow_id': workflow_id,
                        'resource_type': resource_type,
                        'resource_id': resource_id,
                        'started_by': started_by,
                    }
                )
                self.engine.create_execution(instance, workflow.steps[0])
                self._persist(instance)

        return instance

    def cast_vote(self, step_execution_id: str, voter_id: str,
                  decision: Union[VoteStatus, str], comments: Optional[str] = None) -> None:
        """
        Record an approve/reject decision and evaluate the step's quorum.

        Raises:
            InvalidVoteError: decision is neither approved nor rejected
            StepExecutionNotFoundError: unknown execution
            UnknownVoterError: voter was not resolved for the execution
            OutOfTurnVoteError: sequential step, not this voter's turn
        """
        status = self._parse_decision(decision)
        execution = self.engine.get_execution(step_execution_id)

        def operation():
            instance = self._load(execution.instance_id)
            if instance.is_terminal:
                self._ignore(instance, "vote")
                return
            current = self.engine.get_execution(step_execution_id)
            self.engine.validate_vote(current, voter_id)
            self._claim(instance)
            self.engine.record_vote(instance, current, voter_id, status, comments)
            self._persist(instance)

        self._run(execution.instance_id, operation)

    def expire_timer(self, timer_id: str) -> None:
        """
        Expire an SLA timer and resolve its step execution.

        A timer that is no longer active, or whose instance is terminal, is
        left alone, so repeated or late calls are harmless.
        """
        timer = self.timers.get_timer(timer_id)
        if timer.status != TimerStatus.ACTIVE:
            self.logger.debug(f"SLA timer {timer_id} is {timer.status.value}; nothing to expire")
            return
        execution = self.engine.get_execution(timer.step_execution_id)

        def operation():
            current_timer = self.timers.get_timer(timer_id)
            if current_timer.status != TimerStatus.ACTIVE:
                return
            instance = self._load(execution.instance_id)
            if instance.is_terminal:
                self._ignore(instance, "timer expiry")
                return
            self._claim(instance)
            self.engine.expire(instance, self.engine.get_execution(execution.id), current_timer)
            self._persist(instance)

        self._run(execution.instance_id, operation)

    def complete_step(self, step_execution_id: str, result: Optional[Dict[str, Any]] = None,
                      completed_by: Optional[str] = None) -> None:
        """External completion signal for a non-approval step"""
        self._resolve_step(step_execution_id, 'complete',
                           lambda instance, execution: self.engine.complete(instance, execution, result, completed_by))

    def fail_step(self, step_execution_id: str, error: str) -> None:
        """External failure signal for a non-approval step; fails the instance"""
        self._resolve_step(step_execution_id, 'fail',
                           lambda instance, execution: self.engine.fail(instance, execution, error))

    def skip_step(self, step_execution_id: str, reason: Optional[str] = None) -> None:
        """Skip a skippable step and advance"""
        self._resolve_step(step_execution_id, 'skip',
                           lambda instance, execution: self.engine.skip(instance, execution, reason))

    def cancel(self, instance_id: str, reason: Optional[str] = None,
               cancelled_by: Optional[str] = None) -> None:
        """Cancel a running instance; cancelling a terminal instance changes nothing"""

        def operation():
            instance = self._load(instance_id)
            if instance.is_terminal:
                self._ignore(instance, "cancel")
                return
            self._claim(instance)
            self.engine.close_open_execution(instance, reason)
            details = {'reason': reason}
            if cancelled_by:
                details['cancelled_by'] = cancelled_by
            self.engine.finish(instance, InstanceStatus.CANCELLED, details)
            self._persist(instance)

        self._run(instance_id, operation)

    def cancel_running_for_workflow(self, workflow_id: str, reason: Optional[str] = None) -> List[str]:
        """Cancel every running instance of a workflow; returns their ids"""
        cancelled = []
        for instance in self.list_instances(workflow_id=workflow_id, status=InstanceStatus.RUNNING):
            self.cancel(instance.id, reason=reason)
            cancelled.append(instance.id)
        return cancelled

    # Queries

    def get_instance(self, instance_id: str) -> WorkflowInstance:
        return self._load(instance_id)

    def list_instances(self, workflow_id: Optional[str] = None,
                       status: Optional[InstanceStatus] = None,
                       resource_type: Optional[str] = None,
                       resource_id: Optional[str] = None) -> List[WorkflowInstance]:
        """List instances, newest first"""
        filters: Dict[str, Any] = {}
        if workflow_id is not None:
            filters['workflow_id'] = workflow_id
        if status is not None:
            filters['status'] = InstanceStatus(status).value
        if resource_type is not None:
            filters['resource_type'] = resource_type
        if resource_id is not None:
            filters['resource_id'] = resource_id

        instances = [WorkflowInstance.from_dict(data) for data in self.storage.find(INSTANCES_TABLE, filters)]
        return sorted(instances, key=lambda i: i.started_at, reverse=True)

    def list_instances_for_resource(self, resource_type: str, resource_id: str) -> List[WorkflowInstance]:
        return self.list_instances(resource_type=resource_type, resource_id=resource_id)

    def get_step_execution(self, step_execution_id: str) -> StepExecution:
        return self.engine.get_execution(step_execution_id)

    def list_step_executions(self, instance_id: str) -> List[StepExecution]:
        self._load(instance_id)
        return self.engine.list_executions(instance_id)

    def list_votes(self, step_execution_id: str) -> List[Vote]:
        self.engine.get_execution(step_execution_id)
        return self.engine.list_votes(step_execution_id)

    def list_pending_votes(self, voter_id: str) -> List[Vote]:
        """
        Approval inbox: pending votes of ``voter_id`` on open executions of
        running instances. Under sequential quorum only the voter whose turn
        it is sees the vote.
        """
        inbox = []
        for vote in self.engine.find_votes(voter_id, VoteStatus.PENDING):
            execution = self.engine.get_execution(vote.step_execution_id)
            if not execution.is_open or self._load(execution.instance_id).is_terminal:
                continue
            if self.engine.quorum_rule(execution) == QuorumRule.SEQUENTIAL:
                if quorum.expected_voter(self.engine.list_votes(execution.id)) != voter_id:
                    continue
            inbox.append(vote)
        return sorted(inbox, key=lambda v: v.created_at)

    # Private helpers

    def _resolve_step(self, step_execution_id: str, operation_name: str,
                      apply: Callable[[WorkflowInstance, StepExecution], None]) -> None:
        execution = self.engine.get_execution(step_execution_id)
        self.engine.check_operable(execution, operation_name)

        def operation():
            instance = self._load(execution.instance_id)
            if instance.is_terminal:
                self._ignore(instance, operation_name)
                return
            current = self.engine.get_execution(step_execution_id)
            if not current.is_open:
                self.logger.info(
                    f"Step execution {step_execution_id} already {current.status.value}; "
                    f"{operation_name} ignored"
                )
                return
            self._claim(instance)
            apply(instance, current)
            self._persist(instance)

        self._run(execution.instance_id, operation)

    def _run(self, instance_id: str, operation: Callable[[], Any]) -> Any:
        retries = self.settings.max_conflict_retries
        attempt = 0
        while True:
            try:
                with self._lock_for(instance_id), self.storage.atomic():
                    return operation()
            except ConcurrentModificationError:
                if attempt >= retries:
                    self.logger.error(f"Giving up on instance {instance_id} after {attempt + 1} conflicting attempts")
                    raise
                attempt += 1
                self.logger.warning(f"Concurrent update of instance {instance_id}; retry {attempt}/{retries}")

    def _lock_for(self, key: str) -> RLock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = RLock()
            return lock

    def _load(self, instance_id: str) -> WorkflowInstance:
        data = self.storage.load(INSTANCES_TABLE, instance_id)
        if not data:
            raise InstanceNotFoundError(instance_id)
        return WorkflowInstance.from_dict(data)

    def _claim(self, instance: WorkflowInstance) -> None:
        """Bump the version with a compare-and-save; must be the unit's first write"""
        expected = instance.version
        instance.version = expected + 1
        instance.updated_at = self._clock()
        if not self.storage.compare_and_save(INSTANCES_TABLE, instance.id, instance.to_dict(),
                                             'version', expected):
            instance.version = expected
            raise ConcurrentModificationError(instance.id, expected)

    def _persist(self, instance: WorkflowInstance) -> None:
        if not self.storage.compare_and_save(INSTANCES_TABLE, instance.id, instance.to_dict(),
                                             'version', instance.version):
            raise ConcurrentModificationError(instance.id, instance.version)

    def _ignore(self, instance: WorkflowInstance, operation: str) -> None:
        self.logger.info(f"Instance {instance.id} is {instance.status.value}; {operation} ignored")

    @staticmethod
    def _parse_decision(decision: Union[VoteStatus, str]) -> VoteStatus:
        if isinstance(decision, VoteStatus):
            status = decision
        else:
            status = _DECISIONS.get(str(decision).lower())
        if status not in (VoteStatus.APPROVED, VoteStatus.REJECTED):
            raise InvalidVoteError(f"Invalid vote decision '{decision}' (expected approved or rejected)",
                                   {'decision': str(decision)})
        return status
