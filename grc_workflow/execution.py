"""
Step Execution Engine

Creates step executions as an instance enters each step, records votes, and
resolves executions (approved, rejected, expired, completed, failed, skipped),
advancing the instance or ending it.

Methods that take an instance mutate it in memory only; the caller
(InstanceManager) owns the instance record and persists it as part of the
same atomic unit.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
import uuid

from .approvers import ApproverResolver
from .definitions import DefinitionStore
from .events import EventDispatcher, WorkflowEvent
from .exceptions import (
    InvalidStepOperationError, OutOfTurnVoteError, StepExecutionNotFoundError,
    StepNotFoundError, UnknownVoterError, UnresolvableApproversError,
)
from .logging_config import get_logger, log_action
from .models import (
    ExpiryAction, InstanceStatus, QuorumRule, SLATimer, StepExecution, StepExecutionStatus,
    StepType, Vote, VoteStatus, WorkflowInstance, WorkflowStep, utcnow,
)
from . import quorum
from .quorum import Verdict
from .sla import SLATimerService
from .storage import StorageInterface


EXECUTIONS_TABLE = 'workflow_step_executions'
VOTES_TABLE = 'workflow_votes'

_INSTANCE_EVENTS = {
    InstanceStatus.COMPLETED: WorkflowEvent.INSTANCE_COMPLETED,
    InstanceStatus.CANCELLED: WorkflowEvent.INSTANCE_CANCELLED,
    InstanceStatus.FAILED: WorkflowEvent.INSTANCE_FAILED,
}

_STEP_EVENTS = {
    StepExecutionStatus.COMPLETED: WorkflowEvent.STEP_COMPLETED,
    StepExecutionStatus.FAILED: WorkflowEvent.STEP_FAILED,
    StepExecutionStatus.SKIPPED: WorkflowEvent.STEP_SKIPPED,
}


class StepExecutionEngine:
    """Drives step executions, votes and advancement for workflow instances"""

    def __init__(self, storage: StorageInterface, definitions: DefinitionStore,
                 resolver: ApproverResolver, timers: SLATimerService,
                 dispatcher: Optional[EventDispatcher] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.storage = storage
        self.definitions = definitions
        self.resolver = resolver
        self.timers = timers
        self.dispatcher = dispatcher or EventDispatcher(clock)
        self._clock = clock or utcnow
        self.logger = get_logger("grc_workflow.execution")

    # Entering steps

    def create_execution(self, instance: WorkflowInstance, step: WorkflowStep) -> StepExecution:
        """
        Enter ``step``: point the instance at it and create a pending execution.

        Approval steps get one pending vote per resolved voter; sla_timer steps
        get an active timer. Other step types wait for an external completion
        signal. Approvers that cannot be resolved fail the execution and the
        instance.
        """
        now = self._clock()
        execution = StepExecution(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            instance_id=instance.id,
            step_id=step.id,
            sequence=len(self.storage.find(EXECUTIONS_TABLE, {'instance_id': instance.id})) + 1,
            status=StepExecutionStatus.PENDING,
            started_at=now,
        )
        instance.current_step_id = step.id
        self._save_execution(execution)

        self.logger.info(
            f"Instance {instance.id} entered step {step.order} ({step.step_type.value}) "
            f"as execution {execution.id}"
        )
        self.dispatcher.emit(
            WorkflowEvent.STEP_ENTERED, 'step_execution', execution.id,
            {
                'instance_id': instance.id,
                'step_id': step.id,
                'step_type': step.step_type.value,
                'sequence': execution.sequence,
            }
        )

        if step.step_type == StepType.APPROVAL:
            try:
                voters = self.resolver.resolve_step(step.approvers, self._resolution_context(instance))
                if not voters:
                    raise UnresolvableApproversError('step', step.id)
            except UnresolvableApproversError as e:
                self._resolve(execution, StepExecutionStatus.FAILED, instance, error=e.message)
                self.finish(instance, InstanceStatus.FAILED, {'error': e.message, 'step_id': step.id})
                return execution

            for position, voter_id in enumerate(voters):
                vote = Vote(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    step_execution_id=execution.id,
                    voter_id=voter_id,
                    position=position,
                )
                self.storage.save(VOTES_TABLE, vote.id, vote.to_dict())

        elif step.step_type == StepType.SLA_TIMER:
            self.timers.create_timer(execution.id, step.config.duration_hours)

        return execution

    def advance(self, instance: WorkflowInstance) -> Optional[StepExecution]:
        """Enter the next authored step, or complete the instance when none is left"""
        try:
            current = self.definitions.get_step(instance.current_step_id) if instance.current_step_id else None
        except StepNotFoundError:
            self.logger.warning(f"Current step {instance.current_step_id} of instance {instance.id} no longer exists")
            current = None

        next_step = self.definitions.next_step(instance.workflow_id, current.order) if current else None
        if next_step is None:
            self.finish(instance, InstanceStatus.COMPLETED)
            return None
        return self.create_execution(instance, next_step)

    def finish(self, instance: WorkflowInstance, status: InstanceStatus,
               details: Optional[Dict[str, Any]] = None) -> None:
        """Move the instance to a terminal status and clear its step pointer"""
        now = self._clock()
        instance.status = status
        instance.completed_at = now
        instance.current_step_id = None
        instance.updated_at = now

        log_action(
            self.logger, "warning" if status == InstanceStatus.FAILED else "info",
            f"Workflow instance {instance.id} {status.value}",
            action=f"instance_{status.value}", resource=f"workflow_instance:{instance.id}",
            extra=details
        )
        data = {'workflow_id': instance.workflow_id,
                'resource_type': instance.resource_type,
                'resource_id': instance.resource_id}
        data.update(details or {})
        self.dispatcher.emit(_INSTANCE_EVENTS[status], 'workflow_instance', instance.id, data)

    # Votes

    def validate_vote(self, execution: StepExecution, voter_id: str) -> None:
        """
        Refuse votes from voters not resolved for the execution and, while a
        sequential step is still open, votes from anyone but the active voter.
        """
        votes = self.list_votes(execution.id)
        if not any(vote.voter_id == voter_id for vote in votes):
            raise UnknownVoterError(execution.id, voter_id)

        if execution.is_open and self.quorum_rule(execution) == QuorumRule.SEQUENTIAL:
            expected = quorum.expected_voter(votes)
            if voter_id != expected:
                raise OutOfTurnVoteError(execution.id, voter_id, expected)

    def record_vote(self, instance: WorkflowInstance, execution: StepExecution, voter_id: str,
                    decision: VoteStatus, comments: Optional[str] = None) -> Optional[Verdict]:
        """
        Upsert ``voter_id``'s decision and evaluate the step.

        Returns the verdict, or None when the execution had already been
        resolved (the vote is then recorded without effect).
        """
        self.validate_vote(execution, voter_id)
        votes = self.list_votes(execution.id)
        vote = next(v for v in votes if v.voter_id == voter_id)

        now = self._clock()
        previous = vote.status
        vote.status = decision
        vote.comments = comments
        vote.decided_at = now
        vote.updated_at = now
        self.storage.save(VOTES_TABLE, vote.id, vote.to_dict())

        log_action(
            self.logger, "info", f"{voter_id} {decision.value} step execution {execution.id}",
            user_id=voter_id, action="vote_cast", resource=f"step_execution:{execution.id}",
            extra={'previous_status': previous.value}
        )
        self.dispatcher.emit(
            WorkflowEvent.VOTE_CAST, 'vote', vote.id,
            {
                'instance_id': instance.id,
                'step_execution_id': execution.id,
                'voter_id': voter_id,
                'status': decision.value,
                'previous_status': previous.value,
                'comments': comments,
            }
        )

        if not execution.is_open:
            self.logger.info(f"Execution {execution.id} already {execution.status.value}; vote recorded only")
            return None

        verdict = quorum.evaluate(self.quorum_rule(execution), votes)
        if verdict == Verdict.APPROVED:
            self._resolve(execution, StepExecutionStatus.COMPLETED, instance,
                          result={'verdict': verdict.value, 'votes': self._tally(votes)})
            self.advance(instance)
        elif verdict == Verdict.REJECTED:
            self._resolve(execution, StepExecutionStatus.FAILED, instance,
                          result={'verdict': verdict.value, 'votes': self._tally(votes)},
                          error=f"Rejected by {voter_id}")
            self.finish(instance, InstanceStatus.CANCELLED, {'reason': 'rejected', 'rejected_by': voter_id})
        else:
            execution.status = StepExecutionStatus.IN_PROGRESS
            execution.active_voter_index = quorum.next_voter_index(votes)
            execution.updated_at = now
            self._save_execution(execution)
        return verdict

    # Other resolutions

    def expire(self, instance: WorkflowInstance, execution: StepExecution, timer: SLATimer) -> None:
        """Expire ``timer`` and resolve its execution per the step's on_expiry action"""
        self.timers.mark_expired(timer)
        if not execution.is_open:
            return

        try:
            step = self.definitions.get_step(execution.step_id)
            on_expiry = step.config.on_expiry if step.step_type == StepType.SLA_TIMER else ExpiryAction.FAIL
        except StepNotFoundError:
            on_expiry = ExpiryAction.FAIL

        if on_expiry == ExpiryAction.ADVANCE:
            self._resolve(execution, StepExecutionStatus.COMPLETED, instance,
                          result={'sla_expired': True, 'timer_id': timer.id})
            self.advance(instance)
        else:
            self._resolve(execution, StepExecutionStatus.FAILED, instance,
                          result={'sla_expired': True, 'timer_id': timer.id},
                          error="SLA expired")
            self.finish(instance, InstanceStatus.CANCELLED, {'reason': 'sla_expired', 'timer_id': timer.id})

    def check_operable(self, execution: StepExecution, operation: str) -> WorkflowStep:
        """
        Check that ``operation`` (complete, fail or skip) applies to the
        execution's step; returns the step.
        """
        step = self.definitions.get_step(execution.step_id)
        if operation in ('complete', 'fail') and step.step_type == StepType.APPROVAL:
            raise InvalidStepOperationError(
                f"Approval step execution {execution.id} is resolved by votes, not {operation}",
                {'step_execution_id': execution.id, 'operation': operation}
            )
        if operation == 'skip' and not step.skippable:
            raise InvalidStepOperationError(
                f"Step {step.id} is not skippable",
                {'step_execution_id': execution.id, 'operation': operation}
            )
        return step

    def complete(self, instance: WorkflowInstance, execution: StepExecution,
                 result: Optional[Dict[str, Any]] = None, completed_by: Optional[str] = None) -> None:
        """External completion signal for a notification, escalation, action or timer step"""
        self.check_operable(execution, 'complete')
        result = dict(result or {})
        if completed_by:
            result.setdefault('completed_by', completed_by)
        self._resolve(execution, StepExecutionStatus.COMPLETED, instance, result=result)
        self.advance(instance)

    def fail(self, instance: WorkflowInstance, execution: StepExecution, error: str) -> None:
        self.check_operable(execution, 'fail')
        self._resolve(execution, StepExecutionStatus.FAILED, instance, error=error)
        self.finish(instance, InstanceStatus.FAILED, {'error': error, 'step_id': execution.step_id})

    def skip(self, instance: WorkflowInstance, execution: StepExecution,
             reason: Optional[str] = None) -> None:
        self.check_operable(execution, 'skip')
        self._resolve(execution, StepExecutionStatus.SKIPPED, instance, result={'reason': reason})
        self.advance(instance)

    def close_open_execution(self, instance: WorkflowInstance,
                             reason: Optional[str] = None) -> Optional[StepExecution]:
        """Skip the instance's open execution, if any (used on cancellation)"""
        execution = self.current_execution(instance.id)
        if execution is None:
            return None
        self._resolve(execution, StepExecutionStatus.SKIPPED, instance,
                      result={'reason': reason, 'cancelled': True})
        return execution

    # Queries

    def get_execution(self, step_execution_id: str) -> StepExecution:
        data = self.storage.load(EXECUTIONS_TABLE, step_execution_id)
        if not data:
            raise StepExecutionNotFoundError(step_execution_id)
        return StepExecution.from_dict(data)

    def list_executions(self, instance_id: str) -> List[StepExecution]:
        """Executions of an instance in entry order"""
        executions = [
            StepExecution.from_dict(data)
            for data in self.storage.find(EXECUTIONS_TABLE, {'instance_id': instance_id})
        ]
        return sorted(executions, key=lambda e: e.sequence)

    def current_execution(self, instance_id: str) -> Optional[StepExecution]:
        """The instance's open execution (at most one exists)"""
        for execution in reversed(self.list_executions(instance_id)):
            if execution.is_open:
                return execution
        return None

    def list_votes(self, step_execution_id: str) -> List[Vote]:
        votes = [
            Vote.from_dict(data)
            for data in self.storage.find(VOTES_TABLE, {'step_execution_id': step_execution_id})
        ]
        return sorted(votes, key=lambda v: v.position)

    def find_votes(self, voter_id: str, status: Optional[VoteStatus] = None) -> List[Vote]:
        filters = {'voter_id': voter_id}
        if status is not None:
            filters['status'] = status.value
        return [Vote.from_dict(data) for data in self.storage.find(VOTES_TABLE, filters)]

    def quorum_rule(self, execution: StepExecution) -> QuorumRule:
        step = self.definitions.get_step(execution.step_id)
        if step.step_type != StepType.APPROVAL:
            raise InvalidStepOperationError(
                f"Step execution {execution.id} is not an approval step",
                {'step_execution_id': execution.id}
            )
        return step.config.quorum_rule

    # Private helpers

    def _resolution_context(self, instance: WorkflowInstance) -> Dict[str, Any]:
        context = dict(instance.context or {})
        context.setdefault('resource_type', instance.resource_type)
        context.setdefault('resource_id', instance.resource_id)
        context.setdefault('workflow_id', instance.workflow_id)
        return context

    def _resolve(self, execution: StepExecution, status: StepExecutionStatus,
                 instance: WorkflowInstance, result: Optional[Dict[str, Any]] = None,
                 error: Optional[str] = None) -> None:
        self._close(execution, status, result=result, error=error)
        data = {'instance_id': instance.id, 'step_id': execution.step_id, 'sequence': execution.sequence}
        if result:
            data['result'] = result
        if error:
            data['error'] = error
        self.dispatcher.emit(_STEP_EVENTS[status], 'step_execution', execution.id, data)

    def _close(self, execution: StepExecution, status: StepExecutionStatus,
               result: Optional[Dict[str, Any]] = None, error: Optional[str] = None) -> None:
        now = self._clock()
        execution.status = status
        execution.completed_at = now
        execution.updated_at = now
        if result is not None:
            execution.result = result
        if error is not None:
            execution.error = error
        self._save_execution(execution)
        # Any resolution other than expiry stops the execution's running timer
        self.timers.complete_for_execution(execution.id)

    def _save_execution(self, execution: StepExecution) -> None:
        self.storage.save(EXECUTIONS_TABLE, execution.id, execution.to_dict())

    @staticmethod
    def _tally(votes: List[Vote]) -> Dict[str, str]:
        return {vote.voter_id: vote.status.value for vote in votes}
