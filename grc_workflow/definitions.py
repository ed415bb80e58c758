"""
Workflow Definition Store

Owns workflow templates: ordered steps, each step's typed configuration and,
for approval steps, the approver specs sharing one quorum rule. A workflow is
persisted together with its steps and approvers as one atomic unit.

Structural mutation after creation (add_step, add_approver) is not guarded
against running instances of the workflow.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union
import uuid

from .config import WorkflowSettings, get_settings
from .events import EventDispatcher, WorkflowEvent
from .exceptions import InvalidDefinitionError, StepNotFoundError, WorkflowNotFoundError
from .logging_config import get_logger, log_action
from .models import (
    ApproverSpec, QuorumRule, StepType, TriggerType, Workflow, WorkflowStep,
    build_step_config, utcnow,
)
from .schemas import (
    ApproverRequest, CreateWorkflowRequest, StepRequest, UpdateWorkflowRequest,
    parse_approver_request, parse_create_request, parse_step_request, parse_update_request,
)
from .storage import StorageInterface


WORKFLOWS_TABLE = 'workflows'
STEPS_TABLE = 'workflow_steps'
APPROVERS_TABLE = 'workflow_approvers'


class DefinitionStore:
    """Create, read and (scalar-)update workflow definitions"""

    def __init__(self, storage: StorageInterface,
                 dispatcher: Optional[EventDispatcher] = None,
                 settings: Optional[WorkflowSettings] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.storage = storage
        self.dispatcher = dispatcher or EventDispatcher(clock)
        self.settings = settings or get_settings()
        self._clock = clock or utcnow
        self.logger = get_logger("grc_workflow.definitions")

    # Creation

    def create_workflow(self, org_id: str,
                        definition: Union[CreateWorkflowRequest, Dict[str, Any]]) -> Workflow:
        """Validate and persist a workflow with its steps and approvers"""
        request = parse_create_request(definition)
        if not request.steps:
            raise InvalidDefinitionError("Workflow must have at least one step")

        orders = [step.order for step in request.steps]
        if len(set(orders)) != len(orders):
            raise InvalidDefinitionError("Step orders must be unique within a workflow")

        now = self._clock()
        workflow_id = str(uuid.uuid4())
        workflow = Workflow(
            id=workflow_id,
            created_at=now,
            updated_at=now,
            org_id=org_id,
            display_id=request.display_id or f"{self.settings.display_id_prefix}-{workflow_id[:8].upper()}",
            name=request.name,
            trigger_type=request.trigger_type,
            description=request.description,
            trigger_conditions=request.trigger_conditions,
            enabled=True,
        )
        # Build (and so validate) every step before anything is written
        workflow.steps = [
            self._build_step(workflow_id, step_request, now)
            for step_request in sorted(request.steps, key=lambda s: s.order)
        ]

        with self.storage.atomic():
            self.storage.save(WORKFLOWS_TABLE, workflow.id, workflow.to_dict())
            for step in workflow.steps:
                self._save_step(step)

        log_action(
            self.logger, "info", f"Workflow {workflow.display_id} created",
            action="workflow_created", resource=f"workflow:{workflow.id}",
            extra={'org_id': org_id, 'steps': len(workflow.steps)}
        )
        self.dispatcher.emit(
            WorkflowEvent.WORKFLOW_CREATED, 'workflow', workflow.id,
            {'org_id': org_id, 'name': workflow.name, 'trigger_type': workflow.trigger_type.value}
        )
        return workflow

    def add_step(self, workflow_id: str, step: Union[StepRequest, Dict[str, Any]]) -> WorkflowStep:
        """Append a step to an existing workflow (unguarded against running instances)"""
        request = parse_step_request(step)
        self._require_workflow(workflow_id)
        if any(existing.order == request.order for existing in self.list_steps(workflow_id)):
            raise InvalidDefinitionError(f"Workflow {workflow_id} already has a step with order {request.order}")

        new_step = self._build_step(workflow_id, request, self._clock())
        with self.storage.atomic():
            self._save_step(new_step)
        self._touch(workflow_id)
        return new_step

    def add_approver(self, step_id: str, approver: Union[ApproverRequest, Dict[str, Any]]) -> ApproverSpec:
        """Attach another approver to an approval step (unguarded against running instances)"""
        request = parse_approver_request(approver)
        step = self.get_step(step_id)
        if step.step_type != StepType.APPROVAL:
            raise InvalidDefinitionError(f"Step {step_id} is not an approval step")

        rule = step.config.quorum_rule
        if request.approval_type is not None and request.approval_type != rule:
            raise InvalidDefinitionError(
                f"Step {step_id} uses quorum rule '{rule.value}'; "
                f"approvers cannot use '{request.approval_type.value}'"
            )

        spec = self._build_approver(step.id, request, rule, len(step.approvers), self._clock())
        self.storage.save(APPROVERS_TABLE, spec.id, spec.to_dict())
        self._touch(step.workflow_id)
        return spec

    # Scalar updates

    def update_workflow(self, workflow_id: str,
                        changes: Union[UpdateWorkflowRequest, Dict[str, Any]]) -> Workflow:
        """Update scalar workflow fields; steps are never touched here"""
        request = parse_update_request(changes)
        data = self._require_workflow(workflow_id)

        updates = request.model_dump(exclude_unset=True)
        for required in ('name', 'trigger_type'):
            if required in updates and updates[required] is None:
                raise InvalidDefinitionError(f"Workflow {required} cannot be cleared")
        if not updates:
            return self.get_workflow(workflow_id)

        for key, value in updates.items():
            data[key] = value.value if isinstance(value, TriggerType) else value
        data['updated_at'] = self._clock().isoformat()
        self.storage.save(WORKFLOWS_TABLE, workflow_id, data)

        self.dispatcher.emit(
            WorkflowEvent.WORKFLOW_UPDATED, 'workflow', workflow_id,
            {'fields': sorted(updates)}
        )
        return self.get_workflow(workflow_id)

    def set_enabled(self, workflow_id: str, enabled: bool) -> Workflow:
        """Flip the enabled flag; only gates new instance starts"""
        data = self._require_workflow(workflow_id)
        data['enabled'] = bool(enabled)
        data['updated_at'] = self._clock().isoformat()
        self.storage.save(WORKFLOWS_TABLE, workflow_id, data)

        log_action(
            self.logger, "info", f"Workflow {workflow_id} {'enabled' if enabled else 'disabled'}",
            action="workflow_enabled" if enabled else "workflow_disabled",
            resource=f"workflow:{workflow_id}"
        )
        self.dispatcher.emit(
            WorkflowEvent.WORKFLOW_ENABLED if enabled else WorkflowEvent.WORKFLOW_DISABLED,
            'workflow', workflow_id, {}
        )
        return self.get_workflow(workflow_id)

    # Queries

    def get_workflow(self, workflow_id: str) -> Workflow:
        """Get a workflow with its ordered steps and their approvers"""
        workflow = Workflow.from_dict(self._require_workflow(workflow_id))
        workflow.steps = self.list_steps(workflow_id)
        return workflow

    def list_workflows(self, org_id: Optional[str] = None, enabled: Optional[bool] = None,
                       trigger_type: Optional[Union[TriggerType, str]] = None) -> List[Workflow]:
        """List workflows (without steps), newest first"""
        filters: Dict[str, Any] = {}
        if org_id is not None:
            filters['org_id'] = org_id
        if enabled is not None:
            filters['enabled'] = bool(enabled)
        if trigger_type is not None:
            filters['trigger_type'] = TriggerType(trigger_type).value

        workflows = [Workflow.from_dict(data) for data in self.storage.find(WORKFLOWS_TABLE, filters)]
        return sorted(workflows, key=lambda w: w.created_at, reverse=True)

    def list_steps(self, workflow_id: str) -> List[WorkflowStep]:
        """Steps of a workflow in ascending order, approvers attached"""
        steps = [
            WorkflowStep.from_dict(data)
            for data in self.storage.find(STEPS_TABLE, {'workflow_id': workflow_id})
        ]
        for step in steps:
            step.approvers = self.list_approvers(step.id)
        return sorted(steps, key=lambda s: s.order)

    def get_step(self, step_id: str) -> WorkflowStep:
        data = self.storage.load(STEPS_TABLE, step_id)
        if not data:
            raise StepNotFoundError(step_id)
        step = WorkflowStep.from_dict(data)
        step.approvers = self.list_approvers(step.id)
        return step

    def list_approvers(self, step_id: str) -> List[ApproverSpec]:
        approvers = [
            ApproverSpec.from_dict(data)
            for data in self.storage.find(APPROVERS_TABLE, {'step_id': step_id})
        ]
        return sorted(approvers, key=lambda a: a.position)

    def next_step(self, workflow_id: str, after_order: Optional[int]) -> Optional[WorkflowStep]:
        """First step whose order is greater than ``after_order`` (None: the first step)"""
        for step in self.list_steps(workflow_id):
            if after_order is None or step.order > after_order:
                return step
        return None

    # Private helpers

    def _require_workflow(self, workflow_id: str) -> Dict[str, Any]:
        data = self.storage.load(WORKFLOWS_TABLE, workflow_id)
        if not data:
            raise WorkflowNotFoundError(workflow_id)
        return data

    def _touch(self, workflow_id: str) -> None:
        data = self._require_workflow(workflow_id)
        data['updated_at'] = self._clock().isoformat()
        self.storage.save(WORKFLOWS_TABLE, workflow_id, data)

    def _save_step(self, step: WorkflowStep) -> None:
        self.storage.save(STEPS_TABLE, step.id, step.to_dict())
        for approver in step.approvers:
            self.storage.save(APPROVERS_TABLE, approver.id, approver.to_dict())

    def _build_step(self, workflow_id: str, request: StepRequest, now: datetime) -> WorkflowStep:
        config = build_step_config(request.step_type, request.config)
        step = WorkflowStep(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            workflow_id=workflow_id,
            order=request.order,
            name=request.name or f"Step {request.order}",
            step_type=request.step_type,
            config=config,
            skippable=request.skippable,
        )

        if request.step_type != StepType.APPROVAL:
            if request.approvers:
                raise InvalidDefinitionError(
                    f"Step {request.order} is a {request.step_type.value} step; only approval steps take approvers"
                )
            return step

        if not request.approvers:
            raise InvalidDefinitionError(f"Approval step {request.order} has no approvers")

        rules = {a.approval_type for a in request.approvers if a.approval_type is not None}
        if request.config and 'quorum_rule' in request.config:
            rules.add(config.quorum_rule)
        if len(rules) > 1:
            raise InvalidDefinitionError(
                f"Approval step {request.order} mixes quorum rules; one rule applies to the whole step"
            )
        config.quorum_rule = rules.pop() if rules else QuorumRule.ANY

        step.approvers = [
            self._build_approver(step.id, approver, config.quorum_rule, position, now)
            for position, approver in enumerate(request.approvers)
        ]
        return step

    def _build_approver(self, step_id: str, request: ApproverRequest, rule: QuorumRule,
                        position: int, now: datetime) -> ApproverSpec:
        if not request.target:
            raise InvalidDefinitionError(
                f"{request.approver_type.value} approver at position {position} has no target"
            )
        return ApproverSpec(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            step_id=step_id,
            kind=request.approver_type,
            target=request.target,
            quorum_rule=rule,
            position=position,
        )
