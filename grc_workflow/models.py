"""
Workflow Data Model

Enums, typed step configurations and the persisted records of the workflow
engine: definitions (workflows, steps, approver specs) and runtime state
(instances, step executions, votes, SLA timers).
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional, Any
from enum import Enum

from .storage import StorageRecord
from .exceptions import InvalidDefinitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TriggerType(Enum):
    """Business events that can start a workflow"""
    RISK_CREATED = "risk_created"
    RISK_UPDATED = "risk_updated"
    TREATMENT_SUBMITTED = "treatment_submitted"
    FINDING_CREATED = "finding_created"
    APPETITE_BREACH = "appetite_breach"
    MANUAL = "manual"


class StepType(Enum):
    """Types of workflow steps"""
    APPROVAL = "approval"
    NOTIFICATION = "notification"
    ESCALATION = "escalation"
    SLA_TIMER = "sla_timer"
    ACTION = "action"


class ApproverKind(Enum):
    """How an approver spec names its voters"""
    USER = "user"
    ROLE = "role"
    DYNAMIC = "dynamic"


class QuorumRule(Enum):
    """How votes combine into a step verdict"""
    ANY = "any"
    ALL = "all"
    SEQUENTIAL = "sequential"


class InstanceStatus(Enum):
    """Status of a workflow instance"""
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not InstanceStatus.RUNNING


class StepExecutionStatus(Enum):
    """Status of a single step execution"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (StepExecutionStatus.COMPLETED, StepExecutionStatus.SKIPPED,
                        StepExecutionStatus.FAILED)


class VoteStatus(Enum):
    """Decision of one voter"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class TimerStatus(Enum):
    """Status of an SLA timer"""
    ACTIVE = "active"
    EXPIRED = "expired"
    COMPLETED = "completed"


class ExpiryAction(Enum):
    """What an expired sla_timer step does to its instance"""
    FAIL = "fail"        # execution failed, instance cancelled
    ADVANCE = "advance"  # execution completed, continue with the next authored step


def _coerce_enum(enum_type, value, what: str):
    if isinstance(value, enum_type):
        return value
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_type)
        raise InvalidDefinitionError(f"Invalid {what} '{value}' (expected one of: {allowed})")


def _string_list(value, what: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str) or not all(isinstance(item, str) and item for item in value):
        raise InvalidDefinitionError(f"{what} must be a list of non-empty strings")
    return list(value)


# Step configurations: one typed variant per step type

@dataclass
class ApprovalConfig:
    """Approval step: the quorum rule shared by all of the step's approvers"""
    quorum_rule: QuorumRule = QuorumRule.ANY

    step_type = StepType.APPROVAL

    def __post_init__(self):
        self.quorum_rule = _coerce_enum(QuorumRule, self.quorum_rule, "quorum rule")

    def to_dict(self) -> Dict[str, Any]:
        return {'quorum_rule': self.quorum_rule.value}


@dataclass
class SLATimerConfig:
    """Timed wait; duration_hours None means the configured default"""
    duration_hours: Optional[float] = None
    on_expiry: ExpiryAction = ExpiryAction.FAIL

    step_type = StepType.SLA_TIMER

    def __post_init__(self):
        if self.duration_hours is not None:
            if isinstance(self.duration_hours, bool) or not isinstance(self.duration_hours, (int, float)):
                raise InvalidDefinitionError("duration_hours must be a number")
            if self.duration_hours <= 0:
                raise InvalidDefinitionError("duration_hours must be positive")
        self.on_expiry = _coerce_enum(ExpiryAction, self.on_expiry, "expiry action")

    def to_dict(self) -> Dict[str, Any]:
        return {'duration_hours': self.duration_hours, 'on_expiry': self.on_expiry.value}


@dataclass
class NotificationConfig:
    recipients: List[str] = field(default_factory=list)
    channel: str = "in_app"
    template: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    step_type = StepType.NOTIFICATION

    def __post_init__(self):
        self.recipients = _string_list(self.recipients, "recipients")
        if not self.channel:
            raise InvalidDefinitionError("Notification channel must not be empty")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EscalationConfig:
    escalate_to: List[str] = field(default_factory=list)
    reason: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    step_type = StepType.ESCALATION

    def __post_init__(self):
        self.escalate_to = _string_list(self.escalate_to, "escalate_to")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ActionConfig:
    action: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    step_type = StepType.ACTION

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


STEP_CONFIG_TYPES = {
    StepType.APPROVAL: ApprovalConfig,
    StepType.SLA_TIMER: SLATimerConfig,
    StepType.NOTIFICATION: NotificationConfig,
    StepType.ESCALATION: EscalationConfig,
    StepType.ACTION: ActionConfig,
}

# Typed configs reject unknown keys; free-form configs fold them into payload
_STRICT_CONFIGS = (StepType.APPROVAL, StepType.SLA_TIMER)


def build_step_config(step_type: StepType, data: Optional[Dict[str, Any]] = None):
    """Build the typed configuration variant for a step type from a plain dict"""
    config_type = STEP_CONFIG_TYPES[step_type]
    if isinstance(data, config_type):
        return data
    data = dict(data or {})
    known = set(config_type.__dataclass_fields__)
    unknown = {key: value for key, value in data.items() if key not in known}
    if unknown:
        if step_type in _STRICT_CONFIGS:
            raise InvalidDefinitionError(
                f"Unknown {step_type.value} config keys: {', '.join(sorted(unknown))}"
            )
        payload = dict(data.get('payload') or {})
        payload.update(unknown)
        data = {key: value for key, value in data.items() if key in known}
        data['payload'] = payload
    try:
        return config_type(**data)
    except TypeError as e:
        raise InvalidDefinitionError(f"Invalid {step_type.value} config: {e}")


# Definition records

@dataclass
class ApproverSpec(StorageRecord):
    """Approver attached to an approval step"""
    step_id: str
    kind: ApproverKind
    target: str  # user id, role name, or dynamic resolver key
    quorum_rule: QuorumRule
    position: int = 0

    _enum_fields = {'kind': ApproverKind, 'quorum_rule': QuorumRule}


@dataclass
class WorkflowStep(StorageRecord):
    """One stage of a workflow definition"""
    workflow_id: str
    order: int
    name: str
    step_type: StepType
    config: Any
    skippable: bool = False
    approvers: List[ApproverSpec] = field(default_factory=list)

    _enum_fields = {'step_type': StepType}

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['config'] = self.config.to_dict()
        # Approver specs live in their own table
        data.pop('approvers', None)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowStep':
        step = super().from_dict(data)
        step.config = build_step_config(step.step_type, data.get('config'))
        return step


@dataclass
class Workflow(StorageRecord):
    """Workflow definition (template)"""
    org_id: str
    display_id: str
    name: str
    trigger_type: TriggerType
    description: Optional[str] = None
    trigger_conditions: Optional[Dict[str, Any]] = None
    enabled: bool = True
    steps: List[WorkflowStep] = field(default_factory=list)

    _enum_fields = {'trigger_type': TriggerType}

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        # Steps live in their own table
        data.pop('steps', None)
        return data


# Runtime records

@dataclass
class WorkflowInstance(StorageRecord):
    """A running or terminal binding of a workflow to one resource"""
    workflow_id: str
    resource_type: str
    resource_id: str
    status: InstanceStatus
    started_at: datetime
    current_step_id: Optional[str] = None
    completed_at: Optional[datetime] = None
    started_by: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    version: int = 0

    _enum_fields = {'status': InstanceStatus}
    _datetime_fields = ('started_at', 'completed_at')

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass
class StepExecution(StorageRecord):
    """Record of one step being entered and resolved within an instance"""
    instance_id: str
    step_id: str
    sequence: int
    status: StepExecutionStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    active_voter_index: int = 0  # next voter under sequential quorum

    _enum_fields = {'status': StepExecutionStatus}
    _datetime_fields = ('started_at', 'completed_at')

    @property
    def is_open(self) -> bool:
        return not self.status.is_terminal


@dataclass
class Vote(StorageRecord):
    """One resolved voter's decision on an approval step execution"""
    step_execution_id: str
    voter_id: str
    position: int
    status: VoteStatus = VoteStatus.PENDING
    comments: Optional[str] = None
    decided_at: Optional[datetime] = None

    _enum_fields = {'status': VoteStatus}
    _datetime_fields = ('decided_at',)


@dataclass
class SLATimer(StorageRecord):
    """Deadline attached to an sla_timer step execution"""
    step_execution_id: str
    duration_hours: float
    start_time: datetime
    end_time: datetime
    status: TimerStatus = TimerStatus.ACTIVE
    expired_at: Optional[datetime] = None

    _enum_fields = {'status': TimerStatus}
    _datetime_fields = ('start_time', 'end_time', 'expired_at')

    def is_overdue(self, now: datetime) -> bool:
        return self.status == TimerStatus.ACTIVE and self.end_time <= now
