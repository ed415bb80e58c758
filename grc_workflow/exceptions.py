"""
Typed exception hierarchy for the workflow engine.

Every error carries a machine-readable ``code`` so callers can branch on type
or code instead of parsing messages:

    WorkflowError
    +-- InvalidDefinitionError (ValueError)
    |   +-- NoStepsError
    +-- NotFoundError (LookupError)
    |   +-- WorkflowNotFoundError
    |   +-- StepNotFoundError
    |   +-- InstanceNotFoundError
    |   +-- StepExecutionNotFoundError
    |   +-- TimerNotFoundError
    +-- UnresolvableApproversError
    +-- VoteError
    |   +-- InvalidVoteError
    |   +-- UnknownVoterError
    |   +-- OutOfTurnVoteError
    +-- InvalidStepOperationError
    +-- WorkflowDisabledError
    +-- DuplicateInstanceError
    +-- ConcurrentModificationError

Operations against an instance that is already terminal are not errors: the
engine logs and ignores them so that externally delivered events may be
replayed safely.
"""

from typing import Any, Dict, Optional


class WorkflowError(Exception):
    """Base class for all workflow engine errors"""

    code = "WORKFLOW_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class InvalidDefinitionError(WorkflowError, ValueError):
    """Workflow definition rejected at creation; nothing is persisted"""

    code = "INVALID_DEFINITION"


class NoStepsError(InvalidDefinitionError):
    """Workflow has no steps to run"""

    code = "NO_STEPS"

    def __init__(self, workflow_id: str):
        super().__init__(f"Workflow {workflow_id} has no steps", {"workflow_id": workflow_id})
        self.workflow_id = workflow_id


class NotFoundError(WorkflowError, LookupError):
    """Unknown identifier"""

    code = "NOT_FOUND"
    entity = "record"

    def __init__(self, record_id: str):
        super().__init__(f"{self.entity} {record_id} not found", {"id": record_id})
        self.record_id = record_id


class WorkflowNotFoundError(NotFoundError):
    code = "WORKFLOW_NOT_FOUND"
    entity = "Workflow"


class StepNotFoundError(NotFoundError):
    code = "STEP_NOT_FOUND"
    entity = "Workflow step"


class InstanceNotFoundError(NotFoundError):
    code = "INSTANCE_NOT_FOUND"
    entity = "Workflow instance"


class StepExecutionNotFoundError(NotFoundError):
    code = "STEP_EXECUTION_NOT_FOUND"
    entity = "Step execution"


class TimerNotFoundError(NotFoundError):
    code = "TIMER_NOT_FOUND"
    entity = "SLA timer"


class UnresolvableApproversError(WorkflowError):
    """An approver spec resolved to no voters"""

    code = "UNRESOLVABLE_APPROVERS"

    def __init__(self, kind: str, target: Optional[str]):
        super().__init__(
            f"Approver spec {kind}:{target} resolved to no voters",
            {"kind": kind, "target": target},
        )
        self.kind = kind
        self.target = target


class VoteError(WorkflowError):
    """Vote refused at the call boundary"""

    code = "VOTE_ERROR"


class InvalidVoteError(VoteError, ValueError):
    code = "INVALID_VOTE"


class UnknownVoterError(VoteError):
    """Voter was not resolved as an approver of the step execution"""

    code = "UNKNOWN_VOTER"

    def __init__(self, step_execution_id: str, voter_id: str):
        super().__init__(
            f"{voter_id} is not an approver of step execution {step_execution_id}",
            {"step_execution_id": step_execution_id, "voter_id": voter_id},
        )


class OutOfTurnVoteError(VoteError):
    """Sequential quorum only accepts the vote of the active voter"""

    code = "OUT_OF_TURN_VOTE"

    def __init__(self, step_execution_id: str, voter_id: str, expected_voter_id: Optional[str]):
        super().__init__(
            f"{voter_id} cannot vote yet on step execution {step_execution_id}; "
            f"waiting on {expected_voter_id}",
            {
                "step_execution_id": step_execution_id,
                "voter_id": voter_id,
                "expected_voter_id": expected_voter_id,
            },
        )


class InvalidStepOperationError(WorkflowError):
    """Operation not allowed for this step type or configuration"""

    code = "INVALID_STEP_OPERATION"


class WorkflowDisabledError(WorkflowError):
    """Disabled workflows cannot start new instances"""

    code = "WORKFLOW_DISABLED"

    def __init__(self, workflow_id: str):
        super().__init__(f"Workflow {workflow_id} is disabled", {"workflow_id": workflow_id})


class DuplicateInstanceError(WorkflowError):
    """A running instance already exists for the workflow and resource"""

    code = "DUPLICATE_INSTANCE"

    def __init__(self, workflow_id: str, resource_type: str, resource_id: str, instance_id: str):
        super().__init__(
            f"Workflow {workflow_id} already running for {resource_type}:{resource_id}",
            {
                "workflow_id": workflow_id,
                "resource_type": resource_type,
                "resource_id": resource_id,
                "instance_id": instance_id,
            },
        )
        self.instance_id = instance_id


class ConcurrentModificationError(WorkflowError):
    """Instance version changed between read and claim"""

    code = "CONCURRENT_MODIFICATION"

    def __init__(self, instance_id: str, expected_version: int):
        super().__init__(
            f"Workflow instance {instance_id} was modified concurrently "
            f"(expected version {expected_version})",
            {"instance_id": instance_id, "expected_version": expected_version},
        )
        self.instance_id = instance_id
