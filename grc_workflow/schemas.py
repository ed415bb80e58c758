"""
Pydantic schemas for workflow definition requests
"""

from typing import Dict, List, Optional, Any, Union
from pydantic import BaseModel, ConfigDict, Field, AliasChoices, ValidationError

from .exceptions import InvalidDefinitionError
from .models import TriggerType, StepType, ApproverKind, QuorumRule


class ApproverRequest(BaseModel):
    approver_type: ApproverKind = Field(..., validation_alias=AliasChoices('approver_type', 'kind'))
    approver_id: Optional[str] = None  # user approvers
    approver_role: Optional[str] = None  # role approvers
    approver_key: Optional[str] = None  # dynamic approvers, e.g. "resource_owner"
    approval_type: Optional[QuorumRule] = Field(
        None, validation_alias=AliasChoices('approval_type', 'quorum_rule')
    )

    @property
    def target(self) -> Optional[str]:
        if self.approver_type == ApproverKind.USER:
            return self.approver_id
        if self.approver_type == ApproverKind.ROLE:
            return self.approver_role
        return self.approver_key


class StepRequest(BaseModel):
    order: int = Field(..., validation_alias=AliasChoices('order', 'step_order'))
    step_type: StepType = Field(..., validation_alias=AliasChoices('step_type', 'type'))
    name: Optional[str] = None
    config: Optional[Dict[str, Any]] = None
    approvers: List[ApproverRequest] = Field(default_factory=list)
    skippable: bool = False


class CreateWorkflowRequest(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    trigger_type: TriggerType
    trigger_conditions: Optional[Dict[str, Any]] = None
    display_id: Optional[str] = Field(None, validation_alias=AliasChoices('display_id', 'workflow_id'))
    steps: List[StepRequest] = Field(default_factory=list)


class UpdateWorkflowRequest(BaseModel):
    model_config = ConfigDict(extra='forbid')

    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    trigger_type: Optional[TriggerType] = None
    trigger_conditions: Optional[Dict[str, Any]] = None


def _validate(model, data):
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise InvalidDefinitionError(
            f"Invalid {model.__name__}: {e}",
            {'errors': e.errors(include_url=False, include_context=False)}
        )


def parse_create_request(definition: Union[CreateWorkflowRequest, Dict[str, Any]]) -> CreateWorkflowRequest:
    return _validate(CreateWorkflowRequest, definition)


def parse_step_request(step: Union[StepRequest, Dict[str, Any]]) -> StepRequest:
    return _validate(StepRequest, step)


def parse_approver_request(approver: Union[ApproverRequest, Dict[str, Any]]) -> ApproverRequest:
    return _validate(ApproverRequest, approver)


def parse_update_request(changes: Union[UpdateWorkflowRequest, Dict[str, Any]]) -> UpdateWorkflowRequest:
    return _validate(UpdateWorkflowRequest, changes)
