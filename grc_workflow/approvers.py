"""
Approver Resolution Module

Turns approver specs into concrete voter ids. User specs name their voter
directly; role and dynamic specs are looked up through a pluggable directory
backend, since the engine itself holds no user or role data.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Optional

from .exceptions import UnresolvableApproversError
from .logging_config import get_logger
from .models import ApproverKind, ApproverSpec


DynamicResolver = Callable[[Dict[str, Any]], Iterable[str]]


class ApproverDirectory(ABC):
    """Lookup backend for role and dynamic approver specs"""

    @abstractmethod
    def members_of_role(self, role: str, context: Dict[str, Any]) -> List[str]:
        """User ids holding ``role`` (context allows org/resource scoping)"""
        pass

    @abstractmethod
    def resolve_dynamic(self, key: str, context: Dict[str, Any]) -> List[str]:
        """User ids for a dynamic key such as ``resource_owner``"""
        pass


class StaticDirectory(ApproverDirectory):
    """
    Directory backed by plain mappings.

    Dynamic keys are looked up in ``resolvers`` first; when no resolver is
    registered the key is read from the resource context, so a context of
    ``{"owner_id": "u-1"}`` resolves the dynamic key ``owner_id``.
    """

    def __init__(self, roles: Optional[Dict[str, Iterable[str]]] = None,
                 resolvers: Optional[Dict[str, DynamicResolver]] = None,
                 context_fallback: bool = True):
        self.roles = {role: list(members) for role, members in (roles or {}).items()}
        self.resolvers = dict(resolvers or {})
        self.context_fallback = context_fallback

    def add_role_member(self, role: str, user_id: str) -> None:
        members = self.roles.setdefault(role, [])
        if user_id not in members:
            members.append(user_id)

    def register_resolver(self, key: str, resolver: DynamicResolver) -> None:
        self.resolvers[key] = resolver

    def members_of_role(self, role: str, context: Dict[str, Any]) -> List[str]:
        return list(self.roles.get(role, []))

    def resolve_dynamic(self, key: str, context: Dict[str, Any]) -> List[str]:
        if key in self.resolvers:
            return list(self.resolvers[key](context) or [])
        if not self.context_fallback:
            return []
        value = context.get(key)
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return [str(item) for item in value]


def _unique(voters: Iterable[str]) -> List[str]:
    seen = set()
    result = []
    for voter in voters:
        if voter and voter not in seen:
            seen.add(voter)
            result.append(voter)
    return result


class ApproverResolver:
    """Resolves approver specs to ordered, de-duplicated voter ids"""

    def __init__(self, directory: Optional[ApproverDirectory] = None):
        self.directory = directory
        self.logger = get_logger("grc_workflow.approvers")

    def resolve(self, spec: ApproverSpec, context: Optional[Dict[str, Any]] = None) -> List[str]:
        """
        Resolve a single spec.

        Raises:
            UnresolvableApproversError: the approver spec yields no voters, including
                role/dynamic specs when no directory is configured
        """
        context = context or {}
        if spec.kind == ApproverKind.USER:
            voters = [spec.target]
        elif self.directory is None:
            self.logger.warning(f"No approver directory configured for {spec.kind.value} spec {spec.target}")
            voters = []
        elif spec.kind == ApproverKind.ROLE:
            voters = self.directory.members_of_role(spec.target, context)
        else:
            voters = self.directory.resolve_dynamic(spec.target, context)

        voters = _unique(voters)
        if not voters:
            raise UnresolvableApproversError(spec.kind.value, spec.target)
        return voters

    def resolve_step(self, specs: List[ApproverSpec],
                     context: Optional[Dict[str, Any]] = None) -> List[str]:
        """Merge the voters of every spec of a step, in spec position order"""
        voters: List[str] = []
        for spec in sorted(specs, key=lambda s: s.position):
            voters.extend(self.resolve(spec, context))
        return _unique(voters)
