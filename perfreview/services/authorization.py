"""
Role and team scoped permission checks.

``is_action_allowed`` is the whole rule set as a pure function. The guard
only resolves the two relationship predicates it needs and raises a
generic ``AccessDeniedError`` on denial, so a caller learns nothing about
which other action might have been permitted.
"""
import enum
import logging
from typing import FrozenSet
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from perfreview.core.exceptions import AccessDeniedError
from perfreview.domain.workflow import CompletionRole
from perfreview.models.employee import ApplicationRole
from perfreview.services.hierarchy import HierarchyService

logger = logging.getLogger(__name__)


class AssignmentAction(str, enum.Enum):
    VIEW = "View"
    EMPLOYEE_WORK = "EmployeeWork"
    MANAGE = "Manage"
    REOPEN = "Reopen"
    CREATE = "Create"


class Actor(BaseModel):
    model_config = ConfigDict(frozen=True)

    employee_id: UUID
    role: ApplicationRole


_ELEVATED: FrozenSet[ApplicationRole] = frozenset({ApplicationRole.HR, ApplicationRole.HR_LEAD, ApplicationRole.ADMIN})
_OWN_ASSIGNMENT_ACTIONS = frozenset({AssignmentAction.VIEW, AssignmentAction.EMPLOYEE_WORK})
_TEAM_ACTIONS = frozenset({
    AssignmentAction.VIEW,
    AssignmentAction.MANAGE,
    AssignmentAction.REOPEN,
    AssignmentAction.CREATE,
})


def is_action_allowed(
    role: ApplicationRole,
    action: AssignmentAction,
    *,
    is_own_assignment: bool,
    is_in_team: bool,
) -> bool:
    if role in _ELEVATED:
        return True
    if is_own_assignment and action in _OWN_ASSIGNMENT_ACTIONS:
        return True
    if role == ApplicationRole.TEAM_LEAD and is_in_team and action in _TEAM_ACTIONS:
        return True
    return False


def action_for_role(role: CompletionRole) -> AssignmentAction:
    """Employee-side work needs EMPLOYEE_WORK, manager-side work needs MANAGE."""
    return AssignmentAction.EMPLOYEE_WORK if role == CompletionRole.EMPLOYEE else AssignmentAction.MANAGE


class AuthorizationGuard:

    def __init__(self, hierarchy: HierarchyService):
        self._hierarchy = hierarchy

    async def is_allowed(self, actor: Actor, action: AssignmentAction, employee_id: UUID) -> bool:
        is_own = actor.employee_id == employee_id
        if actor.role in _ELEVATED or (is_own and action in _OWN_ASSIGNMENT_ACTIONS):
            return True
        is_in_team = False
        if actor.role == ApplicationRole.TEAM_LEAD and not is_own:
            is_in_team = await self._hierarchy.is_in_team_hierarchy(actor.employee_id, employee_id)
        return is_action_allowed(actor.role, action, is_own_assignment=is_own, is_in_team=is_in_team)

    async def ensure_allowed(self, actor: Actor, action: AssignmentAction, employee_id: UUID) -> None:
        if not await self.is_allowed(actor, action, employee_id):
            logger.warning(
                "Access denied",
                extra={"actor": str(actor.employee_id), "role": actor.role.value, "action": action.value},
            )
            raise AccessDeniedError("You are not allowed to perform this action on this assignment")
