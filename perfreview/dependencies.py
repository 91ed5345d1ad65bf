"""
Request-scoped dependencies: caller identity and service wiring.

Identity arrives in gateway-set headers; nothing here verifies tokens.
"""
import logging
from typing import Optional
from uuid import UUID

from fastapi import Depends, Header
from sqlalchemy.orm import sessionmaker

from perfreview.core.config import settings
from perfreview.core.exceptions import AuthenticationError
from perfreview.database import get_session_factory
from perfreview.models.employee import ApplicationRole
from perfreview.services.assignment_service import QuestionnaireAssignmentService
from perfreview.services.authorization import Actor, AuthorizationGuard
from perfreview.services.feedback import SqlFeedbackRepository
from perfreview.services.hierarchy import SqlHierarchyService
from perfreview.services.notification import NotificationService
from perfreview.services.repository import SqlAssignmentRepository, SqlResponseRepository
from perfreview.services.review_editing import ReviewEditSaga

logger = logging.getLogger(__name__)


def get_current_actor(
    x_employee_id: Optional[str] = Header(default=None, alias=settings.employee_id_header),
    x_employee_role: Optional[str] = Header(default=None, alias=settings.employee_role_header),
) -> Actor:
    if not x_employee_id or not x_employee_role:
        logger.warning("Authentication failed: missing identity headers")
        raise AuthenticationError("Missing caller identity")
    try:
        employee_id = UUID(x_employee_id)
    except ValueError:
        logger.warning("Authentication failed: malformed employee id")
        raise AuthenticationError("Malformed caller identity")
    try:
        role = ApplicationRole(x_employee_role)
    except ValueError:
        logger.warning(f"Authentication failed: unknown role {x_employee_role!r}")
        raise AuthenticationError("Unknown caller role")
    return Actor(employee_id=employee_id, role=role)


def get_authorization_guard(session_factory: sessionmaker = Depends(get_session_factory)) -> AuthorizationGuard:
    return AuthorizationGuard(SqlHierarchyService(session_factory))


def get_assignment_service(
    session_factory: sessionmaker = Depends(get_session_factory),
    guard: AuthorizationGuard = Depends(get_authorization_guard),
) -> QuestionnaireAssignmentService:
    return QuestionnaireAssignmentService(
        repository=SqlAssignmentRepository(session_factory),
        guard=guard,
        feedback=SqlFeedbackRepository(session_factory),
        notifications=NotificationService(session_factory),
        responses=SqlResponseRepository(session_factory),
    )


def get_review_edit_saga(
    session_factory: sessionmaker = Depends(get_session_factory),
    guard: AuthorizationGuard = Depends(get_authorization_guard),
) -> ReviewEditSaga:
    return ReviewEditSaga(
        assignments=SqlAssignmentRepository(session_factory),
        responses=SqlResponseRepository(session_factory),
        guard=guard,
    )
