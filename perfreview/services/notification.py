import logging
from typing import Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from starlette.concurrency import run_in_threadpool

from perfreview.core.exceptions import StorageUnavailableError
from perfreview.domain.assignment import QuestionnaireAssignment
from perfreview.domain.events import ReopenRecord
from perfreview.models.notification import Notification

logger = logging.getLogger(__name__)


class NotificationService:
    """
    Records notifications for assignment events. Delivery (mail, push) is
    handled by whatever consumes the notifications table.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def _create_notification(
        self,
        employee_id: UUID,
        title: str,
        message: str,
        type: str = "info",
        assignment_id: Optional[UUID] = None,
    ) -> int:
        try:
            with self._session_factory() as session, session.begin():
                notification = Notification(
                    employee_id=employee_id,
                    assignment_id=assignment_id,
                    title=title,
                    message=message,
                    type=type,
                )
                session.add(notification)
                session.flush()
                return notification.id
        except SQLAlchemyError as exc:
            logger.exception(f"Failed to record notification for employee {employee_id}")
            raise StorageUnavailableError("Notification could not be recorded.") from exc

    async def notify_questionnaire_reopened(self, assignment: QuestionnaireAssignment, record: ReopenRecord) -> int:
        return await run_in_threadpool(
            self._create_notification,
            assignment.employee_id,
            "Questionnaire reopened",
            (
                f"Your questionnaire was reopened from {record.from_state.value} "
                f"to {record.to_state.value}. Reason: {record.reason}"
            ),
            "reopened",
            assignment.id,
        )

    async def notify_assignment_reminder(self, assignment: QuestionnaireAssignment, message: Optional[str] = None) -> int:
        due = f" It is due on {assignment.due_date.isoformat()}." if assignment.due_date else ""
        return await run_in_threadpool(
            self._create_notification,
            assignment.employee_id,
            "Questionnaire reminder",
            message or f"Please complete your questionnaire.{due}",
            "reminder",
            assignment.id,
        )
