import abc
import logging
from typing import Dict, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from starlette.concurrency import run_in_threadpool

from perfreview.core.exceptions import StorageUnavailableError
from perfreview.models.employee_feedback import EmployeeFeedback

logger = logging.getLogger(__name__)


class FeedbackInfo(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: UUID
    employee_id: UUID
    is_deleted: bool = False


class FeedbackRepository(abc.ABC):

    @abc.abstractmethod
    async def get(self, feedback_id: UUID) -> Optional[FeedbackInfo]:
        ...


class InMemoryFeedbackRepository(FeedbackRepository):

    def __init__(self) -> None:
        self._items: Dict[UUID, FeedbackInfo] = {}

    def add(self, feedback: FeedbackInfo) -> None:
        self._items[feedback.id] = feedback

    async def get(self, feedback_id: UUID) -> Optional[FeedbackInfo]:
        return self._items.get(feedback_id)


class SqlFeedbackRepository(FeedbackRepository):

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    async def get(self, feedback_id: UUID) -> Optional[FeedbackInfo]:
        return await run_in_threadpool(self._get, feedback_id)

    def _get(self, feedback_id: UUID) -> Optional[FeedbackInfo]:
        try:
            with self._session_factory() as session:
                row = session.get(EmployeeFeedback, feedback_id)
                return FeedbackInfo.model_validate(row) if row is not None else None
        except SQLAlchemyError as exc:
            logger.exception(f"Failed to load feedback {feedback_id}")
            raise StorageUnavailableError() from exc
