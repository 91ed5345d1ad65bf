"""Reporting-line lookups used by the authorization guard."""
import abc
import logging
from typing import Dict, Optional, Set
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from starlette.concurrency import run_in_threadpool

from perfreview.core.exceptions import StorageUnavailableError
from perfreview.models.employee import Employee

logger = logging.getLogger(__name__)


class HierarchyService(abc.ABC):

    @abc.abstractmethod
    async def is_in_team_hierarchy(self, team_lead_id: UUID, employee_id: UUID) -> bool:
        """True when ``employee_id`` reports to ``team_lead_id`` directly or indirectly."""


def _walks_up_to(manager_of, team_lead_id: UUID, employee_id: UUID) -> bool:
    seen: Set[UUID] = set()
    current = manager_of(employee_id)
    while current is not None and current not in seen:
        if current == team_lead_id:
            return True
        seen.add(current)
        current = manager_of(current)
    return False


class InMemoryHierarchyService(HierarchyService):

    def __init__(self, managers: Optional[Dict[UUID, UUID]] = None):
        self._managers: Dict[UUID, UUID] = dict(managers or {})

    def set_manager(self, employee_id: UUID, manager_id: UUID) -> None:
        self._managers[employee_id] = manager_id

    async def is_in_team_hierarchy(self, team_lead_id: UUID, employee_id: UUID) -> bool:
        return _walks_up_to(self._managers.get, team_lead_id, employee_id)


class SqlHierarchyService(HierarchyService):

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    async def is_in_team_hierarchy(self, team_lead_id: UUID, employee_id: UUID) -> bool:
        return await run_in_threadpool(self._check, team_lead_id, employee_id)

    def _check(self, team_lead_id: UUID, employee_id: UUID) -> bool:
        try:
            with self._session_factory() as session:
                def manager_of(emp_id: UUID) -> Optional[UUID]:
                    return session.execute(
                        select(Employee.manager_id).where(Employee.id == emp_id)
                    ).scalar_one_or_none()
                return _walks_up_to(manager_of, team_lead_id, employee_id)
        except SQLAlchemyError as exc:
            logger.exception("Hierarchy lookup failed")
            raise StorageUnavailableError() from exc
