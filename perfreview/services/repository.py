"""
Aggregate repositories with optimistic concurrency.

Contract shared by every implementation:

* ``load(id, expected_version=None)`` returns the aggregate (or ``None``) and
  raises ``ConcurrencyConflictError`` when an expected version is given and
  the stored version differs.
* ``store(aggregate, expected_version=None)`` writes everything the
  aggregate produced since it was loaded, all or nothing, and only if the
  stored version still equals ``expected_version`` (defaulting to the
  version the aggregate was loaded at). The new version is returned and
  is always exactly one more than the expected one.

The SQL implementations do their blocking work in a worker thread with a
session of their own. A cancelled caller therefore never interrupts a
transaction halfway: the commit either completes or rolls back.
"""
import abc
import copy
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from starlette.concurrency import run_in_threadpool

from perfreview.core.exceptions import ConcurrencyConflictError, NotFoundError, StorageUnavailableError
from perfreview.domain.assignment import QuestionnaireAssignment
from perfreview.domain.events import event_from_dict, event_to_dict
from perfreview.domain.response import QuestionnaireResponse
from perfreview.models.questionnaire_assignment import AssignmentEventRecord, AssignmentStreamRecord
from perfreview.models.questionnaire_response import QuestionnaireResponseRecord

logger = logging.getLogger(__name__)

ASSIGNMENT = "QuestionnaireAssignment"
RESPONSE = "QuestionnaireResponse"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class AssignmentRepository(abc.ABC):

    @abc.abstractmethod
    async def load(self, assignment_id: UUID, expected_version: Optional[int] = None) -> Optional[QuestionnaireAssignment]:
        ...

    @abc.abstractmethod
    async def store(self, assignment: QuestionnaireAssignment, expected_version: Optional[int] = None) -> int:
        ...

    async def load_required(self, assignment_id: UUID, expected_version: Optional[int] = None) -> QuestionnaireAssignment:
        assignment = await self.load(assignment_id, expected_version)
        if assignment is None:
            raise NotFoundError(ASSIGNMENT, assignment_id)
        return assignment

    @staticmethod
    def _check_loaded_version(assignment: QuestionnaireAssignment, expected_version: Optional[int]) -> None:
        if expected_version is not None and assignment.version != expected_version:
            raise ConcurrencyConflictError(ASSIGNMENT, assignment.id, expected_version, assignment.version)


class ResponseRepository(abc.ABC):

    @abc.abstractmethod
    async def load(self, assignment_id: UUID) -> Optional[QuestionnaireResponse]:
        ...

    @abc.abstractmethod
    async def store(self, response: QuestionnaireResponse, expected_version: Optional[int] = None) -> int:
        ...


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------

class InMemoryAssignmentRepository(AssignmentRepository):
    """Dict-backed event store for tests and local tooling.

    Events are kept in serialized form so a reload goes through the same
    decode path as the database. The version check and the append happen
    without an ``await`` in between, which makes them atomic on one loop.
    """

    def __init__(self) -> None:
        self._streams: Dict[UUID, List[Tuple[int, str, dict]]] = {}
        self._versions: Dict[UUID, int] = {}

    async def load(self, assignment_id: UUID, expected_version: Optional[int] = None) -> Optional[QuestionnaireAssignment]:
        rows = self._streams.get(assignment_id)
        if rows is None:
            return None
        history = [(version, event_from_dict(event_type, copy.deepcopy(payload))) for version, event_type, payload in rows]
        assignment = QuestionnaireAssignment.rehydrate(history)
        self._check_loaded_version(assignment, expected_version)
        return assignment

    async def store(self, assignment: QuestionnaireAssignment, expected_version: Optional[int] = None) -> int:
        expected = assignment.version if expected_version is None else expected_version
        if not assignment.has_pending_events:
            return assignment.version
        current = self._versions.get(assignment.id, 0)
        if current != expected:
            raise ConcurrencyConflictError(ASSIGNMENT, assignment.id, expected, current)
        new_version = expected + 1
        stream = self._streams.setdefault(assignment.id, [])
        for event in assignment.pending_events:
            stream.append((new_version, event.event_type, event_to_dict(event)))
        self._versions[assignment.id] = new_version
        assignment.mark_committed(new_version)
        return new_version

    def event_count(self, assignment_id: UUID) -> int:
        return len(self._streams.get(assignment_id, []))


class InMemoryResponseRepository(ResponseRepository):

    def __init__(self) -> None:
        self._rows: Dict[UUID, Tuple[int, UUID, dict]] = {}

    async def load(self, assignment_id: UUID) -> Optional[QuestionnaireResponse]:
        row = self._rows.get(assignment_id)
        if row is None:
            return None
        version, employee_id, snapshot = row
        return QuestionnaireResponse.from_snapshot(assignment_id, employee_id, version, copy.deepcopy(snapshot))

    async def store(self, response: QuestionnaireResponse, expected_version: Optional[int] = None) -> int:
        if not response.has_changes:
            return response.version
        expected = response.version if expected_version is None else expected_version
        current = self._rows[response.assignment_id][0] if response.assignment_id in self._rows else 0
        if current != expected:
            raise ConcurrencyConflictError(RESPONSE, response.assignment_id, expected, current)
        new_version = expected + 1
        self._rows[response.assignment_id] = (new_version, response.employee_id, copy.deepcopy(response.to_snapshot()))
        response.mark_committed(new_version)
        return new_version


# ---------------------------------------------------------------------------
# SQLAlchemy implementations
# ---------------------------------------------------------------------------

class SqlAssignmentRepository(AssignmentRepository):

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    async def load(self, assignment_id: UUID, expected_version: Optional[int] = None) -> Optional[QuestionnaireAssignment]:
        history = await run_in_threadpool(self._read_history, assignment_id)
        if history is None:
            return None
        assignment = QuestionnaireAssignment.rehydrate(history)
        self._check_loaded_version(assignment, expected_version)
        return assignment

    def _read_history(self, assignment_id: UUID):
        try:
            with self._session_factory() as session:
                header = session.get(AssignmentStreamRecord, assignment_id)
                if header is None:
                    return None
                rows = session.execute(
                    select(AssignmentEventRecord)
                    .where(AssignmentEventRecord.assignment_id == assignment_id)
                    .order_by(AssignmentEventRecord.version, AssignmentEventRecord.sequence)
                ).scalars().all()
                return [(row.version, event_from_dict(row.event_type, row.payload)) for row in rows]
        except SQLAlchemyError as exc:
            logger.exception(f"Failed to load assignment {assignment_id}")
            raise StorageUnavailableError() from exc

    async def store(self, assignment: QuestionnaireAssignment, expected_version: Optional[int] = None) -> int:
        expected = assignment.version if expected_version is None else expected_version
        if not assignment.has_pending_events:
            return assignment.version
        new_version = await run_in_threadpool(self._append, assignment, expected)
        assignment.mark_committed(new_version)
        return new_version

    def _append(self, assignment: QuestionnaireAssignment, expected: int) -> int:
        new_version = expected + 1
        now = _now()
        try:
            with self._session_factory() as session, session.begin():
                if expected == 0:
                    session.add(AssignmentStreamRecord(
                        id=assignment.id,
                        version=new_version,
                        employee_id=assignment.employee_id,
                        template_id=assignment.template_id,
                        workflow_state=assignment.workflow_state.value,
                        is_withdrawn=assignment.is_withdrawn,
                        updated_at=now,
                    ))
                    session.flush()
                else:
                    result = session.execute(
                        update(AssignmentStreamRecord)
                        .where(
                            AssignmentStreamRecord.id == assignment.id,
                            AssignmentStreamRecord.version == expected,
                        )
                        .values(
                            version=new_version,
                            workflow_state=assignment.workflow_state.value,
                            is_withdrawn=assignment.is_withdrawn,
                            updated_at=now,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        actual = session.execute(
                            select(AssignmentStreamRecord.version).where(AssignmentStreamRecord.id == assignment.id)
                        ).scalar_one_or_none()
                        raise ConcurrencyConflictError(ASSIGNMENT, assignment.id, expected, actual)

                for sequence, event in enumerate(assignment.pending_events):
                    session.add(AssignmentEventRecord(
                        assignment_id=assignment.id,
                        version=new_version,
                        sequence=sequence,
                        event_type=event.event_type,
                        payload=event_to_dict(event),
                        occurred_at=event.occurred_at,
                    ))
        except IntegrityError as exc:
            logger.warning(f"Concurrent write detected for assignment {assignment.id} at version {expected}")
            raise ConcurrencyConflictError(ASSIGNMENT, assignment.id, expected) from exc
        except SQLAlchemyError as exc:
            logger.exception(f"Failed to store assignment {assignment.id}")
            raise StorageUnavailableError() from exc
        return new_version


class SqlResponseRepository(ResponseRepository):

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    async def load(self, assignment_id: UUID) -> Optional[QuestionnaireResponse]:
        return await run_in_threadpool(self._read, assignment_id)

    def _read(self, assignment_id: UUID) -> Optional[QuestionnaireResponse]:
        try:
            with self._session_factory() as session:
                row = session.get(QuestionnaireResponseRecord, assignment_id)
                if row is None:
                    return None
                return QuestionnaireResponse.from_snapshot(row.assignment_id, row.employee_id, row.version, row.snapshot)
        except SQLAlchemyError as exc:
            logger.exception(f"Failed to load response for assignment {assignment_id}")
            raise StorageUnavailableError() from exc

    async def store(self, response: QuestionnaireResponse, expected_version: Optional[int] = None) -> int:
        if not response.has_changes:
            return response.version
        expected = response.version if expected_version is None else expected_version
        new_version = await run_in_threadpool(self._write, response, expected)
        response.mark_committed(new_version)
        return new_version

    def _write(self, response: QuestionnaireResponse, expected: int) -> int:
        new_version = expected + 1
        snapshot = response.to_snapshot()
        try:
            with self._session_factory() as session, session.begin():
                if expected == 0:
                    session.add(QuestionnaireResponseRecord(
                        assignment_id=response.assignment_id,
                        employee_id=response.employee_id,
                        version=new_version,
                        snapshot=snapshot,
                        updated_at=_now(),
                    ))
                else:
                    result = session.execute(
                        update(QuestionnaireResponseRecord)
                        .where(
                            QuestionnaireResponseRecord.assignment_id == response.assignment_id,
                            QuestionnaireResponseRecord.version == expected,
                        )
                        .values(version=new_version, snapshot=snapshot, updated_at=_now())
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        raise ConcurrencyConflictError(RESPONSE, response.assignment_id, expected)
        except IntegrityError as exc:
            raise ConcurrencyConflictError(RESPONSE, response.assignment_id, expected) from exc
        except SQLAlchemyError as exc:
            logger.exception(f"Failed to store response for assignment {response.assignment_id}")
            raise StorageUnavailableError() from exc
        return new_version
