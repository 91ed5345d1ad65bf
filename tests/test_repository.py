import uuid
from datetime import timedelta

import pytest

from conftest import advance_to_review
from perfreview.core.exceptions import ConcurrencyConflictError
from perfreview.domain.response import QuestionnaireResponse
from perfreview.domain.workflow import CompletionRole, WorkflowState
from perfreview.models.questionnaire_assignment import AssignmentEventRecord, AssignmentStreamRecord
from perfreview.services.repository import (
    InMemoryAssignmentRepository,
    InMemoryResponseRepository,
    SqlAssignmentRepository,
    SqlResponseRepository,
)


@pytest.fixture(params=["memory", "sql"])
def any_repository(request):
    if request.param == "memory":
        return InMemoryAssignmentRepository()
    return SqlAssignmentRepository(request.getfixturevalue("session_factory"))


@pytest.mark.asyncio
async def test_store_and_load_round_trip(any_repository, new_assignment, employee_id):
    assignment = new_assignment()
    assert await any_repository.store(assignment) == 1
    assert not assignment.has_pending_events

    loaded = await any_repository.load(assignment.id)
    assert loaded.version == 1
    assert loaded.employee_id == employee_id
    assert loaded.workflow_state == WorkflowState.ASSIGNED


@pytest.mark.asyncio
async def test_each_store_increments_version_by_one(any_repository, new_assignment, employee_id):
    manager_id = uuid.uuid4()
    assignment = new_assignment()
    await any_repository.store(assignment)

    loaded = await any_repository.load(assignment.id)
    # Two events in one command still count as one commit
    loaded.start_work(CompletionRole.EMPLOYEE, employee_id)
    loaded.start_work(CompletionRole.MANAGER, manager_id)
    assert await any_repository.store(loaded) == 2

    reloaded = await any_repository.load(assignment.id)
    assert reloaded.version == 2
    assert reloaded.workflow_state == WorkflowState.BOTH_IN_PROGRESS


@pytest.mark.asyncio
async def test_stale_writer_is_rejected(any_repository, new_assignment, employee_id):
    assignment = new_assignment()
    await any_repository.store(assignment)

    first = await any_repository.load(assignment.id)
    second = await any_repository.load(assignment.id)
    first.start_work(CompletionRole.EMPLOYEE, employee_id)
    await any_repository.store(first)

    second.extend_due_date(first.due_date + timedelta(days=30), employee_id)
    with pytest.raises(ConcurrencyConflictError) as exc_info:
        await any_repository.store(second)
    assert exc_info.value.status_code == 409

    final = await any_repository.load(assignment.id)
    assert final.version == 2
    assert final.workflow_state == WorkflowState.EMPLOYEE_IN_PROGRESS


@pytest.mark.asyncio
async def test_load_with_expected_version(any_repository, new_assignment):
    assignment = new_assignment()
    await any_repository.store(assignment)
    assert (await any_repository.load(assignment.id, expected_version=1)).version == 1
    with pytest.raises(ConcurrencyConflictError):
        await any_repository.load(assignment.id, expected_version=0)


@pytest.mark.asyncio
async def test_duplicate_create_conflicts(any_repository, new_assignment):
    assignment = new_assignment()
    await any_repository.store(assignment)
    clone = new_assignment(assignment_id=assignment.id)
    with pytest.raises(ConcurrencyConflictError):
        await any_repository.store(clone)


@pytest.mark.asyncio
async def test_missing_assignment_loads_none(any_repository):
    assert await any_repository.load(uuid.uuid4()) is None


@pytest.mark.asyncio
async def test_store_without_changes_is_a_no_op(any_repository, new_assignment):
    assignment = new_assignment()
    await any_repository.store(assignment)
    loaded = await any_repository.load(assignment.id)
    assert await any_repository.store(loaded) == 1


@pytest.mark.asyncio
async def test_sql_rows_mirror_stream(session_factory, new_assignment, employee_id):
    repository = SqlAssignmentRepository(session_factory)
    assignment = advance_to_review(new_assignment(), employee_id, uuid.uuid4())
    await repository.store(assignment)

    with session_factory() as session:
        header = session.get(AssignmentStreamRecord, assignment.id)
        events = (session.query(AssignmentEventRecord).filter_by(assignment_id=assignment.id)
                  .order_by(AssignmentEventRecord.sequence).all())
    assert header.version == 1
    assert header.workflow_state == WorkflowState.IN_REVIEW.value
    assert [e.sequence for e in events] == list(range(len(events)))
    assert events[0].event_type == "AssignmentCreated"


@pytest.mark.asyncio
async def test_sql_response_repository_cas(session_factory, employee_id):
    repository = SqlResponseRepository(session_factory)
    assignment_id = uuid.uuid4()
    section_id, question_id = uuid.uuid4(), uuid.uuid4()

    response = QuestionnaireResponse(assignment_id, employee_id)
    response.record_answers(section_id, CompletionRole.EMPLOYEE, {question_id: "Initial"}, employee_id)
    assert await repository.store(response) == 1

    first = await repository.load(assignment_id)
    second = await repository.load(assignment_id)
    first.record_answers(section_id, CompletionRole.EMPLOYEE, {question_id: "First"}, employee_id)
    await repository.store(first)
    second.record_answers(section_id, CompletionRole.EMPLOYEE, {question_id: "Second"}, employee_id)
    with pytest.raises(ConcurrencyConflictError):
        await repository.store(second)

    stored = await repository.load(assignment_id)
    assert stored.get_answer(section_id, CompletionRole.EMPLOYEE, question_id) == "First"


@pytest.mark.asyncio
async def test_in_memory_stream_keeps_every_event_of_a_commit(new_assignment, employee_id):
    repository = InMemoryAssignmentRepository()
    assignment = new_assignment()
    await repository.store(assignment)
    assert repository.event_count(assignment.id) == 1

    loaded = await repository.load(assignment.id)
    loaded.start_work(CompletionRole.EMPLOYEE, employee_id)
    loaded.start_work(CompletionRole.MANAGER, uuid.uuid4())
    await repository.store(loaded)

    assert repository.event_count(assignment.id) == 3
    assert (await repository.load(assignment.id)).version == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("backend", ["memory", "sql"])
async def test_unchanged_response_store_is_a_no_op(request, backend, employee_id):
    if backend == "memory":
        repository = InMemoryResponseRepository()
    else:
        repository = SqlResponseRepository(request.getfixturevalue("session_factory"))
    assignment_id = uuid.uuid4()
    response = QuestionnaireResponse(assignment_id, employee_id)
    response.record_answers(uuid.uuid4(), CompletionRole.EMPLOYEE, {uuid.uuid4(): "Initial"}, employee_id)
    assert response.has_changes
    await repository.store(response)
    assert not response.has_changes

    loaded = await repository.load(assignment_id)
    assert await repository.store(loaded) == 1
    assert (await repository.load(assignment_id)).version == 1
