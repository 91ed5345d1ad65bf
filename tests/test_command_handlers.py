import uuid
from datetime import date, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from conftest import goal_window
from perfreview.core.exceptions import (
    AccessDeniedError,
    AssignmentWithdrawnError,
    BusinessRuleViolation,
    ConcurrencyConflictError,
    NotFoundError,
    StorageUnavailableError,
    ValidationError,
)
from perfreview.domain.workflow import CompletionRole, WorkflowState
from perfreview.schemas.assignment import (
    AddGoalCommand,
    AddInReviewNoteCommand,
    CreateAssignmentCommand,
    CreateBulkAssignmentsCommand,
    BulkAssignmentTarget,
    FeedbackLinkCommand,
    FinalizeAsManagerCommand,
    FinishReviewMeetingCommand,
    InitiateReviewCommand,
    LinkPredecessorCommand,
    RatePredecessorGoalCommand,
    ReopenQuestionnaireCommand,
    ReviewOutcomeCommand,
    SaveAnswersCommand,
    SendReminderCommand,
    StartInitializationCommand,
    SubmitQuestionnaireCommand,
    WithdrawCommand,
    WorkCommand,
)
from perfreview.services.assignment_service import QuestionnaireAssignmentService
from perfreview.services.feedback import FeedbackInfo


def _create_command(employee_id, **overrides):
    data = dict(
        template_id=uuid.uuid4(),
        employee_id=employee_id,
        employee_name="Jane Doe",
        employee_email="jane.doe@example.com",
        due_date=date.today() + timedelta(days=30),
    )
    data.update(overrides)
    return CreateAssignmentCommand(**data)


async def _create(service, actor, employee_id, **overrides):
    return await service.create_assignment(actor, _create_command(employee_id, **overrides))


async def _to_both_submitted(service, team_lead, employee, assignment_id):
    await service.start_initialization(team_lead, assignment_id, StartInitializationCommand())
    await service.start_work(employee, assignment_id, WorkCommand(role=CompletionRole.EMPLOYEE))
    await service.start_work(team_lead, assignment_id, WorkCommand(role=CompletionRole.MANAGER))
    current = await service.get_assignment(employee, assignment_id)
    await service.submit_employee_questionnaire(
        employee, assignment_id, SubmitQuestionnaireCommand(expected_version=current.version),
    )
    return await service.submit_manager_questionnaire(
        team_lead, assignment_id, SubmitQuestionnaireCommand(expected_version=current.version + 1),
    )


# --- Creation ---

@pytest.mark.asyncio
async def test_team_lead_creates_for_team_member(service, team_lead, employee_id):
    accepted = await _create(service, team_lead, employee_id)
    assert accepted.version == 1
    assert accepted.workflow_state == WorkflowState.ASSIGNED


@pytest.mark.asyncio
async def test_employee_cannot_create(service, employee, employee_id):
    with pytest.raises(AccessDeniedError):
        await _create(service, employee, employee_id)


@pytest.mark.asyncio
async def test_bulk_create_checks_every_target_first(service, repository, team_lead, employee_id):
    stranger = uuid.uuid4()
    command = CreateBulkAssignmentsCommand(
        template_id=uuid.uuid4(),
        employees=[
            BulkAssignmentTarget(employee_id=employee_id, employee_name="Jane", employee_email="jane@example.com"),
            BulkAssignmentTarget(employee_id=stranger, employee_name="Sam", employee_email="sam@example.com"),
        ],
    )
    with pytest.raises(AccessDeniedError):
        await service.create_bulk_assignments(team_lead, command)


@pytest.mark.asyncio
async def test_bulk_create_as_hr(service, hr):
    command = CreateBulkAssignmentsCommand(
        template_id=uuid.uuid4(),
        employees=[
            BulkAssignmentTarget(employee_id=uuid.uuid4(), employee_name=f"E{i}", employee_email=f"e{i}@example.com")
            for i in range(3)
        ],
    )
    results = await service.create_bulk_assignments(hr, command)
    assert len(results) == 3
    assert len({r.assignment_id for r in results}) == 3


# --- Scenario from creation to submission ---

@pytest.mark.asyncio
async def test_submit_with_current_version_then_stale_version(service, team_lead, employee, employee_id):
    created = await _create(service, team_lead, employee_id)
    assignment_id = created.assignment_id
    await service.start_initialization(team_lead, assignment_id, StartInitializationCommand())
    await service.start_work(employee, assignment_id, WorkCommand(role=CompletionRole.EMPLOYEE))
    start, end = goal_window()
    goal = await service.add_goal(employee, assignment_id, AddGoalCommand(
        question_id=uuid.uuid4(), role=CompletionRole.EMPLOYEE, timeframe_from=start, timeframe_to=end,
        objective_description="Mentor two juniors", measurement_metric="Both promoted",
        weighting_percentage=Decimal("0"),
    ))
    assert goal.entity_id is not None

    stale = goal.version - 1
    with pytest.raises(ConcurrencyConflictError):
        await service.submit_employee_questionnaire(
            employee, assignment_id, SubmitQuestionnaireCommand(expected_version=stale),
        )

    submitted = await service.submit_employee_questionnaire(
        employee, assignment_id, SubmitQuestionnaireCommand(expected_version=goal.version),
    )
    assert submitted.version == goal.version + 1
    assert submitted.workflow_state == WorkflowState.EMPLOYEE_SUBMITTED


@pytest.mark.asyncio
async def test_employee_cannot_do_manager_work(service, team_lead, employee, employee_id):
    created = await _create(service, team_lead, employee_id)
    with pytest.raises(AccessDeniedError):
        await service.start_work(employee, created.assignment_id, WorkCommand(role=CompletionRole.MANAGER))


@pytest.mark.asyncio
async def test_missing_assignment_is_not_found(service, hr):
    with pytest.raises(NotFoundError):
        await service.get_assignment(hr, uuid.uuid4())


@pytest.mark.asyncio
async def test_outsider_cannot_view(service, team_lead, outside_team_lead, employee_id):
    created = await _create(service, team_lead, employee_id)
    with pytest.raises(AccessDeniedError):
        await service.get_assignment(outside_team_lead, created.assignment_id)


# --- Reopen ---

@pytest.mark.asyncio
async def test_reopen_outside_hierarchy_denied_regardless_of_target(service, team_lead, outside_team_lead, employee, employee_id):
    created = await _create(service, team_lead, employee_id)
    await _to_both_submitted(service, team_lead, employee, created.assignment_id)
    for target in (WorkflowState.BOTH_IN_PROGRESS, WorkflowState.FINALIZED):
        with pytest.raises(AccessDeniedError):
            await service.reopen(outside_team_lead, created.assignment_id, ReopenQuestionnaireCommand(
                target_state=target, reason="Needs another pass",
            ))


@pytest.mark.asyncio
async def test_reopen_reason_validated_before_load(service, hr):
    with pytest.raises(ValidationError):
        await service.reopen(hr, uuid.uuid4(), ReopenQuestionnaireCommand(
            target_state=WorkflowState.INITIALIZED, reason="too short",
        ))


@pytest.mark.asyncio
async def test_reopen_after_withdraw_fails(service, team_lead, employee_id):
    created = await _create(service, team_lead, employee_id)
    await service.start_initialization(team_lead, created.assignment_id, StartInitializationCommand())
    await service.withdraw(team_lead, created.assignment_id, WithdrawCommand(reason="Reorg"))
    with pytest.raises(AssignmentWithdrawnError):
        await service.reopen(team_lead, created.assignment_id, ReopenQuestionnaireCommand(
            target_state=WorkflowState.INITIALIZED, reason="Changed my mind",
        ))


@pytest.mark.asyncio
async def test_reopen_notifies_and_tolerates_notification_failure(repository, guard, team_lead, employee, employee_id):
    notifications = AsyncMock()
    notifications.notify_questionnaire_reopened.side_effect = StorageUnavailableError()
    service = QuestionnaireAssignmentService(repository, guard, notifications=notifications)
    created = await _create(service, team_lead, employee_id)
    await _to_both_submitted(service, team_lead, employee, created.assignment_id)

    accepted = await service.reopen(team_lead, created.assignment_id, ReopenQuestionnaireCommand(
        target_state=WorkflowState.BOTH_IN_PROGRESS, reason="Missing achievements",
    ))

    assert accepted.workflow_state == WorkflowState.BOTH_IN_PROGRESS
    notifications.notify_questionnaire_reopened.assert_awaited_once()
    record = notifications.notify_questionnaire_reopened.await_args.args[1]
    assert record.reason == "Missing achievements"


# --- Review phase ---

@pytest.mark.asyncio
async def test_review_through_finalize(service, team_lead, employee, employee_id):
    created = await _create(service, team_lead, employee_id)
    assignment_id = created.assignment_id
    await _to_both_submitted(service, team_lead, employee, assignment_id)
    await service.initiate_review(team_lead, assignment_id, InitiateReviewCommand())
    note = await service.add_in_review_note(team_lead, assignment_id, AddInReviewNoteCommand(content="Good progress"))
    assert note.entity_id is not None
    await service.finish_review_meeting(team_lead, assignment_id, FinishReviewMeetingCommand(summary="Solid year"))

    with pytest.raises(AccessDeniedError):
        await service.confirm_review_outcome(team_lead, assignment_id, ReviewOutcomeCommand())
    confirmed = await service.confirm_review_outcome(employee, assignment_id, ReviewOutcomeCommand(comments="Thanks"))

    finalized = await service.finalize_as_manager(
        team_lead, assignment_id, FinalizeAsManagerCommand(expected_version=confirmed.version),
    )
    assert finalized.workflow_state == WorkflowState.FINALIZED

    view = await service.get_assignment(employee, assignment_id)
    assert view.is_locked
    assert view.review_summary == "Solid year"
    assert [n.content for n in view.notes] == ["Good progress"]


@pytest.mark.asyncio
async def test_finalize_early_leaves_state(service, team_lead, employee, employee_id):
    created = await _create(service, team_lead, employee_id)
    submitted = await _to_both_submitted(service, team_lead, employee, created.assignment_id)
    with pytest.raises(BusinessRuleViolation):
        await service.finalize_as_manager(
            team_lead, created.assignment_id, FinalizeAsManagerCommand(expected_version=submitted.version),
        )
    view = await service.get_assignment(team_lead, created.assignment_id)
    assert view.workflow_state == WorkflowState.BOTH_SUBMITTED
    assert view.version == submitted.version


# --- Predecessors ---

@pytest.mark.asyncio
async def test_link_predecessor_requires_finalized_same_employee(service, hr, employee_id):
    previous = await _create(service, hr, employee_id)
    current = await _create(service, hr, employee_id)
    await service.start_work(hr, current.assignment_id, WorkCommand(role=CompletionRole.EMPLOYEE))

    with pytest.raises(BusinessRuleViolation) as exc_info:
        await service.link_predecessor(hr, current.assignment_id, LinkPredecessorCommand(
            question_id=uuid.uuid4(), predecessor_assignment_id=previous.assignment_id, role=CompletionRole.EMPLOYEE,
        ))
    assert exc_info.value.error_code == "PREDECESSOR_NOT_FINALIZED"

    other = await _create(service, hr, uuid.uuid4())
    with pytest.raises(BusinessRuleViolation) as exc_info:
        await service.link_predecessor(hr, current.assignment_id, LinkPredecessorCommand(
            question_id=uuid.uuid4(), predecessor_assignment_id=other.assignment_id, role=CompletionRole.EMPLOYEE,
        ))
    assert exc_info.value.error_code == "INVALID_PREDECESSOR"

    with pytest.raises(NotFoundError):
        await service.link_predecessor(hr, current.assignment_id, LinkPredecessorCommand(
            question_id=uuid.uuid4(), predecessor_assignment_id=uuid.uuid4(), role=CompletionRole.EMPLOYEE,
        ))


@pytest.mark.asyncio
async def test_rate_predecessor_reads_snapshot(service, hr, employee_id):
    previous = await _create(service, hr, employee_id, requires_manager_review=False)
    await service.start_work(hr, previous.assignment_id, WorkCommand(role=CompletionRole.EMPLOYEE))
    start, end = goal_window()
    question_id = uuid.uuid4()
    goal = await service.add_goal(hr, previous.assignment_id, AddGoalCommand(
        question_id=question_id, role=CompletionRole.EMPLOYEE, timeframe_from=start, timeframe_to=end,
        objective_description="Cut build time", measurement_metric="Under ten minutes",
        weighting_percentage=Decimal("30"),
    ))
    finalized = await service.submit_employee_questionnaire(
        hr, previous.assignment_id, SubmitQuestionnaireCommand(expected_version=goal.version),
    )
    assert finalized.workflow_state == WorkflowState.FINALIZED

    current = await _create(service, hr, employee_id)
    await service.start_work(hr, current.assignment_id, WorkCommand(role=CompletionRole.EMPLOYEE))
    await service.link_predecessor(hr, current.assignment_id, LinkPredecessorCommand(
        question_id=question_id, predecessor_assignment_id=previous.assignment_id, role=CompletionRole.EMPLOYEE,
    ))
    rated = await service.rate_predecessor_goal(hr, current.assignment_id, RatePredecessorGoalCommand(
        question_id=question_id, source_assignment_id=previous.assignment_id, source_goal_id=goal.entity_id,
        role=CompletionRole.EMPLOYEE, degree_of_achievement=Decimal("85"), justification="Nine minutes on average",
    ))

    view = await service.get_assignment(hr, current.assignment_id)
    rating = view.predecessor_ratings[0]
    assert rating.id == rated.entity_id
    assert rating.snapshot.objective_description == "Cut build time"
    assert rating.snapshot.weighting_percentage == Decimal("30")


# --- Feedback ---

@pytest.mark.asyncio
async def test_feedback_link_validation(service, feedback, hr, employee_id):
    created = await _create(service, hr, employee_id)
    await service.start_work(hr, created.assignment_id, WorkCommand(role=CompletionRole.EMPLOYEE))
    own = FeedbackInfo(id=uuid.uuid4(), employee_id=employee_id)
    deleted = FeedbackInfo(id=uuid.uuid4(), employee_id=employee_id, is_deleted=True)
    foreign = FeedbackInfo(id=uuid.uuid4(), employee_id=uuid.uuid4())
    for item in (own, deleted, foreign):
        feedback.add(item)

    def link(feedback_id):
        return service.link_employee_feedback(hr, created.assignment_id, FeedbackLinkCommand(
            question_id=uuid.uuid4(), feedback_id=feedback_id, role=CompletionRole.EMPLOYEE,
        ))

    await link(own.id)
    with pytest.raises(BusinessRuleViolation) as exc_info:
        await link(deleted.id)
    assert exc_info.value.error_code == "FEEDBACK_DELETED"
    with pytest.raises(BusinessRuleViolation) as exc_info:
        await link(foreign.id)
    assert exc_info.value.error_code == "FEEDBACK_EMPLOYEE_MISMATCH"
    with pytest.raises(NotFoundError):
        await link(uuid.uuid4())


# --- Answers and reminders ---

@pytest.mark.asyncio
async def test_save_answers_follows_editable_states(service, team_lead, employee, employee_id):
    created = await _create(service, team_lead, employee_id)
    section_id, question_id = uuid.uuid4(), uuid.uuid4()
    saved = await service.save_answers(employee, created.assignment_id, SaveAnswersCommand(
        role=CompletionRole.EMPLOYEE, section_id=section_id, answers={question_id: "My answer"},
    ))
    assert saved.version == 1

    await service.start_work(employee, created.assignment_id, WorkCommand(role=CompletionRole.EMPLOYEE))
    current = await service.get_assignment(employee, created.assignment_id)
    await service.submit_employee_questionnaire(
        employee, created.assignment_id, SubmitQuestionnaireCommand(expected_version=current.version),
    )
    with pytest.raises(BusinessRuleViolation) as exc_info:
        await service.save_answers(employee, created.assignment_id, SaveAnswersCommand(
            role=CompletionRole.EMPLOYEE, section_id=section_id, answers={question_id: "Changed"},
        ))
    assert exc_info.value.error_code == "ANSWERS_NOT_EDITABLE"

    response = await service.get_response(employee, created.assignment_id)
    assert response.answers[str(section_id)]["Employee"][str(question_id)] == "My answer"


@pytest.mark.asyncio
async def test_send_reminder_keeps_version(repository, guard, team_lead, employee_id):
    notifications = AsyncMock()
    service = QuestionnaireAssignmentService(repository, guard, notifications=notifications)
    created = await _create(service, team_lead, employee_id)

    accepted = await service.send_reminder(team_lead, created.assignment_id, SendReminderCommand(message="Due soon"))

    assert accepted.version == created.version
    notifications.notify_assignment_reminder.assert_awaited_once()
    assert notifications.notify_assignment_reminder.await_args.args[1] == "Due soon"
