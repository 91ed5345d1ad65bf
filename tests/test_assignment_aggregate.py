import uuid
from datetime import date, timedelta

import pytest

from conftest import advance_to_both_submitted, advance_to_confirmed, advance_to_review
from perfreview.core.exceptions import (
    AssignmentLockedError,
    AssignmentWithdrawnError,
    BusinessRuleViolation,
    InvalidWorkflowTransitionError,
    ValidationError,
)
from perfreview.domain.events import (
    AssignmentCreated,
    EmployeeQuestionnaireSubmitted,
    QuestionnaireAutoFinalized,
    WorkflowReopened,
)
from perfreview.domain.sections import CustomSection
from perfreview.domain.workflow import CompletionRole, ConfirmationKind, WorkflowState


@pytest.fixture
def manager_id():
    return uuid.uuid4()


def test_create_raises_created_event(new_assignment, employee_id):
    assignment = new_assignment()
    assert assignment.workflow_state == WorkflowState.ASSIGNED
    assert assignment.employee_id == employee_id
    assert assignment.version == 0
    assert [type(e) for e in assignment.pending_events] == [AssignmentCreated]


def test_create_rejects_past_due_date(new_assignment):
    with pytest.raises(ValidationError):
        new_assignment(due_date=date.today() - timedelta(days=1))


def test_create_requires_employee_name(new_assignment):
    with pytest.raises(ValidationError):
        new_assignment(employee_name="  ")


def test_full_lifecycle_to_finalized(new_assignment, employee_id, manager_id):
    assignment = advance_to_confirmed(new_assignment(), employee_id, manager_id)
    assert assignment.workflow_state == WorkflowState.EMPLOYEE_REVIEW_CONFIRMED
    assert assignment.employee_confirmation_kind == ConfirmationKind.CONFIRMED

    assignment.finalize_as_manager(manager_id, "Well done")
    assert assignment.workflow_state == WorkflowState.FINALIZED
    assert assignment.is_locked
    assert assignment.final_notes == "Well done"
    assert assignment.completed_date is not None


def test_sign_off_records_distinct_kind(new_assignment, employee_id, manager_id):
    assignment = advance_to_review(new_assignment(), employee_id, manager_id)
    assignment.finish_review_meeting(manager_id)
    assignment.sign_off_review_outcome_as_employee(employee_id, "Signed")
    assert assignment.workflow_state == WorkflowState.EMPLOYEE_REVIEW_CONFIRMED
    assert assignment.employee_confirmation_kind == ConfirmationKind.SIGNED_OFF


def test_finalize_before_confirmation_fails_and_leaves_state(new_assignment, employee_id, manager_id):
    assignment = advance_to_review(new_assignment(), employee_id, manager_id)
    assignment.finish_review_meeting(manager_id)
    pending_before = len(assignment.pending_events)

    with pytest.raises(BusinessRuleViolation):
        assignment.finalize_as_manager(manager_id)

    assert assignment.workflow_state == WorkflowState.REVIEW_FINISHED
    assert len(assignment.pending_events) == pending_before


def test_auto_finalize_without_manager_review(new_assignment, employee_id):
    assignment = new_assignment(requires_manager_review=False)
    assignment.start_work(CompletionRole.EMPLOYEE, employee_id)
    assignment.submit_employee_questionnaire(employee_id)

    assert assignment.workflow_state == WorkflowState.FINALIZED
    assert isinstance(assignment.pending_events[-2], EmployeeQuestionnaireSubmitted)
    assert isinstance(assignment.pending_events[-1], QuestionnaireAutoFinalized)


def test_manager_submission_rejected_when_review_not_required(new_assignment, manager_id):
    assignment = new_assignment(requires_manager_review=False)
    with pytest.raises(BusinessRuleViolation) as exc_info:
        assignment.submit_manager_questionnaire(manager_id)
    assert exc_info.value.error_code == "MANAGER_REVIEW_NOT_REQUIRED"


def test_submit_requires_started_work(new_assignment, employee_id, manager_id):
    assignment = new_assignment()
    assignment.start_initialization(manager_id)
    with pytest.raises(BusinessRuleViolation) as exc_info:
        assignment.submit_employee_questionnaire(employee_id)
    assert exc_info.value.error_code == "WORK_NOT_STARTED"


def test_double_submission_rejected(new_assignment, employee_id):
    assignment = new_assignment()
    assignment.start_work(CompletionRole.EMPLOYEE, employee_id)
    assignment.submit_employee_questionnaire(employee_id)
    with pytest.raises(BusinessRuleViolation):
        assignment.submit_employee_questionnaire(employee_id)


def test_initiate_review_reports_missing_submission(new_assignment, employee_id, manager_id):
    assignment = new_assignment()
    assignment.start_work(CompletionRole.EMPLOYEE, employee_id)
    assignment.submit_employee_questionnaire(employee_id)
    with pytest.raises(BusinessRuleViolation) as exc_info:
        assignment.initiate_review(manager_id)
    assert exc_info.value.details["missing"] == ["manager"]


def test_section_completion_moves_to_in_progress(new_assignment, employee_id):
    assignment = new_assignment()
    section_id = uuid.uuid4()
    assignment.complete_section(CompletionRole.EMPLOYEE, section_id, employee_id)
    assert assignment.workflow_state == WorkflowState.EMPLOYEE_IN_PROGRESS
    assert assignment.section_progress[section_id].is_employee_completed

    with pytest.raises(BusinessRuleViolation):
        assignment.complete_section(CompletionRole.EMPLOYEE, section_id, employee_id)


def test_bulk_section_completion_skips_done_sections(new_assignment, manager_id):
    assignment = new_assignment()
    first, second = uuid.uuid4(), uuid.uuid4()
    assignment.complete_sections(CompletionRole.MANAGER, [first], manager_id)
    assignment.complete_sections(CompletionRole.MANAGER, [first, second], manager_id)
    assert assignment.pending_events[-1].section_ids == [second]
    assert assignment.workflow_state == WorkflowState.MANAGER_IN_PROGRESS


def test_custom_sections_only_during_initialization(new_assignment, manager_id):
    assignment = new_assignment()
    section = CustomSection(id=uuid.uuid4(), title="Team goals", is_instance_specific=False)
    with pytest.raises(BusinessRuleViolation):
        assignment.add_custom_sections([section], manager_id)

    assignment.start_initialization(manager_id, "Add team goals")
    assignment.add_custom_sections([section], manager_id)
    assert assignment.custom_sections[0].is_instance_specific is True

    with pytest.raises(BusinessRuleViolation):
        assignment.add_custom_sections([section], manager_id)


def test_initialization_only_once(new_assignment, manager_id):
    assignment = new_assignment()
    assignment.start_initialization(manager_id)
    with pytest.raises(BusinessRuleViolation):
        assignment.start_initialization(manager_id)


# --- Lock and withdrawal ---

def test_locked_assignment_rejects_every_mutation(new_assignment, employee_id, manager_id):
    assignment = advance_to_confirmed(new_assignment(), employee_id, manager_id)
    assignment.finalize_as_manager(manager_id)

    mutations = [
        lambda: assignment.withdraw(manager_id),
        lambda: assignment.extend_due_date(date.today() + timedelta(days=90), manager_id),
        lambda: assignment.reopen_workflow(WorkflowState.IN_REVIEW, "Needs another look", manager_id, "HR"),
        lambda: assignment.add_in_review_note("late note", manager_id),
        lambda: assignment.start_work(CompletionRole.EMPLOYEE, employee_id),
        lambda: assignment.link_employee_feedback(uuid.uuid4(), uuid.uuid4(), CompletionRole.MANAGER, manager_id),
    ]
    for mutate in mutations:
        with pytest.raises(AssignmentLockedError):
            mutate()


def test_withdrawn_assignment_is_terminal(new_assignment, employee_id, manager_id):
    assignment = new_assignment()
    assignment.start_initialization(manager_id)
    assignment.withdraw(manager_id, "Left the company")
    assert assignment.is_withdrawn

    with pytest.raises(AssignmentWithdrawnError):
        assignment.reopen_workflow(WorkflowState.INITIALIZED, "Reopen after withdrawal", manager_id, "HR")
    with pytest.raises(AssignmentWithdrawnError):
        assignment.submit_employee_questionnaire(employee_id)
    with pytest.raises(AssignmentWithdrawnError):
        assignment.withdraw(manager_id)
    assert not assignment.can_edit_answers(CompletionRole.EMPLOYEE)


def test_extend_due_date(new_assignment, manager_id):
    assignment = new_assignment()
    new_due = date.today() + timedelta(days=60)
    assignment.extend_due_date(new_due, manager_id, "Holiday season")
    assert assignment.due_date == new_due
    with pytest.raises(BusinessRuleViolation):
        assignment.extend_due_date(new_due, manager_id)


# --- Reopen ---

def test_reopen_reason_boundary(new_assignment, employee_id, manager_id):
    assignment = advance_to_review(new_assignment(), employee_id, manager_id)
    with pytest.raises(ValidationError):
        assignment.reopen_workflow(WorkflowState.BOTH_SUBMITTED, "x" * 9, manager_id, "TeamLead")
    assert assignment.workflow_state == WorkflowState.IN_REVIEW

    assignment.reopen_workflow(WorkflowState.BOTH_SUBMITTED, "x" * 10, manager_id, "TeamLead")
    assert assignment.workflow_state == WorkflowState.BOTH_SUBMITTED
    assert assignment.review_initiated_date is None
    assert isinstance(assignment.pending_events[-1], WorkflowReopened)


def test_reopen_to_in_progress_clears_submission(new_assignment, employee_id, manager_id):
    assignment = new_assignment()
    assignment.start_work(CompletionRole.EMPLOYEE, employee_id)
    assignment.submit_employee_questionnaire(employee_id)

    assignment.reopen_workflow(WorkflowState.EMPLOYEE_IN_PROGRESS, "Missing a section", manager_id, "HR")

    assert assignment.workflow_state == WorkflowState.EMPLOYEE_IN_PROGRESS
    assert not assignment.is_employee_submitted
    assert assignment.can_edit_answers(CompletionRole.EMPLOYEE)
    assignment.submit_employee_questionnaire(employee_id)
    assert assignment.workflow_state == WorkflowState.EMPLOYEE_SUBMITTED


def test_reopen_employee_side_keeps_manager_progress(new_assignment, employee_id, manager_id):
    assignment = new_assignment()
    assignment.start_work(CompletionRole.EMPLOYEE, employee_id)
    assignment.start_work(CompletionRole.MANAGER, manager_id)
    assignment.submit_employee_questionnaire(employee_id)

    assignment.reopen_workflow(WorkflowState.EMPLOYEE_IN_PROGRESS, "Fix a typo in goals", manager_id, "HR")

    assert assignment.workflow_state == WorkflowState.BOTH_IN_PROGRESS
    assert assignment.reopen_history[-1].to_state == WorkflowState.EMPLOYEE_IN_PROGRESS
    assignment.submit_manager_questionnaire(manager_id)
    assert assignment.workflow_state == WorkflowState.MANAGER_SUBMITTED
    assignment.submit_employee_questionnaire(employee_id)
    assert assignment.workflow_state == WorkflowState.BOTH_SUBMITTED


def test_reopen_manager_side_keeps_employee_progress(new_assignment, employee_id, manager_id):
    assignment = new_assignment()
    assignment.start_work(CompletionRole.EMPLOYEE, employee_id)
    assignment.start_work(CompletionRole.MANAGER, manager_id)
    assignment.submit_manager_questionnaire(manager_id)

    assignment.reopen_workflow(WorkflowState.MANAGER_IN_PROGRESS, "Manager rating needs rework", manager_id, "HR")

    assert assignment.workflow_state == WorkflowState.BOTH_IN_PROGRESS
    assert not assignment.is_manager_submitted
    assignment.submit_employee_questionnaire(employee_id)
    assert assignment.workflow_state == WorkflowState.EMPLOYEE_SUBMITTED


def test_reopened_state_survives_rehydrate(new_assignment, employee_id, manager_id):
    assignment = new_assignment()
    assignment.start_work(CompletionRole.EMPLOYEE, employee_id)
    assignment.start_work(CompletionRole.MANAGER, manager_id)
    assignment.submit_employee_questionnaire(employee_id)
    assignment.reopen_workflow(WorkflowState.EMPLOYEE_IN_PROGRESS, "Fix a typo in goals", manager_id, "HR")

    replayed = type(assignment).rehydrate([(1, event) for event in assignment.pending_events])
    assert replayed.workflow_state == WorkflowState.BOTH_IN_PROGRESS


def test_reopen_to_initialized_resets_progress(new_assignment, employee_id, manager_id):
    assignment = advance_to_both_submitted(new_assignment(), employee_id, manager_id)
    assignment.reopen_workflow(WorkflowState.INITIALIZED, "Template was wrong", manager_id, "HR")

    assert assignment.workflow_state == WorkflowState.INITIALIZED
    assert not assignment.is_employee_submitted
    assert not assignment.is_manager_submitted
    assert not assignment.has_started(CompletionRole.EMPLOYEE)
    assert assignment.reopen_history[-1].from_state == WorkflowState.BOTH_SUBMITTED


def test_reopen_confirmed_review_clears_confirmation(new_assignment, employee_id, manager_id):
    assignment = advance_to_confirmed(new_assignment(), employee_id, manager_id)
    assignment.reopen_workflow(WorkflowState.IN_REVIEW, "Outcome disputed", manager_id, "HRLead")

    assert assignment.workflow_state == WorkflowState.IN_REVIEW
    assert assignment.employee_confirmation_kind is None
    assert assignment.review_finished_date is None


def test_reopen_rejects_invalid_target(new_assignment, employee_id, manager_id):
    assignment = advance_to_review(new_assignment(), employee_id, manager_id)
    with pytest.raises(InvalidWorkflowTransitionError):
        assignment.reopen_workflow(WorkflowState.INITIALIZED, "Start over please", manager_id, "HR")


# --- Event sourcing ---

def test_rehydrate_replays_to_same_state(new_assignment, employee_id, manager_id):
    assignment = advance_to_review(new_assignment(), employee_id, manager_id)
    note = assignment.add_in_review_note("Discussed growth areas", manager_id)
    history = [(1, event) for event in assignment.pending_events]

    restored = type(assignment).rehydrate(history)

    assert restored.id == assignment.id
    assert restored.version == 1
    assert restored.workflow_state == WorkflowState.IN_REVIEW
    assert restored.find_note(note.id).content == "Discussed growth areas"
    assert not restored.has_pending_events
