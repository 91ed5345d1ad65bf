import pytest

from perfreview.core.exceptions import InvalidWorkflowTransitionError
from perfreview.domain.workflow import (
    FORWARD_TRANSITIONS,
    REOPEN_TRANSITIONS,
    CompletionRole,
    WorkflowState as S,
    can_edit_answers,
    can_edit_goals,
    can_transition,
    determine_progress_state,
    determine_submission_state,
    ensure_reopen,
    ensure_transition,
    is_reopenable,
    phase_of,
)


def test_every_state_has_a_forward_entry():
    assert set(FORWARD_TRANSITIONS) == set(S)


def test_finalized_is_terminal():
    assert not FORWARD_TRANSITIONS[S.FINALIZED]
    assert not is_reopenable(S.FINALIZED)


def test_reopen_targets_are_strictly_earlier():
    for current, targets in REOPEN_TRANSITIONS.items():
        for target in targets:
            assert phase_of(target) < phase_of(current), f"{current} -> {target}"


def test_assigned_and_initialized_are_not_reopenable():
    assert not is_reopenable(S.ASSIGNED)
    assert not is_reopenable(S.INITIALIZED)


@pytest.mark.parametrize("current, target", [
    (S.ASSIGNED, S.INITIALIZED),
    (S.INITIALIZED, S.EMPLOYEE_IN_PROGRESS),
    (S.EMPLOYEE_SUBMITTED, S.FINALIZED),
    (S.BOTH_SUBMITTED, S.IN_REVIEW),
    (S.EMPLOYEE_REVIEW_CONFIRMED, S.FINALIZED),
])
def test_allowed_forward_transitions(current, target):
    assert can_transition(current, target)
    ensure_transition(current, target)


def test_disallowed_transition_reports_valid_targets():
    with pytest.raises(InvalidWorkflowTransitionError) as exc_info:
        ensure_transition(S.BOTH_SUBMITTED, S.FINALIZED)
    assert exc_info.value.details["valid_targets"] == [S.IN_REVIEW.value]
    assert exc_info.value.status_code == 400


def test_reopen_rejects_unlisted_target():
    ensure_reopen(S.IN_REVIEW, S.BOTH_SUBMITTED)
    with pytest.raises(InvalidWorkflowTransitionError):
        ensure_reopen(S.IN_REVIEW, S.INITIALIZED)


def test_reopen_rejects_forward_target():
    with pytest.raises(InvalidWorkflowTransitionError):
        ensure_reopen(S.EMPLOYEE_SUBMITTED, S.BOTH_SUBMITTED)


def test_progress_state_combines_both_sides():
    assert determine_progress_state(S.INITIALIZED, True, False) == S.EMPLOYEE_IN_PROGRESS
    assert determine_progress_state(S.INITIALIZED, False, True) == S.MANAGER_IN_PROGRESS
    assert determine_progress_state(S.EMPLOYEE_IN_PROGRESS, True, True) == S.BOTH_IN_PROGRESS
    assert determine_progress_state(S.ASSIGNED, False, False) == S.ASSIGNED


def test_progress_never_moves_submitted_states():
    assert determine_progress_state(S.EMPLOYEE_SUBMITTED, True, True) == S.EMPLOYEE_SUBMITTED
    assert determine_progress_state(S.IN_REVIEW, True, True) == S.IN_REVIEW


def test_submission_state():
    assert determine_submission_state(True, False) == S.EMPLOYEE_SUBMITTED
    assert determine_submission_state(False, True) == S.MANAGER_SUBMITTED
    assert determine_submission_state(True, True) == S.BOTH_SUBMITTED
    with pytest.raises(ValueError):
        determine_submission_state(False, False)


def test_goal_editing_is_tied_to_the_acting_side():
    assert can_edit_goals(S.EMPLOYEE_IN_PROGRESS, CompletionRole.EMPLOYEE)
    assert not can_edit_goals(S.EMPLOYEE_IN_PROGRESS, CompletionRole.MANAGER)
    assert can_edit_goals(S.IN_REVIEW, CompletionRole.MANAGER)
    assert not can_edit_goals(S.IN_REVIEW, CompletionRole.EMPLOYEE)


def test_answers_close_after_own_submission():
    assert can_edit_answers(S.MANAGER_SUBMITTED, CompletionRole.EMPLOYEE)
    assert not can_edit_answers(S.EMPLOYEE_SUBMITTED, CompletionRole.EMPLOYEE)
    assert not can_edit_answers(S.FINALIZED, CompletionRole.MANAGER)
