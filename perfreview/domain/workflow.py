"""
Review workflow state machine.

Holds the state enum, the canonical phase ordering, and the forward and
reopen transition tables. Everything here is pure: the aggregate asks these
functions whether a move is legal and which state a given combination of
employee and manager progress maps to.
"""
import enum
from typing import Dict, FrozenSet

from perfreview.core.exceptions import InvalidWorkflowTransitionError


class WorkflowState(str, enum.Enum):
    ASSIGNED = "Assigned"
    INITIALIZED = "Initialized"
    EMPLOYEE_IN_PROGRESS = "EmployeeInProgress"
    MANAGER_IN_PROGRESS = "ManagerInProgress"
    BOTH_IN_PROGRESS = "BothInProgress"
    EMPLOYEE_SUBMITTED = "EmployeeSubmitted"
    MANAGER_SUBMITTED = "ManagerSubmitted"
    BOTH_SUBMITTED = "BothSubmitted"
    IN_REVIEW = "InReview"
    REVIEW_FINISHED = "ReviewFinished"
    AWAITING_EMPLOYEE_SIGN_OFF = "AwaitingEmployeeSignOff"
    EMPLOYEE_REVIEW_CONFIRMED = "EmployeeReviewConfirmed"
    FINALIZED = "Finalized"


class CompletionRole(str, enum.Enum):
    """Which side of the questionnaire an action belongs to."""
    EMPLOYEE = "Employee"
    MANAGER = "Manager"


class ConfirmationKind(str, enum.Enum):
    CONFIRMED = "Confirmed"
    SIGNED_OFF = "SignedOff"


S = WorkflowState

PHASE_RANK: Dict[WorkflowState, int] = {
    S.ASSIGNED: 0,
    S.INITIALIZED: 1,
    S.EMPLOYEE_IN_PROGRESS: 2,
    S.MANAGER_IN_PROGRESS: 2,
    S.BOTH_IN_PROGRESS: 2,
    S.EMPLOYEE_SUBMITTED: 3,
    S.MANAGER_SUBMITTED: 3,
    S.BOTH_SUBMITTED: 3,
    S.IN_REVIEW: 4,
    S.REVIEW_FINISHED: 5,
    S.AWAITING_EMPLOYEE_SIGN_OFF: 5,
    S.EMPLOYEE_REVIEW_CONFIRMED: 6,
    S.FINALIZED: 7,
}

IN_PROGRESS_STATES: FrozenSet[WorkflowState] = frozenset({S.EMPLOYEE_IN_PROGRESS, S.MANAGER_IN_PROGRESS, S.BOTH_IN_PROGRESS})

FORWARD_TRANSITIONS: Dict[WorkflowState, FrozenSet[WorkflowState]] = {
    S.ASSIGNED: frozenset({S.INITIALIZED}) | IN_PROGRESS_STATES,
    S.INITIALIZED: IN_PROGRESS_STATES,
    S.EMPLOYEE_IN_PROGRESS: frozenset({S.BOTH_IN_PROGRESS, S.EMPLOYEE_SUBMITTED}),
    S.MANAGER_IN_PROGRESS: frozenset({S.BOTH_IN_PROGRESS, S.MANAGER_SUBMITTED}),
    S.BOTH_IN_PROGRESS: frozenset({S.EMPLOYEE_SUBMITTED, S.MANAGER_SUBMITTED}),
    # Finalized is reached directly when no manager review is required
    S.EMPLOYEE_SUBMITTED: frozenset({S.BOTH_SUBMITTED, S.FINALIZED}),
    S.MANAGER_SUBMITTED: frozenset({S.BOTH_SUBMITTED}),
    S.BOTH_SUBMITTED: frozenset({S.IN_REVIEW}),
    S.IN_REVIEW: frozenset({S.REVIEW_FINISHED, S.AWAITING_EMPLOYEE_SIGN_OFF}),
    S.REVIEW_FINISHED: frozenset({S.EMPLOYEE_REVIEW_CONFIRMED}),
    S.AWAITING_EMPLOYEE_SIGN_OFF: frozenset({S.EMPLOYEE_REVIEW_CONFIRMED}),
    S.EMPLOYEE_REVIEW_CONFIRMED: frozenset({S.FINALIZED}),
    S.FINALIZED: frozenset(),
}

REOPEN_TRANSITIONS: Dict[WorkflowState, FrozenSet[WorkflowState]] = {
    S.EMPLOYEE_IN_PROGRESS: frozenset({S.INITIALIZED}),
    S.MANAGER_IN_PROGRESS: frozenset({S.INITIALIZED}),
    S.BOTH_IN_PROGRESS: frozenset({S.INITIALIZED}),
    S.EMPLOYEE_SUBMITTED: frozenset({S.EMPLOYEE_IN_PROGRESS, S.INITIALIZED}),
    S.MANAGER_SUBMITTED: frozenset({S.MANAGER_IN_PROGRESS, S.INITIALIZED}),
    S.BOTH_SUBMITTED: frozenset({S.BOTH_IN_PROGRESS, S.INITIALIZED}),
    S.IN_REVIEW: frozenset({S.BOTH_SUBMITTED, S.BOTH_IN_PROGRESS}),
    S.REVIEW_FINISHED: frozenset({S.IN_REVIEW}),
    S.AWAITING_EMPLOYEE_SIGN_OFF: frozenset({S.IN_REVIEW}),
    S.EMPLOYEE_REVIEW_CONFIRMED: frozenset({S.IN_REVIEW}),
}

# States in which each side may add, modify, delete or rate its goals
GOAL_EDIT_STATES: Dict[CompletionRole, FrozenSet[WorkflowState]] = {
    CompletionRole.EMPLOYEE: frozenset({S.EMPLOYEE_IN_PROGRESS, S.BOTH_IN_PROGRESS, S.MANAGER_SUBMITTED}),
    CompletionRole.MANAGER: frozenset({S.MANAGER_IN_PROGRESS, S.BOTH_IN_PROGRESS, S.EMPLOYEE_SUBMITTED, S.IN_REVIEW}),
}

# States in which each side may still fill in answers
ANSWER_EDIT_STATES: Dict[CompletionRole, FrozenSet[WorkflowState]] = {
    CompletionRole.EMPLOYEE: frozenset({
        S.ASSIGNED, S.INITIALIZED, S.EMPLOYEE_IN_PROGRESS, S.BOTH_IN_PROGRESS, S.MANAGER_SUBMITTED,
    }),
    CompletionRole.MANAGER: frozenset({
        S.ASSIGNED, S.INITIALIZED, S.MANAGER_IN_PROGRESS, S.BOTH_IN_PROGRESS, S.EMPLOYEE_SUBMITTED,
    }),
}


def phase_of(state: WorkflowState) -> int:
    return PHASE_RANK[state]


def valid_next_states(state: WorkflowState) -> FrozenSet[WorkflowState]:
    return FORWARD_TRANSITIONS.get(state, frozenset())


def valid_reopen_targets(state: WorkflowState) -> FrozenSet[WorkflowState]:
    return REOPEN_TRANSITIONS.get(state, frozenset())


def is_reopenable(state: WorkflowState) -> bool:
    return bool(valid_reopen_targets(state))


def can_transition(current: WorkflowState, target: WorkflowState) -> bool:
    return target in valid_next_states(current)


def ensure_transition(current: WorkflowState, target: WorkflowState) -> None:
    if not can_transition(current, target):
        raise InvalidWorkflowTransitionError(
            current.value, target.value, [s.value for s in valid_next_states(current)]
        )


def ensure_reopen(current: WorkflowState, target: WorkflowState) -> None:
    """Reject reopen targets that are not listed or not strictly earlier in the phase order."""
    targets = valid_reopen_targets(current)
    if target not in targets or phase_of(target) >= phase_of(current):
        raise InvalidWorkflowTransitionError(
            current.value, target.value, [s.value for s in targets]
        )


def determine_progress_state(
    current: WorkflowState,
    employee_active: bool,
    manager_active: bool,
) -> WorkflowState:
    """Map per-side activity onto an in-progress state.

    Submission and later phases are never changed by progress updates, and
    Assigned/Initialized are kept while neither side has done anything.
    """
    if phase_of(current) >= phase_of(S.EMPLOYEE_SUBMITTED):
        return current
    if employee_active and manager_active:
        return S.BOTH_IN_PROGRESS
    if employee_active:
        return S.EMPLOYEE_IN_PROGRESS
    if manager_active:
        return S.MANAGER_IN_PROGRESS
    return current


def determine_submission_state(employee_submitted: bool, manager_submitted: bool) -> WorkflowState:
    if employee_submitted and manager_submitted:
        return S.BOTH_SUBMITTED
    if employee_submitted:
        return S.EMPLOYEE_SUBMITTED
    if manager_submitted:
        return S.MANAGER_SUBMITTED
    raise ValueError("At least one submission must be present to determine submission state")


def can_edit_goals(state: WorkflowState, role: CompletionRole) -> bool:
    return state in GOAL_EDIT_STATES[role]


def can_edit_answers(state: WorkflowState, role: CompletionRole) -> bool:
    return state in ANSWER_EDIT_STATES[role]
