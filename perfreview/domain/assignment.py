"""
QuestionnaireAssignment aggregate.

The aggregate performs no I/O and knows nothing about callers' roles beyond
the completion side (employee or manager) a command acts for. Authorization
happens before a command reaches it. Each command validates completely
before raising any event, so a rejected command leaves state untouched.
"""
import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from functools import singledispatchmethod
from typing import Any, Dict, Iterable, List, Optional, Set
from uuid import UUID, uuid4

from perfreview.core.config import settings
from perfreview.core.exceptions import (
    AssignmentLockedError,
    AssignmentWithdrawnError,
    BusinessRuleViolation,
    InvalidWorkflowTransitionError,
    ValidationError,
)
from perfreview.domain.base import AggregateRoot, utcnow
from perfreview.domain.events import (
    AnswerEditedDuringReview,
    AssignmentCreated,
    AssignmentInitialized,
    AssignmentWithdrawn,
    AssignmentWorkStarted,
    CustomSectionsAdded,
    DomainEvent,
    DueDateExtended,
    EmployeeConfirmedReviewOutcome,
    EmployeeFeedbackLinked,
    EmployeeFeedbackUnlinked,
    EmployeeQuestionnaireSubmitted,
    EmployeeSignedOffReviewOutcome,
    GoalAdded,
    GoalDeleted,
    GoalModified,
    InReviewNoteAdded,
    InReviewNoteDeleted,
    InReviewNoteUpdated,
    ManagerQuestionnaireSubmitted,
    PredecessorGoalRated,
    PredecessorGoalRatingModified,
    PredecessorQuestionnaireLinked,
    QuestionnaireAutoFinalized,
    QuestionnaireFinalized,
    ReopenRecord,
    ReviewEditAuditRecord,
    ReviewInitiated,
    ReviewMeetingFinished,
    SectionsCompleted,
    WorkflowReopened,
)
from perfreview.domain.goals import (
    Goal,
    GoalModificationRecord,
    GoalRatingModificationRecord,
    PredecessorGoalData,
    PredecessorGoalRating,
    ensure_percentage,
    ensure_text,
    ensure_timeframe,
)
from perfreview.domain.notes import InReviewNote, clean_note_content
from perfreview.domain.sections import CustomSection, SectionProgress
from perfreview.domain.workflow import (
    IN_PROGRESS_STATES,
    CompletionRole,
    ConfirmationKind,
    WorkflowState,
    can_edit_answers,
    can_edit_goals,
    determine_progress_state,
    determine_submission_state,
    ensure_reopen,
    ensure_transition,
    phase_of,
    valid_next_states,
)


def fingerprint_answer(answer: Any) -> str:
    """Stable digest of an answer value so the audit trail can match retries without storing the value."""
    encoded = json.dumps(answer, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class QuestionnaireAssignment(AggregateRoot):

    def __init__(self) -> None:
        super().__init__()
        self.template_id: Optional[UUID] = None
        self.employee_id: Optional[UUID] = None
        self.employee_name: str = ""
        self.employee_email: str = ""
        self.assigned_date: Optional[datetime] = None
        self.due_date: Optional[date] = None
        self.completed_date: Optional[datetime] = None
        self.assigned_by: Optional[str] = None
        self.notes: Optional[str] = None
        self.requires_manager_review: bool = True

        self.workflow_state: WorkflowState = WorkflowState.ASSIGNED
        self.is_withdrawn: bool = False
        self.withdrawn_date: Optional[datetime] = None
        self.withdrawn_by: Optional[UUID] = None
        self.withdrawal_reason: Optional[str] = None

        self.initialized_date: Optional[datetime] = None
        self.initialized_by: Optional[UUID] = None
        self.initialization_notes: Optional[str] = None
        self.custom_sections: List[CustomSection] = []
        self.section_progress: Dict[UUID, SectionProgress] = {}

        self.employee_started_date: Optional[datetime] = None
        self.manager_started_date: Optional[datetime] = None
        self.employee_submitted_date: Optional[datetime] = None
        self.employee_submitted_by: Optional[UUID] = None
        self.manager_submitted_date: Optional[datetime] = None
        self.manager_submitted_by: Optional[UUID] = None

        self.review_initiated_date: Optional[datetime] = None
        self.review_initiated_by: Optional[UUID] = None
        self.review_finished_date: Optional[datetime] = None
        self.review_finished_by: Optional[UUID] = None
        self.review_summary: Optional[str] = None
        self.employee_confirmation_date: Optional[datetime] = None
        self.employee_confirmed_by: Optional[UUID] = None
        self.employee_review_comments: Optional[str] = None
        self.employee_confirmation_kind: Optional[ConfirmationKind] = None

        self.finalized_date: Optional[datetime] = None
        self.finalized_by: Optional[UUID] = None
        self.final_notes: Optional[str] = None

        self.goals: Dict[UUID, Goal] = {}
        self.predecessor_links: Dict[UUID, UUID] = {}
        self.predecessor_ratings: Dict[UUID, PredecessorGoalRating] = {}
        self.notes_in_review: List[InReviewNote] = []
        self.feedback_links: Dict[UUID, Set[UUID]] = {}
        self.review_edit_audit: List[ReviewEditAuditRecord] = []
        self.reopen_history: List[ReopenRecord] = []

    # ------------------------------------------------------------------
    # Read accessors
    # ------------------------------------------------------------------

    @property
    def is_locked(self) -> bool:
        return self.workflow_state == WorkflowState.FINALIZED

    @property
    def is_employee_submitted(self) -> bool:
        return self.employee_submitted_date is not None

    @property
    def is_manager_submitted(self) -> bool:
        return self.manager_submitted_date is not None

    def has_started(self, role: CompletionRole) -> bool:
        if role == CompletionRole.EMPLOYEE:
            return self.employee_started_date is not None
        return self.manager_started_date is not None

    def is_submitted(self, role: CompletionRole) -> bool:
        if role == CompletionRole.EMPLOYEE:
            return self.is_employee_submitted
        return self.is_manager_submitted

    def has_section_progress(self, role: CompletionRole) -> bool:
        if role == CompletionRole.EMPLOYEE:
            return any(p.is_employee_completed for p in self.section_progress.values())
        return any(p.is_manager_completed for p in self.section_progress.values())

    def is_active(self, role: CompletionRole) -> bool:
        return self.has_started(role) or self.has_section_progress(role)

    def can_edit_answers(self, role: CompletionRole) -> bool:
        return not self.is_withdrawn and can_edit_answers(self.workflow_state, role)

    def goals_for_question(self, question_id: UUID) -> List[Goal]:
        return [g for g in self.goals.values() if g.question_id == question_id]

    def total_weighting(self, question_id: UUID) -> Decimal:
        """Sum of goal weightings for one question. Informational; not capped."""
        return sum((g.weighting_percentage for g in self.goals_for_question(question_id)), Decimal("0"))

    def ratings_for_question(self, question_id: UUID) -> List[PredecessorGoalRating]:
        return [r for r in self.predecessor_ratings.values() if r.question_id == question_id]

    def find_rating(self, source_goal_id: UUID, role: CompletionRole) -> Optional[PredecessorGoalRating]:
        for rating in self.predecessor_ratings.values():
            if rating.source_goal_id == source_goal_id and rating.rated_by_role == role:
                return rating
        return None

    def find_review_edit(self, edit_id: UUID) -> Optional[ReviewEditAuditRecord]:
        for record in self.review_edit_audit:
            if record.edit_id == edit_id:
                return record
        return None

    def find_note(self, note_id: UUID) -> Optional[InReviewNote]:
        for note in self.notes_in_review:
            if note.id == note_id:
                return note
        return None

    def get_predecessor_goal_data(self, goal_id: UUID, question_id: Optional[UUID] = None) -> PredecessorGoalData:
        """Read a goal of this (predecessor) assignment as a rating snapshot."""
        goal = self.goals.get(goal_id)
        if goal is None or (question_id is not None and goal.question_id != question_id):
            raise BusinessRuleViolation(
                f"Goal {goal_id} not found in assignment {self.id}",
                error_code="GOAL_NOT_FOUND",
            )
        return goal.snapshot()

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def _ensure_mutable(self) -> None:
        if self.is_withdrawn:
            raise AssignmentWithdrawnError(self.id)
        if self.is_locked:
            raise AssignmentLockedError(self.id)

    def _ensure_state(self, expected: WorkflowState, message: str) -> None:
        if self.workflow_state != expected:
            raise BusinessRuleViolation(
                message,
                error_code="INVALID_WORKFLOW_STATE",
                details={"current_state": self.workflow_state.value, "required_state": expected.value},
            )

    def _ensure_goal_side(self, role: CompletionRole) -> None:
        if not can_edit_goals(self.workflow_state, role):
            raise BusinessRuleViolation(
                f"{role.value} cannot edit goals while the assignment is {self.workflow_state.value}",
                error_code="GOALS_NOT_EDITABLE",
                details={"current_state": self.workflow_state.value, "role": role.value},
            )

    def _ensure_in_review(self, action: str) -> None:
        self._ensure_state(WorkflowState.IN_REVIEW, f"{action} is only possible during the review meeting")

    # ------------------------------------------------------------------
    # Creation and initialization
    # ------------------------------------------------------------------

    @classmethod
    def create(
        cls,
        template_id: UUID,
        employee_id: UUID,
        employee_name: str,
        employee_email: str,
        due_date: Optional[date] = None,
        assigned_by: Optional[str] = None,
        notes: Optional[str] = None,
        requires_manager_review: bool = True,
        assignment_id: Optional[UUID] = None,
    ) -> "QuestionnaireAssignment":
        employee_name = ensure_text(employee_name, "employee_name")
        employee_email = ensure_text(employee_email, "employee_email")
        now = utcnow()
        if due_date is not None and due_date < now.date():
            raise ValidationError("Due date cannot be in the past", details={"field": "due_date"})
        assignment = cls()
        assignment._raise(AssignmentCreated(
            occurred_at=now,
            assignment_id=assignment_id or uuid4(),
            template_id=template_id,
            employee_id=employee_id,
            employee_name=employee_name,
            employee_email=employee_email,
            due_date=due_date,
            assigned_by=assigned_by,
            notes=notes,
            requires_manager_review=requires_manager_review,
        ))
        return assignment

    def start_initialization(self, by: UUID, notes: Optional[str] = None) -> None:
        self._ensure_mutable()
        if self.workflow_state != WorkflowState.ASSIGNED:
            raise BusinessRuleViolation(
                f"Assignment has already been initialized (state: {self.workflow_state.value})",
                error_code="ALREADY_INITIALIZED",
            )
        self._raise(AssignmentInitialized(occurred_at=utcnow(), initialized_by=by, notes=notes))

    def add_custom_sections(self, sections: Iterable[CustomSection], by: UUID) -> None:
        self._ensure_mutable()
        self._ensure_state(WorkflowState.INITIALIZED, "Custom sections can only be added during initialization")
        sections = list(sections)
        if not sections:
            raise ValidationError("At least one custom section is required", details={"field": "sections"})
        existing = {s.id for s in self.custom_sections}
        seen: Set[UUID] = set()
        for section in sections:
            if section.id in existing or section.id in seen:
                raise BusinessRuleViolation(
                    f"Custom section {section.id} already exists",
                    error_code="DUPLICATE_SECTION",
                )
            ensure_text(section.title, "title")
            seen.add(section.id)
        flagged = [s.model_copy(update={"is_instance_specific": True}) for s in sections]
        self._raise(CustomSectionsAdded(occurred_at=utcnow(), sections=flagged, added_by=by))

    # ------------------------------------------------------------------
    # Work progress and submission
    # ------------------------------------------------------------------

    def start_work(self, role: CompletionRole, by: UUID) -> None:
        self._ensure_mutable()
        if self.is_submitted(role):
            raise BusinessRuleViolation(
                f"{role.value} questionnaire already submitted",
                error_code="ALREADY_SUBMITTED",
            )
        if self.has_started(role):
            raise BusinessRuleViolation(f"{role.value} has already started work", error_code="ALREADY_STARTED")
        new_state = self._progress_state_with(role)
        if new_state != self.workflow_state:
            ensure_transition(self.workflow_state, new_state)
        self._raise(AssignmentWorkStarted(
            occurred_at=utcnow(), role=role, started_by=by, workflow_state=new_state,
        ))

    def complete_work(self, role: CompletionRole, by: UUID) -> None:
        if role == CompletionRole.EMPLOYEE:
            self.submit_employee_questionnaire(by)
        else:
            self.submit_manager_questionnaire(by)

    def complete_section(self, role: CompletionRole, section_id: UUID, by: UUID) -> None:
        progress = self.section_progress.get(section_id)
        if progress is not None and self._section_done(progress, role):
            raise BusinessRuleViolation(
                f"Section already completed by {role.value.lower()}",
                error_code="SECTION_ALREADY_COMPLETED",
            )
        self.complete_sections(role, [section_id], by)

    def complete_sections(self, role: CompletionRole, section_ids: Iterable[UUID], by: UUID) -> None:
        """Complete several sections at once; sections this side already completed are skipped."""
        self._ensure_mutable()
        section_ids = list(dict.fromkeys(section_ids))
        if not section_ids:
            raise ValidationError("Section ids cannot be empty", details={"field": "section_ids"})
        if self.is_submitted(role):
            raise BusinessRuleViolation(
                f"{role.value} questionnaire already submitted",
                error_code="ALREADY_SUBMITTED",
            )
        pending = [
            sid for sid in section_ids
            if sid not in self.section_progress or not self._section_done(self.section_progress[sid], role)
        ]
        if not pending:
            raise BusinessRuleViolation(
                f"All sections already completed by {role.value.lower()}",
                error_code="SECTION_ALREADY_COMPLETED",
            )
        new_state = self._progress_state_with(role)
        if new_state != self.workflow_state:
            ensure_transition(self.workflow_state, new_state)
        self._raise(SectionsCompleted(
            occurred_at=utcnow(), role=role, section_ids=pending, completed_by=by, workflow_state=new_state,
        ))

    @staticmethod
    def _section_done(progress: SectionProgress, role: CompletionRole) -> bool:
        if role == CompletionRole.EMPLOYEE:
            return progress.is_employee_completed
        return progress.is_manager_completed

    def _progress_state_with(self, role: CompletionRole) -> WorkflowState:
        employee_active = self.is_active(CompletionRole.EMPLOYEE) or role == CompletionRole.EMPLOYEE
        manager_active = self.is_active(CompletionRole.MANAGER) or role == CompletionRole.MANAGER
        return determine_progress_state(self.workflow_state, employee_active, manager_active)

    def submit_employee_questionnaire(self, by: UUID) -> None:
        self._ensure_mutable()
        if self.workflow_state in (WorkflowState.EMPLOYEE_SUBMITTED, WorkflowState.BOTH_SUBMITTED) \
                or self.is_employee_submitted:
            raise BusinessRuleViolation("Employee questionnaire already submitted", error_code="ALREADY_SUBMITTED")
        if self.workflow_state not in (
            WorkflowState.EMPLOYEE_IN_PROGRESS,
            WorkflowState.BOTH_IN_PROGRESS,
            WorkflowState.MANAGER_SUBMITTED,
        ):
            raise BusinessRuleViolation(
                "Employee must have started filling sections before submitting",
                error_code="WORK_NOT_STARTED",
            )
        new_state = determine_submission_state(True, self.is_manager_submitted)
        ensure_transition(self.workflow_state, new_state)
        now = utcnow()
        self._raise(EmployeeQuestionnaireSubmitted(occurred_at=now, submitted_by=by, workflow_state=new_state))
        if not self.requires_manager_review:
            self._raise(QuestionnaireAutoFinalized(occurred_at=now, finalized_by=by))

    def submit_manager_questionnaire(self, by: UUID) -> None:
        self._ensure_mutable()
        if not self.requires_manager_review:
            raise BusinessRuleViolation(
                "This assignment does not require a manager questionnaire",
                error_code="MANAGER_REVIEW_NOT_REQUIRED",
            )
        if self.workflow_state in (WorkflowState.MANAGER_SUBMITTED, WorkflowState.BOTH_SUBMITTED) \
                or self.is_manager_submitted:
            raise BusinessRuleViolation("Manager questionnaire already submitted", error_code="ALREADY_SUBMITTED")
        if self.workflow_state not in (
            WorkflowState.MANAGER_IN_PROGRESS,
            WorkflowState.BOTH_IN_PROGRESS,
            WorkflowState.EMPLOYEE_SUBMITTED,
        ):
            raise BusinessRuleViolation(
                "Manager must have started filling sections before submitting",
                error_code="WORK_NOT_STARTED",
            )
        new_state = determine_submission_state(self.is_employee_submitted, True)
        ensure_transition(self.workflow_state, new_state)
        self._raise(ManagerQuestionnaireSubmitted(occurred_at=utcnow(), submitted_by=by, workflow_state=new_state))

    # ------------------------------------------------------------------
    # Review phase
    # ------------------------------------------------------------------

    def initiate_review(self, by: UUID) -> None:
        self._ensure_mutable()
        if self.workflow_state != WorkflowState.BOTH_SUBMITTED:
            missing = [
                label for label, done in (
                    ("employee", self.is_employee_submitted),
                    ("manager", self.is_manager_submitted),
                ) if not done
            ]
            if missing and phase_of(self.workflow_state) < phase_of(WorkflowState.IN_REVIEW):
                raise BusinessRuleViolation(
                    f"Cannot initiate review: missing {' and '.join(missing)} submission",
                    error_code="SUBMISSION_MISSING",
                    details={"missing": missing},
                )
            raise InvalidWorkflowTransitionError(
                self.workflow_state.value,
                WorkflowState.IN_REVIEW.value,
                [s.value for s in valid_next_states(self.workflow_state)],
            )
        self._raise(ReviewInitiated(occurred_at=utcnow(), initiated_by=by))

    def edit_answer_as_manager_during_review(
        self,
        section_id: UUID,
        question_id: UUID,
        original_role: CompletionRole,
        new_answer: Any,
        by: UUID,
        edit_id: Optional[UUID] = None,
    ) -> ReviewEditAuditRecord:
        """Record that an answer was changed in the review meeting.

        Only the audit fact is kept here; the caller writes ``new_answer`` to
        the response record.
        """
        self._ensure_mutable()
        self._ensure_in_review("Editing answers")
        edit_id = edit_id or uuid4()
        if self.find_review_edit(edit_id) is not None:
            raise BusinessRuleViolation(
                f"Review edit {edit_id} has already been recorded",
                error_code="DUPLICATE_REVIEW_EDIT",
            )
        now = utcnow()
        record = ReviewEditAuditRecord(
            edit_id=edit_id,
            section_id=section_id,
            question_id=question_id,
            original_completion_role=original_role,
            edited_by_employee_id=by,
            edited_at=now,
            answer_fingerprint=fingerprint_answer(new_answer),
        )
        self._raise(AnswerEditedDuringReview(occurred_at=now, audit=record))
        return record

    def finish_review_meeting(self, by: UUID, summary: Optional[str] = None) -> None:
        self._ensure_mutable()
        if self.workflow_state != WorkflowState.IN_REVIEW:
            raise InvalidWorkflowTransitionError(
                self.workflow_state.value,
                WorkflowState.REVIEW_FINISHED.value,
                [s.value for s in valid_next_states(self.workflow_state)],
            )
        self._raise(ReviewMeetingFinished(occurred_at=utcnow(), finished_by=by, summary=summary))

    def _ensure_awaiting_employee(self) -> None:
        self._ensure_mutable()
        if self.workflow_state not in (WorkflowState.REVIEW_FINISHED, WorkflowState.AWAITING_EMPLOYEE_SIGN_OFF):
            raise InvalidWorkflowTransitionError(
                self.workflow_state.value,
                WorkflowState.EMPLOYEE_REVIEW_CONFIRMED.value,
                [s.value for s in valid_next_states(self.workflow_state)],
            )

    def confirm_review_outcome_as_employee(self, by: UUID, comments: Optional[str] = None) -> None:
        self._ensure_awaiting_employee()
        self._raise(EmployeeConfirmedReviewOutcome(occurred_at=utcnow(), confirmed_by=by, comments=comments))

    def sign_off_review_outcome_as_employee(self, by: UUID, comments: Optional[str] = None) -> None:
        self._ensure_awaiting_employee()
        self._raise(EmployeeSignedOffReviewOutcome(occurred_at=utcnow(), signed_off_by=by, comments=comments))

    def finalize_as_manager(self, by: UUID, final_notes: Optional[str] = None) -> None:
        self._ensure_mutable()
        if self.workflow_state != WorkflowState.EMPLOYEE_REVIEW_CONFIRMED:
            raise InvalidWorkflowTransitionError(
                self.workflow_state.value,
                WorkflowState.FINALIZED.value,
                [s.value for s in valid_next_states(self.workflow_state)],
            )
        self._raise(QuestionnaireFinalized(occurred_at=utcnow(), finalized_by=by, final_notes=final_notes))

    # ------------------------------------------------------------------
    # Side transitions
    # ------------------------------------------------------------------

    def extend_due_date(self, new_due_date: date, by: UUID, reason: Optional[str] = None) -> None:
        self._ensure_mutable()
        if self.assigned_date is not None and new_due_date < self.assigned_date.date():
            raise ValidationError("Due date cannot be before the assignment date", details={"field": "new_due_date"})
        if new_due_date == self.due_date:
            raise BusinessRuleViolation("Due date is unchanged", error_code="DUE_DATE_UNCHANGED")
        self._raise(DueDateExtended(
            occurred_at=utcnow(),
            new_due_date=new_due_date,
            previous_due_date=self.due_date,
            reason=reason,
            extended_by=by,
        ))

    def withdraw(self, by: UUID, reason: Optional[str] = None) -> None:
        self._ensure_mutable()
        self._raise(AssignmentWithdrawn(occurred_at=utcnow(), withdrawn_by=by, reason=reason))

    def reopen_workflow(self, target_state: WorkflowState, reason: str, by: UUID, by_role: str) -> None:
        """Move the assignment back to an earlier state.

        Role scope is checked by the authorization guard before this call;
        ``by_role`` is only recorded on the reopen fact.
        """
        min_length = settings.workflow.reopen_reason_min_length
        if reason is None or len(reason.strip()) < min_length:
            raise ValidationError(
                f"Reopen reason must be at least {min_length} characters",
                details={"field": "reason", "min_length": min_length},
            )
        self._ensure_mutable()
        ensure_reopen(self.workflow_state, target_state)
        now = utcnow()
        self._raise(WorkflowReopened(occurred_at=now, record=ReopenRecord(
            from_state=self.workflow_state,
            to_state=target_state,
            reason=reason.strip(),
            reopened_by_employee_id=by,
            reopened_by_role=by_role,
            reopened_at=now,
        )))

    # ------------------------------------------------------------------
    # Goals
    # ------------------------------------------------------------------

    def add_goal(
        self,
        question_id: UUID,
        role: CompletionRole,
        timeframe_from: date,
        timeframe_to: date,
        objective_description: str,
        measurement_metric: str,
        by: UUID,
        weighting_percentage: Decimal = Decimal("0"),
        goal_id: Optional[UUID] = None,
    ) -> Goal:
        self._ensure_mutable()
        self._ensure_goal_side(role)
        goal_id = goal_id or uuid4()
        if goal_id in self.goals:
            raise BusinessRuleViolation(f"Goal {goal_id} already exists", error_code="DUPLICATE_GOAL")
        now = utcnow()
        goal = Goal.create(
            goal_id=goal_id,
            question_id=question_id,
            role=role,
            timeframe_from=timeframe_from,
            timeframe_to=timeframe_to,
            objective_description=objective_description,
            measurement_metric=measurement_metric,
            weighting_percentage=weighting_percentage,
            added_by=by,
            added_at=now,
        )
        self._raise(GoalAdded(occurred_at=now, goal=goal))
        return goal

    def modify_goal(
        self,
        goal_id: UUID,
        role: CompletionRole,
        change_reason: str,
        by: UUID,
        timeframe_from: Optional[date] = None,
        timeframe_to: Optional[date] = None,
        objective_description: Optional[str] = None,
        measurement_metric: Optional[str] = None,
        weighting_percentage: Optional[Decimal] = None,
    ) -> None:
        self._ensure_mutable()
        change_reason = ensure_text(change_reason, "change_reason")
        goal = self.goals.get(goal_id)
        if goal is None:
            raise BusinessRuleViolation(f"Goal {goal_id} not found", error_code="GOAL_NOT_FOUND")
        self._ensure_goal_side(role)

        changes: Dict[str, Any] = {}
        if timeframe_from is not None:
            changes["timeframe_from"] = timeframe_from
        if timeframe_to is not None:
            changes["timeframe_to"] = timeframe_to
        if objective_description is not None:
            changes["objective_description"] = ensure_text(objective_description, "objective_description")
        if measurement_metric is not None:
            changes["measurement_metric"] = ensure_text(measurement_metric, "measurement_metric")
        if weighting_percentage is not None:
            changes["weighting_percentage"] = ensure_percentage(weighting_percentage, "weighting_percentage")
        if not changes:
            raise ValidationError("No goal fields to modify", details={"goal_id": str(goal_id)})
        ensure_timeframe(
            changes.get("timeframe_from", goal.timeframe_from),
            changes.get("timeframe_to", goal.timeframe_to),
        )

        now = utcnow()
        self._raise(GoalModified(
            occurred_at=now,
            goal_id=goal_id,
            modification=GoalModificationRecord(
                modified_by_role=role,
                modified_by_employee_id=by,
                modified_at=now,
                change_reason=change_reason,
                changed_fields=sorted(changes),
            ),
            **changes,
        ))

    def delete_goal(self, goal_id: UUID, by: UUID) -> None:
        self._ensure_mutable()
        goal = self.goals.get(goal_id)
        if goal is None:
            raise BusinessRuleViolation(f"Goal {goal_id} not found", error_code="GOAL_NOT_FOUND")
        # Only while the side that added the goal may still edit it
        self._ensure_goal_side(goal.added_by_role)
        self._raise(GoalDeleted(occurred_at=utcnow(), goal_id=goal_id, question_id=goal.question_id, deleted_by=by))

    def link_predecessor_questionnaire(
        self,
        question_id: UUID,
        predecessor_assignment_id: UUID,
        role: CompletionRole,
        by: UUID,
    ) -> None:
        self._ensure_mutable()
        if predecessor_assignment_id == self.id:
            raise BusinessRuleViolation(
                "An assignment cannot be linked as its own predecessor",
                error_code="INVALID_PREDECESSOR",
            )
        self._ensure_goal_side(role)
        current = self.predecessor_links.get(question_id)
        if current == predecessor_assignment_id:
            raise BusinessRuleViolation(
                "Predecessor questionnaire is already linked for this question",
                error_code="PREDECESSOR_ALREADY_LINKED",
            )
        if current is not None and self.ratings_for_question(question_id):
            raise BusinessRuleViolation(
                "Cannot change the predecessor link after goals have been rated",
                error_code="PREDECESSOR_HAS_RATINGS",
            )
        self._raise(PredecessorQuestionnaireLinked(
            occurred_at=utcnow(),
            question_id=question_id,
            predecessor_assignment_id=predecessor_assignment_id,
            role=role,
            linked_by=by,
        ))

    def rate_predecessor_goal(
        self,
        question_id: UUID,
        source_assignment_id: UUID,
        source_goal_id: UUID,
        snapshot: PredecessorGoalData,
        role: CompletionRole,
        degree_of_achievement: Decimal,
        justification: str,
        by: UUID,
    ) -> PredecessorGoalRating:
        self._ensure_mutable()
        degree = ensure_percentage(degree_of_achievement, "degree_of_achievement")
        justification = ensure_text(justification, "justification")
        self._ensure_goal_side(role)
        linked = self.predecessor_links.get(question_id)
        if linked is None:
            raise BusinessRuleViolation(
                "No predecessor questionnaire is linked for this question",
                error_code="PREDECESSOR_NOT_LINKED",
            )
        if linked != source_assignment_id:
            raise BusinessRuleViolation(
                "Rated goal does not belong to the linked predecessor questionnaire",
                error_code="PREDECESSOR_MISMATCH",
            )
        if snapshot.goal_id != source_goal_id:
            raise ValidationError("Snapshot does not describe the rated goal", details={"field": "snapshot"})
        for rating in self.ratings_for_question(question_id):
            if rating.source_goal_id == source_goal_id and rating.rated_by_role == role:
                raise BusinessRuleViolation(
                    f"Goal already rated by {role.value.lower()}; modify the existing rating instead",
                    error_code="DUPLICATE_RATING",
                )
        now = utcnow()
        rating = PredecessorGoalRating(
            id=uuid4(),
            question_id=question_id,
            source_assignment_id=source_assignment_id,
            source_goal_id=source_goal_id,
            snapshot=snapshot,
            rated_by_role=role,
            rated_by_employee_id=by,
            rated_at=now,
            degree_of_achievement=degree,
            justification=justification,
        )
        self._raise(PredecessorGoalRated(occurred_at=now, rating=rating))
        return rating

    def modify_predecessor_goal_rating(
        self,
        source_goal_id: UUID,
        role: CompletionRole,
        change_reason: str,
        by: UUID,
        degree_of_achievement: Optional[Decimal] = None,
        justification: Optional[str] = None,
    ) -> None:
        self._ensure_mutable()
        change_reason = ensure_text(change_reason, "change_reason")
        rating = self.find_rating(source_goal_id, role)
        if rating is None:
            raise BusinessRuleViolation(
                f"No {role.value.lower()} rating exists for goal {source_goal_id}",
                error_code="RATING_NOT_FOUND",
            )
        self._ensure_goal_side(role)
        changed: List[str] = []
        if degree_of_achievement is not None:
            degree_of_achievement = ensure_percentage(degree_of_achievement, "degree_of_achievement")
            changed.append("degree_of_achievement")
        if justification is not None:
            justification = ensure_text(justification, "justification")
            changed.append("justification")
        if not changed:
            raise ValidationError("No rating fields to modify", details={"source_goal_id": str(source_goal_id)})
        now = utcnow()
        self._raise(PredecessorGoalRatingModified(
            occurred_at=now,
            rating_id=rating.id,
            degree_of_achievement=degree_of_achievement,
            justification=justification,
            modification=GoalRatingModificationRecord(
                modified_by_role=role,
                modified_by_employee_id=by,
                modified_at=now,
                change_reason=change_reason,
                changed_fields=changed,
            ),
        ))

    # ------------------------------------------------------------------
    # Notes
    # ------------------------------------------------------------------

    def add_in_review_note(self, content: str, author: UUID, section_id: Optional[UUID] = None) -> InReviewNote:
        content = clean_note_content(content)
        self._ensure_mutable()
        self._ensure_in_review("Adding notes")
        now = utcnow()
        note = InReviewNote(
            id=uuid4(),
            content=content,
            section_id=section_id,
            author_employee_id=author,
            created_at=now,
        )
        self._raise(InReviewNoteAdded(occurred_at=now, note=note))
        return note

    def update_in_review_note(self, note_id: UUID, content: str, editor: UUID) -> None:
        content = clean_note_content(content)
        self._ensure_mutable()
        self._ensure_in_review("Updating notes")
        if self.find_note(note_id) is None:
            raise BusinessRuleViolation(f"Note {note_id} not found", error_code="NOTE_NOT_FOUND")
        self._raise(InReviewNoteUpdated(occurred_at=utcnow(), note_id=note_id, content=content, updated_by=editor))

    def delete_in_review_note(self, note_id: UUID, deleter: UUID) -> None:
        self._ensure_mutable()
        self._ensure_in_review("Deleting notes")
        if self.find_note(note_id) is None:
            raise BusinessRuleViolation(f"Note {note_id} not found", error_code="NOTE_NOT_FOUND")
        self._raise(InReviewNoteDeleted(occurred_at=utcnow(), note_id=note_id, deleted_by=deleter))

    # ------------------------------------------------------------------
    # Feedback links
    # ------------------------------------------------------------------

    def link_employee_feedback(self, question_id: UUID, feedback_id: UUID, role: CompletionRole, by: UUID) -> None:
        self._ensure_mutable()
        self._ensure_goal_side(role)
        if feedback_id in self.feedback_links.get(question_id, set()):
            raise BusinessRuleViolation("Feedback is already linked to this question", error_code="FEEDBACK_ALREADY_LINKED")
        self._raise(EmployeeFeedbackLinked(
            occurred_at=utcnow(), question_id=question_id, feedback_id=feedback_id, role=role, linked_by=by,
        ))

    def unlink_employee_feedback(self, question_id: UUID, feedback_id: UUID, role: CompletionRole, by: UUID) -> None:
        self._ensure_mutable()
        self._ensure_goal_side(role)
        if feedback_id not in self.feedback_links.get(question_id, set()):
            raise BusinessRuleViolation("Feedback is not linked to this question", error_code="FEEDBACK_NOT_LINKED")
        self._raise(EmployeeFeedbackUnlinked(
            occurred_at=utcnow(), question_id=question_id, feedback_id=feedback_id, role=role, unlinked_by=by,
        ))

    # ------------------------------------------------------------------
    # Event application
    # ------------------------------------------------------------------

    @singledispatchmethod
    def _apply(self, event: DomainEvent) -> None:
        raise TypeError(f"Unhandled event type: {type(event).__name__}")

    @_apply.register
    def _(self, event: AssignmentCreated) -> None:
        self.id = event.assignment_id
        self.template_id = event.template_id
        self.employee_id = event.employee_id
        self.employee_name = event.employee_name
        self.employee_email = event.employee_email
        self.assigned_date = event.occurred_at
        self.due_date = event.due_date
        self.assigned_by = event.assigned_by
        self.notes = event.notes
        self.requires_manager_review = event.requires_manager_review
        self.workflow_state = WorkflowState.ASSIGNED

    @_apply.register
    def _(self, event: AssignmentInitialized) -> None:
        self.workflow_state = WorkflowState.INITIALIZED
        self.initialized_date = event.occurred_at
        self.initialized_by = event.initialized_by
        self.initialization_notes = event.notes

    @_apply.register
    def _(self, event: CustomSectionsAdded) -> None:
        self.custom_sections.extend(event.sections)

    @_apply.register
    def _(self, event: AssignmentWorkStarted) -> None:
        if event.role == CompletionRole.EMPLOYEE:
            self.employee_started_date = event.occurred_at
        else:
            self.manager_started_date = event.occurred_at
        self.workflow_state = event.workflow_state

    @_apply.register
    def _(self, event: SectionsCompleted) -> None:
        field = "employee_completed_at" if event.role == CompletionRole.EMPLOYEE else "manager_completed_at"
        for section_id in event.section_ids:
            progress = self.section_progress.get(section_id) or SectionProgress(section_id=section_id)
            self.section_progress[section_id] = progress.model_copy(update={field: event.occurred_at})
        self.workflow_state = event.workflow_state

    @_apply.register
    def _(self, event: EmployeeQuestionnaireSubmitted) -> None:
        self.employee_submitted_date = event.occurred_at
        self.employee_submitted_by = event.submitted_by
        self.workflow_state = event.workflow_state

    @_apply.register
    def _(self, event: ManagerQuestionnaireSubmitted) -> None:
        self.manager_submitted_date = event.occurred_at
        self.manager_submitted_by = event.submitted_by
        self.workflow_state = event.workflow_state

    @_apply.register
    def _(self, event: QuestionnaireAutoFinalized) -> None:
        self.workflow_state = WorkflowState.FINALIZED
        self.finalized_date = event.occurred_at
        self.finalized_by = event.finalized_by
        self.completed_date = event.occurred_at

    @_apply.register
    def _(self, event: ReviewInitiated) -> None:
        self.workflow_state = WorkflowState.IN_REVIEW
        self.review_initiated_date = event.occurred_at
        self.review_initiated_by = event.initiated_by

    @_apply.register
    def _(self, event: AnswerEditedDuringReview) -> None:
        self.review_edit_audit.append(event.audit)

    @_apply.register
    def _(self, event: ReviewMeetingFinished) -> None:
        self.workflow_state = WorkflowState.REVIEW_FINISHED
        self.review_finished_date = event.occurred_at
        self.review_finished_by = event.finished_by
        self.review_summary = event.summary

    @_apply.register
    def _(self, event: EmployeeConfirmedReviewOutcome) -> None:
        self._record_confirmation(event.occurred_at, event.confirmed_by, event.comments, ConfirmationKind.CONFIRMED)

    @_apply.register
    def _(self, event: EmployeeSignedOffReviewOutcome) -> None:
        self._record_confirmation(event.occurred_at, event.signed_off_by, event.comments, ConfirmationKind.SIGNED_OFF)

    def _record_confirmation(self, at: datetime, by: UUID, comments: Optional[str], kind: ConfirmationKind) -> None:
        self.workflow_state = WorkflowState.EMPLOYEE_REVIEW_CONFIRMED
        self.employee_confirmation_date = at
        self.employee_confirmed_by = by
        self.employee_review_comments = comments
        self.employee_confirmation_kind = kind

    @_apply.register
    def _(self, event: QuestionnaireFinalized) -> None:
        self.workflow_state = WorkflowState.FINALIZED
        self.finalized_date = event.occurred_at
        self.finalized_by = event.finalized_by
        self.final_notes = event.final_notes
        self.completed_date = event.occurred_at

    @_apply.register
    def _(self, event: DueDateExtended) -> None:
        self.due_date = event.new_due_date

    @_apply.register
    def _(self, event: AssignmentWithdrawn) -> None:
        self.is_withdrawn = True
        self.withdrawn_date = event.occurred_at
        self.withdrawn_by = event.withdrawn_by
        self.withdrawal_reason = event.reason

    @_apply.register
    def _(self, event: WorkflowReopened) -> None:
        target = event.record.to_state
        rank = phase_of(target)
        if rank < phase_of(WorkflowState.IN_REVIEW):
            self.review_initiated_date = None
            self.review_initiated_by = None
        if rank < phase_of(WorkflowState.REVIEW_FINISHED):
            self.review_finished_date = None
            self.review_finished_by = None
        if rank < phase_of(WorkflowState.EMPLOYEE_REVIEW_CONFIRMED):
            self.employee_confirmation_date = None
            self.employee_confirmed_by = None
            self.employee_confirmation_kind = None

        if target == WorkflowState.INITIALIZED:
            self.section_progress = {}
            self.employee_started_date = None
            self.manager_started_date = None
            self._clear_submission(CompletionRole.EMPLOYEE)
            self._clear_submission(CompletionRole.MANAGER)
        elif target == WorkflowState.EMPLOYEE_IN_PROGRESS:
            self._clear_submission(CompletionRole.EMPLOYEE)
        elif target == WorkflowState.MANAGER_IN_PROGRESS:
            self._clear_submission(CompletionRole.MANAGER)
        elif target == WorkflowState.BOTH_IN_PROGRESS:
            self._clear_submission(CompletionRole.EMPLOYEE)
            self._clear_submission(CompletionRole.MANAGER)

        if target in IN_PROGRESS_STATES:
            # The side that did not submit keeps its own progress
            target = determine_progress_state(
                WorkflowState.INITIALIZED,
                employee_active=target != WorkflowState.MANAGER_IN_PROGRESS or self.is_active(CompletionRole.EMPLOYEE),
                manager_active=target != WorkflowState.EMPLOYEE_IN_PROGRESS or self.is_active(CompletionRole.MANAGER),
            )
        self.workflow_state = target
        self.reopen_history.append(event.record)

    def _clear_submission(self, role: CompletionRole) -> None:
        if role == CompletionRole.EMPLOYEE:
            self.employee_submitted_date = None
            self.employee_submitted_by = None
        else:
            self.manager_submitted_date = None
            self.manager_submitted_by = None

    @_apply.register
    def _(self, event: GoalAdded) -> None:
        self.goals[event.goal.id] = event.goal

    @_apply.register
    def _(self, event: GoalModified) -> None:
        goal = self.goals[event.goal_id]
        update: Dict[str, Any] = {
            name: getattr(event, name)
            for name in event.modification.changed_fields
        }
        update["modifications"] = [*goal.modifications, event.modification]
        self.goals[event.goal_id] = goal.model_copy(update=update)

    @_apply.register
    def _(self, event: GoalDeleted) -> None:
        self.goals.pop(event.goal_id, None)

    @_apply.register
    def _(self, event: PredecessorQuestionnaireLinked) -> None:
        self.predecessor_links[event.question_id] = event.predecessor_assignment_id

    @_apply.register
    def _(self, event: PredecessorGoalRated) -> None:
        self.predecessor_ratings[event.rating.id] = event.rating

    @_apply.register
    def _(self, event: PredecessorGoalRatingModified) -> None:
        rating = self.predecessor_ratings[event.rating_id]
        update: Dict[str, Any] = {"modifications": [*rating.modifications, event.modification]}
        if event.degree_of_achievement is not None:
            update["degree_of_achievement"] = event.degree_of_achievement
        if event.justification is not None:
            update["justification"] = event.justification
        self.predecessor_ratings[event.rating_id] = rating.model_copy(update=update)

    @_apply.register
    def _(self, event: InReviewNoteAdded) -> None:
        self.notes_in_review.append(event.note)

    @_apply.register
    def _(self, event: InReviewNoteUpdated) -> None:
        self.notes_in_review = [
            n.model_copy(update={"content": event.content, "updated_at": event.occurred_at, "updated_by": event.updated_by})
            if n.id == event.note_id else n
            for n in self.notes_in_review
        ]

    @_apply.register
    def _(self, event: InReviewNoteDeleted) -> None:
        self.notes_in_review = [n for n in self.notes_in_review if n.id != event.note_id]

    @_apply.register
    def _(self, event: EmployeeFeedbackLinked) -> None:
        self.feedback_links.setdefault(event.question_id, set()).add(event.feedback_id)

    @_apply.register
    def _(self, event: EmployeeFeedbackUnlinked) -> None:
        linked = self.feedback_links.get(event.question_id)
        if linked is not None:
            linked.discard(event.feedback_id)
            if not linked:
                del self.feedback_links[event.question_id]
