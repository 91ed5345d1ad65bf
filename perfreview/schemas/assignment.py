from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from perfreview.domain.assignment import QuestionnaireAssignment
from perfreview.domain.events import ReopenRecord, ReviewEditAuditRecord
from perfreview.domain.goals import Goal, PredecessorGoalData, PredecessorGoalRating
from perfreview.domain.notes import InReviewNote
from perfreview.domain.sections import CustomSection, SectionProgress
from perfreview.domain.workflow import CompletionRole, ConfirmationKind, WorkflowState


# --- Commands ---

class AssignmentCommand(BaseModel):
    """Base for commands on an existing assignment. ``expected_version`` enables the stale-write check."""
    expected_version: Optional[int] = None


class CreateAssignmentCommand(BaseModel):
    template_id: UUID
    employee_id: UUID
    employee_name: str
    employee_email: str
    due_date: Optional[date] = None
    assigned_by: Optional[str] = None
    notes: Optional[str] = None
    requires_manager_review: Optional[bool] = None


class BulkAssignmentTarget(BaseModel):
    employee_id: UUID
    employee_name: str
    employee_email: str


class CreateBulkAssignmentsCommand(BaseModel):
    template_id: UUID
    employees: List[BulkAssignmentTarget]
    due_date: Optional[date] = None
    assigned_by: Optional[str] = None
    notes: Optional[str] = None
    requires_manager_review: Optional[bool] = None


class StartInitializationCommand(AssignmentCommand):
    notes: Optional[str] = None


class AddCustomSectionsCommand(AssignmentCommand):
    sections: List[CustomSection]


class WorkCommand(AssignmentCommand):
    role: CompletionRole


class CompleteSectionsCommand(AssignmentCommand):
    role: CompletionRole
    section_ids: List[UUID]


class SubmitQuestionnaireCommand(AssignmentCommand):
    expected_version: int


class InitiateReviewCommand(AssignmentCommand):
    pass


class EditAnswerDuringReviewCommand(AssignmentCommand):
    section_id: UUID
    question_id: UUID
    original_role: CompletionRole
    answer: Any
    # Clients should send their own id so a retried request is recognised
    edit_id: UUID = Field(default_factory=uuid4)


class FinishReviewMeetingCommand(AssignmentCommand):
    summary: Optional[str] = None


class ReviewOutcomeCommand(AssignmentCommand):
    comments: Optional[str] = None


class FinalizeAsManagerCommand(AssignmentCommand):
    expected_version: int
    final_notes: Optional[str] = None


class ExtendDueDateCommand(AssignmentCommand):
    new_due_date: date
    reason: Optional[str] = None


class WithdrawCommand(AssignmentCommand):
    reason: Optional[str] = None


class ReopenQuestionnaireCommand(AssignmentCommand):
    target_state: WorkflowState
    reason: str


class AddGoalCommand(AssignmentCommand):
    question_id: UUID
    role: CompletionRole
    timeframe_from: date
    timeframe_to: date
    objective_description: str
    measurement_metric: str
    weighting_percentage: Decimal = Decimal("0")


class ModifyGoalCommand(AssignmentCommand):
    role: CompletionRole
    change_reason: str
    timeframe_from: Optional[date] = None
    timeframe_to: Optional[date] = None
    objective_description: Optional[str] = None
    measurement_metric: Optional[str] = None
    weighting_percentage: Optional[Decimal] = None


class LinkPredecessorCommand(AssignmentCommand):
    question_id: UUID
    predecessor_assignment_id: UUID
    role: CompletionRole


class RatePredecessorGoalCommand(AssignmentCommand):
    question_id: UUID
    source_assignment_id: UUID
    source_goal_id: UUID
    role: CompletionRole
    degree_of_achievement: Decimal
    justification: str
    # Read from the predecessor when omitted
    snapshot: Optional[PredecessorGoalData] = None


class ModifyPredecessorGoalRatingCommand(AssignmentCommand):
    role: CompletionRole
    change_reason: str
    degree_of_achievement: Optional[Decimal] = None
    justification: Optional[str] = None


class AddInReviewNoteCommand(AssignmentCommand):
    content: str
    section_id: Optional[UUID] = None


class UpdateInReviewNoteCommand(AssignmentCommand):
    content: str


class FeedbackLinkCommand(AssignmentCommand):
    question_id: UUID
    feedback_id: UUID
    role: CompletionRole


class SendReminderCommand(BaseModel):
    message: Optional[str] = None


class SaveAnswersCommand(BaseModel):
    role: CompletionRole
    section_id: UUID
    answers: Dict[UUID, Any]
    expected_version: Optional[int] = None


# --- Results ---

class CommandAccepted(BaseModel):
    assignment_id: UUID
    version: int
    workflow_state: WorkflowState
    entity_id: Optional[UUID] = None


class ReviewEditOutcome(BaseModel):
    edit_id: UUID
    assignment_id: UUID
    audit_recorded: bool
    response_updated: bool
    assignment_version: int
    response_version: int


class ResponseSaved(BaseModel):
    assignment_id: UUID
    version: int


class GoalView(BaseModel):
    id: UUID
    question_id: UUID
    added_by_role: CompletionRole
    added_by_employee_id: UUID
    timeframe_from: date
    timeframe_to: date
    objective_description: str
    measurement_metric: str
    weighting_percentage: Decimal
    modification_count: int = 0

    @classmethod
    def from_goal(cls, goal: Goal) -> "GoalView":
        return cls(**goal.model_dump(exclude={"modifications", "added_at"}), modification_count=len(goal.modifications))


class AssignmentView(BaseModel):
    id: UUID
    version: int
    template_id: UUID
    employee_id: UUID
    employee_name: str
    employee_email: str
    workflow_state: WorkflowState
    is_locked: bool
    is_withdrawn: bool
    requires_manager_review: bool
    assigned_date: Optional[datetime] = None
    due_date: Optional[date] = None
    completed_date: Optional[datetime] = None
    employee_submitted_date: Optional[datetime] = None
    manager_submitted_date: Optional[datetime] = None
    review_summary: Optional[str] = None
    employee_review_comments: Optional[str] = None
    employee_confirmation_kind: Optional[ConfirmationKind] = None
    final_notes: Optional[str] = None
    custom_sections: List[CustomSection] = []
    section_progress: List[SectionProgress] = []
    goals: List[GoalView] = []
    predecessor_links: Dict[UUID, UUID] = {}
    predecessor_ratings: List[PredecessorGoalRating] = []
    notes: List[InReviewNote] = []
    feedback_links: Dict[UUID, List[UUID]] = {}
    review_edits: List[ReviewEditAuditRecord] = []
    reopen_history: List[ReopenRecord] = []

    @classmethod
    def from_aggregate(cls, assignment: QuestionnaireAssignment) -> "AssignmentView":
        return cls(
            id=assignment.id,
            version=assignment.version,
            template_id=assignment.template_id,
            employee_id=assignment.employee_id,
            employee_name=assignment.employee_name,
            employee_email=assignment.employee_email,
            workflow_state=assignment.workflow_state,
            is_locked=assignment.is_locked,
            is_withdrawn=assignment.is_withdrawn,
            requires_manager_review=assignment.requires_manager_review,
            assigned_date=assignment.assigned_date,
            due_date=assignment.due_date,
            completed_date=assignment.completed_date,
            employee_submitted_date=assignment.employee_submitted_date,
            manager_submitted_date=assignment.manager_submitted_date,
            review_summary=assignment.review_summary,
            employee_review_comments=assignment.employee_review_comments,
            employee_confirmation_kind=assignment.employee_confirmation_kind,
            final_notes=assignment.final_notes,
            custom_sections=assignment.custom_sections,
            section_progress=list(assignment.section_progress.values()),
            goals=[GoalView.from_goal(g) for g in assignment.goals.values()],
            predecessor_links=assignment.predecessor_links,
            predecessor_ratings=list(assignment.predecessor_ratings.values()),
            notes=assignment.notes_in_review,
            feedback_links={q: sorted(ids, key=str) for q, ids in assignment.feedback_links.items()},
            review_edits=assignment.review_edit_audit,
            reopen_history=assignment.reopen_history,
        )


class ResponseView(BaseModel):
    assignment_id: UUID
    version: int
    answers: Dict[str, Dict[str, Dict[str, Any]]]
