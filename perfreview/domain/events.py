"""
Domain events for the questionnaire assignment stream.

Every event is a frozen pydantic model. Subclasses register themselves by
class name so stored rows can be turned back into the right type:

    payload = event_to_dict(event)            # JSON-safe dict
    event = event_from_dict(event_type, payload)
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Type
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from perfreview.domain.goals import (
    Goal,
    GoalModificationRecord,
    GoalRatingModificationRecord,
    PredecessorGoalRating,
)
from perfreview.domain.notes import InReviewNote
from perfreview.domain.sections import CustomSection
from perfreview.domain.workflow import CompletionRole, WorkflowState

EVENT_REGISTRY: Dict[str, Type["DomainEvent"]] = {}


class DomainEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    occurred_at: datetime

    @classmethod
    def __pydantic_init_subclass__(cls, **kwargs: Any) -> None:
        super().__pydantic_init_subclass__(**kwargs)
        EVENT_REGISTRY[cls.__name__] = cls

    @property
    def event_type(self) -> str:
        return type(self).__name__


def event_to_dict(event: DomainEvent) -> Dict[str, Any]:
    return event.model_dump(mode="json")


def event_from_dict(event_type: str, payload: Dict[str, Any]) -> DomainEvent:
    try:
        cls = EVENT_REGISTRY[event_type]
    except KeyError:
        raise ValueError(f"Unknown event type: {event_type}") from None
    return cls.model_validate(payload)


class ReviewEditAuditRecord(BaseModel):
    """Who changed which answer during the review meeting. The answer itself lives on the response."""
    model_config = ConfigDict(frozen=True)

    edit_id: UUID
    section_id: UUID
    question_id: UUID
    original_completion_role: CompletionRole
    edited_by_employee_id: UUID
    edited_at: datetime
    answer_fingerprint: str


class ReopenRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    from_state: WorkflowState
    to_state: WorkflowState
    reason: str
    reopened_by_employee_id: UUID
    reopened_by_role: str
    reopened_at: datetime


# --- Lifecycle ---

class AssignmentCreated(DomainEvent):
    assignment_id: UUID
    template_id: UUID
    employee_id: UUID
    employee_name: str
    employee_email: str
    due_date: Optional[date] = None
    assigned_by: Optional[str] = None
    notes: Optional[str] = None
    requires_manager_review: bool = True


class AssignmentInitialized(DomainEvent):
    initialized_by: UUID
    notes: Optional[str] = None


class CustomSectionsAdded(DomainEvent):
    sections: List[CustomSection]
    added_by: UUID


class AssignmentWorkStarted(DomainEvent):
    role: CompletionRole
    started_by: UUID
    workflow_state: WorkflowState


class SectionsCompleted(DomainEvent):
    role: CompletionRole
    section_ids: List[UUID]
    completed_by: UUID
    workflow_state: WorkflowState


class EmployeeQuestionnaireSubmitted(DomainEvent):
    submitted_by: UUID
    workflow_state: WorkflowState


class ManagerQuestionnaireSubmitted(DomainEvent):
    submitted_by: UUID
    workflow_state: WorkflowState


class QuestionnaireAutoFinalized(DomainEvent):
    """Employee submission closed the assignment because no manager review is required."""
    finalized_by: UUID


class ReviewInitiated(DomainEvent):
    initiated_by: UUID


class AnswerEditedDuringReview(DomainEvent):
    audit: ReviewEditAuditRecord


class ReviewMeetingFinished(DomainEvent):
    finished_by: UUID
    summary: Optional[str] = None


class EmployeeConfirmedReviewOutcome(DomainEvent):
    confirmed_by: UUID
    comments: Optional[str] = None


class EmployeeSignedOffReviewOutcome(DomainEvent):
    signed_off_by: UUID
    comments: Optional[str] = None


class QuestionnaireFinalized(DomainEvent):
    finalized_by: UUID
    final_notes: Optional[str] = None


class DueDateExtended(DomainEvent):
    new_due_date: date
    previous_due_date: Optional[date] = None
    reason: Optional[str] = None
    extended_by: UUID


class AssignmentWithdrawn(DomainEvent):
    withdrawn_by: UUID
    reason: Optional[str] = None


class WorkflowReopened(DomainEvent):
    record: ReopenRecord


# --- Goals ---

class GoalAdded(DomainEvent):
    goal: Goal


class GoalModified(DomainEvent):
    goal_id: UUID
    timeframe_from: Optional[date] = None
    timeframe_to: Optional[date] = None
    objective_description: Optional[str] = None
    measurement_metric: Optional[str] = None
    weighting_percentage: Optional[Decimal] = None
    modification: GoalModificationRecord


class GoalDeleted(DomainEvent):
    goal_id: UUID
    question_id: UUID
    deleted_by: UUID


class PredecessorQuestionnaireLinked(DomainEvent):
    question_id: UUID
    predecessor_assignment_id: UUID
    role: CompletionRole
    linked_by: UUID


class PredecessorGoalRated(DomainEvent):
    rating: PredecessorGoalRating


class PredecessorGoalRatingModified(DomainEvent):
    rating_id: UUID
    degree_of_achievement: Optional[Decimal] = None
    justification: Optional[str] = None
    modification: GoalRatingModificationRecord


# --- Notes ---

class InReviewNoteAdded(DomainEvent):
    note: InReviewNote


class InReviewNoteUpdated(DomainEvent):
    note_id: UUID
    content: str
    updated_by: UUID


class InReviewNoteDeleted(DomainEvent):
    note_id: UUID
    deleted_by: UUID


# --- Feedback links ---

class EmployeeFeedbackLinked(DomainEvent):
    question_id: UUID
    feedback_id: UUID
    role: CompletionRole
    linked_by: UUID


class EmployeeFeedbackUnlinked(DomainEvent):
    question_id: UUID
    feedback_id: UUID
    role: CompletionRole
    unlinked_by: UUID
