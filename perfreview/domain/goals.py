"""Goal and predecessor-rating value objects owned by a questionnaire assignment."""
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from perfreview.core.exceptions import ValidationError
from perfreview.domain.workflow import CompletionRole

_HUNDRED = Decimal("100")


def ensure_percentage(value: Decimal, field: str) -> Decimal:
    value = Decimal(value)
    if value < 0 or value > _HUNDRED:
        raise ValidationError(f"{field} must be between 0 and 100 (inclusive)", details={"field": field})
    return value


def ensure_text(value: Optional[str], field: str) -> str:
    if value is None or not value.strip():
        raise ValidationError(f"{field} is required", details={"field": field})
    return value.strip()


def ensure_timeframe(timeframe_from: date, timeframe_to: date) -> None:
    if timeframe_from >= timeframe_to:
        raise ValidationError("Timeframe 'from' must be before 'to'", details={"field": "timeframe"})


class GoalModificationRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    modified_by_role: CompletionRole
    modified_by_employee_id: UUID
    modified_at: datetime
    change_reason: str
    changed_fields: List[str]


class Goal(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: UUID
    question_id: UUID
    added_by_role: CompletionRole
    added_by_employee_id: UUID
    added_at: datetime
    timeframe_from: date
    timeframe_to: date
    objective_description: str
    measurement_metric: str
    # 0 is allowed while work is in progress; a reviewer sets the final value
    weighting_percentage: Decimal = Decimal("0")
    modifications: List[GoalModificationRecord] = []

    @classmethod
    def create(
        cls,
        goal_id: UUID,
        question_id: UUID,
        role: CompletionRole,
        timeframe_from: date,
        timeframe_to: date,
        objective_description: str,
        measurement_metric: str,
        weighting_percentage: Decimal,
        added_by: UUID,
        added_at: datetime,
    ) -> "Goal":
        ensure_timeframe(timeframe_from, timeframe_to)
        return cls(
            id=goal_id,
            question_id=question_id,
            added_by_role=role,
            added_by_employee_id=added_by,
            added_at=added_at,
            timeframe_from=timeframe_from,
            timeframe_to=timeframe_to,
            objective_description=ensure_text(objective_description, "objective_description"),
            measurement_metric=ensure_text(measurement_metric, "measurement_metric"),
            weighting_percentage=ensure_percentage(weighting_percentage, "weighting_percentage"),
        )

    def snapshot(self) -> "PredecessorGoalData":
        return PredecessorGoalData(
            goal_id=self.id,
            question_id=self.question_id,
            objective_description=self.objective_description,
            measurement_metric=self.measurement_metric,
            timeframe_from=self.timeframe_from,
            timeframe_to=self.timeframe_to,
            added_by_role=self.added_by_role,
            weighting_percentage=self.weighting_percentage,
        )


class PredecessorGoalData(BaseModel):
    """Copy of a goal's descriptive fields, kept on a rating even if the source later changes."""
    model_config = ConfigDict(frozen=True)

    goal_id: UUID
    question_id: UUID
    objective_description: str
    measurement_metric: str
    timeframe_from: date
    timeframe_to: date
    added_by_role: CompletionRole
    weighting_percentage: Decimal


class GoalRatingModificationRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    modified_by_role: CompletionRole
    modified_by_employee_id: UUID
    modified_at: datetime
    change_reason: str
    changed_fields: List[str]


class PredecessorGoalRating(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: UUID
    question_id: UUID
    source_assignment_id: UUID
    source_goal_id: UUID
    snapshot: PredecessorGoalData
    rated_by_role: CompletionRole
    rated_by_employee_id: UUID
    rated_at: datetime
    degree_of_achievement: Decimal
    justification: str
    modifications: List[GoalRatingModificationRecord] = []
