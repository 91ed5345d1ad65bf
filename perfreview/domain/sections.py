from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class SectionProgress(BaseModel):
    model_config = ConfigDict(frozen=True)

    section_id: UUID
    employee_completed_at: Optional[datetime] = None
    manager_completed_at: Optional[datetime] = None

    @property
    def is_employee_completed(self) -> bool:
        return self.employee_completed_at is not None

    @property
    def is_manager_completed(self) -> bool:
        return self.manager_completed_at is not None


class CustomQuestion(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: UUID
    title: str
    question_type: str = "TextQuestion"
    is_required: bool = False


class CustomSection(BaseModel):
    """Instance-specific section added during initialization.

    ``is_instance_specific`` is always true on stored sections so reporting
    that aggregates across assignments can leave them out.
    """
    model_config = ConfigDict(frozen=True)

    id: UUID
    title: str
    description: Optional[str] = None
    order: int = 0
    completion_role: str = "Employee"
    questions: List[CustomQuestion] = []
    is_instance_specific: bool = True
