from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from perfreview.core.config import settings
from perfreview.core.exceptions import ValidationError


def clean_note_content(content: Optional[str]) -> str:
    """Trim and bound note text; raises ValidationError when empty or too long."""
    if content is None or not content.strip():
        raise ValidationError("Note content cannot be empty", details={"field": "content"})
    content = content.strip()
    max_length = settings.workflow.in_review_note_max_length
    if len(content) > max_length:
        raise ValidationError(
            f"Note content cannot exceed {max_length} characters",
            details={"field": "content", "max_length": max_length},
        )
    return content


class InReviewNote(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: UUID
    content: str
    section_id: Optional[UUID] = None
    author_employee_id: UUID
    created_at: datetime
    updated_at: Optional[datetime] = None
    updated_by: Optional[UUID] = None
