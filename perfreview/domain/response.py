"""
QuestionnaireResponse aggregate: the answers for one assignment.

Persisted as a snapshot. Review edits carry an ``edit_id``; applying the
same edit twice is a no-op so the review-edit saga can safely retry.
"""
from datetime import datetime
from typing import Any, Dict, Optional, Set
from uuid import UUID

from perfreview.core.exceptions import ValidationError
from perfreview.domain.base import utcnow
from perfreview.domain.workflow import CompletionRole


class QuestionnaireResponse:

    def __init__(self, assignment_id: UUID, employee_id: UUID) -> None:
        self.assignment_id = assignment_id
        self.employee_id = employee_id
        self.version = 0
        # section id -> role -> question id -> answer
        self.answers: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.applied_edit_ids: Set[UUID] = set()
        self.created_at: datetime = utcnow()
        self.last_modified_at: Optional[datetime] = None
        self.last_modified_by: Optional[UUID] = None
        self._dirty = False

    @property
    def has_changes(self) -> bool:
        return self._dirty

    def get_answer(self, section_id: UUID, role: CompletionRole, question_id: UUID) -> Any:
        return self.answers.get(str(section_id), {}).get(role.value, {}).get(str(question_id))

    def record_answers(self, section_id: UUID, role: CompletionRole, answers: Dict[UUID, Any], by: UUID) -> None:
        if not answers:
            raise ValidationError("At least one answer is required", details={"field": "answers"})
        role_answers = self.answers.setdefault(str(section_id), {}).setdefault(role.value, {})
        for question_id, value in answers.items():
            role_answers[str(question_id)] = value
        self._touch(by)

    def apply_review_edit(
        self,
        edit_id: UUID,
        section_id: UUID,
        question_id: UUID,
        original_role: CompletionRole,
        answer: Any,
        by: UUID,
    ) -> bool:
        """Write an answer edited during the review meeting. Returns False if already applied."""
        if edit_id in self.applied_edit_ids:
            return False
        self.answers.setdefault(str(section_id), {}).setdefault(original_role.value, {})[str(question_id)] = answer
        self.applied_edit_ids.add(edit_id)
        self._touch(by)
        return True

    def _touch(self, by: UUID) -> None:
        self.last_modified_at = utcnow()
        self.last_modified_by = by
        self._dirty = True

    def mark_committed(self, new_version: int) -> None:
        self.version = new_version
        self._dirty = False

    def to_snapshot(self) -> Dict[str, Any]:
        return {
            "answers": self.answers,
            "applied_edit_ids": sorted(str(e) for e in self.applied_edit_ids),
            "created_at": self.created_at.isoformat(),
            "last_modified_at": self.last_modified_at.isoformat() if self.last_modified_at else None,
            "last_modified_by": str(self.last_modified_by) if self.last_modified_by else None,
        }

    @classmethod
    def from_snapshot(cls, assignment_id: UUID, employee_id: UUID, version: int, data: Dict[str, Any]) -> "QuestionnaireResponse":
        response = cls(assignment_id, employee_id)
        response.version = version
        response.answers = data.get("answers") or {}
        response.applied_edit_ids = {UUID(e) for e in data.get("applied_edit_ids", [])}
        if data.get("created_at"):
            response.created_at = datetime.fromisoformat(data["created_at"])
        if data.get("last_modified_at"):
            response.last_modified_at = datetime.fromisoformat(data["last_modified_at"])
        if data.get("last_modified_by"):
            response.last_modified_by = UUID(data["last_modified_by"])
        return response
