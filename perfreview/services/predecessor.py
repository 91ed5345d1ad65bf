"""Read-only access to earlier assignments for goal linking and rating."""
from typing import Optional
from uuid import UUID

from perfreview.domain.assignment import QuestionnaireAssignment
from perfreview.domain.goals import PredecessorGoalData
from perfreview.services.repository import AssignmentRepository


class PredecessorGoalReader:

    def __init__(self, repository: AssignmentRepository):
        self._repository = repository

    async def load_predecessor(self, predecessor_id: UUID) -> QuestionnaireAssignment:
        return await self._repository.load_required(predecessor_id)

    async def read_goal(
        self,
        predecessor_id: UUID,
        goal_id: UUID,
        question_id: Optional[UUID] = None,
    ) -> PredecessorGoalData:
        predecessor = await self.load_predecessor(predecessor_id)
        return predecessor.get_predecessor_goal_data(goal_id, question_id)
