"""
Answer edits made during the review meeting touch two aggregates: the
assignment keeps the audit fact and the response keeps the value.

``ReviewEditSaga`` writes them in that order. Both steps are keyed by the
edit id, so running the saga again with the same id finishes an edit whose
second step failed and does nothing for one that already completed.
"""
import logging
from typing import Optional
from uuid import UUID

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from perfreview.core.config import settings
from perfreview.core.exceptions import BusinessRuleViolation, ConcurrencyConflictError, NotFoundError, ValidationError
from perfreview.domain.assignment import fingerprint_answer
from perfreview.schemas.assignment import EditAnswerDuringReviewCommand, ReviewEditOutcome
from perfreview.services.authorization import Actor, AssignmentAction, AuthorizationGuard
from perfreview.services.repository import AssignmentRepository, ResponseRepository

logger = logging.getLogger(__name__)


class ReviewEditSaga:

    def __init__(
        self,
        assignments: AssignmentRepository,
        responses: ResponseRepository,
        guard: AuthorizationGuard,
        max_attempts: Optional[int] = None,
        wait_seconds: Optional[float] = None,
    ):
        self._assignments = assignments
        self._responses = responses
        self._guard = guard
        self._max_attempts = max_attempts or settings.workflow.review_edit_max_attempts
        self._wait_seconds = settings.workflow.review_edit_retry_wait_seconds if wait_seconds is None else wait_seconds

    async def run(self, actor: Actor, assignment_id: UUID, command: EditAnswerDuringReviewCommand) -> ReviewEditOutcome:
        if command.answer is None:
            raise ValidationError("Edited answer cannot be empty", details={"field": "answer"})

        assignment = await self._assignments.load_required(assignment_id)
        await self._guard.ensure_allowed(actor, AssignmentAction.MANAGE, assignment.employee_id)
        if await self._responses.load(assignment_id) is None:
            raise NotFoundError("QuestionnaireResponse", assignment_id)

        audit_recorded = False
        existing = assignment.find_review_edit(command.edit_id)
        if existing is not None:
            if existing.answer_fingerprint != fingerprint_answer(command.answer):
                raise BusinessRuleViolation(
                    f"Review edit {command.edit_id} was already recorded with a different answer",
                    error_code="REVIEW_EDIT_MISMATCH",
                )
            logger.info(f"Review edit {command.edit_id} already recorded, resuming")
        else:
            if command.expected_version is not None and command.expected_version != assignment.version:
                raise ConcurrencyConflictError(
                    "QuestionnaireAssignment", assignment_id, command.expected_version, assignment.version,
                )
            assignment.edit_answer_as_manager_during_review(
                section_id=command.section_id,
                question_id=command.question_id,
                original_role=command.original_role,
                new_answer=command.answer,
                by=actor.employee_id,
                edit_id=command.edit_id,
            )
            await self._assignments.store(assignment)
            audit_recorded = True
            logger.info(
                f"Review edit {command.edit_id} recorded on assignment {assignment_id}",
                extra={"actor": str(actor.employee_id), "version": assignment.version},
            )

        response_updated = False
        response_version = 0
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._wait_seconds, max=self._wait_seconds * 8),
            retry=retry_if_exception_type(ConcurrencyConflictError),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(
                        f"Retrying response write for review edit {command.edit_id} "
                        f"(attempt {attempt.retry_state.attempt_number})"
                    )
                response = await self._responses.load(assignment_id)
                if response is None:
                    raise NotFoundError("QuestionnaireResponse", assignment_id)
                response_updated = response.apply_review_edit(
                    edit_id=command.edit_id,
                    section_id=command.section_id,
                    question_id=command.question_id,
                    original_role=command.original_role,
                    answer=command.answer,
                    by=actor.employee_id,
                )
                if response_updated:
                    await self._responses.store(response)
                response_version = response.version

        return ReviewEditOutcome(
            edit_id=command.edit_id,
            assignment_id=assignment_id,
            audit_recorded=audit_recorded,
            response_updated=response_updated,
            assignment_version=assignment.version,
            response_version=response_version,
        )
