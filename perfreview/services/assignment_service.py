"""
Command handlers for questionnaire assignments.

Every command runs the same cycle: load the aggregate fresh, ask the
authorization guard, call one aggregate method, store with the loaded
version. Input that can be rejected without the aggregate is rejected
first. Failures surface as ``AppException`` subclasses.
"""
import logging
from typing import Any, Callable, List, Optional, Union
from uuid import UUID

from perfreview.core.config import settings
from perfreview.core.exceptions import (
    AssignmentLockedError,
    AssignmentWithdrawnError,
    BusinessRuleViolation,
    ConcurrencyConflictError,
    NotFoundError,
    StorageUnavailableError,
    ValidationError,
)
from perfreview.domain.assignment import QuestionnaireAssignment
from perfreview.domain.response import QuestionnaireResponse
from perfreview.domain.workflow import CompletionRole
from perfreview.schemas.assignment import (
    AddCustomSectionsCommand,
    AddGoalCommand,
    AddInReviewNoteCommand,
    AssignmentView,
    CommandAccepted,
    CompleteSectionsCommand,
    CreateAssignmentCommand,
    CreateBulkAssignmentsCommand,
    ExtendDueDateCommand,
    FeedbackLinkCommand,
    FinalizeAsManagerCommand,
    FinishReviewMeetingCommand,
    InitiateReviewCommand,
    LinkPredecessorCommand,
    ModifyGoalCommand,
    ModifyPredecessorGoalRatingCommand,
    RatePredecessorGoalCommand,
    ReopenQuestionnaireCommand,
    ResponseSaved,
    ResponseView,
    ReviewOutcomeCommand,
    SaveAnswersCommand,
    SendReminderCommand,
    StartInitializationCommand,
    SubmitQuestionnaireCommand,
    UpdateInReviewNoteCommand,
    WithdrawCommand,
    WorkCommand,
)
from perfreview.services.authorization import Actor, AssignmentAction, AuthorizationGuard, action_for_role
from perfreview.services.feedback import FeedbackRepository
from perfreview.services.notification import NotificationService
from perfreview.services.predecessor import PredecessorGoalReader
from perfreview.services.repository import AssignmentRepository, ResponseRepository

logger = logging.getLogger(__name__)

ActionSpec = Union[AssignmentAction, Callable[[QuestionnaireAssignment], AssignmentAction]]


def ensure_reopen_reason(reason: Optional[str]) -> str:
    min_length = settings.workflow.reopen_reason_min_length
    if reason is None or len(reason.strip()) < min_length:
        raise ValidationError(
            f"Reopen reason must be at least {min_length} characters",
            details={"field": "reason", "min_length": min_length},
        )
    return reason.strip()


class QuestionnaireAssignmentService:

    def __init__(
        self,
        repository: AssignmentRepository,
        guard: AuthorizationGuard,
        feedback: Optional[FeedbackRepository] = None,
        notifications: Optional[NotificationService] = None,
        responses: Optional[ResponseRepository] = None,
        predecessor_reader: Optional[PredecessorGoalReader] = None,
    ):
        self._repository = repository
        self._guard = guard
        self._feedback = feedback
        self._notifications = notifications
        self._responses = responses
        self._predecessors = predecessor_reader or PredecessorGoalReader(repository)

    async def _execute(
        self,
        command_name: str,
        actor: Actor,
        assignment_id: UUID,
        action: ActionSpec,
        mutate: Callable[[QuestionnaireAssignment], Any],
        expected_version: Optional[int] = None,
    ) -> CommandAccepted:
        assignment = await self._repository.load_required(assignment_id, expected_version)
        resolved = action(assignment) if callable(action) else action
        await self._guard.ensure_allowed(actor, resolved, assignment.employee_id)
        result = mutate(assignment)
        version = await self._repository.store(assignment, expected_version=assignment.version)
        logger.info(
            f"{command_name} accepted for assignment {assignment_id}",
            extra={"actor": str(actor.employee_id), "version": version, "state": assignment.workflow_state.value},
        )
        return CommandAccepted(
            assignment_id=assignment.id,
            version=version,
            workflow_state=assignment.workflow_state,
            entity_id=getattr(result, "id", None),
        )

    # --- Queries ---

    async def get_assignment(self, actor: Actor, assignment_id: UUID) -> AssignmentView:
        assignment = await self._repository.load_required(assignment_id)
        await self._guard.ensure_allowed(actor, AssignmentAction.VIEW, assignment.employee_id)
        return AssignmentView.from_aggregate(assignment)

    async def get_response(self, actor: Actor, assignment_id: UUID) -> ResponseView:
        assignment = await self._repository.load_required(assignment_id)
        await self._guard.ensure_allowed(actor, AssignmentAction.VIEW, assignment.employee_id)
        response = await self._require_responses().load(assignment_id)
        if response is None:
            raise NotFoundError("QuestionnaireResponse", assignment_id)
        return ResponseView(assignment_id=assignment_id, version=response.version, answers=response.answers)

    # --- Creation ---

    async def create_assignment(self, actor: Actor, command: CreateAssignmentCommand) -> CommandAccepted:
        await self._guard.ensure_allowed(actor, AssignmentAction.CREATE, command.employee_id)
        requires_review = command.requires_manager_review
        if requires_review is None:
            requires_review = settings.workflow.default_requires_manager_review
        assignment = QuestionnaireAssignment.create(
            template_id=command.template_id,
            employee_id=command.employee_id,
            employee_name=command.employee_name,
            employee_email=command.employee_email,
            due_date=command.due_date,
            assigned_by=command.assigned_by or str(actor.employee_id),
            notes=command.notes,
            requires_manager_review=requires_review,
        )
        version = await self._repository.store(assignment, expected_version=0)
        logger.info(
            f"Assignment {assignment.id} created for employee {command.employee_id}",
            extra={"actor": str(actor.employee_id), "template_id": str(command.template_id)},
        )
        return CommandAccepted(assignment_id=assignment.id, version=version, workflow_state=assignment.workflow_state)

    async def create_bulk_assignments(self, actor: Actor, command: CreateBulkAssignmentsCommand) -> List[CommandAccepted]:
        """Create one assignment per employee. Each is stored on its own; authorization is checked up front."""
        if not command.employees:
            raise ValidationError("At least one employee is required", details={"field": "employees"})
        for target in command.employees:
            await self._guard.ensure_allowed(actor, AssignmentAction.CREATE, target.employee_id)
        results = []
        for target in command.employees:
            results.append(await self.create_assignment(actor, CreateAssignmentCommand(
                template_id=command.template_id,
                employee_id=target.employee_id,
                employee_name=target.employee_name,
                employee_email=target.employee_email,
                due_date=command.due_date,
                assigned_by=command.assigned_by,
                notes=command.notes,
                requires_manager_review=command.requires_manager_review,
            )))
        logger.info(f"Bulk created {len(results)} assignments for template {command.template_id}")
        return results

    # --- Workflow ---

    async def start_initialization(self, actor: Actor, assignment_id: UUID, command: StartInitializationCommand) -> CommandAccepted:
        return await self._execute(
            "StartInitialization", actor, assignment_id, AssignmentAction.MANAGE,
            lambda a: a.start_initialization(actor.employee_id, command.notes),
            command.expected_version,
        )

    async def add_custom_sections(self, actor: Actor, assignment_id: UUID, command: AddCustomSectionsCommand) -> CommandAccepted:
        return await self._execute(
            "AddCustomSections", actor, assignment_id, AssignmentAction.MANAGE,
            lambda a: a.add_custom_sections(command.sections, actor.employee_id),
            command.expected_version,
        )

    async def start_work(self, actor: Actor, assignment_id: UUID, command: WorkCommand) -> CommandAccepted:
        return await self._execute(
            "StartWork", actor, assignment_id, action_for_role(command.role),
            lambda a: a.start_work(command.role, actor.employee_id),
            command.expected_version,
        )

    async def complete_work(self, actor: Actor, assignment_id: UUID, command: WorkCommand) -> CommandAccepted:
        return await self._execute(
            "CompleteWork", actor, assignment_id, action_for_role(command.role),
            lambda a: a.complete_work(command.role, actor.employee_id),
            command.expected_version,
        )

    async def complete_sections(self, actor: Actor, assignment_id: UUID, command: CompleteSectionsCommand) -> CommandAccepted:
        if not command.section_ids:
            raise ValidationError("Section ids cannot be empty", details={"field": "section_ids"})
        return await self._execute(
            "CompleteSections", actor, assignment_id, action_for_role(command.role),
            lambda a: a.complete_sections(command.role, command.section_ids, actor.employee_id),
            command.expected_version,
        )

    async def submit_employee_questionnaire(self, actor: Actor, assignment_id: UUID, command: SubmitQuestionnaireCommand) -> CommandAccepted:
        return await self._execute(
            "SubmitEmployeeQuestionnaire", actor, assignment_id, AssignmentAction.EMPLOYEE_WORK,
            lambda a: a.submit_employee_questionnaire(actor.employee_id),
            command.expected_version,
        )

    async def submit_manager_questionnaire(self, actor: Actor, assignment_id: UUID, command: SubmitQuestionnaireCommand) -> CommandAccepted:
        return await self._execute(
            "SubmitManagerQuestionnaire", actor, assignment_id, AssignmentAction.MANAGE,
            lambda a: a.submit_manager_questionnaire(actor.employee_id),
            command.expected_version,
        )

    async def initiate_review(self, actor: Actor, assignment_id: UUID, command: InitiateReviewCommand) -> CommandAccepted:
        return await self._execute(
            "InitiateReview", actor, assignment_id, AssignmentAction.MANAGE,
            lambda a: a.initiate_review(actor.employee_id),
            command.expected_version,
        )

    async def finish_review_meeting(self, actor: Actor, assignment_id: UUID, command: FinishReviewMeetingCommand) -> CommandAccepted:
        return await self._execute(
            "FinishReviewMeeting", actor, assignment_id, AssignmentAction.MANAGE,
            lambda a: a.finish_review_meeting(actor.employee_id, command.summary),
            command.expected_version,
        )

    async def confirm_review_outcome(self, actor: Actor, assignment_id: UUID, command: ReviewOutcomeCommand) -> CommandAccepted:
        return await self._execute(
            "ConfirmReviewOutcomeAsEmployee", actor, assignment_id, AssignmentAction.EMPLOYEE_WORK,
            lambda a: a.confirm_review_outcome_as_employee(actor.employee_id, command.comments),
            command.expected_version,
        )

    async def sign_off_review_outcome(self, actor: Actor, assignment_id: UUID, command: ReviewOutcomeCommand) -> CommandAccepted:
        return await self._execute(
            "SignOffReviewOutcomeAsEmployee", actor, assignment_id, AssignmentAction.EMPLOYEE_WORK,
            lambda a: a.sign_off_review_outcome_as_employee(actor.employee_id, command.comments),
            command.expected_version,
        )

    async def finalize_as_manager(self, actor: Actor, assignment_id: UUID, command: FinalizeAsManagerCommand) -> CommandAccepted:
        return await self._execute(
            "FinalizeAsManager", actor, assignment_id, AssignmentAction.MANAGE,
            lambda a: a.finalize_as_manager(actor.employee_id, command.final_notes),
            command.expected_version,
        )

    async def extend_due_date(self, actor: Actor, assignment_id: UUID, command: ExtendDueDateCommand) -> CommandAccepted:
        return await self._execute(
            "ExtendDueDate", actor, assignment_id, AssignmentAction.MANAGE,
            lambda a: a.extend_due_date(command.new_due_date, actor.employee_id, command.reason),
            command.expected_version,
        )

    async def withdraw(self, actor: Actor, assignment_id: UUID, command: WithdrawCommand) -> CommandAccepted:
        return await self._execute(
            "WithdrawAssignment", actor, assignment_id, AssignmentAction.MANAGE,
            lambda a: a.withdraw(actor.employee_id, command.reason),
            command.expected_version,
        )

    async def reopen(self, actor: Actor, assignment_id: UUID, command: ReopenQuestionnaireCommand) -> CommandAccepted:
        reason = ensure_reopen_reason(command.reason)
        reopened: List[QuestionnaireAssignment] = []

        def mutate(a: QuestionnaireAssignment) -> None:
            a.reopen_workflow(command.target_state, reason, actor.employee_id, actor.role.value)
            reopened.append(a)

        accepted = await self._execute(
            "ReopenQuestionnaire", actor, assignment_id, AssignmentAction.REOPEN, mutate, command.expected_version,
        )
        if self._notifications is not None:
            assignment = reopened[0]
            try:
                await self._notifications.notify_questionnaire_reopened(assignment, assignment.reopen_history[-1])
            except StorageUnavailableError:
                # The reopen is already committed; a missing notice must not turn it into a failure
                logger.warning(f"Reopen of assignment {assignment_id} stored but notification was not recorded")
        return accepted

    async def send_reminder(self, actor: Actor, assignment_id: UUID, command: SendReminderCommand) -> CommandAccepted:
        assignment = await self._repository.load_required(assignment_id)
        await self._guard.ensure_allowed(actor, AssignmentAction.MANAGE, assignment.employee_id)
        if assignment.is_withdrawn:
            raise AssignmentWithdrawnError(assignment_id)
        if assignment.is_locked:
            raise AssignmentLockedError(assignment_id)
        if self._notifications is None:
            raise BusinessRuleViolation("Reminders are not available", error_code="REMINDERS_UNAVAILABLE")
        await self._notifications.notify_assignment_reminder(assignment, command.message)
        logger.info(f"Reminder sent for assignment {assignment_id}", extra={"actor": str(actor.employee_id)})
        return CommandAccepted(assignment_id=assignment.id, version=assignment.version, workflow_state=assignment.workflow_state)

    # --- Goals ---

    async def add_goal(self, actor: Actor, assignment_id: UUID, command: AddGoalCommand) -> CommandAccepted:
        return await self._execute(
            "AddGoal", actor, assignment_id, action_for_role(command.role),
            lambda a: a.add_goal(
                question_id=command.question_id,
                role=command.role,
                timeframe_from=command.timeframe_from,
                timeframe_to=command.timeframe_to,
                objective_description=command.objective_description,
                measurement_metric=command.measurement_metric,
                by=actor.employee_id,
                weighting_percentage=command.weighting_percentage,
            ),
            command.expected_version,
        )

    async def modify_goal(self, actor: Actor, assignment_id: UUID, goal_id: UUID, command: ModifyGoalCommand) -> CommandAccepted:
        return await self._execute(
            "ModifyGoal", actor, assignment_id, action_for_role(command.role),
            lambda a: a.modify_goal(
                goal_id=goal_id,
                role=command.role,
                change_reason=command.change_reason,
                by=actor.employee_id,
                timeframe_from=command.timeframe_from,
                timeframe_to=command.timeframe_to,
                objective_description=command.objective_description,
                measurement_metric=command.measurement_metric,
                weighting_percentage=command.weighting_percentage,
            ),
            command.expected_version,
        )

    async def delete_goal(self, actor: Actor, assignment_id: UUID, goal_id: UUID, expected_version: Optional[int] = None) -> CommandAccepted:
        def action(a: QuestionnaireAssignment) -> AssignmentAction:
            goal = a.goals.get(goal_id)
            return action_for_role(goal.added_by_role if goal else CompletionRole.MANAGER)

        return await self._execute(
            "DeleteGoal", actor, assignment_id, action,
            lambda a: a.delete_goal(goal_id, actor.employee_id),
            expected_version,
        )

    async def link_predecessor(self, actor: Actor, assignment_id: UUID, command: LinkPredecessorCommand) -> CommandAccepted:
        assignment = await self._repository.load_required(assignment_id, command.expected_version)
        await self._guard.ensure_allowed(actor, action_for_role(command.role), assignment.employee_id)
        predecessor = await self._predecessors.load_predecessor(command.predecessor_assignment_id)
        if predecessor.employee_id != assignment.employee_id:
            raise BusinessRuleViolation(
                "Predecessor questionnaire belongs to a different employee",
                error_code="INVALID_PREDECESSOR",
            )
        if not predecessor.is_locked:
            raise BusinessRuleViolation(
                "Predecessor questionnaire must be finalized before it can be linked",
                error_code="PREDECESSOR_NOT_FINALIZED",
            )
        assignment.link_predecessor_questionnaire(
            command.question_id, command.predecessor_assignment_id, command.role, actor.employee_id,
        )
        version = await self._repository.store(assignment)
        logger.info(f"Predecessor {command.predecessor_assignment_id} linked to assignment {assignment_id}")
        return CommandAccepted(assignment_id=assignment.id, version=version, workflow_state=assignment.workflow_state)

    async def rate_predecessor_goal(self, actor: Actor, assignment_id: UUID, command: RatePredecessorGoalCommand) -> CommandAccepted:
        assignment = await self._repository.load_required(assignment_id, command.expected_version)
        await self._guard.ensure_allowed(actor, action_for_role(command.role), assignment.employee_id)
        snapshot = command.snapshot
        if snapshot is None:
            snapshot = await self._predecessors.read_goal(command.source_assignment_id, command.source_goal_id)
        rating = assignment.rate_predecessor_goal(
            question_id=command.question_id,
            source_assignment_id=command.source_assignment_id,
            source_goal_id=command.source_goal_id,
            snapshot=snapshot,
            role=command.role,
            degree_of_achievement=command.degree_of_achievement,
            justification=command.justification,
            by=actor.employee_id,
        )
        version = await self._repository.store(assignment)
        logger.info(f"Predecessor goal {command.source_goal_id} rated on assignment {assignment_id}")
        return CommandAccepted(
            assignment_id=assignment.id, version=version, workflow_state=assignment.workflow_state, entity_id=rating.id,
        )

    async def modify_predecessor_goal_rating(
        self, actor: Actor, assignment_id: UUID, source_goal_id: UUID, command: ModifyPredecessorGoalRatingCommand,
    ) -> CommandAccepted:
        return await self._execute(
            "ModifyPredecessorGoalRating", actor, assignment_id, action_for_role(command.role),
            lambda a: a.modify_predecessor_goal_rating(
                source_goal_id=source_goal_id,
                role=command.role,
                change_reason=command.change_reason,
                by=actor.employee_id,
                degree_of_achievement=command.degree_of_achievement,
                justification=command.justification,
            ),
            command.expected_version,
        )

    # --- Notes ---

    async def add_in_review_note(self, actor: Actor, assignment_id: UUID, command: AddInReviewNoteCommand) -> CommandAccepted:
        return await self._execute(
            "AddInReviewNote", actor, assignment_id, AssignmentAction.MANAGE,
            lambda a: a.add_in_review_note(command.content, actor.employee_id, command.section_id),
            command.expected_version,
        )

    async def update_in_review_note(
        self, actor: Actor, assignment_id: UUID, note_id: UUID, command: UpdateInReviewNoteCommand,
    ) -> CommandAccepted:
        return await self._execute(
            "UpdateInReviewNote", actor, assignment_id, AssignmentAction.MANAGE,
            lambda a: a.update_in_review_note(note_id, command.content, actor.employee_id),
            command.expected_version,
        )

    async def delete_in_review_note(
        self, actor: Actor, assignment_id: UUID, note_id: UUID, expected_version: Optional[int] = None,
    ) -> CommandAccepted:
        return await self._execute(
            "DeleteInReviewNote", actor, assignment_id, AssignmentAction.MANAGE,
            lambda a: a.delete_in_review_note(note_id, actor.employee_id),
            expected_version,
        )

    # --- Feedback links ---

    async def _ensure_feedback_usable(self, assignment: QuestionnaireAssignment, feedback_id: UUID) -> None:
        if self._feedback is None:
            raise BusinessRuleViolation("Feedback records are not available", error_code="FEEDBACK_UNAVAILABLE")
        feedback = await self._feedback.get(feedback_id)
        if feedback is None:
            raise NotFoundError("EmployeeFeedback", feedback_id)
        if feedback.is_deleted:
            raise BusinessRuleViolation("Feedback has been deleted", error_code="FEEDBACK_DELETED")
        if feedback.employee_id != assignment.employee_id:
            raise BusinessRuleViolation(
                "Feedback belongs to a different employee",
                error_code="FEEDBACK_EMPLOYEE_MISMATCH",
            )

    async def link_employee_feedback(self, actor: Actor, assignment_id: UUID, command: FeedbackLinkCommand) -> CommandAccepted:
        assignment = await self._repository.load_required(assignment_id, command.expected_version)
        await self._guard.ensure_allowed(actor, action_for_role(command.role), assignment.employee_id)
        await self._ensure_feedback_usable(assignment, command.feedback_id)
        assignment.link_employee_feedback(command.question_id, command.feedback_id, command.role, actor.employee_id)
        version = await self._repository.store(assignment)
        logger.info(f"Feedback {command.feedback_id} linked to assignment {assignment_id}")
        return CommandAccepted(assignment_id=assignment.id, version=version, workflow_state=assignment.workflow_state)

    async def unlink_employee_feedback(self, actor: Actor, assignment_id: UUID, command: FeedbackLinkCommand) -> CommandAccepted:
        return await self._execute(
            "UnlinkEmployeeFeedback", actor, assignment_id, action_for_role(command.role),
            lambda a: a.unlink_employee_feedback(command.question_id, command.feedback_id, command.role, actor.employee_id),
            command.expected_version,
        )

    # --- Responses ---

    def _require_responses(self) -> ResponseRepository:
        if self._responses is None:
            raise BusinessRuleViolation("Responses are not available", error_code="RESPONSES_UNAVAILABLE")
        return self._responses

    async def save_answers(self, actor: Actor, assignment_id: UUID, command: SaveAnswersCommand) -> ResponseSaved:
        responses = self._require_responses()
        assignment = await self._repository.load_required(assignment_id)
        await self._guard.ensure_allowed(actor, action_for_role(command.role), assignment.employee_id)
        if assignment.is_withdrawn:
            raise AssignmentWithdrawnError(assignment_id)
        if assignment.is_locked:
            raise AssignmentLockedError(assignment_id)
        if not assignment.can_edit_answers(command.role):
            raise BusinessRuleViolation(
                f"{command.role.value} answers cannot be changed while the assignment is {assignment.workflow_state.value}",
                error_code="ANSWERS_NOT_EDITABLE",
            )
        response = await responses.load(assignment_id)
        if response is None:
            response = QuestionnaireResponse(assignment.id, assignment.employee_id)
        if command.expected_version is not None and command.expected_version != response.version:
            raise ConcurrencyConflictError("QuestionnaireResponse", assignment_id, command.expected_version, response.version)
        response.record_answers(command.section_id, command.role, command.answers, actor.employee_id)
        version = await responses.store(response)
        logger.info(f"Answers saved for assignment {assignment_id}", extra={"role": command.role.value, "version": version})
        return ResponseSaved(assignment_id=assignment_id, version=version)
