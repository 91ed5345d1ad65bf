from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.encoders import jsonable_encoder

from perfreview.core.limiter import limiter
from perfreview.core.schemas import ApiResponse
from perfreview.dependencies import get_assignment_service, get_current_actor, get_review_edit_saga
from perfreview.schemas.assignment import (
    AddCustomSectionsCommand,
    AddGoalCommand,
    AddInReviewNoteCommand,
    CompleteSectionsCommand,
    CreateAssignmentCommand,
    CreateBulkAssignmentsCommand,
    EditAnswerDuringReviewCommand,
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
    ReviewOutcomeCommand,
    SaveAnswersCommand,
    SendReminderCommand,
    StartInitializationCommand,
    SubmitQuestionnaireCommand,
    UpdateInReviewNoteCommand,
    WithdrawCommand,
    WorkCommand,
)
from perfreview.services.assignment_service import QuestionnaireAssignmentService
from perfreview.services.authorization import Actor
from perfreview.services.review_editing import ReviewEditSaga

router = APIRouter(prefix="/assignments")


def _ok(data: Any) -> dict:
    return ApiResponse.ok(jsonable_encoder(data)).to_dict()


# --- Creation and queries ---

@router.post("", status_code=status.HTTP_201_CREATED)
async def create_assignment(
    command: CreateAssignmentCommand,
    actor: Actor = Depends(get_current_actor),
    service: QuestionnaireAssignmentService = Depends(get_assignment_service),
):
    return _ok(await service.create_assignment(actor, command))


@router.post("/bulk", status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
async def create_bulk_assignments(
    request: Request,
    command: CreateBulkAssignmentsCommand,
    actor: Actor = Depends(get_current_actor),
    service: QuestionnaireAssignmentService = Depends(get_assignment_service),
):
    results = await service.create_bulk_assignments(actor, command)
    return ApiResponse.ok(jsonable_encoder(results), metadata={"count": len(results)}).to_dict()


@router.get("/{assignment_id}")
async def get_assignment(
    assignment_id: UUID,
    actor: Actor = Depends(get_current_actor),
    service: QuestionnaireAssignmentService = Depends(get_assignment_service),
):
    return _ok(await service.get_assignment(actor, assignment_id))


@router.get("/{assignment_id}/response")
async def get_response(
    assignment_id: UUID,
    actor: Actor = Depends(get_current_actor),
    service: QuestionnaireAssignmentService = Depends(get_assignment_service),
):
    return _ok(await service.get_response(actor, assignment_id))


@router.put("/{assignment_id}/response/answers")
async def save_answers(
    assignment_id: UUID,
    command: SaveAnswersCommand,
    actor: Actor = Depends(get_current_actor),
    service: QuestionnaireAssignmentService = Depends(get_assignment_service),
):
    return _ok(await service.save_answers(actor, assignment_id, command))


# --- Workflow ---

@router.post("/{assignment_id}/initialize")
async def start_initialization(
    assignment_id: UUID,
    command: StartInitializationCommand,
    actor: Actor = Depends(get_current_actor),
    service: QuestionnaireAssignmentService = Depends(get_assignment_service),
):
    return _ok(await service.start_initialization(actor, assignment_id, command))


@router.post("/{assignment_id}/custom-sections")
async def add_custom_sections(
    assignment_id: UUID,
    command: AddCustomSectionsCommand,
    actor: Actor = Depends(get_current_actor),
    service: QuestionnaireAssignmentService = Depends(get_assignment_service),
):
    return _ok(await service.add_custom_sections(actor, assignment_id, command))


@router.post("/{assignment_id}/start-work")
async def start_work(
    assignment_id: UUID,
    command: WorkCommand,
    actor: Actor = Depends(get_current_actor),
    service: QuestionnaireAssignmentService = Depends(get_assignment_service),
):
    return _ok(await service.start_work(actor, assignment_id, command))


@router.post("/{assignment_id}/complete-work")
async def complete_work(
    assignment_id: UUID,
    command: WorkCommand,
    actor: Actor = Depends(get_current_actor),
    service: QuestionnaireAssignmentService = Depends(get_assignment_service),
):
    return _ok(await service.complete_work(actor, assignment_id, command))


@router.post("/{assignment_id}/sections/complete")
async def complete_sections(
    assignment_id: UUID,
    command: CompleteSectionsCommand,
    actor: Actor = Depends(get_current_actor),
    service: QuestionnaireAssignmentService = Depends(get_assignment_service),
):
    return _ok(await service.complete_sections(actor, assignment_id, command))


@router.post("/{assignment_id}/submit/employee")
async def submit_employee_questionnaire(
    assignment_id: UUID,
    command: SubmitQuestionnaireCommand,
    actor: Actor = Depends(get_current_actor),
    service: QuestionnaireAssignmentService = Depends(get_assignment_service),
):
    return _ok(await service.submit_employee_questionnaire(actor, assignment_id, command))


@router.post("/{assignment_id}/submit/manager")
async def submit_manager_questionnaire(
    assignment_id: UUID,
    command: SubmitQuestionnaireCommand,
    actor: Actor = Depends(get_current_actor),
    service: QuestionnaireAssignmentService = Depends(get_assignment_service),
):
    return _ok(await service.submit_manager_questionnaire(actor, assignment_id, command))


@router.post("/{assignment_id}/review/initiate")
async def initiate_review(
    assignment_id: UUID,
    command: InitiateReviewCommand,
    actor: Actor = Depends(get_current_actor),
    service: QuestionnaireAssignmentService = Depends(get_assignment_service),
):
    return _ok(await service.initiate_review(actor, assignment_id, command))


@router.post("/{assignment_id}/review/answers")
async def edit_answer_during_review(
    assignment_id: UUID,
    command: EditAnswerDuringReviewCommand,
    actor: Actor = Depends(get_current_actor),
    saga: ReviewEditSaga = Depends(get_review_edit_saga),
):
    return _ok(await saga.run(actor, assignment_id, command))


@router.post("/{assignment_id}/review/finish")
async def finish_review_meeting(
    assignment_id: UUID,
    command: FinishReviewMeetingCommand,
    actor: Actor = Depends(get_current_actor),
    service: QuestionnaireAssignmentService = Depends(get_assignment_service),
):
    return _ok(await service.finish_review_meeting(actor, assignment_id, command))


@router.post("/{assignment_id}/review/confirm")
async def confirm_review_outcome(
    assignment_id: UUID,
    command: ReviewOutcomeCommand,
    actor: Actor = Depends(get_current_actor),
    service: QuestionnaireAssignmentService = Depends(get_assignment_service),
):
    return _ok(await service.confirm_review_outcome(actor, assignment_id, command))


@router.post("/{assignment_id}/review/sign-off")
async def sign_off_review_outcome(
    assignment_id: UUID,
    command: ReviewOutcomeCommand,
    actor: Actor = Depends(get_current_actor),
    service: QuestionnaireAssignmentService = Depends(get_assignment_service),
):
    return _ok(await service.sign_off_review_outcome(actor, assignment_id, command))


@router.post("/{assignment_id}/finalize")
async def finalize_as_manager(
    assignment_id: UUID,
    command: FinalizeAsManagerCommand,
    actor: Actor = Depends(get_current_actor),
    service: QuestionnaireAssignmentService = Depends(get_assignment_service),
):
    return _ok(await service.finalize_as_manager(actor, assignment_id, command))


@router.post("/{assignment_id}/due-date")
async def extend_due_date(
    assignment_id: UUID,
    command: ExtendDueDateCommand,
    actor: Actor = Depends(get_current_actor),
    service: QuestionnaireAssignmentService = Depends(get_assignment_service),
):
    return _ok(await service.extend_due_date(actor, assignment_id, command))


@router.post("/{assignment_id}/withdraw")
async def withdraw(
    assignment_id: UUID,
    command: WithdrawCommand,
    actor: Actor = Depends(get_current_actor),
    service: QuestionnaireAssignmentService = Depends(get_assignment_service),
):
    return _ok(await service.withdraw(actor, assignment_id, command))


@router.post("/{assignment_id}/reopen")
async def reopen(
    assignment_id: UUID,
    command: ReopenQuestionnaireCommand,
    actor: Actor = Depends(get_current_actor),
    service: QuestionnaireAssignmentService = Depends(get_assignment_service),
):
    return _ok(await service.reopen(actor, assignment_id, command))


@router.post("/{assignment_id}/reminders")
async def send_reminder(
    assignment_id: UUID,
    command: SendReminderCommand,
    actor: Actor = Depends(get_current_actor),
    service: QuestionnaireAssignmentService = Depends(get_assignment_service),
):
    return _ok(await service.send_reminder(actor, assignment_id, command))


# --- Goals ---

@router.post("/{assignment_id}/goals", status_code=status.HTTP_201_CREATED)
async def add_goal(
    assignment_id: UUID,
    command: AddGoalCommand,
    actor: Actor = Depends(get_current_actor),
    service: QuestionnaireAssignmentService = Depends(get_assignment_service),
):
    return _ok(await service.add_goal(actor, assignment_id, command))


@router.patch("/{assignment_id}/goals/{goal_id}")
async def modify_goal(
    assignment_id: UUID,
    goal_id: UUID,
    command: ModifyGoalCommand,
    actor: Actor = Depends(get_current_actor),
    service: QuestionnaireAssignmentService = Depends(get_assignment_service),
):
    return _ok(await service.modify_goal(actor, assignment_id, goal_id, command))


@router.delete("/{assignment_id}/goals/{goal_id}")
async def delete_goal(
    assignment_id: UUID,
    goal_id: UUID,
    expected_version: Optional[int] = Query(default=None),
    actor: Actor = Depends(get_current_actor),
    service: QuestionnaireAssignmentService = Depends(get_assignment_service),
):
    return _ok(await service.delete_goal(actor, assignment_id, goal_id, expected_version))


@router.post("/{assignment_id}/predecessors")
async def link_predecessor(
    assignment_id: UUID,
    command: LinkPredecessorCommand,
    actor: Actor = Depends(get_current_actor),
    service: QuestionnaireAssignmentService = Depends(get_assignment_service),
):
    return _ok(await service.link_predecessor(actor, assignment_id, command))


@router.post("/{assignment_id}/predecessor-ratings", status_code=status.HTTP_201_CREATED)
async def rate_predecessor_goal(
    assignment_id: UUID,
    command: RatePredecessorGoalCommand,
    actor: Actor = Depends(get_current_actor),
    service: QuestionnaireAssignmentService = Depends(get_assignment_service),
):
    return _ok(await service.rate_predecessor_goal(actor, assignment_id, command))


@router.patch("/{assignment_id}/predecessor-ratings/{source_goal_id}")
async def modify_predecessor_goal_rating(
    assignment_id: UUID,
    source_goal_id: UUID,
    command: ModifyPredecessorGoalRatingCommand,
    actor: Actor = Depends(get_current_actor),
    service: QuestionnaireAssignmentService = Depends(get_assignment_service),
):
    return _ok(await service.modify_predecessor_goal_rating(actor, assignment_id, source_goal_id, command))


# --- Notes ---

@router.post("/{assignment_id}/notes", status_code=status.HTTP_201_CREATED)
async def add_in_review_note(
    assignment_id: UUID,
    command: AddInReviewNoteCommand,
    actor: Actor = Depends(get_current_actor),
    service: QuestionnaireAssignmentService = Depends(get_assignment_service),
):
    return _ok(await service.add_in_review_note(actor, assignment_id, command))


@router.patch("/{assignment_id}/notes/{note_id}")
async def update_in_review_note(
    assignment_id: UUID,
    note_id: UUID,
    command: UpdateInReviewNoteCommand,
    actor: Actor = Depends(get_current_actor),
    service: QuestionnaireAssignmentService = Depends(get_assignment_service),
):
    return _ok(await service.update_in_review_note(actor, assignment_id, note_id, command))


@router.delete("/{assignment_id}/notes/{note_id}")
async def delete_in_review_note(
    assignment_id: UUID,
    note_id: UUID,
    expected_version: Optional[int] = Query(default=None),
    actor: Actor = Depends(get_current_actor),
    service: QuestionnaireAssignmentService = Depends(get_assignment_service),
):
    return _ok(await service.delete_in_review_note(actor, assignment_id, note_id, expected_version))


# --- Feedback links ---

@router.post("/{assignment_id}/feedback-links")
async def link_employee_feedback(
    assignment_id: UUID,
    command: FeedbackLinkCommand,
    actor: Actor = Depends(get_current_actor),
    service: QuestionnaireAssignmentService = Depends(get_assignment_service),
):
    return _ok(await service.link_employee_feedback(actor, assignment_id, command))


@router.post("/{assignment_id}/feedback-links/unlink")
async def unlink_employee_feedback(
    assignment_id: UUID,
    command: FeedbackLinkCommand,
    actor: Actor = Depends(get_current_actor),
    service: QuestionnaireAssignmentService = Depends(get_assignment_service),
):
    return _ok(await service.unlink_employee_feedback(actor, assignment_id, command))
