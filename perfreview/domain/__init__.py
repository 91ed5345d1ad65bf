# Domain package: aggregates, events and value objects. No I/O lives here.
from .assignment import QuestionnaireAssignment, fingerprint_answer
from .response import QuestionnaireResponse
from .workflow import CompletionRole, ConfirmationKind, WorkflowState

__all__ = [
    "QuestionnaireAssignment",
    "QuestionnaireResponse",
    "CompletionRole",
    "ConfirmationKind",
    "WorkflowState",
    "fingerprint_answer",
]
