# Models package
# Importing modules here ensures they are registered with SQLAlchemy Base
from . import (
    employee, employee_feedback, notification,
    questionnaire_assignment, questionnaire_response,
)

# Explicit class exports for cleaner imports
from .employee import ApplicationRole, Employee
from .employee_feedback import EmployeeFeedback
from .notification import Notification
from .questionnaire_assignment import AssignmentEventRecord, AssignmentStreamRecord
from .questionnaire_response import QuestionnaireResponseRecord

__all__ = [
    "ApplicationRole",
    "Employee",
    "EmployeeFeedback",
    "Notification",
    "AssignmentEventRecord",
    "AssignmentStreamRecord",
    "QuestionnaireResponseRecord",
]
