import pytest
import os
import uuid
from datetime import date, timedelta
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Set env before importing app components
os.environ["APP_ENV"] = "testing"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["RATE_LIMIT_ENABLED"] = "false"

from perfreview.database import Base, get_session_factory
from perfreview.domain.assignment import QuestionnaireAssignment
from perfreview.domain.workflow import CompletionRole
from perfreview.main import app
from perfreview.models.employee import ApplicationRole
from perfreview.services.assignment_service import QuestionnaireAssignmentService
from perfreview.services.authorization import Actor, AuthorizationGuard
from perfreview.services.feedback import InMemoryFeedbackRepository
from perfreview.services.hierarchy import InMemoryHierarchyService
from perfreview.services.repository import InMemoryAssignmentRepository, InMemoryResponseRepository
from fastapi.testclient import TestClient

# SQLite in-memory database configuration
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def session_factory():
    """Fresh schema per test; repositories commit through their own sessions."""
    Base.metadata.create_all(bind=engine)
    yield TestingSessionLocal
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def client(session_factory):
    """TestClient wired to the test database via dependency override."""
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


# --- Identities ---

@pytest.fixture
def employee_id():
    return uuid.uuid4()


@pytest.fixture
def team_lead_id():
    return uuid.uuid4()


@pytest.fixture
def employee(employee_id):
    return Actor(employee_id=employee_id, role=ApplicationRole.EMPLOYEE)


@pytest.fixture
def team_lead(team_lead_id):
    return Actor(employee_id=team_lead_id, role=ApplicationRole.TEAM_LEAD)


@pytest.fixture
def outside_team_lead():
    return Actor(employee_id=uuid.uuid4(), role=ApplicationRole.TEAM_LEAD)


@pytest.fixture
def hr():
    return Actor(employee_id=uuid.uuid4(), role=ApplicationRole.HR)


# --- In-memory collaborators ---

@pytest.fixture
def hierarchy(employee_id, team_lead_id):
    return InMemoryHierarchyService({employee_id: team_lead_id})


@pytest.fixture
def guard(hierarchy):
    return AuthorizationGuard(hierarchy)


@pytest.fixture
def repository():
    return InMemoryAssignmentRepository()


@pytest.fixture
def responses():
    return InMemoryResponseRepository()


@pytest.fixture
def feedback():
    return InMemoryFeedbackRepository()


@pytest.fixture
def service(repository, guard, feedback, responses):
    return QuestionnaireAssignmentService(
        repository=repository,
        guard=guard,
        feedback=feedback,
        responses=responses,
    )


# --- Aggregate builders ---

@pytest.fixture
def new_assignment(employee_id):
    """Factory for an uncommitted assignment owned by the test employee."""
    def _new(**overrides):
        kwargs = dict(
            template_id=uuid.uuid4(),
            employee_id=employee_id,
            employee_name="Jane Doe",
            employee_email="jane.doe@example.com",
            due_date=date.today() + timedelta(days=30),
            assigned_by="hr@example.com",
        )
        kwargs.update(overrides)
        return QuestionnaireAssignment.create(**kwargs)
    return _new


def advance_to_both_submitted(assignment, employee_id, manager_id):
    assignment.start_initialization(manager_id)
    assignment.start_work(CompletionRole.EMPLOYEE, employee_id)
    assignment.start_work(CompletionRole.MANAGER, manager_id)
    assignment.submit_employee_questionnaire(employee_id)
    assignment.submit_manager_questionnaire(manager_id)
    return assignment


def advance_to_review(assignment, employee_id, manager_id):
    advance_to_both_submitted(assignment, employee_id, manager_id)
    assignment.initiate_review(manager_id)
    return assignment


def advance_to_confirmed(assignment, employee_id, manager_id):
    advance_to_review(assignment, employee_id, manager_id)
    assignment.finish_review_meeting(manager_id, "Good year")
    assignment.confirm_review_outcome_as_employee(employee_id, "Agreed")
    return assignment


def goal_window():
    start = date.today()
    return start, start + timedelta(days=180)
