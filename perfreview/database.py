from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from perfreview.core.config import settings

# Support both PostgreSQL and SQLite via centralized settings
DATABASE_URL = settings.database_url

if DATABASE_URL.startswith("postgresql"):
    engine = create_engine(DATABASE_URL, echo=settings.database_echo, pool_pre_ping=True)
else:
    # SQLite configuration for local development/testing
    engine = create_engine(
        DATABASE_URL, connect_args={"check_same_thread": False}, echo=settings.database_echo
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_session_factory() -> sessionmaker:
    """Dependency hook returning the session factory repositories and services build on."""
    return SessionLocal


def init_db(bind=None):
    """
    Registers all domain models and initializes the database schema.
    This should be called during the application startup lifespan.
    """
    # Import all models to ensure they are registered with Base.metadata before create_all
    from perfreview.models import (  # noqa: F401
        employee, employee_feedback, notification,
        questionnaire_assignment, questionnaire_response,
    )
    Base.metadata.create_all(bind=bind or engine)
