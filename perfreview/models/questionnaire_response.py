from sqlalchemy import Column, Integer, DateTime, JSON, Uuid
from perfreview.database import Base


class QuestionnaireResponseRecord(Base):
    """Snapshot row for a QuestionnaireResponse; ``version`` is the compare-and-swap column."""
    __tablename__ = "questionnaire_responses"

    assignment_id = Column(Uuid, primary_key=True)
    employee_id = Column(Uuid, nullable=False, index=True)
    version = Column(Integer, nullable=False)
    snapshot = Column(JSON, nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
