import uuid

from sqlalchemy import Column, String, Text, DateTime, Boolean, ForeignKey, Uuid
from sqlalchemy.sql import func
from perfreview.database import Base


class EmployeeFeedback(Base):
    """Feedback record owned by the feedback module; assignments only link to it by id."""
    __tablename__ = "employee_feedback"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    employee_id = Column(Uuid, ForeignKey("employees.id"), nullable=False, index=True)
    source_type = Column(String(50), nullable=False, default="Colleague")
    provider_name = Column(String(255), nullable=True)
    content = Column(Text, nullable=False)
    is_deleted = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
