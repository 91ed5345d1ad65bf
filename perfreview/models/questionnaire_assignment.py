"""
Event stream tables for questionnaire assignments.

``questionnaire_assignments`` holds one header row per stream carrying the
current version used for compare-and-swap, plus a few denormalised columns
for lookups. ``questionnaire_assignment_events`` holds the events; the
unique (assignment_id, version, sequence) key makes a racing second writer
fail even if it slipped past the version check.
"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, JSON, Uuid, UniqueConstraint
from perfreview.database import Base


class AssignmentStreamRecord(Base):
    __tablename__ = "questionnaire_assignments"

    id = Column(Uuid, primary_key=True)
    version = Column(Integer, nullable=False)
    employee_id = Column(Uuid, nullable=False, index=True)
    template_id = Column(Uuid, nullable=False, index=True)
    workflow_state = Column(String(50), nullable=False, index=True)
    is_withdrawn = Column(Boolean, default=False, nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class AssignmentEventRecord(Base):
    __tablename__ = "questionnaire_assignment_events"
    __table_args__ = (
        UniqueConstraint("assignment_id", "version", "sequence", name="uq_assignment_event_position"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    assignment_id = Column(Uuid, ForeignKey("questionnaire_assignments.id"), nullable=False, index=True)
    version = Column(Integer, nullable=False)
    sequence = Column(Integer, nullable=False)
    event_type = Column(String(100), nullable=False)
    payload = Column(JSON, nullable=False)
    occurred_at = Column(DateTime(timezone=True), nullable=False)
