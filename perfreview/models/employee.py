"""
Employee directory entry with application role and reporting line.
The hierarchy service walks ``manager_id`` to answer team-membership checks.
"""
import enum
import uuid

from sqlalchemy import Column, String, Enum, DateTime, Boolean, ForeignKey, Uuid
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from perfreview.database import Base


class ApplicationRole(str, enum.Enum):
    """
    Roles recognised by the review workflow.

    - EMPLOYEE: own assignment, employee-side actions only
    - TEAM_LEAD: own assignment as employee; manages assignments of their reporting hierarchy
    - HR / HR_LEAD / ADMIN: all assignments, all actions
    """
    EMPLOYEE = "Employee"
    TEAM_LEAD = "TeamLead"
    HR = "HR"
    HR_LEAD = "HRLead"
    ADMIN = "Admin"


class Employee(Base):
    __tablename__ = "employees"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(255), nullable=False)
    role = Column(Enum(ApplicationRole), default=ApplicationRole.EMPLOYEE, nullable=False)
    manager_id = Column(Uuid, ForeignKey("employees.id"), nullable=True, index=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    manager = relationship("Employee", remote_side=[id], backref="direct_reports")

    def __repr__(self):
        return f"<Employee {self.email} ({self.role.value})>"
