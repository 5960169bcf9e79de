"""
CohortWatch SQLAlchemy Models.

Every table is namespaced by institution_id. Ids are opaque strings.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from cohortwatch.db.compat import JSONDict, JSONList
from cohortwatch.db.engine import Base
from cohortwatch.monitoring.schemas import utcnow


class InstitutionModel(Base):
    __tablename__ = "institutions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    # Threshold overrides live under settings["thresholds"]
    settings: Mapped[dict] = mapped_column(JSONDict(), default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class StudentModel(Base):
    __tablename__ = "students"
    __table_args__ = (
        Index("ix_students_email", "email"),
        Index("ix_students_counselor_id", "counselor_id"),
    )

    # Ids are unique per institution
    institution_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("institutions.id"), primary_key=True
    )
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), default="")
    email: Mapped[str] = mapped_column(String(320), default="")
    engagement_score: Mapped[Optional[float]] = mapped_column(Float)
    risk_score: Mapped[Optional[float]] = mapped_column(Float)
    stage: Mapped[str] = mapped_column(String(32), nullable=False, default="lead")
    last_activity: Mapped[Optional[datetime]] = mapped_column(DateTime)
    counselor_id: Mapped[Optional[str]] = mapped_column(String(64))
    documents: Mapped[list] = mapped_column(JSONList(), default=list)
    # Optimistic concurrency counter, bumped on every write
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class CounselorModel(Base):
    __tablename__ = "counselors"
    institution_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("institutions.id"), primary_key=True
    )
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), default="")
    email: Mapped[str] = mapped_column(String(320), default="")
    capacity: Mapped[Optional[int]] = mapped_column(Integer)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class AutomationRuleModel(Base):
    """
    Automation rules per institution.

    Defines WHEN a rule fires (trigger) and WHAT it does (action).
    """

    __tablename__ = "automation_rules"
    institution_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("institutions.id"), primary_key=True
    )
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, default="")
    trigger_type: Mapped[str] = mapped_column(String(32), nullable=False)
    trigger_config: Mapped[dict] = mapped_column(JSONDict(), nullable=False, default=dict)
    action_type: Mapped[str] = mapped_column(String(32), nullable=False)
    action_config: Mapped[dict] = mapped_column(JSONDict(), nullable=False, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class AlertModel(Base):
    """Alert record; only the read flag is ever updated."""

    __tablename__ = "alerts"
    __table_args__ = (
        Index("ix_alerts_institution_read", "institution_id", "read"),
        Index("ix_alerts_student_id", "student_id"),
        Index("ix_alerts_created_at", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    institution_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("institutions.id"), nullable=False
    )
    student_id: Mapped[Optional[str]] = mapped_column(String(64))
    rule_id: Mapped[Optional[str]] = mapped_column(String(64))
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    recommendations: Mapped[list] = mapped_column(JSONList(), default=list)
    details: Mapped[dict] = mapped_column(JSONDict(), default=dict)
    read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class ObligationModel(Base):
    __tablename__ = "obligations"
    __table_args__ = (Index("ix_obligations_student_id", "student_id"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    institution_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("institutions.id"), nullable=False
    )
    student_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    requirement: Mapped[str] = mapped_column(String(255), nullable=False)
    current_value: Mapped[Optional[str]] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    consequence: Mapped[Optional[str]] = mapped_column(String(255))
    due_date: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class CommunicationModel(Base):
    __tablename__ = "communications"
    __table_args__ = (Index("ix_communications_student_id", "student_id"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    institution_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("institutions.id"), nullable=False
    )
    student_id: Mapped[str] = mapped_column(String(64), nullable=False)
    rule_id: Mapped[Optional[str]] = mapped_column(String(64))
    channel: Mapped[str] = mapped_column(String(32), nullable=False, default="email")
    recipient: Mapped[str] = mapped_column(String(320), nullable=False)
    subject: Mapped[str] = mapped_column(String(500), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    error: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class ActionLogModel(Base):
    """
    One row per executed (student, rule) action.

    dedup_key = "institution:student:rule:bucket" is unique per institution,
    so two writers racing inside the same bucket cannot both commit.
    """

    __tablename__ = "action_log"
    __table_args__ = (
        UniqueConstraint("institution_id", "dedup_key", name="uq_action_log_dedup_key"),
        Index(
            "ix_action_log_student_rule", "institution_id", "student_id", "rule_id", "executed_at"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    institution_id: Mapped[str] = mapped_column(String(64), nullable=False)
    student_id: Mapped[str] = mapped_column(String(64), nullable=False)
    rule_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action_type: Mapped[str] = mapped_column(String(32), nullable=False)
    dedup_key: Mapped[str] = mapped_column(String(255), nullable=False)
    executed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
