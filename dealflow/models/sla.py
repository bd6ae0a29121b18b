"""SLA trackers, their fixed milestones, and the reminder/escalation ledger."""

from sqlalchemy import Column, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from .base import Base, StatusTracked, UTCDateTime, utcnow


class Sla(StatusTracked, Base):
    __tablename__ = "slas"
    id = Column(Integer, primary_key=True)
    entity_type = Column(String(30), nullable=False)  # CASE | EPC_VALIDATION | BILL_VERIFICATION | KYC_COMPLETION | NBFC_RESPONSE | DOCUMENT_UPLOAD
    entity_id = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default="ACTIVE")  # see SlaStatus
    completed_at = Column(UTCDateTime)

    milestones = relationship(
        "SlaMilestone", back_populates="sla", order_by="SlaMilestone.offset_days",
        cascade="all, delete-orphan",
    )

    __table_args__ = (Index("ix_slas_entity", "entity_type", "entity_id"),)


class SlaMilestone(Base):
    """One fixed deadline. due_at is written once, at SLA creation."""

    __tablename__ = "sla_milestones"
    id = Column(Integer, primary_key=True)
    sla_id = Column(Integer, ForeignKey("slas.id", ondelete="CASCADE"), nullable=False)
    key = Column(String(10), nullable=False)  # day3 | day7 | day10 | day14
    name = Column(String(100), nullable=False)
    offset_days = Column(Integer, nullable=False)
    due_at = Column(UTCDateTime, nullable=False)
    status = Column(String(20), nullable=False, default="PENDING")  # PENDING | OVERDUE | COMPLETED | COMPLETED_LATE
    days_overdue = Column(Integer, default=0)
    completed_at = Column(UTCDateTime)
    completed_by_id = Column(Integer, ForeignKey("users.id"))
    notes = Column(Text)

    sla = relationship("Sla", back_populates="milestones")

    __table_args__ = (UniqueConstraint("sla_id", "key", name="uq_sla_milestone_key"),)


class SlaEvent(Base):
    """Reminder / escalation ledger; the unique key makes every emission once-only."""

    __tablename__ = "sla_events"
    id = Column(Integer, primary_key=True)
    sla_id = Column(Integer, ForeignKey("slas.id", ondelete="CASCADE"), nullable=False)
    kind = Column(String(30), nullable=False)  # MILESTONE_OVERDUE | REMINDER_1 | REMINDER_2 | ESCALATION | DORMANT
    milestone_key = Column(String(10), nullable=False, default="")
    detail = Column(Text)
    created_at = Column(UTCDateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("sla_id", "kind", "milestone_key", name="uq_sla_event_once"),
    )
