"""Approval requests — decoupled sign-off records with a fixed approver chain."""

from sqlalchemy import JSON, Column, Float, ForeignKey, Index, Integer, String, Text

from .base import Base, StatusTracked, UTCDateTime


class ApprovalRequest(StatusTracked, Base):
    __tablename__ = "approval_requests"
    id = Column(Integer, primary_key=True)
    request_type = Column(String(40), nullable=False)
    entity_type = Column(String(30))  # case | subcontractor | blacklist | risk_assessment | agent | transaction | nbfc
    entity_id = Column(Integer)
    title = Column(String(255), nullable=False)
    description = Column(Text)
    priority = Column(String(10), nullable=False, default="MEDIUM")  # LOW | MEDIUM | HIGH | URGENT
    amount = Column(Float)
    approval_chain = Column(JSON, nullable=False, default=list)  # [{level, approver_role, status, decided_by, decided_at, notes}]
    current_level = Column(Integer, nullable=False, default=1)
    status = Column(String(20), nullable=False, default="PENDING")  # see ApprovalStatus
    requested_by_id = Column(Integer, ForeignKey("users.id"))
    resolved_at = Column(UTCDateTime)

    __table_args__ = (
        Index("ix_approval_requests_status", "status"),
        Index("ix_approval_requests_entity", "entity_type", "entity_id"),
    )

    @property
    def current_approver_role(self) -> str | None:
        for step in self.approval_chain or []:
            if step["level"] == self.current_level:
                return step["approver_role"]
        return None
