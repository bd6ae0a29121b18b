"""Seller risk assessments and the blacklist registry."""

from sqlalchemy import Boolean, Column, ForeignKey, Index, Integer, String, Text

from .base import Base, StatusTracked, UTCDateTime

# Order is the display order of the RMT checklist.
CHECKLIST_ITEMS = (
    "business_registered",
    "gst_active",
    "pan_verified",
    "address_verified",
    "bank_statements_provided",
    "positive_cash_flow",
    "regular_transactions",
    "past_projects_verified",
    "epc_references_valid",
    "key_personnel_verified",
    "blacklist_check",
    "industry_clearance",
)


class SellerRiskAssessment(StatusTracked, Base):
    """RMT checklist for one seller; score/category/status move together."""

    __tablename__ = "seller_risk_assessments"
    id = Column(Integer, primary_key=True)
    sub_contractor_id = Column(Integer, ForeignKey("sub_contractors.id"), nullable=False)
    assessed_by_id = Column(Integer, ForeignKey("users.id"))

    business_registered = Column(Boolean, nullable=False, default=False)
    gst_active = Column(Boolean, nullable=False, default=False)
    pan_verified = Column(Boolean, nullable=False, default=False)
    address_verified = Column(Boolean, nullable=False, default=False)
    bank_statements_provided = Column(Boolean, nullable=False, default=False)
    positive_cash_flow = Column(Boolean, nullable=False, default=False)
    regular_transactions = Column(Boolean, nullable=False, default=False)
    past_projects_verified = Column(Boolean, nullable=False, default=False)
    epc_references_valid = Column(Boolean, nullable=False, default=False)
    key_personnel_verified = Column(Boolean, nullable=False, default=False)
    blacklist_check = Column(Boolean, nullable=False, default=False)
    industry_clearance = Column(Boolean, nullable=False, default=False)
    checklist_notes = Column(Text)

    risk_score = Column(Integer, nullable=False, default=0)
    risk_category = Column(String(10), nullable=False, default="HIGH")  # LOW | MEDIUM | HIGH
    recommendation = Column(String(10), nullable=False, default="REJECT")  # PROCEED | REVIEW | REJECT
    status = Column(String(30), nullable=False, default="PENDING")  # see AssessmentStatus

    decision = Column(String(10))  # PROCEED | REJECT, set by RMT on completion
    decision_notes = Column(Text)
    submitted_at = Column(UTCDateTime)
    approval_request_id = Column(Integer)

    __table_args__ = (Index("ix_risk_assessments_sc", "sub_contractor_id"),)

    @property
    def checklist(self) -> dict:
        return {item: bool(getattr(self, item)) for item in CHECKLIST_ITEMS}


class Blacklist(StatusTracked, Base):
    """Lifetime fraud registry entry keyed by PAN / GSTIN / email."""

    __tablename__ = "blacklist"
    id = Column(Integer, primary_key=True)
    entity_type = Column(String(20), nullable=False)  # company | subcontractor
    entity_id = Column(Integer)
    entity_name = Column(String(255))
    pan = Column(String(20))  # upper-case
    gstin = Column(String(20))  # upper-case
    email = Column(String(255))  # lower-case
    reason = Column(String(30), nullable=False)  # FRAUD | FAKE_DOCUMENTS | MISREPRESENTATION | PAYMENT_DEFAULT | EPC_REJECTION_FRAUD | OTHER
    description = Column(Text)
    status = Column(String(20), nullable=False, default="PENDING_APPROVAL")  # see BlacklistStatus
    reported_by_id = Column(Integer, ForeignKey("users.id"))
    approval_request_id = Column(Integer)
    revoked_by_id = Column(Integer, ForeignKey("users.id"))
    revoked_at = Column(UTCDateTime)
    revoke_reason = Column(Text)

    __table_args__ = (
        Index("ix_blacklist_pan", "pan"),
        Index("ix_blacklist_gstin", "gstin"),
        Index("ix_blacklist_email", "email"),
    )
