"""NBFC lender profiles (with their lending preference sheet) and case shares."""

from sqlalchemy import JSON, Column, Float, ForeignKey, Integer, String, Text, UniqueConstraint

from .base import Base, StatusTracked, UTCDateTime


class Nbfc(StatusTracked, Base):
    __tablename__ = "nbfcs"
    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    code = Column(String(20), unique=True, nullable=False)
    contact_email = Column(String(255))
    status = Column(String(20), nullable=False, default="ACTIVE")  # ACTIVE | INACTIVE | SUSPENDED

    # Lending preference sheet
    geographies = Column(JSON, nullable=False, default=list)
    sectors = Column(JSON, nullable=False, default=list)
    min_deal_size = Column(Float, nullable=False, default=0)
    max_deal_size = Column(Float)  # None = no upper bound
    accepted_risk_levels = Column(JSON, nullable=False, default=lambda: ["LOW", "MEDIUM"])
    risk_appetite = Column(String(20), default="LOW_MEDIUM")  # LOW_ONLY | LOW_MEDIUM | ALL_CATEGORIES
    monthly_capacity = Column(Float)
    capacity_used = Column(Float, nullable=False, default=0)

    # Rolling metrics
    approval_rate = Column(Float, nullable=False, default=0)
    avg_processing_days = Column(Float)  # None = no history yet
    total_deals_processed = Column(Integer, nullable=False, default=0)
    approved_deals = Column(Integer, nullable=False, default=0)
    total_disbursed = Column(Float, nullable=False, default=0)
    avg_interest_rate = Column(Float, nullable=False, default=15)
    preference_score = Column(Float, nullable=False, default=50)


class NbfcShare(Base):
    """A case offered to one lender, and that lender's answer."""

    __tablename__ = "nbfc_shares"
    id = Column(Integer, primary_key=True)
    case_id = Column(Integer, ForeignKey("cases.id"), nullable=False)
    nbfc_id = Column(Integer, ForeignKey("nbfcs.id"), nullable=False)
    status = Column(String(20), nullable=False, default="PENDING")  # PENDING | APPROVED | REJECTED | WITHDRAWN
    match_score = Column(Float)
    shared_by_id = Column(Integer, ForeignKey("users.id"))
    shared_at = Column(UTCDateTime)
    interest_rate = Column(Float)
    funding_percentage = Column(Float)
    tenor_days = Column(Integer)
    response_notes = Column(Text)
    responded_by_id = Column(Integer, ForeignKey("users.id"))
    responded_at = Column(UTCDateTime)

    __table_args__ = (UniqueConstraint("case_id", "nbfc_id", name="uq_nbfc_share_case"),)
