"""Sellers (sub-contractors), EPC buyer companies and sales agents."""

from sqlalchemy import Boolean, Column, ForeignKey, Index, Integer, String, Text

from .base import Base, StatusTracked, UTCDateTime


class SubContractor(StatusTracked, Base):
    """Seller whose unpaid invoices get financed. Never hard-deleted."""

    __tablename__ = "sub_contractors"
    id = Column(Integer, primary_key=True)
    company_name = Column(String(255), nullable=False)
    contact_name = Column(String(255))
    email = Column(String(255))  # stored lower-case
    phone = Column(String(50))
    pan = Column(String(20))  # stored upper-case
    gstin = Column(String(20))  # stored upper-case
    status = Column(String(30), nullable=False, default="LEAD_CREATED")  # see SubContractorStatus
    epc_company_id = Column(Integer, ForeignKey("companies.id"))
    agent_id = Column(Integer, ForeignKey("agents.id"))

    risk_category = Column(String(10))  # LOW | MEDIUM | HIGH
    risk_assessment_id = Column(Integer)
    last_activity_at = Column(UTCDateTime)

    dormant_marked_at = Column(UTCDateTime)
    dormant_reason = Column(Text)

    cooling_started_at = Column(UTCDateTime)
    cooling_ends_at = Column(UTCDateTime)
    cooling_reason = Column(Text)
    early_reentry_approved = Column(Boolean, default=False)

    last_kyc_at = Column(UTCDateTime)
    kyc_expires_at = Column(UTCDateTime)
    re_kyc_triggered = Column(Boolean, default=False)
    re_kyc_reason = Column(String(255))
    kyc_expiry_notified_at = Column(UTCDateTime)

    __table_args__ = (
        Index("ix_sub_contractors_status", "status"),
        Index("ix_sub_contractors_pan", "pan"),
        Index("ix_sub_contractors_gstin", "gstin"),
    )


class Company(StatusTracked, Base):
    """EPC buyer that approves bills raised against it."""

    __tablename__ = "companies"
    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255))
    pan = Column(String(20))
    gstin = Column(String(20))
    status = Column(String(30), nullable=False, default="LEAD_CREATED")  # see CompanyStatus
    overdue_count = Column(Integer, default=0)

    last_kyc_at = Column(UTCDateTime)
    kyc_expires_at = Column(UTCDateTime)
    re_kyc_triggered = Column(Boolean, default=False)
    re_kyc_reason = Column(String(255))
    kyc_expiry_notified_at = Column(UTCDateTime)


class Agent(StatusTracked, Base):
    __tablename__ = "agents"
    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255))
    status = Column(String(20), nullable=False, default="ACTIVE")  # ACTIVE | SUSPENDED
    suspension_reason = Column(Text)
