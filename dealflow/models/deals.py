"""Bills, cases, bids and funded transactions."""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import validates

from ..exceptions import StateConflictError
from .base import Base, StatusTracked, UTCDateTime


class Bill(StatusTracked, Base):
    __tablename__ = "bills"
    id = Column(Integer, primary_key=True)
    bill_number = Column(String(100), nullable=False)
    amount = Column(Float, nullable=False)
    sub_contractor_id = Column(Integer, ForeignKey("sub_contractors.id"), nullable=False)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False)
    file_url = Column(String(500))
    file_public_id = Column(String(255))
    status = Column(String(20), nullable=False, default="UPLOADED")  # UPLOADED | VERIFIED | REJECTED
    verified_by_id = Column(Integer, ForeignKey("users.id"))
    verification_notes = Column(Text)


class Case(StatusTracked, Base):
    """One bill + one seller + one EPC, carried through to a funding outcome."""

    __tablename__ = "cases"
    id = Column(Integer, primary_key=True)
    case_number = Column(String(20), unique=True)  # GRY-000001
    bill_id = Column(Integer, ForeignKey("bills.id"), nullable=False)
    sub_contractor_id = Column(Integer, ForeignKey("sub_contractors.id"), nullable=False)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False)
    status = Column(String(30), nullable=False, default="READY_FOR_COMPANY_REVIEW")  # see CaseStatus
    deal_value = Column(Float)
    risk_level = Column(String(10))  # seller's risk category at CWC time

    epc_review_notes = Column(Text)
    rmt_review_notes = Column(Text)

    commercial_snapshot = Column(JSON)  # {bid_id, final_amount, final_duration, locked_at}
    locked_at = Column(UTCDateTime)
    founder_approved = Column(Boolean, default=False)
    founder_approved_amount = Column(Float)  # largest deal amount signed off so far
    selected_nbfc_id = Column(Integer, ForeignKey("nbfcs.id"))
    created_by_id = Column(Integer, ForeignKey("users.id"))

    __table_args__ = (Index("ix_cases_status", "status"),)

    @validates("commercial_snapshot")
    def _freeze_snapshot(self, key, value):
        if self.locked_at is not None and value != self.commercial_snapshot:
            raise StateConflictError(
                f"Case {self.id} commercial terms are locked",
                entity="Case", entity_id=self.id, current_status=self.status,
                attempted="modify_commercial_snapshot",
            )
        return value


class Bid(StatusTracked, Base):
    """EPC's funding offer against a case, with its counter-offer log."""

    __tablename__ = "bids"
    id = Column(Integer, primary_key=True)
    case_id = Column(Integer, ForeignKey("cases.id"), nullable=False)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False)
    placed_by_id = Column(Integer, ForeignKey("users.id"))
    bid_amount = Column(Float, nullable=False)
    funding_duration_days = Column(Integer, nullable=False)
    status = Column(String(30), nullable=False, default="SUBMITTED")  # see BidStatus
    negotiations = Column(JSON, nullable=False, default=list)
    locked_terms = Column(JSON)  # {amount, duration, source, locked_at}

    __table_args__ = (Index("ix_bids_case", "case_id"),)


class Transaction(StatusTracked, Base):
    """The funded instrument: escrow, disbursement, repayment and recourse."""

    __tablename__ = "transactions"
    id = Column(Integer, primary_key=True)
    transaction_number = Column(String(20), unique=True)  # TXN-00000001
    case_id = Column(Integer, ForeignKey("cases.id"), nullable=False)
    bid_id = Column(Integer, ForeignKey("bids.id"), nullable=False)
    seller_id = Column(Integer, ForeignKey("sub_contractors.id"), nullable=False)
    buyer_id = Column(Integer, ForeignKey("companies.id"), nullable=False)
    nbfc_id = Column(Integer, ForeignKey("nbfcs.id"), nullable=False)
    status = Column(String(30), nullable=False, default="PENDING_ESCROW")  # see TransactionStatus

    funded_amount = Column(Float, nullable=False)
    funding_percentage = Column(Float, nullable=False, default=100)
    interest_rate = Column(Float, nullable=False)
    tenor_days = Column(Integer, nullable=False)
    total_due = Column(Float, nullable=False)

    # Escrow (TRA)
    tra_setup = Column(Boolean, default=False)
    tra_reference = Column(String(100))
    escrow_account_number = Column(String(50))
    escrow_bank_name = Column(String(255))
    escrow_ifsc = Column(String(20))
    escrow_setup_at = Column(UTCDateTime)

    # Disbursement
    disbursement_status = Column(String(20), default="PENDING")  # PENDING | INITIATED | COMPLETED | FAILED
    disbursement_reference = Column(String(100))
    disbursed_at = Column(UTCDateTime)
    due_at = Column(UTCDateTime)

    # Repayment
    repayment_status = Column(String(20), default="PENDING")  # PENDING | PARTIAL | COMPLETED | OVERDUE | DEFAULTED
    amount_received = Column(Float, default=0)
    payments = Column(JSON, nullable=False, default=list)
    overdue_by_days = Column(Integer, default=0)
    repaid_at = Column(UTCDateTime)

    # Recourse against the seller
    recourse_triggered = Column(Boolean, default=False)
    recourse_triggered_at = Column(UTCDateTime)
    recourse_against_id = Column(Integer, ForeignKey("sub_contractors.id"))

    overdue_alert_level = Column(String(10))  # None | OVERDUE | CRITICAL
    repayment_reminder_sent_at = Column(UTCDateTime)
    created_by_id = Column(Integer, ForeignKey("users.id"))

    __table_args__ = (
        Index("ix_transactions_status", "status"),
        Index("ix_transactions_seller_created", "seller_id", "created_at"),
    )
