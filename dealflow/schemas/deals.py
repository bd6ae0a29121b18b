"""
schemas/deals.py — Request bodies for bills, cases and bids

Business Rules:
- Amounts are positive, durations are whole positive days
- RMT decisions: approve | reject | needs_review

Called by: routers/cases.py
Depends on: pydantic
"""

from typing import Literal

from pydantic import BaseModel, Field


class BillCreate(BaseModel):
    sub_contractor_id: int
    company_id: int
    bill_number: str = Field(..., min_length=1, max_length=100)
    amount: float = Field(..., gt=0)
    file_url: str | None = None


class BillVerify(BaseModel):
    approve: bool
    notes: str | None = None


class CaseCreate(BaseModel):
    bill_id: int


class CaseReview(BaseModel):
    approve: bool
    notes: str | None = None


class RmtReview(BaseModel):
    decision: Literal["approve", "reject", "needs_review"]
    notes: str | None = None


class BidCreate(BaseModel):
    case_id: int
    bid_amount: float = Field(..., gt=0)
    funding_duration_days: int = Field(..., gt=0)


class NegotiateIn(BaseModel):
    counter_amount: float = Field(..., gt=0)
    counter_duration: int = Field(..., gt=0)
    message: str | None = None


class BidReject(BaseModel):
    reason: str | None = None
