"""
schemas/transactions.py — Request bodies for the transaction endpoints

Called by: routers/transactions.py
Depends on: pydantic
"""

from typing import Literal

from pydantic import BaseModel, Field


class TransactionCreate(BaseModel):
    case_id: int
    nbfc_id: int | None = None


class EscrowIn(BaseModel):
    tra_reference: str = Field(..., min_length=1)
    account_number: str = Field(..., min_length=1)
    bank_name: str
    ifsc: str = Field(..., min_length=4, max_length=20)


class DisburseIn(BaseModel):
    action: Literal["initiate", "complete", "fail"]
    reference: str | None = None


class RepaymentIn(BaseModel):
    amount: float = Field(..., gt=0)
    reference: str | None = None


class NotesIn(BaseModel):
    notes: str | None = None
