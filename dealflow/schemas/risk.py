"""
schemas/risk.py — Request bodies for seller risk assessments

Called by: routers/risk.py
Depends on: pydantic
"""

from typing import Literal

from pydantic import BaseModel


class AssessmentCreate(BaseModel):
    sub_contractor_id: int


class ChecklistUpdate(BaseModel):
    items: dict[str, bool]
    notes: str | None = None


class AssessmentComplete(BaseModel):
    decision: Literal["PROCEED", "REJECT"]
    notes: str | None = None
