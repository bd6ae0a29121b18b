"""
schemas/approvals.py — Request bodies for the approval endpoints

Called by: routers/approvals.py
Depends on: pydantic
"""

from pydantic import BaseModel, Field


class ApprovalCreate(BaseModel):
    request_type: str
    title: str = Field(..., min_length=1, max_length=255)
    entity_type: str | None = None
    entity_id: int | None = None
    description: str | None = None
    priority: str = "MEDIUM"
    amount: float | None = Field(default=None, ge=0)


class ApprovalDecision(BaseModel):
    notes: str | None = None


class ApprovalEscalate(BaseModel):
    reason: str | None = None
