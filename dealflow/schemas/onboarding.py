"""
schemas/onboarding.py — Request bodies for seller onboarding and SLA milestones

Called by: routers/onboarding.py, routers/sla.py
Depends on: pydantic
"""

from pydantic import BaseModel, Field


class SubContractorCreate(BaseModel):
    company_name: str = Field(..., min_length=1, max_length=255)
    contact_name: str | None = None
    email: str | None = None
    phone: str | None = None
    pan: str | None = None
    gstin: str | None = None
    epc_company_id: int | None = None
    agent_id: int | None = None


class TransitionIn(BaseModel):
    notes: str | None = None


class EarlyReentryIn(BaseModel):
    reason: str = Field(..., min_length=1)


class MilestoneComplete(BaseModel):
    notes: str | None = None


class CompanyCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    email: str | None = None
    pan: str | None = None
    gstin: str | None = None
