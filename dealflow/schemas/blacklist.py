"""
schemas/blacklist.py — Request bodies for the blacklist gate

Business Rules:
- A check needs at least one identifier (PAN, GSTIN or email)

Called by: routers/blacklist.py
Depends on: pydantic
"""

from pydantic import BaseModel, model_validator


class BlacklistCheck(BaseModel):
    pan: str | None = None
    gstin: str | None = None
    email: str | None = None

    @model_validator(mode="after")
    def at_least_one(self):
        if not (self.pan or self.gstin or self.email):
            raise ValueError("Provide at least one of pan, gstin, email")
        return self


class BlacklistReport(BaseModel):
    entity_type: str
    reason: str
    entity_id: int | None = None
    entity_name: str | None = None
    pan: str | None = None
    gstin: str | None = None
    email: str | None = None
    description: str | None = None


class BlacklistDecision(BaseModel):
    notes: str | None = None


class BlacklistRevoke(BaseModel):
    reason: str
