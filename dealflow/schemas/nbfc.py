"""
schemas/nbfc.py — Request bodies for NBFC sharing and responses

Called by: routers/nbfc.py
Depends on: pydantic
"""

from pydantic import BaseModel, Field


class ShareIn(BaseModel):
    nbfc_ids: list[int] = Field(..., min_length=1)


class RespondIn(BaseModel):
    approve: bool
    nbfc_id: int | None = None
    interest_rate: float | None = Field(default=None, gt=0, le=100)
    funding_percentage: float | None = Field(default=None, gt=0, le=100)
    tenor_days: int | None = Field(default=None, gt=0)
    notes: str | None = None
