"""Auth & user models."""

from sqlalchemy import Boolean, Column, ForeignKey, Integer, String

from .base import Base, UTCDateTime, utcnow


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True)
    email = Column(String(255), unique=True, nullable=False)
    name = Column(String(255))
    role = Column(
        String(20), nullable=False, default="ops"
    )  # admin | founder | ops_manager | ops | rmt | sales | epc | subcontractor | nbfc
    is_active = Column(Boolean, default=True)
    company_id = Column(Integer, ForeignKey("companies.id"))
    sub_contractor_id = Column(Integer, ForeignKey("sub_contractors.id"))
    nbfc_id = Column(Integer, ForeignKey("nbfcs.id"))
    created_at = Column(UTCDateTime, default=utcnow)
