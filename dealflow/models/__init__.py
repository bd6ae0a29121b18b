"""Database models — re-exports all models.

Import from here:  from dealflow.models import Case, Bid, ...
Or from submodules: from dealflow.models.deals import Case
"""

from .base import Base  # noqa: F401

# Auth & Users
from .auth import User  # noqa: F401

# Parties: sellers, EPC buyers, agents
from .parties import Agent, Company, SubContractor  # noqa: F401

# Deal pipeline
from .deals import Bid, Bill, Case, Transaction  # noqa: F401

# Risk & blacklist
from .risk import CHECKLIST_ITEMS, Blacklist, SellerRiskAssessment  # noqa: F401

# Approvals
from .approvals import ApprovalRequest  # noqa: F401

# SLA tracking
from .sla import Sla, SlaEvent, SlaMilestone  # noqa: F401

# Lenders
from .nbfc import Nbfc, NbfcShare  # noqa: F401
