"""initial schema - parties, deals, approvals, risk, nbfc, sla

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-19

Tables are created parents-first (agents/companies/nbfcs before sellers and
users, cases before bids and transactions). Datetimes are naive UTC; the
model layer re-attaches the timezone on read.
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _tracked() -> list:
    """status_history + timestamps shared by every stateful table."""
    return [
        sa.Column("status_history", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime()),
        sa.Column("updated_at", sa.DateTime()),
    ]


def _kyc() -> list:
    return [
        sa.Column("last_kyc_at", sa.DateTime()),
        sa.Column("kyc_expires_at", sa.DateTime()),
        sa.Column("re_kyc_triggered", sa.Boolean()),
        sa.Column("re_kyc_reason", sa.String(255)),
        sa.Column("kyc_expiry_notified_at", sa.DateTime()),
    ]


def upgrade() -> None:
    # ── Parties ──────────────────────────────────────────────────────
    op.create_table(
        "agents",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255)),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("suspension_reason", sa.Text()),
        *_tracked(),
    )
    op.create_table(
        "companies",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255)),
        sa.Column("pan", sa.String(20)),
        sa.Column("gstin", sa.String(20)),
        sa.Column("status", sa.String(30), nullable=False),
        sa.Column("overdue_count", sa.Integer()),
        *_kyc(),
        *_tracked(),
    )
    op.create_table(
        "nbfcs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("code", sa.String(20), nullable=False, unique=True),
        sa.Column("contact_email", sa.String(255)),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("geographies", sa.JSON(), nullable=False),
        sa.Column("sectors", sa.JSON(), nullable=False),
        sa.Column("min_deal_size", sa.Float(), nullable=False),
        sa.Column("max_deal_size", sa.Float()),
        sa.Column("accepted_risk_levels", sa.JSON(), nullable=False),
        sa.Column("risk_appetite", sa.String(20)),
        sa.Column("monthly_capacity", sa.Float()),
        sa.Column("capacity_used", sa.Float(), nullable=False),
        sa.Column("approval_rate", sa.Float(), nullable=False),
        sa.Column("avg_processing_days", sa.Float()),
        sa.Column("total_deals_processed", sa.Integer(), nullable=False),
        sa.Column("approved_deals", sa.Integer(), nullable=False),
        sa.Column("total_disbursed", sa.Float(), nullable=False),
        sa.Column("avg_interest_rate", sa.Float(), nullable=False),
        sa.Column("preference_score", sa.Float(), nullable=False),
        *_tracked(),
    )
    op.create_table(
        "sub_contractors",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_name", sa.String(255), nullable=False),
        sa.Column("contact_name", sa.String(255)),
        sa.Column("email", sa.String(255)),
        sa.Column("phone", sa.String(50)),
        sa.Column("pan", sa.String(20)),
        sa.Column("gstin", sa.String(20)),
        sa.Column("status", sa.String(30), nullable=False),
        sa.Column("epc_company_id", sa.Integer(), sa.ForeignKey("companies.id")),
        sa.Column("agent_id", sa.Integer(), sa.ForeignKey("agents.id")),
        sa.Column("risk_category", sa.String(10)),
        sa.Column("risk_assessment_id", sa.Integer()),
        sa.Column("last_activity_at", sa.DateTime()),
        sa.Column("dormant_marked_at", sa.DateTime()),
        sa.Column("dormant_reason", sa.Text()),
        sa.Column("cooling_started_at", sa.DateTime()),
        sa.Column("cooling_ends_at", sa.DateTime()),
        sa.Column("cooling_reason", sa.Text()),
        sa.Column("early_reentry_approved", sa.Boolean()),
        *_kyc(),
        *_tracked(),
    )
    op.create_index("ix_sub_contractors_status", "sub_contractors", ["status"])
    op.create_index("ix_sub_contractors_pan", "sub_contractors", ["pan"])
    op.create_index("ix_sub_contractors_gstin", "sub_contractors", ["gstin"])

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("name", sa.String(255)),
        sa.Column("role", sa.String(20), nullable=False),
        sa.Column("is_active", sa.Boolean()),
        sa.Column("company_id", sa.Integer(), sa.ForeignKey("companies.id")),
        sa.Column("sub_contractor_id", sa.Integer(), sa.ForeignKey("sub_contractors.id")),
        sa.Column("nbfc_id", sa.Integer(), sa.ForeignKey("nbfcs.id")),
        sa.Column("created_at", sa.DateTime()),
    )

    # ── Deal pipeline ────────────────────────────────────────────────
    op.create_table(
        "bills",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("bill_number", sa.String(100), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("sub_contractor_id", sa.Integer(), sa.ForeignKey("sub_contractors.id"), nullable=False),
        sa.Column("company_id", sa.Integer(), sa.ForeignKey("companies.id"), nullable=False),
        sa.Column("file_url", sa.String(500)),
        sa.Column("file_public_id", sa.String(255)),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("verified_by_id", sa.Integer(), sa.ForeignKey("users.id")),
        sa.Column("verification_notes", sa.Text()),
        *_tracked(),
    )
    op.create_table(
        "cases",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("case_number", sa.String(20), unique=True),
        sa.Column("bill_id", sa.Integer(), sa.ForeignKey("bills.id"), nullable=False),
        sa.Column("sub_contractor_id", sa.Integer(), sa.ForeignKey("sub_contractors.id"), nullable=False),
        sa.Column("company_id", sa.Integer(), sa.ForeignKey("companies.id"), nullable=False),
        sa.Column("status", sa.String(30), nullable=False),
        sa.Column("deal_value", sa.Float()),
        sa.Column("risk_level", sa.String(10)),
        sa.Column("epc_review_notes", sa.Text()),
        sa.Column("rmt_review_notes", sa.Text()),
        sa.Column("commercial_snapshot", sa.JSON()),
        sa.Column("locked_at", sa.DateTime()),
        sa.Column("founder_approved", sa.Boolean()),
        sa.Column("founder_approved_amount", sa.Float()),
        sa.Column("selected_nbfc_id", sa.Integer(), sa.ForeignKey("nbfcs.id")),
        sa.Column("created_by_id", sa.Integer(), sa.ForeignKey("users.id")),
        *_tracked(),
    )
    op.create_index("ix_cases_status", "cases", ["status"])

    op.create_table(
        "bids",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("case_id", sa.Integer(), sa.ForeignKey("cases.id"), nullable=False),
        sa.Column("company_id", sa.Integer(), sa.ForeignKey("companies.id"), nullable=False),
        sa.Column("placed_by_id", sa.Integer(), sa.ForeignKey("users.id")),
        sa.Column("bid_amount", sa.Float(), nullable=False),
        sa.Column("funding_duration_days", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(30), nullable=False),
        sa.Column("negotiations", sa.JSON(), nullable=False),
        sa.Column("locked_terms", sa.JSON()),
        *_tracked(),
    )
    op.create_index("ix_bids_case", "bids", ["case_id"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("transaction_number", sa.String(20), unique=True),
        sa.Column("case_id", sa.Integer(), sa.ForeignKey("cases.id"), nullable=False),
        sa.Column("bid_id", sa.Integer(), sa.ForeignKey("bids.id"), nullable=False),
        sa.Column("seller_id", sa.Integer(), sa.ForeignKey("sub_contractors.id"), nullable=False),
        sa.Column("buyer_id", sa.Integer(), sa.ForeignKey("companies.id"), nullable=False),
        sa.Column("nbfc_id", sa.Integer(), sa.ForeignKey("nbfcs.id"), nullable=False),
        sa.Column("status", sa.String(30), nullable=False),
        sa.Column("funded_amount", sa.Float(), nullable=False),
        sa.Column("funding_percentage", sa.Float(), nullable=False),
        sa.Column("interest_rate", sa.Float(), nullable=False),
        sa.Column("tenor_days", sa.Integer(), nullable=False),
        sa.Column("total_due", sa.Float(), nullable=False),
        sa.Column("tra_setup", sa.Boolean()),
        sa.Column("tra_reference", sa.String(100)),
        sa.Column("escrow_account_number", sa.String(50)),
        sa.Column("escrow_bank_name", sa.String(255)),
        sa.Column("escrow_ifsc", sa.String(20)),
        sa.Column("escrow_setup_at", sa.DateTime()),
        sa.Column("disbursement_status", sa.String(20)),
        sa.Column("disbursement_reference", sa.String(100)),
        sa.Column("disbursed_at", sa.DateTime()),
        sa.Column("due_at", sa.DateTime()),
        sa.Column("repayment_status", sa.String(20)),
        sa.Column("amount_received", sa.Float()),
        sa.Column("payments", sa.JSON(), nullable=False),
        sa.Column("overdue_by_days", sa.Integer()),
        sa.Column("repaid_at", sa.DateTime()),
        sa.Column("recourse_triggered", sa.Boolean()),
        sa.Column("recourse_triggered_at", sa.DateTime()),
        sa.Column("recourse_against_id", sa.Integer(), sa.ForeignKey("sub_contractors.id")),
        sa.Column("overdue_alert_level", sa.String(10)),
        sa.Column("repayment_reminder_sent_at", sa.DateTime()),
        sa.Column("created_by_id", sa.Integer(), sa.ForeignKey("users.id")),
        *_tracked(),
    )
    op.create_index("ix_transactions_status", "transactions", ["status"])
    op.create_index("ix_transactions_seller_created", "transactions", ["seller_id", "created_at"])

    op.create_table(
        "nbfc_shares",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("case_id", sa.Integer(), sa.ForeignKey("cases.id"), nullable=False),
        sa.Column("nbfc_id", sa.Integer(), sa.ForeignKey("nbfcs.id"), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("match_score", sa.Float()),
        sa.Column("shared_by_id", sa.Integer(), sa.ForeignKey("users.id")),
        sa.Column("shared_at", sa.DateTime()),
        sa.Column("interest_rate", sa.Float()),
        sa.Column("funding_percentage", sa.Float()),
        sa.Column("tenor_days", sa.Integer()),
        sa.Column("response_notes", sa.Text()),
        sa.Column("responded_by_id", sa.Integer(), sa.ForeignKey("users.id")),
        sa.Column("responded_at", sa.DateTime()),
        sa.UniqueConstraint("case_id", "nbfc_id", name="uq_nbfc_share_case"),
    )

    # ── Risk & blacklist ─────────────────────────────────────────────
    checklist = [
        "business_registered", "gst_active", "pan_verified", "address_verified",
        "bank_statements_provided", "positive_cash_flow", "regular_transactions",
        "past_projects_verified", "epc_references_valid", "key_personnel_verified",
        "blacklist_check", "industry_clearance",
    ]
    op.create_table(
        "seller_risk_assessments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("sub_contractor_id", sa.Integer(), sa.ForeignKey("sub_contractors.id"), nullable=False),
        sa.Column("assessed_by_id", sa.Integer(), sa.ForeignKey("users.id")),
        *[sa.Column(item, sa.Boolean(), nullable=False) for item in checklist],
        sa.Column("checklist_notes", sa.Text()),
        sa.Column("risk_score", sa.Integer(), nullable=False),
        sa.Column("risk_category", sa.String(10), nullable=False),
        sa.Column("recommendation", sa.String(10), nullable=False),
        sa.Column("status", sa.String(30), nullable=False),
        sa.Column("decision", sa.String(10)),
        sa.Column("decision_notes", sa.Text()),
        sa.Column("submitted_at", sa.DateTime()),
        sa.Column("approval_request_id", sa.Integer()),
        *_tracked(),
    )
    op.create_index("ix_risk_assessments_sc", "seller_risk_assessments", ["sub_contractor_id"])

    op.create_table(
        "blacklist",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("entity_type", sa.String(20), nullable=False),
        sa.Column("entity_id", sa.Integer()),
        sa.Column("entity_name", sa.String(255)),
        sa.Column("pan", sa.String(20)),
        sa.Column("gstin", sa.String(20)),
        sa.Column("email", sa.String(255)),
        sa.Column("reason", sa.String(30), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("reported_by_id", sa.Integer(), sa.ForeignKey("users.id")),
        sa.Column("approval_request_id", sa.Integer()),
        sa.Column("revoked_by_id", sa.Integer(), sa.ForeignKey("users.id")),
        sa.Column("revoked_at", sa.DateTime()),
        sa.Column("revoke_reason", sa.Text()),
        *_tracked(),
    )
    for col in ("pan", "gstin", "email"):
        op.create_index(f"ix_blacklist_{col}", "blacklist", [col])

    # ── Approvals ────────────────────────────────────────────────────
    op.create_table(
        "approval_requests",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("request_type", sa.String(40), nullable=False),
        sa.Column("entity_type", sa.String(30)),
        sa.Column("entity_id", sa.Integer()),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("priority", sa.String(10), nullable=False),
        sa.Column("amount", sa.Float()),
        sa.Column("approval_chain", sa.JSON(), nullable=False),
        sa.Column("current_level", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("requested_by_id", sa.Integer(), sa.ForeignKey("users.id")),
        sa.Column("resolved_at", sa.DateTime()),
        *_tracked(),
    )
    op.create_index("ix_approval_requests_status", "approval_requests", ["status"])
    op.create_index("ix_approval_requests_entity", "approval_requests", ["entity_type", "entity_id"])

    # ── SLA tracking ─────────────────────────────────────────────────
    op.create_table(
        "slas",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("entity_type", sa.String(30), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("completed_at", sa.DateTime()),
        *_tracked(),
    )
    op.create_index("ix_slas_entity", "slas", ["entity_type", "entity_id"])

    op.create_table(
        "sla_milestones",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("sla_id", sa.Integer(), sa.ForeignKey("slas.id", ondelete="CASCADE"), nullable=False),
        sa.Column("key", sa.String(10), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("offset_days", sa.Integer(), nullable=False),
        sa.Column("due_at", sa.DateTime(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("days_overdue", sa.Integer()),
        sa.Column("completed_at", sa.DateTime()),
        sa.Column("completed_by_id", sa.Integer(), sa.ForeignKey("users.id")),
        sa.Column("notes", sa.Text()),
        sa.UniqueConstraint("sla_id", "key", name="uq_sla_milestone_key"),
    )
    op.create_table(
        "sla_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("sla_id", sa.Integer(), sa.ForeignKey("slas.id", ondelete="CASCADE"), nullable=False),
        sa.Column("kind", sa.String(30), nullable=False),
        sa.Column("milestone_key", sa.String(10), nullable=False),
        sa.Column("detail", sa.Text()),
        sa.Column("created_at", sa.DateTime()),
        sa.UniqueConstraint("sla_id", "kind", "milestone_key", name="uq_sla_event_once"),
    )


def downgrade() -> None:
    """Drop all tables, children first. Dev/test only."""
    for table in (
        "sla_events", "sla_milestones", "slas",
        "approval_requests", "blacklist", "seller_risk_assessments",
        "nbfc_shares", "transactions", "bids", "cases", "bills",
        "users", "sub_contractors", "nbfcs", "companies", "agents",
    ):
        op.drop_table(table)
