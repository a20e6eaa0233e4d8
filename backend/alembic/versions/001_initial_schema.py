"""Initial schema: leads, activity, portal and clinical tables.

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSONB

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Leads
    op.create_table(
        "leads",
        sa.Column("id", sa.String(100), primary_key=True),
        sa.Column("lead_uuid", sa.String(36), nullable=True),
        sa.Column("case_id", sa.String(20), unique=True, nullable=True),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("treatment", sa.String(255), nullable=True),
        sa.Column("timeline", sa.String(100), nullable=True),
        sa.Column("message", sa.Text, nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("source", sa.String(50), nullable=True),
        sa.Column("lang", sa.String(10), nullable=True),
        sa.Column("page_url", sa.Text, nullable=True),
        sa.Column("referrer", sa.Text, nullable=True),
        sa.Column("utm_source", sa.String(255), nullable=True),
        sa.Column("utm_medium", sa.String(255), nullable=True),
        sa.Column("utm_campaign", sa.String(255), nullable=True),
        sa.Column("utm_term", sa.String(255), nullable=True),
        sa.Column("utm_content", sa.String(255), nullable=True),
        sa.Column("status", sa.String(30), server_default="new"),
        sa.Column("doctor_id", sa.String(100), nullable=True),
        sa.Column("doctor_review_status", sa.String(20), nullable=True),
        sa.Column("doctor_review_notes", sa.Text, nullable=True),
        sa.Column("doctor_assigned_at", sa.DateTime, nullable=True),
        sa.Column("doctor_reviewed_at", sa.DateTime, nullable=True),
        sa.Column("assigned_to", sa.String(100), nullable=True),
        sa.Column("portal_token", sa.String(100), nullable=True),
        sa.Column("portal_status", sa.String(30), nullable=True),
        sa.Column("portal_state", sa.String(30), nullable=True),
        sa.Column("email_verified_at", sa.DateTime, nullable=True),
        sa.Column("cal_booking_uid", sa.String(255), nullable=True),
        sa.Column("cal_booking_id", sa.String(255), nullable=True),
        sa.Column("meeting_start", sa.DateTime, nullable=True),
        sa.Column("meeting_end", sa.DateTime, nullable=True),
        sa.Column("ai_risk_score", sa.Integer, nullable=True),
        sa.Column("ai_summary", sa.Text, nullable=True),
        sa.Column("ai_last_analyzed_at", sa.DateTime, nullable=True),
        sa.Column("last_contacted_at", sa.DateTime, nullable=True),
        sa.Column("meta", JSONB, nullable=True),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index("ix_leads_lead_uuid", "leads", ["lead_uuid"])
    op.create_index("ix_leads_case_id", "leads", ["case_id"])
    op.create_index("ix_leads_email", "leads", ["email"])
    op.create_index("ix_leads_doctor_id", "leads", ["doctor_id"])
    op.create_index("ix_leads_cal_booking_uid", "leads", ["cal_booking_uid"])
    op.create_index("ix_leads_lower_email_created", "leads", [sa.text("lower(email)"), "created_at"])

    # Booking webhook history
    op.create_table(
        "cal_webhook_events",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("event_type", sa.String(50), nullable=True),
        sa.Column("trigger_event", sa.String(50), nullable=True),
        sa.Column("cal_booking_uid", sa.String(255), nullable=True),
        sa.Column("cal_booking_id", sa.String(255), nullable=True),
        sa.Column("lead_id", sa.String(100), sa.ForeignKey("leads.id"), nullable=True),
        sa.Column("payload", JSONB, nullable=True),
        sa.Column("received_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index("ix_cal_webhook_events_event_type", "cal_webhook_events", ["event_type"])
    op.create_index("ix_cal_webhook_events_cal_booking_uid", "cal_webhook_events", ["cal_booking_uid"])
    op.create_index("ix_cal_webhook_events_lead_id", "cal_webhook_events", ["lead_id"])
    op.create_index("ix_cal_webhook_events_received_at", "cal_webhook_events", ["received_at"])

    # Staff timeline
    op.create_table(
        "lead_timeline_events",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("lead_id", sa.String(100), sa.ForeignKey("leads.id"), nullable=False),
        sa.Column("stage", sa.String(50), nullable=False),
        sa.Column("actor_role", sa.String(20), nullable=True),
        sa.Column("note", sa.Text, nullable=True),
        sa.Column("payload", JSONB, nullable=True),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index("ix_lead_timeline_events_lead_id", "lead_timeline_events", ["lead_id"])
    op.create_index("ix_lead_timeline_events_created_at", "lead_timeline_events", ["created_at"])

    # Contact attempts
    op.create_table(
        "lead_contact_events",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("lead_id", sa.String(100), sa.ForeignKey("leads.id"), nullable=False),
        sa.Column("channel", sa.String(20), nullable=False),
        sa.Column("note", sa.Text, nullable=True),
        sa.Column("created_by", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index("ix_lead_contact_events_lead_id", "lead_contact_events", ["lead_id"])
    op.create_index("ix_lead_contact_events_created_at", "lead_contact_events", ["created_at"])

    # Notes
    op.create_table(
        "lead_notes",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("lead_id", sa.String(100), sa.ForeignKey("leads.id"), nullable=False),
        sa.Column("note", sa.Text, nullable=False),
        sa.Column("actor_role", sa.String(20), nullable=True),
        sa.Column("created_by", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index("ix_lead_notes_lead_id", "lead_notes", ["lead_id"])
    op.create_index("ix_lead_notes_created_at", "lead_notes", ["created_at"])

    # E-mail verification tokens
    op.create_table(
        "lead_email_verifications",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("lead_id", sa.String(100), sa.ForeignKey("leads.id"), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("token_hash", sa.String(64), unique=True, nullable=False),
        sa.Column("expires_at", sa.DateTime, nullable=False),
        sa.Column("verified_at", sa.DateTime, nullable=True),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index("ix_lead_email_verifications_lead_id", "lead_email_verifications", ["lead_id"])

    # Onboarding
    op.create_table(
        "lead_onboarding_state",
        sa.Column("lead_id", sa.String(100), sa.ForeignKey("leads.id"), primary_key=True),
        sa.Column("completed_card_ids", JSONB, nullable=True),
        sa.Column("progress_percent", sa.Integer, server_default="0"),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_table(
        "lead_onboarding_answers",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("lead_id", sa.String(100), sa.ForeignKey("leads.id"), nullable=False),
        sa.Column("card_id", sa.String(50), nullable=False),
        sa.Column("answers", JSONB, nullable=False),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
        sa.UniqueConstraint("lead_id", "card_id", name="uq_onboarding_answer_card"),
    )
    op.create_index("ix_lead_onboarding_answers_lead_id", "lead_onboarding_answers", ["lead_id"])

    # Doctor notes
    op.create_table(
        "doctor_notes",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("lead_id", sa.String(100), sa.ForeignKey("leads.id"), nullable=False),
        sa.Column("doctor_id", sa.String(100), nullable=False),
        sa.Column("note_markdown", sa.Text, nullable=True),
        sa.Column("status", sa.String(20), server_default="draft"),
        sa.Column("approved_at", sa.DateTime, nullable=True),
        sa.Column("approved_by", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index("ix_doctor_notes_lead_id", "doctor_notes", ["lead_id"])
    op.create_index("ix_doctor_notes_doctor_id", "doctor_notes", ["doctor_id"])

    op.create_table(
        "doctor_note_items",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("doctor_note_id", UUID(as_uuid=True), sa.ForeignKey("doctor_notes.id"), nullable=False),
        sa.Column("position", sa.Integer, server_default="0"),
        sa.Column("catalog_item_id", sa.String(100), nullable=True),
        sa.Column("catalog_item_name", sa.String(255), nullable=False),
        sa.Column("qty", sa.Integer, server_default="1"),
        sa.Column("unit_price", sa.Float, server_default="0"),
        sa.Column("notes", sa.Text, nullable=True),
    )
    op.create_index("ix_doctor_note_items_doctor_note_id", "doctor_note_items", ["doctor_note_id"])

    # Quotes
    op.create_table(
        "quotes",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("lead_id", sa.String(100), sa.ForeignKey("leads.id"), nullable=False),
        sa.Column("doctor_note_id", UUID(as_uuid=True), sa.ForeignKey("doctor_notes.id"), nullable=False),
        sa.Column("quote_number", sa.String(50), unique=True, nullable=False),
        sa.Column("status", sa.String(20), server_default="draft"),
        sa.Column("currency", sa.String(3), server_default="EUR"),
        sa.Column("subtotal", sa.Float, server_default="0"),
        sa.Column("discount", sa.Float, server_default="0"),
        sa.Column("total", sa.Float, server_default="0"),
        sa.Column("created_by", sa.String(100), nullable=True),
        sa.Column("sent_at", sa.DateTime, nullable=True),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index("ix_quotes_lead_id", "quotes", ["lead_id"])

    op.create_table(
        "quote_items",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("quote_id", UUID(as_uuid=True), sa.ForeignKey("quotes.id"), nullable=False),
        sa.Column("position", sa.Integer, server_default="0"),
        sa.Column("catalog_item_id", sa.String(100), nullable=True),
        sa.Column("catalog_item_name", sa.String(255), nullable=False),
        sa.Column("qty", sa.Integer, server_default="1"),
        sa.Column("unit_price", sa.Float, server_default="0"),
        sa.Column("notes", sa.Text, nullable=True),
    )
    op.create_index("ix_quote_items_quote_id", "quote_items", ["quote_id"])


def downgrade() -> None:
    op.drop_table("quote_items")
    op.drop_table("quotes")
    op.drop_table("doctor_note_items")
    op.drop_table("doctor_notes")
    op.drop_table("lead_onboarding_answers")
    op.drop_table("lead_onboarding_state")
    op.drop_table("lead_email_verifications")
    op.drop_table("lead_notes")
    op.drop_table("lead_contact_events")
    op.drop_table("lead_timeline_events")
    op.drop_table("cal_webhook_events")
    op.drop_table("leads")
