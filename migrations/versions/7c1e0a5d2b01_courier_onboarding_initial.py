"""Courier onboarding — initial schema

Revision ID: 7c1e0a5d2b01
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "7c1e0a5d2b01"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ── Applications ──
    op.create_table(
        "onboarding_applications",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("reference", sa.String(40), nullable=False, unique=True),
        sa.Column("segment", sa.String(20), nullable=False, server_default="INDIVIDUAL"),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(30)),
        sa.Column("first_name", sa.String(100)),
        sa.Column("last_name", sa.String(100)),
        sa.Column("date_of_birth", sa.Date()),
        sa.Column("national_id", sa.String(50)),
        sa.Column("business_name", sa.String(200)),
        sa.Column("business_registration_number", sa.String(100)),
        sa.Column("tax_id", sa.String(50)),
        sa.Column("address_line1", sa.String(255)),
        sa.Column("address_line2", sa.String(255)),
        sa.Column("city", sa.String(100)),
        sa.Column("state", sa.String(100)),
        sa.Column("postal_code", sa.String(20)),
        sa.Column("country", sa.String(100)),
        sa.Column("preferred_communication", sa.String(20), server_default="EMAIL"),
        sa.Column("marketing_consent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("terms_accepted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("privacy_accepted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("status", sa.String(30), nullable=False, server_default="DRAFT"),
        sa.Column("rejection_reason", sa.Text()),
        sa.Column("kyc_verification_id", sa.String(100)),
        sa.Column("auth_user_id", sa.String(100)),
        sa.Column("billing_profile_id", sa.String(100)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.Column("submitted_at", sa.DateTime(timezone=True)),
        sa.Column("approved_at", sa.DateTime(timezone=True)),
        sa.Column("rejected_at", sa.DateTime(timezone=True)),
        sa.Column("activated_at", sa.DateTime(timezone=True)),
        sa.Column("version", sa.Integer(), nullable=False),
    )
    op.create_index("idx_onb_app_email", "onboarding_applications", ["email"])
    op.create_index("idx_onb_app_status", "onboarding_applications", ["status"])

    # ── Verification documents ──
    op.create_table(
        "verification_documents",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("reference", sa.String(40), nullable=False, unique=True),
        sa.Column("application_id", sa.String(36),
                  sa.ForeignKey("onboarding_applications.id", ondelete="CASCADE"), nullable=False),
        sa.Column("document_type", sa.String(40), nullable=False),
        sa.Column("status", sa.String(40), nullable=False, server_default="PENDING"),
        sa.Column("is_primary", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("file_name", sa.String(255)),
        sa.Column("mime_type", sa.String(100), nullable=False),
        sa.Column("file_size", sa.BigInteger(), nullable=False),
        sa.Column("content_hash", sa.String(64), nullable=False),
        sa.Column("storage_ref", sa.String(255), nullable=False),
        sa.Column("uploaded_by", sa.String(100)),
        sa.Column("ai_verification_id", sa.String(100)),
        sa.Column("ai_dispatched_at", sa.DateTime(timezone=True)),
        sa.Column("reviewer_id", sa.String(100)),
        sa.Column("review_notes", sa.Text()),
        sa.Column("rejection_reason", sa.Text()),
        sa.Column("suggested_action", sa.String(255)),
        sa.Column("confidence_score", sa.Float()),
        sa.Column("expiry_date", sa.Date()),
        sa.Column("reviewed_at", sa.DateTime(timezone=True)),
        sa.Column("uploaded_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.Column("version", sa.Integer(), nullable=False),
    )
    op.create_index("ix_verification_documents_application_id", "verification_documents", ["application_id"])
    op.create_index("idx_vdoc_app_type", "verification_documents", ["application_id", "document_type"])
    op.create_index("idx_vdoc_status", "verification_documents", ["status"])

    # ── Status history (append-only) ──
    op.create_table(
        "status_history",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("entity_type", sa.String(20), nullable=False),
        sa.Column("entity_ref", sa.String(40), nullable=False),
        sa.Column("application_ref", sa.String(40), nullable=False),
        sa.Column("from_status", sa.String(40), nullable=True),
        sa.Column("to_status", sa.String(40), nullable=False),
        sa.Column("reason", sa.Text()),
        sa.Column("actor", sa.String(150), nullable=False, server_default="system"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_history_entity", "status_history", ["entity_type", "entity_ref"])
    op.create_index("idx_history_application", "status_history", ["application_ref"])

    # ── Notifications ──
    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("recipient", sa.String(255), nullable=False),
        sa.Column("subject", sa.String(300), nullable=False),
        sa.Column("body", sa.Text(), server_default=""),
        sa.Column("category", sa.String(30), server_default="application"),
        sa.Column("entity_type", sa.String(30), server_default=""),
        sa.Column("entity_ref", sa.String(40), nullable=True),
        sa.Column("is_read", sa.Boolean(), server_default=sa.false()),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_notifications_recipient", "notifications", ["recipient"])
    op.create_index("ix_notifications_entity_ref", "notifications", ["entity_ref"])


def downgrade():
    op.drop_index("ix_notifications_entity_ref", table_name="notifications")
    op.drop_index("ix_notifications_recipient", table_name="notifications")
    op.drop_table("notifications")

    op.drop_index("idx_history_application", table_name="status_history")
    op.drop_index("idx_history_entity", table_name="status_history")
    op.drop_table("status_history")

    op.drop_index("idx_vdoc_status", table_name="verification_documents")
    op.drop_index("idx_vdoc_app_type", table_name="verification_documents")
    op.drop_index("ix_verification_documents_application_id", table_name="verification_documents")
    op.drop_table("verification_documents")

    op.drop_index("idx_onb_app_status", table_name="onboarding_applications")
    op.drop_index("idx_onb_app_email", table_name="onboarding_applications")
    op.drop_table("onboarding_applications")
