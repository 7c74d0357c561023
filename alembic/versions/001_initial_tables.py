"""Initial keyledger tables: subscribers, payment records, credentials, access logs

Revision ID: 001_initial
Revises:
Create Date: 2026-10-17
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "subscribers",
        sa.Column("id", sa.String(128), primary_key=True),
        sa.Column("premium", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("premium_until", sa.DateTime, nullable=True),
        sa.Column("external_customer_ref", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
    )

    op.create_table(
        "payment_records",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("subscriber_id", sa.String(128), nullable=False),
        sa.Column("payment_intent_ref", sa.String(255), nullable=True),
        sa.Column("invoice_ref", sa.String(255), nullable=True),
        sa.Column("checkout_session_ref", sa.String(255), nullable=True),
        sa.Column("refund_ref", sa.String(255), nullable=True),
        sa.Column("subscription_ref", sa.String(255), nullable=True),
        sa.Column("customer_ref", sa.String(255), nullable=True),
        sa.Column("amount", sa.Integer, nullable=False, server_default="0"),
        sa.Column("currency", sa.String(8), nullable=False, server_default="EUR"),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("kind", sa.String(128), nullable=False, server_default=""),
        sa.Column("metadata_json", sa.JSON, nullable=False),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
        sa.UniqueConstraint("payment_intent_ref", name="uq_payment_records_payment_intent_ref"),
        sa.UniqueConstraint("invoice_ref", name="uq_payment_records_invoice_ref"),
        sa.UniqueConstraint("checkout_session_ref", name="uq_payment_records_checkout_session_ref"),
        sa.UniqueConstraint("refund_ref", name="uq_payment_records_refund_ref"),
    )
    op.create_index("ix_payment_records_subscriber_id", "payment_records", ["subscriber_id"])
    op.create_index("ix_payment_records_subscription_ref", "payment_records", ["subscription_ref"])

    op.create_table(
        "credentials",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("owner_subscriber_id", sa.String(128), nullable=False),
        sa.Column("name", sa.String(255), nullable=False, server_default="Default"),
        sa.Column("key_id", sa.String(32), nullable=False),
        sa.Column("key_hash", sa.String(128), nullable=False),
        sa.Column("tier", sa.String(16), nullable=False, server_default="free"),
        sa.Column("daily_quota_used", sa.Integer, nullable=False, server_default="0"),
        sa.Column("minute_quota_used", sa.Integer, nullable=False, server_default="0"),
        sa.Column("daily_quota_limit", sa.Integer, nullable=False, server_default="0"),
        sa.Column("minute_quota_limit", sa.Integer, nullable=False, server_default="0"),
        sa.Column("hourly_quota_limit", sa.Integer, nullable=False, server_default="0"),
        sa.Column("monthly_quota_limit", sa.Integer, nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("expires_at", sa.DateTime, nullable=True),
        sa.Column("last_used_at", sa.DateTime, nullable=True),
        sa.Column("deactivated_at", sa.DateTime, nullable=True),
        sa.Column("deactivated_by", sa.String(64), nullable=True),
        sa.Column("deactivation_reason", sa.String(255), nullable=True),
        sa.Column("rotated_from_id", sa.Integer, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
        sa.UniqueConstraint("key_id", name="uq_credentials_key_id"),
    )
    op.create_index("ix_credentials_owner_subscriber_id", "credentials", ["owner_subscriber_id"])
    op.create_index("ix_credentials_is_active", "credentials", ["is_active"])
    op.create_index("ix_credentials_expires_at", "credentials", ["expires_at"])

    op.create_table(
        "access_logs",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("timestamp", sa.DateTime, nullable=False),
        sa.Column("credential_id", sa.Integer, nullable=False),
        sa.Column("endpoint", sa.String(512), nullable=False),
        sa.Column("method", sa.String(16), nullable=False, server_default="GET"),
        sa.Column("ip", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.String(512), nullable=True),
        sa.Column("status_code", sa.Integer, nullable=False, server_default="200"),
    )
    op.create_index("ix_access_logs_timestamp", "access_logs", ["timestamp"])
    op.create_index("ix_access_logs_credential_id", "access_logs", ["credential_id"])
    op.create_index("ix_access_logs_credential_ts", "access_logs", ["credential_id", "timestamp"])


def downgrade() -> None:
    op.drop_table("access_logs")
    op.drop_table("credentials")
    op.drop_table("payment_records")
    op.drop_table("subscribers")
