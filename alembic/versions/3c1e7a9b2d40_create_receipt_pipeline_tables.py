"""create receipt pipeline tables

Revision ID: 3c1e7a9b2d40
Revises:
Create Date: 2026-10-19

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision: str = "3c1e7a9b2d40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "identity_user",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("first_name", sa.String(length=100), nullable=True),
        sa.Column("last_name", sa.String(length=100), nullable=True),
        sa.Column(
            "subscription_plan",
            sa.Enum("FREE", "PRO", name="subscriptionplan", native_enum=False),
            nullable=False,
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("receipt_email_alias", sa.String(length=64), nullable=True),
        sa.Column("receipt_email_token", sa.String(length=64), nullable=True),
        sa.Column("receipt_forwarding_address", sa.String(length=320), nullable=True),
        sa.Column("receipt_forwarding_enabled", sa.Boolean(), nullable=False),
        sa.Column("telegram_chat_id", sa.BigInteger(), nullable=True),
    )
    op.create_index("ix_identity_user_email", "identity_user", ["email"], unique=True)
    op.create_index(
        "ix_identity_user_receipt_email_alias",
        "identity_user",
        ["receipt_email_alias"],
        unique=True,
    )
    op.create_index(
        "ix_identity_user_receipt_email_token",
        "identity_user",
        ["receipt_email_token"],
        unique=True,
    )
    op.create_index(
        "ix_identity_user_telegram_chat_id", "identity_user", ["telegram_chat_id"], unique=True
    )

    op.create_table(
        "merchants_merchant",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("user_id", sa.Uuid(as_uuid=True), sa.ForeignKey("identity_user.id"), nullable=False),
        sa.Column("canonical_name", sa.String(length=200), nullable=False),
        sa.Column("aliases", sa.JSON(), nullable=False),
        sa.Column("receipt_count", sa.Integer(), nullable=False),
        sa.Column("total_spend", sa.Numeric(14, 2), nullable=False),
    )
    op.create_index("ix_merchants_merchant_user_id", "merchants_merchant", ["user_id"])

    op.create_table(
        "receipts_receipt",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("user_id", sa.Uuid(as_uuid=True), sa.ForeignKey("identity_user.id"), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "UPLOADED",
                "PROCESSING",
                "FINAL",
                "NEEDS_REVIEW",
                name="receiptstatus",
                native_enum=False,
            ),
            nullable=False,
        ),
        sa.Column(
            "source_channel",
            sa.Enum("UPLOAD", "EMAIL", "BOT", name="sourcechannel", native_enum=False),
            nullable=False,
        ),
        sa.Column("storage_key", sa.String(length=1024), nullable=False),
        sa.Column("original_name", sa.String(length=512), nullable=False),
        sa.Column("mime_type", sa.String(length=200), nullable=False),
        sa.Column("size_bytes", sa.Integer(), nullable=False),
        sa.Column("extraction_json", sa.JSON(), nullable=True),
        sa.Column("merchant_json", sa.JSON(), nullable=True),
        sa.Column("category_json", sa.JSON(), nullable=True),
        sa.Column("email_json", sa.JSON(), nullable=True),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=True),
        sa.Column("receipt_date", sa.Date(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.UniqueConstraint("storage_key", name="uq_receipts_receipt_storage_key"),
    )
    op.create_index("ix_receipts_receipt_user_id", "receipts_receipt", ["user_id"])
    op.create_index("ix_receipts_receipt_status", "receipts_receipt", ["status"])


def downgrade() -> None:
    op.drop_index("ix_receipts_receipt_status", table_name="receipts_receipt")
    op.drop_index("ix_receipts_receipt_user_id", table_name="receipts_receipt")
    op.drop_table("receipts_receipt")
    op.drop_index("ix_merchants_merchant_user_id", table_name="merchants_merchant")
    op.drop_table("merchants_merchant")
    op.drop_index("ix_identity_user_telegram_chat_id", table_name="identity_user")
    op.drop_index("ix_identity_user_receipt_email_token", table_name="identity_user")
    op.drop_index("ix_identity_user_receipt_email_alias", table_name="identity_user")
    op.drop_index("ix_identity_user_email", table_name="identity_user")
    op.drop_table("identity_user")
