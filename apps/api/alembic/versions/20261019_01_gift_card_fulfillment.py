"""Create gift card inventory, claim, delivery and reconciliation tables.

Revision ID: 20261019_01
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "20261019_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


inventory_unit_status_enum = postgresql.ENUM(
    "available",
    "reserved",
    "assigned",
    "delivered",
    "failed",
    "expired",
    name="inventory_unit_status_enum",
    create_type=False,
)
inventory_unit_source_enum = postgresql.ENUM(
    "csv_import",
    "supplier",
    name="inventory_unit_source_enum",
    create_type=False,
)
claim_outcome_enum = postgresql.ENUM(
    "pending",
    "claimed",
    "out_of_stock",
    "provisioning_failed",
    name="claim_outcome_enum",
    create_type=False,
)
claim_delivery_status_enum = postgresql.ENUM(
    "not_requested",
    "pending",
    "delivered",
    "exhausted",
    name="claim_delivery_status_enum",
    create_type=False,
)
delivery_channel_enum = postgresql.ENUM("sms", "email", name="delivery_channel_enum", create_type=False)
delivery_attempt_status_enum = postgresql.ENUM(
    "sent",
    "failed",
    "exhausted",
    name="delivery_attempt_status_enum",
    create_type=False,
)
balance_check_status_enum = postgresql.ENUM("success", "error", name="balance_check_status_enum", create_type=False)

_ENUMS = (
    inventory_unit_status_enum,
    inventory_unit_source_enum,
    claim_outcome_enum,
    claim_delivery_status_enum,
    delivery_channel_enum,
    delivery_attempt_status_enum,
    balance_check_status_enum,
)


def upgrade() -> None:
    bind = op.get_bind()
    for enum in _ENUMS:
        enum.create(bind, checkfirst=True)

    op.create_table(
        "gift_card_brands",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("supplier_brand_code", sa.String(length=64), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("provisioning_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("balance_check_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "inventory_units",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("brand_id", sa.String(length=64), nullable=False),
        sa.Column("denomination", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("owner_client_id", sa.String(length=128), nullable=False),
        sa.Column("source_code", sa.String(length=255), nullable=False),
        sa.Column("source", inventory_unit_source_enum, nullable=False, server_default="csv_import"),
        sa.Column("supplier_reference", sa.String(length=255), nullable=True),
        sa.Column("status", inventory_unit_status_enum, nullable=False, server_default="available"),
        sa.Column("reserved_claim_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("claim_record_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("current_balance", sa.Numeric(12, 2), nullable=True),
        sa.Column("last_balance_check_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("reserved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("source_code", name="uq_inventory_units_source_code"),
    )
    op.create_index(
        "ix_inventory_units_pool_status",
        "inventory_units",
        ["brand_id", "denomination", "owner_client_id", "status"],
    )
    op.create_index("ix_inventory_units_reserved_claim", "inventory_units", ["reserved_claim_id"])

    op.create_table(
        "claim_records",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("recipient_id", sa.String(length=128), nullable=False),
        sa.Column("campaign_id", sa.String(length=128), nullable=False),
        sa.Column("condition_number", sa.Integer(), nullable=False),
        sa.Column("brand_id", sa.String(length=64), nullable=False),
        sa.Column("denomination", sa.Numeric(12, 2), nullable=False),
        sa.Column("owner_client_id", sa.String(length=128), nullable=False),
        sa.Column("inventory_unit_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("outcome", claim_outcome_enum, nullable=False, server_default="pending"),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("delivery_channel", delivery_channel_enum, nullable=True),
        sa.Column("delivery_destination", sa.String(length=320), nullable=True),
        sa.Column("delivery_status", claim_delivery_status_enum, nullable=False, server_default="not_requested"),
        sa.Column("recovery_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("requested_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(
            ["inventory_unit_id"],
            ["inventory_units.id"],
            name="fk_claim_records_inventory_unit_id_inventory_units",
        ),
        sa.UniqueConstraint(
            "recipient_id",
            "campaign_id",
            "condition_number",
            name="uq_claim_records_recipient_campaign_condition",
        ),
    )
    op.create_index("ix_claim_records_outcome_requested", "claim_records", ["outcome", "requested_at"])

    op.create_table(
        "delivery_attempts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("claim_record_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("channel", delivery_channel_enum, nullable=False),
        sa.Column("attempt_number", sa.Integer(), nullable=False),
        sa.Column("status", delivery_attempt_status_enum, nullable=False),
        sa.Column("provider", sa.String(length=64), nullable=True),
        sa.Column("provider_message_id", sa.String(length=255), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("attempted_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(
            ["claim_record_id"],
            ["claim_records.id"],
            name="fk_delivery_attempts_claim_record_id_claim_records",
        ),
        sa.UniqueConstraint("claim_record_id", "attempt_number", name="uq_delivery_attempts_claim_attempt"),
    )

    op.create_table(
        "balance_checks",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("inventory_unit_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("checked_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("reported_balance", sa.Numeric(12, 2), nullable=True),
        sa.Column("expected_balance", sa.Numeric(12, 2), nullable=True),
        sa.Column("discrepancy", sa.Numeric(12, 2), nullable=False),
        sa.Column("status", balance_check_status_enum, nullable=False),
        sa.Column("source", sa.String(length=64), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
    )
    op.create_index("ix_balance_checks_inventory_unit_id", "balance_checks", ["inventory_unit_id"])

    op.create_table(
        "supplier_purchase_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("supplier", sa.String(length=64), nullable=False),
        sa.Column("brand_id", sa.String(length=64), nullable=False),
        sa.Column("brand_code", sa.String(length=64), nullable=False),
        sa.Column("denomination", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("reference", sa.String(length=128), nullable=False),
        sa.Column("claim_record_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("inventory_unit_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("outcome", sa.String(length=32), nullable=False),
        sa.Column("error_kind", sa.String(length=32), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("http_status", sa.Integer(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("request_payload", sa.JSON(), nullable=True),
        sa.Column("response_payload", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("supplier_purchase_logs")
    op.drop_index("ix_balance_checks_inventory_unit_id", table_name="balance_checks")
    op.drop_table("balance_checks")
    op.drop_table("delivery_attempts")
    op.drop_index("ix_claim_records_outcome_requested", table_name="claim_records")
    op.drop_table("claim_records")
    op.drop_index("ix_inventory_units_reserved_claim", table_name="inventory_units")
    op.drop_index("ix_inventory_units_pool_status", table_name="inventory_units")
    op.drop_table("inventory_units")
    op.drop_table("gift_card_brands")

    bind = op.get_bind()
    for enum in reversed(_ENUMS):
        enum.drop(bind, checkfirst=True)
