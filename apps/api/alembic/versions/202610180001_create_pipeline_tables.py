"""create pipeline tables

Revision ID: 202610180001
Revises:
Create Date: 2026-10-18 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610180001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def _money(name: str, *, nullable: bool = False, default: bool = True) -> sa.Column:
    if default and not nullable:
        return sa.Column(name, sa.Numeric(18, 6), nullable=False, server_default="0")
    return sa.Column(name, sa.Numeric(18, 6), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "pipeline_user",
        sa.Column("id", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("role", sa.String(length=32), nullable=False, server_default="STAFF"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )

    op.create_table(
        "pipeline_item",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        _money("base_price"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "pipeline_party",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("contact", sa.String(length=32), nullable=True),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("company_name", sa.String(length=255), nullable=True),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("gstin", sa.String(length=32), nullable=True),
        sa.Column("pan", sa.String(length=16), nullable=True),
        sa.Column("party_type", sa.String(length=16), nullable=False, server_default="PROSPECT"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="ACTIVE"),
        sa.Column("created_by", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )
    op.create_index("ix_pipeline_party_company_name", "pipeline_party", ["company_name"], unique=False)
    op.create_index("ix_pipeline_party_contact", "pipeline_party", ["contact"], unique=False)

    op.create_table(
        "pipeline_lead",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("lead_no", sa.String(length=32), nullable=False),
        sa.Column("lead_date", sa.Date(), nullable=False),
        sa.Column("party_id", sa.Uuid(), sa.ForeignKey("pipeline_party.id"), nullable=False),
        sa.Column("source", sa.String(length=16), nullable=False, server_default="OTHER"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="NEW"),
        sa.Column("remarks", sa.Text(), nullable=True),
        sa.Column("assigned_to", sa.String(length=255), nullable=True),
        sa.Column("reviewed_by", sa.String(length=255), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("lead_no"),
    )
    op.create_index("ix_pipeline_lead_status", "pipeline_lead", ["status"], unique=False)
    op.create_index("ix_pipeline_lead_assigned_to", "pipeline_lead", ["assigned_to"], unique=False)

    op.create_table(
        "pipeline_lead_item",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("lead_id", sa.Uuid(), sa.ForeignKey("pipeline_lead.id", ondelete="CASCADE"), nullable=False),
        sa.Column("item_id", sa.Uuid(), sa.ForeignKey("pipeline_item.id"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_pipeline_lead_item_lead_id", "pipeline_lead_item", ["lead_id"], unique=False)

    op.create_table(
        "pipeline_lead_assignment",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("lead_id", sa.Uuid(), sa.ForeignKey("pipeline_lead.id", ondelete="CASCADE"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("sales_person_id", sa.String(length=255), nullable=False),
        sa.Column("assigned_by", sa.String(length=255), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("lead_id", "position", name="uq_pipeline_lead_assignment_position"),
    )

    op.create_table(
        "pipeline_followup",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("lead_id", sa.Uuid(), sa.ForeignKey("pipeline_lead.id", ondelete="CASCADE"), nullable=False),
        sa.Column("followup_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("remarks", sa.Text(), nullable=True),
        sa.Column("next_followup_date", sa.Date(), nullable=True),
        sa.Column("outcome", sa.String(length=16), nullable=False, server_default="PRECLOSED"),
        sa.Column("created_by", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_pipeline_followup_lead_id", "pipeline_followup", ["lead_id"], unique=False)
    op.create_index("ix_pipeline_followup_next_followup_date", "pipeline_followup", ["next_followup_date"], unique=False)

    op.create_table(
        "pipeline_quotation",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("quotation_no", sa.String(length=32), nullable=False),
        sa.Column("lead_id", sa.Uuid(), sa.ForeignKey("pipeline_lead.id"), nullable=False),
        sa.Column("sales_person_id", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="CREATED"),
        sa.Column("discount_kind", sa.String(length=16), nullable=True),
        _money("discount_value", nullable=True),
        sa.Column("tax_kind", sa.String(length=16), nullable=True),
        _money("tax_percentage", nullable=True),
        _money("subtotal"),
        _money("charges_total"),
        _money("discount_amount"),
        _money("amount_before_tax"),
        _money("tax_amount"),
        _money("total_amount"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("valid_till", sa.Date(), nullable=True),
        sa.Column("email_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("email_sent_to", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("quotation_no"),
    )
    op.create_index("ix_pipeline_quotation_lead_id", "pipeline_quotation", ["lead_id"], unique=False)
    op.create_index("ix_pipeline_quotation_sales_person_id", "pipeline_quotation", ["sales_person_id"], unique=False)

    op.create_table(
        "pipeline_quotation_item",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column(
            "quotation_id",
            sa.Uuid(),
            sa.ForeignKey("pipeline_quotation.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("item_id", sa.Uuid(), sa.ForeignKey("pipeline_item.id"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("quantity", sa.Numeric(18, 6), nullable=False),
        sa.Column("unit_price", sa.Numeric(18, 6), nullable=False),
        sa.Column("line_total", sa.Numeric(18, 6), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "pipeline_quotation_charge",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column(
            "quotation_id",
            sa.Uuid(),
            sa.ForeignKey("pipeline_quotation.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("kind", sa.String(length=16), nullable=False),
        sa.Column("value", sa.Numeric(18, 6), nullable=False),
        sa.Column("amount", sa.Numeric(18, 6), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "pipeline_order",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("order_no", sa.String(length=32), nullable=False),
        sa.Column("lead_id", sa.Uuid(), sa.ForeignKey("pipeline_lead.id"), nullable=False),
        sa.Column("quotation_id", sa.Uuid(), sa.ForeignKey("pipeline_quotation.id"), nullable=False),
        sa.Column("customer_name", sa.String(length=255), nullable=False),
        sa.Column("customer_contact", sa.String(length=32), nullable=True),
        sa.Column("customer_email", sa.String(length=320), nullable=True),
        sa.Column("customer_company_name", sa.String(length=255), nullable=True),
        sa.Column("customer_address", sa.Text(), nullable=True),
        sa.Column("sales_person_id", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="CREATED"),
        _money("total_amount", default=False),
        sa.Column("po_number", sa.String(length=64), nullable=True),
        sa.Column("po_date", sa.Date(), nullable=True),
        sa.Column("po_file", sa.String(length=1024), nullable=True),
        _money("po_amount", nullable=True),
        sa.Column("po_punched_by", sa.String(length=255), nullable=True),
        sa.Column("po_punched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_no"),
        sa.UniqueConstraint("quotation_id"),
    )
    op.create_index("ix_pipeline_order_status", "pipeline_order", ["status"], unique=False)
    op.create_index("ix_pipeline_order_sales_person_id", "pipeline_order", ["sales_person_id"], unique=False)

    op.create_table(
        "pipeline_order_item",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("order_id", sa.Uuid(), sa.ForeignKey("pipeline_order.id", ondelete="CASCADE"), nullable=False),
        sa.Column("item_id", sa.Uuid(), sa.ForeignKey("pipeline_item.id"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("quantity", sa.Numeric(18, 6), nullable=False),
        sa.Column("unit_price", sa.Numeric(18, 6), nullable=False),
        sa.Column("line_total", sa.Numeric(18, 6), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "pipeline_sequence_counter",
        sa.Column("prefix", sa.String(length=16), nullable=False),
        sa.Column("year", sa.Integer(), autoincrement=False, nullable=False),
        sa.Column("last_value", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("prefix", "year"),
    )


def downgrade() -> None:
    op.drop_table("pipeline_sequence_counter")
    op.drop_table("pipeline_order_item")
    op.drop_index("ix_pipeline_order_sales_person_id", table_name="pipeline_order")
    op.drop_index("ix_pipeline_order_status", table_name="pipeline_order")
    op.drop_table("pipeline_order")
    op.drop_table("pipeline_quotation_charge")
    op.drop_table("pipeline_quotation_item")
    op.drop_index("ix_pipeline_quotation_sales_person_id", table_name="pipeline_quotation")
    op.drop_index("ix_pipeline_quotation_lead_id", table_name="pipeline_quotation")
    op.drop_table("pipeline_quotation")
    op.drop_index("ix_pipeline_followup_next_followup_date", table_name="pipeline_followup")
    op.drop_index("ix_pipeline_followup_lead_id", table_name="pipeline_followup")
    op.drop_table("pipeline_followup")
    op.drop_table("pipeline_lead_assignment")
    op.drop_index("ix_pipeline_lead_item_lead_id", table_name="pipeline_lead_item")
    op.drop_table("pipeline_lead_item")
    op.drop_index("ix_pipeline_lead_assigned_to", table_name="pipeline_lead")
    op.drop_index("ix_pipeline_lead_status", table_name="pipeline_lead")
    op.drop_table("pipeline_lead")
    op.drop_index("ix_pipeline_party_contact", table_name="pipeline_party")
    op.drop_index("ix_pipeline_party_company_name", table_name="pipeline_party")
    op.drop_table("pipeline_party")
    op.drop_table("pipeline_item")
    op.drop_table("pipeline_user")
