from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PipelineUser(Base):
    __tablename__ = "pipeline_user"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    role: Mapped[str] = mapped_column(String(32), nullable=False, default="STAFF", server_default="STAFF")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class PipelineItem(Base):
    __tablename__ = "pipeline_item"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    base_price: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False, default=Decimal("0"), server_default="0")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class PipelineParty(Base):
    __tablename__ = "pipeline_party"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    contact: Mapped[str | None] = mapped_column(String(32), nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True, unique=True)
    company_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    gstin: Mapped[str | None] = mapped_column(String(32), nullable=True)
    pan: Mapped[str | None] = mapped_column(String(16), nullable=True)
    party_type: Mapped[str] = mapped_column(String(16), nullable=False, default="PROSPECT", server_default="PROSPECT")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="ACTIVE", server_default="ACTIVE")
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_pipeline_party_company_name", "company_name"),
        Index("ix_pipeline_party_contact", "contact"),
    )


class PipelineLead(Base):
    __tablename__ = "pipeline_lead"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    lead_no: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    lead_date: Mapped[date] = mapped_column(Date(), nullable=False)
    party_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("pipeline_party.id"), nullable=False)
    source: Mapped[str] = mapped_column(String(16), nullable=False, default="OTHER", server_default="OTHER")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="NEW", server_default="NEW")
    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)
    assigned_to: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    party: Mapped[PipelineParty] = relationship("app.pipeline.models.PipelineParty", lazy="joined")
    items: Mapped[list[PipelineLeadItem]] = relationship(
        "app.pipeline.models.PipelineLeadItem",
        back_populates="lead",
        cascade="all, delete-orphan",
        order_by="PipelineLeadItem.position",
    )
    assignments: Mapped[list[PipelineLeadAssignment]] = relationship(
        "app.pipeline.models.PipelineLeadAssignment",
        back_populates="lead",
        cascade="all, delete-orphan",
        order_by="PipelineLeadAssignment.position",
    )

    __table_args__ = (
        Index("ix_pipeline_lead_status", "status"),
        Index("ix_pipeline_lead_assigned_to", "assigned_to"),
    )


class PipelineLeadItem(Base):
    __tablename__ = "pipeline_lead_item"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    lead_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("pipeline_lead.id", ondelete="CASCADE"),
        nullable=False,
    )
    item_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("pipeline_item.id"), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    lead: Mapped[PipelineLead] = relationship("app.pipeline.models.PipelineLead", back_populates="items")

    __table_args__ = (Index("ix_pipeline_lead_item_lead_id", "lead_id"),)


class PipelineLeadAssignment(Base):
    """Insert-only assignment history; the lead's `assigned_to` mirrors the latest row."""

    __tablename__ = "pipeline_lead_assignment"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    lead_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("pipeline_lead.id", ondelete="CASCADE"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    sales_person_id: Mapped[str] = mapped_column(String(255), nullable=False)
    assigned_by: Mapped[str] = mapped_column(String(255), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    lead: Mapped[PipelineLead] = relationship("app.pipeline.models.PipelineLead", back_populates="assignments")

    __table_args__ = (UniqueConstraint("lead_id", "position", name="uq_pipeline_lead_assignment_position"),)


class PipelineFollowup(Base):
    """Insert-mostly contact log for a lead; `next_followup_date` drives the upcoming list."""

    __tablename__ = "pipeline_followup"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    lead_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("pipeline_lead.id", ondelete="CASCADE"),
        nullable=False,
    )
    followup_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_followup_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False, default="PRECLOSED", server_default="PRECLOSED")
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_pipeline_followup_lead_id", "lead_id"),
        Index("ix_pipeline_followup_next_followup_date", "next_followup_date"),
    )


class PipelineQuotation(Base):
    __tablename__ = "pipeline_quotation"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    quotation_no: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    lead_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("pipeline_lead.id"), nullable=False)
    sales_person_id: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="CREATED", server_default="CREATED")
    discount_kind: Mapped[str | None] = mapped_column(String(16), nullable=True)
    discount_value: Mapped[Decimal | None] = mapped_column(Numeric(18, 6), nullable=True)
    tax_kind: Mapped[str | None] = mapped_column(String(16), nullable=True)
    tax_percentage: Mapped[Decimal | None] = mapped_column(Numeric(18, 6), nullable=True)
    subtotal: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False, default=Decimal("0"), server_default="0")
    charges_total: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False, default=Decimal("0"), server_default="0")
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False, default=Decimal("0"), server_default="0")
    amount_before_tax: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False, default=Decimal("0"), server_default="0")
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False, default=Decimal("0"), server_default="0")
    total_amount: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False, default=Decimal("0"), server_default="0")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    valid_till: Mapped[date | None] = mapped_column(Date(), nullable=True)
    email_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    email_sent_to: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    lead: Mapped[PipelineLead] = relationship("app.pipeline.models.PipelineLead", lazy="joined")
    items: Mapped[list[PipelineQuotationItem]] = relationship(
        "app.pipeline.models.PipelineQuotationItem",
        back_populates="quotation",
        cascade="all, delete-orphan",
        order_by="PipelineQuotationItem.position",
    )
    charges: Mapped[list[PipelineQuotationCharge]] = relationship(
        "app.pipeline.models.PipelineQuotationCharge",
        back_populates="quotation",
        cascade="all, delete-orphan",
        order_by="PipelineQuotationCharge.position",
    )

    __table_args__ = (
        Index("ix_pipeline_quotation_lead_id", "lead_id"),
        Index("ix_pipeline_quotation_sales_person_id", "sales_person_id"),
    )


class PipelineQuotationItem(Base):
    __tablename__ = "pipeline_quotation_item"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    quotation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("pipeline_quotation.id", ondelete="CASCADE"),
        nullable=False,
    )
    item_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("pipeline_item.id"), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    line_total: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)

    quotation: Mapped[PipelineQuotation] = relationship("app.pipeline.models.PipelineQuotation", back_populates="items")


class PipelineQuotationCharge(Base):
    __tablename__ = "pipeline_quotation_charge"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    quotation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("pipeline_quotation.id", ondelete="CASCADE"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="", server_default="")
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    value: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)

    quotation: Mapped[PipelineQuotation] = relationship("app.pipeline.models.PipelineQuotation", back_populates="charges")


class PipelineOrder(Base):
    __tablename__ = "pipeline_order"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_no: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    lead_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("pipeline_lead.id"), nullable=False)
    quotation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("pipeline_quotation.id"),
        nullable=False,
        unique=True,
    )
    customer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_contact: Mapped[str | None] = mapped_column(String(32), nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    customer_company_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    customer_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    sales_person_id: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="CREATED", server_default="CREATED")
    total_amount: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    po_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    po_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    po_file: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    po_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 6), nullable=True)
    po_punched_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    po_punched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    items: Mapped[list[PipelineOrderItem]] = relationship(
        "app.pipeline.models.PipelineOrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="PipelineOrderItem.position",
    )

    __table_args__ = (
        Index("ix_pipeline_order_status", "status"),
        Index("ix_pipeline_order_sales_person_id", "sales_person_id"),
    )


class PipelineOrderItem(Base):
    __tablename__ = "pipeline_order_item"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("pipeline_order.id", ondelete="CASCADE"),
        nullable=False,
    )
    item_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("pipeline_item.id"), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    line_total: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)

    order: Mapped[PipelineOrder] = relationship("app.pipeline.models.PipelineOrder", back_populates="items")


class PipelineSequenceCounter(Base):
    """Last ordinal handed out per (prefix, year); rows are created lazily and never deleted."""

    __tablename__ = "pipeline_sequence_counter"

    prefix: Mapped[str] = mapped_column(String(16), primary_key=True)
    year: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    last_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
