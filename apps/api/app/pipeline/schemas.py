from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator


PartyType = Literal["PROSPECT", "CUSTOMER"]
LeadSource = Literal["WHATSAPP", "EMAIL", "REFERRAL", "WEBSITE", "CALL", "OTHER"]
FollowupOutcome = Literal["ORDER_WON", "ORDER_LOSS", "PRECLOSED"]


class PartyCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    contact: str | None = Field(default=None, max_length=32)
    email: EmailStr | None = None
    company_name: str | None = Field(default=None, max_length=255)
    address: str | None = None
    gstin: str | None = Field(default=None, max_length=32)
    pan: str | None = Field(default=None, max_length=16)


class PartyRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    contact: str | None
    email: str | None
    company_name: str | None
    address: str | None
    gstin: str | None
    pan: str | None
    party_type: PartyType | str
    status: str
    created_by: str
    created_at: datetime


class LeadItemInput(BaseModel):
    item_id: UUID
    quantity: int = Field(default=1, ge=1)


class LeadCreate(BaseModel):
    party_id: UUID | None = None
    party: PartyCreate | None = None
    lead_date: date | None = None
    source: LeadSource = "OTHER"
    remarks: str | None = None
    items: list[LeadItemInput] = Field(default_factory=list)

    @field_validator("source", mode="before")
    @classmethod
    def _normalize_source(cls, value: object) -> object:
        return value.strip().upper() if isinstance(value, str) else value

    @model_validator(mode="after")
    def _require_party(self) -> LeadCreate:
        if self.party_id is None and self.party is None:
            raise ValueError("either party_id or party is required")
        return self


class LeadReview(BaseModel):
    decision: str = Field(min_length=1)
    remarks: str | None = None


class LeadAssign(BaseModel):
    sales_person_id: str = Field(min_length=1)
    reason: str | None = None


class LeadStatusUpdate(BaseModel):
    status: str = Field(min_length=1)


class LeadItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    item_id: UUID
    position: int
    quantity: int


class LeadAssignmentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    position: int
    sales_person_id: str
    assigned_by: str
    reason: str | None
    assigned_at: datetime


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_no: str
    lead_date: date
    party_id: UUID
    source: LeadSource | str
    status: str
    remarks: str | None
    assigned_to: str | None
    reviewed_by: str | None
    reviewed_at: datetime | None
    created_by: str
    row_version: int
    created_at: datetime
    items: list[LeadItemRead] = Field(default_factory=list)
    assignments: list[LeadAssignmentRead] = Field(default_factory=list)


class FollowupCreate(BaseModel):
    remarks: str | None = None
    next_followup_date: date | None = None
    outcome: FollowupOutcome = "PRECLOSED"

    @field_validator("outcome", mode="before")
    @classmethod
    def _normalize_outcome(cls, value: object) -> object:
        return value.strip().upper() if isinstance(value, str) else value


class FollowupUpdate(BaseModel):
    remarks: str | None = None
    next_followup_date: date | None = None
    outcome: FollowupOutcome | None = None

    @field_validator("outcome", mode="before")
    @classmethod
    def _normalize_outcome(cls, value: object) -> object:
        return value.strip().upper() if isinstance(value, str) else value


class FollowupRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_id: UUID
    followup_at: datetime
    remarks: str | None
    next_followup_date: date | None
    outcome: FollowupOutcome | str
    created_by: str
    created_at: datetime


# Quotation amounts are left unconstrained here; the pricing engine reports
# invalid values together with the offending field.
class QuotationItemInput(BaseModel):
    item_id: UUID
    quantity: Decimal
    unit_price: Decimal | None = None


class QuotationChargeInput(BaseModel):
    title: str = ""
    kind: str
    value: Decimal


class QuotationDiscountInput(BaseModel):
    kind: str
    value: Decimal


class QuotationTaxInput(BaseModel):
    kind: str = "GST"
    percentage: Decimal


class QuotationCreate(BaseModel):
    lead_id: UUID
    items: list[QuotationItemInput] = Field(default_factory=list)
    charges: list[QuotationChargeInput] = Field(default_factory=list)
    discount: QuotationDiscountInput | None = None
    tax: QuotationTaxInput | None = None
    notes: str | None = None
    valid_till: date | None = None


class QuotationSend(BaseModel):
    cc_emails: list[EmailStr] = Field(default_factory=list)


class QuotationDecision(BaseModel):
    decision: str = Field(min_length=1)


class QuotationItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    item_id: UUID
    position: int
    quantity: Decimal | str
    unit_price: Decimal | str
    line_total: Decimal | str


class QuotationChargeRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    position: int
    title: str
    kind: str
    value: Decimal | str
    amount: Decimal | str


class QuotationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    quotation_no: str
    lead_id: UUID
    sales_person_id: str
    status: str
    discount_kind: str | None
    discount_value: Decimal | str | None
    tax_kind: str | None
    tax_percentage: Decimal | str | None
    subtotal: Decimal | str
    charges_total: Decimal | str
    discount_amount: Decimal | str
    amount_before_tax: Decimal | str
    tax_amount: Decimal | str
    total_amount: Decimal | str
    notes: str | None
    valid_till: date | None
    email_sent_at: datetime | None
    email_sent_to: str | None
    created_by: str
    row_version: int
    created_at: datetime
    items: list[QuotationItemRead] = Field(default_factory=list)
    charges: list[QuotationChargeRead] = Field(default_factory=list)


class PurchaseOrderInput(BaseModel):
    po_number: str = Field(min_length=1, max_length=64)
    po_date: date | None = None
    po_file: str | None = Field(default=None, max_length=1024)
    po_amount: Decimal | None = Field(default=None, ge=Decimal("0"))


class OrderStatusUpdate(BaseModel):
    status: str = Field(min_length=1)


class OrderItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    item_id: UUID
    position: int
    quantity: Decimal | str
    unit_price: Decimal | str
    line_total: Decimal | str


class OrderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_no: str
    lead_id: UUID
    quotation_id: UUID
    customer_name: str
    customer_contact: str | None
    customer_email: str | None
    customer_company_name: str | None
    customer_address: str | None
    sales_person_id: str
    status: str
    total_amount: Decimal | str
    po_number: str | None
    po_date: date | None
    po_file: str | None
    po_amount: Decimal | str | None
    po_punched_by: str | None
    po_punched_at: datetime | None
    confirmed_at: datetime | None
    cancelled_at: datetime | None
    created_by: str
    row_version: int
    created_at: datetime
    items: list[OrderItemRead] = Field(default_factory=list)
