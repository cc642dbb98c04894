from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from functools import partial
from typing import Any, TypeVar

from opentelemetry import trace
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import audit, events
from app.context import reset_actor_id, set_actor_id
from app.core.config import get_settings
from app.core.rbac import ADMIN_ROLES, STAFF, has_capability
from app.metrics import observe_conflict_retry, observe_transition
from app.pipeline.errors import (
    AlreadyConverted,
    AlreadyExists,
    ConcurrencyConflict,
    Forbidden,
    InvalidTransition,
    PipelineError,
    ValidationFailed,
)
from app.pipeline.mailer import LoggingQuotationMailer, QuotationMailer
from app.pipeline.models import (
    PipelineFollowup,
    PipelineLead,
    PipelineLeadAssignment,
    PipelineLeadItem,
    PipelineOrder,
    PipelineOrderItem,
    PipelineParty,
    PipelineQuotation,
    PipelineQuotationCharge,
    PipelineQuotationItem,
    utcnow,
)
from app.pipeline.pricing import ChargeInput, DiscountInput, LineInput, TaxInput, compute_quotation
from app.pipeline.repository import PipelineRepositories, with_transaction
from app.pipeline.schemas import (
    FollowupCreate,
    FollowupRead,
    FollowupUpdate,
    LeadCreate,
    LeadRead,
    OrderRead,
    PartyCreate,
    PartyRead,
    PurchaseOrderInput,
    QuotationCreate,
    QuotationRead,
)
from app.pipeline.sequence import LEAD_PREFIX, ORDER_PREFIX, QUOTATION_PREFIX, SequenceGenerator
from app.pipeline.state_machine import (
    LEAD,
    ORDER,
    QUOTATION,
    PipelinePolicy,
    StatusChange,
    TransitionCommand,
    ensure_convertible,
    ensure_quotation_allowed,
    get_policy,
    plan_assignment,
    plan_conversion,
    plan_follow_up,
    plan_lead_review,
    plan_lead_transition,
    plan_order_transition,
    plan_quotation_decision,
    plan_quotation_send,
)


logger = logging.getLogger("app.pipeline.service")
tracer = trace.get_tracer("app.pipeline.service")

ResultT = TypeVar("ResultT")

PARTY = "party"
FOLLOWUP = "followup"


def _status_event(change: StatusChange) -> str | None:
    if change.from_status == change.to_status:
        return None
    if change.entity_type == LEAD:
        return "pipeline.lead.status_changed"
    if change.entity_type == ORDER:
        return "pipeline.order.status_changed"
    # Sending publishes its own event with the recipients.
    if change.to_status in {"APPROVED", "REJECTED"}:
        return "pipeline.quotation.decided"
    return None


@dataclass
class PipelineActor:
    user_id: str
    role: str | None
    correlation_id: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


@dataclass(slots=True)
class _UnitOfWork:
    """Side effects collected during one attempt; emitted only after commit."""

    audit_entries: list[dict[str, Any]] = field(default_factory=list)
    envelopes: list[dict[str, Any]] = field(default_factory=list)
    transitions: list[StatusChange] = field(default_factory=list)

    def record(
        self,
        actor: PipelineActor,
        entity_type: str,
        entity_id: uuid.UUID,
        action: str,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> None:
        self.audit_entries.append(
            {
                "actor_user_id": actor.user_id,
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "action": action,
                "before": before,
                "after": after,
                "correlation_id": actor.correlation_id,
            }
        )

    def publish(
        self,
        actor: PipelineActor,
        event_type: str,
        entity_type: str,
        entity_id: uuid.UUID,
        payload: dict[str, Any],
    ) -> None:
        self.envelopes.append(
            events.build_envelope(
                event_type,
                entity_type,
                str(entity_id),
                payload,
                actor_user_id=actor.user_id,
                correlation_id=actor.correlation_id,
            )
        )


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (Decimal, uuid.UUID)):
        return str(value)
    return value


def _default_policy() -> PipelinePolicy:
    return get_policy(get_settings().pipeline_policy)


def _default_conflict_retries() -> int:
    return get_settings().pipeline_conflict_max_retries


@dataclass(slots=True)
class PipelineService:
    policy: PipelinePolicy = field(default_factory=_default_policy)
    repositories: PipelineRepositories = field(default_factory=PipelineRepositories)
    sequences: SequenceGenerator = field(default_factory=SequenceGenerator)
    mailer: QuotationMailer = field(default_factory=LoggingQuotationMailer)
    max_conflict_retries: int = field(default_factory=_default_conflict_retries)
    clock: Callable[[], datetime] = utcnow

    # Parties

    def create_party(self, session: Session, actor: PipelineActor, payload: PartyCreate) -> PartyRead:
        self._authorize(actor, "party.create")

        def work(unit: _UnitOfWork) -> PartyRead:
            data = self._normalize_party(payload)
            if data["email"] is not None:
                duplicate = self.repositories.parties.find_one(session, PipelineParty.email == data["email"])
                if duplicate is not None:
                    raise AlreadyExists(
                        f"party with email {data['email']} already exists",
                        details={"email": data["email"], "party_id": str(duplicate.id)},
                    )
            party = self._add_party(session, actor, unit, data)
            return PartyRead.model_validate(party)

        return self._run(session, actor, "party.create", work)

    def find_or_create_party(
        self,
        session: Session,
        actor: PipelineActor,
        data: PartyCreate,
        unit: _UnitOfWork | None = None,
    ) -> PipelineParty:
        """Reuse an active party matching company name, then contact, then e-mail."""
        normalized = self._normalize_party(data)
        parties = self.repositories.parties
        candidates = []
        if normalized["company_name"]:
            candidates.append(func.lower(PipelineParty.company_name) == normalized["company_name"].lower())
        if normalized["contact"]:
            candidates.append(PipelineParty.contact == normalized["contact"])
        if normalized["email"]:
            candidates.append(PipelineParty.email == normalized["email"])
        for criterion in candidates:
            existing = parties.find_one(session, criterion, PipelineParty.is_active.is_(True))
            if existing is not None:
                return existing
        return self._add_party(session, actor, unit or _UnitOfWork(), normalized)

    # Leads

    def create_lead(self, session: Session, actor: PipelineActor, payload: LeadCreate) -> LeadRead:
        self._authorize(actor, "lead.create")

        def work(unit: _UnitOfWork) -> LeadRead:
            if payload.party_id is not None:
                party = self.repositories.parties.get(session, payload.party_id)
            elif payload.party is not None:
                party = self.find_or_create_party(session, actor, payload.party, unit)
            else:
                raise ValidationFailed("either party_id or party is required", details={"field": "party"})
            for line in payload.items:
                self.repositories.items.get(session, line.item_id)

            lead = PipelineLead(
                lead_no=self.sequences.next(session, LEAD_PREFIX),
                lead_date=payload.lead_date or self.clock().date(),
                party_id=party.id,
                source=payload.source,
                status=self.policy.initial_lead_status,
                remarks=payload.remarks,
                created_by=actor.user_id,
            )
            lead.items = [
                PipelineLeadItem(item_id=line.item_id, position=position, quantity=line.quantity)
                for position, line in enumerate(payload.items, start=1)
            ]
            self.repositories.leads.add(session, lead)

            after = {"lead_no": lead.lead_no, "status": lead.status, "party_id": str(party.id)}
            unit.record(actor, LEAD, lead.id, "create", None, after)
            unit.publish(actor, "pipeline.lead.created", LEAD, lead.id, after)
            return LeadRead.model_validate(lead)

        return self._run(session, actor, "lead.create", work)

    def review_lead(
        self,
        session: Session,
        actor: PipelineActor,
        lead_id: uuid.UUID,
        decision: str,
        remarks: str | None = None,
    ) -> LeadRead:
        self._authorize(actor, "lead.review")
        decision = decision.upper()
        if decision == "REJECTED" and not (remarks and remarks.strip()):
            raise ValidationFailed("remarks are required when rejecting a lead", details={"field": "remarks"})

        def work(unit: _UnitOfWork) -> LeadRead:
            lead = self.repositories.leads.get(session, lead_id)
            self._ensure_lead_visible(actor, lead)
            if lead.reviewed_by is not None:
                raise InvalidTransition(LEAD, lead.status, decision, entity_id=lead.id, reason="lead has already been reviewed")
            values: dict[str, Any] = {"reviewed_by": actor.user_id, "reviewed_at": self.clock()}
            if remarks:
                values["remarks"] = remarks
            command = plan_lead_review(self.policy, lead, decision, values)
            saved = self._apply(session, actor, unit, command, action="review")
            lead = saved[lead.id]
            unit.publish(
                actor,
                "pipeline.lead.reviewed",
                LEAD,
                lead.id,
                {"decision": decision, "status": lead.status, "remarks": remarks},
            )
            return LeadRead.model_validate(lead)

        return self._run(session, actor, "lead.review", work)

    def assign_sales_person(
        self,
        session: Session,
        actor: PipelineActor,
        lead_id: uuid.UUID,
        sales_person_id: str,
        reason: str | None = None,
    ) -> LeadRead:
        self._authorize(actor, "lead.assign")

        def work(unit: _UnitOfWork) -> LeadRead:
            lead = self.repositories.leads.get(session, lead_id)
            self._ensure_lead_visible(actor, lead)
            sales_person = self.repositories.users.get(session, sales_person_id)
            if sales_person.role != STAFF:
                raise ValidationFailed(
                    "assigned user must hold the STAFF role",
                    details={"sales_person_id": sales_person_id, "role": sales_person.role},
                )
            command = plan_assignment(self.policy, lead, {"assigned_to": sales_person_id})
            lead = self._apply(session, actor, unit, command, action="assign")[lead.id]

            position = session.scalar(
                select(func.coalesce(func.max(PipelineLeadAssignment.position), 0)).where(
                    PipelineLeadAssignment.lead_id == lead.id
                )
            )
            lead.assignments.append(
                PipelineLeadAssignment(
                    position=int(position or 0) + 1,
                    sales_person_id=sales_person_id,
                    assigned_by=actor.user_id,
                    reason=reason,
                    assigned_at=self.clock(),
                )
            )
            session.flush()
            unit.publish(
                actor,
                "pipeline.lead.assigned",
                LEAD,
                lead.id,
                {"assigned_to": sales_person_id, "assigned_by": actor.user_id, "reason": reason},
            )
            return LeadRead.model_validate(lead)

        return self._run(session, actor, "lead.assign", work)

    def update_lead_status(self, session: Session, actor: PipelineActor, lead_id: uuid.UUID, status: str) -> LeadRead:
        self._authorize(actor, "lead.update_status")

        def work(unit: _UnitOfWork) -> LeadRead:
            lead = self.repositories.leads.get(session, lead_id)
            self._ensure_lead_visible(actor, lead)
            command = plan_lead_transition(self.policy, lead, status.upper())
            lead = self._apply(session, actor, unit, command, action="update_status")[lead.id]
            return LeadRead.model_validate(lead)

        return self._run(session, actor, "lead.update_status", work)

    def delete_lead(self, session: Session, actor: PipelineActor, lead_id: uuid.UUID) -> None:
        self._authorize(actor, "lead.delete")

        def work(unit: _UnitOfWork) -> None:
            lead = self.repositories.leads.get(session, lead_id)
            self.repositories.leads.deactivate(session, lead)
            unit.record(actor, LEAD, lead.id, "delete", {"is_active": True}, {"is_active": False})

        self._run(session, actor, "lead.delete", work)

    def get_lead(self, session: Session, actor: PipelineActor, lead_id: uuid.UUID) -> LeadRead:
        self._authorize(actor, "lead.read")
        lead = self.repositories.leads.get(session, lead_id)
        self._ensure_lead_visible(actor, lead)
        return LeadRead.model_validate(lead)

    # Follow-ups

    def create_followup(
        self,
        session: Session,
        actor: PipelineActor,
        lead_id: uuid.UUID,
        payload: FollowupCreate,
    ) -> FollowupRead:
        self._authorize(actor, "followup.create")

        def work(unit: _UnitOfWork) -> FollowupRead:
            lead = self.repositories.leads.get(session, lead_id)
            self._ensure_lead_visible(actor, lead)
            command = plan_follow_up(self.policy, lead)
            self._apply(session, actor, unit, command, action="follow_up")

            followup = PipelineFollowup(
                lead_id=lead.id,
                followup_at=self.clock(),
                remarks=payload.remarks,
                next_followup_date=payload.next_followup_date,
                outcome=payload.outcome,
                created_by=actor.user_id,
            )
            self.repositories.followups.add(session, followup)

            after = {
                "lead_id": str(lead.id),
                "outcome": followup.outcome,
                "next_followup_date": _jsonable(followup.next_followup_date),
            }
            unit.record(actor, FOLLOWUP, followup.id, "create", None, after)
            unit.publish(actor, "pipeline.followup.created", FOLLOWUP, followup.id, after)
            return FollowupRead.model_validate(followup)

        return self._run(session, actor, "followup.create", work)

    def update_followup(
        self,
        session: Session,
        actor: PipelineActor,
        followup_id: uuid.UUID,
        payload: FollowupUpdate,
    ) -> FollowupRead:
        self._authorize(actor, "followup.update")

        def work(unit: _UnitOfWork) -> FollowupRead:
            followup = self.repositories.followups.get(session, followup_id)
            self._ensure_lead_visible(actor, self.repositories.leads.get(session, followup.lead_id))
            changes = payload.model_dump(exclude_none=True)
            if not changes:
                raise ValidationFailed("nothing to update", details={"followup_id": str(followup.id)})
            before = {key: _jsonable(getattr(followup, key)) for key in changes}
            for key, value in changes.items():
                setattr(followup, key, value)
            session.flush()
            unit.record(actor, FOLLOWUP, followup.id, "update", before, {key: _jsonable(value) for key, value in changes.items()})
            return FollowupRead.model_validate(followup)

        return self._run(session, actor, "followup.update", work)

    def list_followups(self, session: Session, actor: PipelineActor, lead_id: uuid.UUID) -> list[FollowupRead]:
        self._authorize(actor, "followup.read")
        lead = self.repositories.leads.get(session, lead_id)
        self._ensure_lead_visible(actor, lead)
        rows = session.scalars(
            select(PipelineFollowup)
            .where(PipelineFollowup.lead_id == lead.id)
            .order_by(PipelineFollowup.followup_at.desc(), PipelineFollowup.created_at.desc())
        ).all()
        return [FollowupRead.model_validate(row) for row in rows]

    def upcoming_followups(self, session: Session, actor: PipelineActor, days: int = 7) -> list[FollowupRead]:
        """Follow-ups due between today and `days` from now; staff only see their assigned leads."""
        self._authorize(actor, "followup.read")
        if days < 0:
            raise ValidationFailed("days must not be negative", details={"field": "days"})
        today = self.clock().date()
        stmt = (
            select(PipelineFollowup)
            .join(PipelineLead, PipelineLead.id == PipelineFollowup.lead_id)
            .where(
                PipelineLead.is_active.is_(True),
                PipelineFollowup.next_followup_date >= today,
                PipelineFollowup.next_followup_date <= today + timedelta(days=days),
            )
            .order_by(PipelineFollowup.next_followup_date.asc())
        )
        if not actor.is_admin:
            stmt = stmt.where(PipelineLead.assigned_to == actor.user_id)
        return [FollowupRead.model_validate(row) for row in session.scalars(stmt).all()]

    # Quotations

    def create_quotation(self, session: Session, actor: PipelineActor, payload: QuotationCreate) -> QuotationRead:
        self._authorize(actor, "quotation.create")

        def work(unit: _UnitOfWork) -> QuotationRead:
            lead = self.repositories.leads.get(session, payload.lead_id)
            self._ensure_lead_visible(actor, lead)
            ensure_quotation_allowed(self.policy, lead)

            lines: list[LineInput] = []
            for line in payload.items:
                item = self.repositories.items.get(session, line.item_id)
                unit_price = line.unit_price if line.unit_price is not None else item.base_price
                lines.append(LineInput(quantity=line.quantity, unit_price=unit_price))
            charges = [ChargeInput(kind=charge.kind, value=charge.value, title=charge.title) for charge in payload.charges]
            discount = DiscountInput(kind=payload.discount.kind, value=payload.discount.value) if payload.discount else None
            tax = TaxInput(percentage=payload.tax.percentage, kind=payload.tax.kind) if payload.tax else None
            breakdown = compute_quotation(lines, charges, discount, tax)

            quotation = PipelineQuotation(
                quotation_no=self.sequences.next(session, QUOTATION_PREFIX),
                lead_id=lead.id,
                sales_person_id=lead.assigned_to or actor.user_id,
                status="CREATED",
                discount_kind=discount.kind.upper() if discount else None,
                discount_value=discount.value if discount else None,
                tax_kind=tax.kind if tax else None,
                tax_percentage=tax.percentage if tax else None,
                subtotal=breakdown.subtotal,
                charges_total=breakdown.charges_total,
                discount_amount=breakdown.discount_amount,
                amount_before_tax=breakdown.amount_before_tax,
                tax_amount=breakdown.tax_amount,
                total_amount=breakdown.total_amount,
                notes=payload.notes,
                valid_till=payload.valid_till,
                created_by=actor.user_id,
            )
            quotation.items = [
                PipelineQuotationItem(
                    item_id=line.item_id,
                    position=position,
                    quantity=priced.quantity,
                    unit_price=priced.unit_price,
                    line_total=line_total,
                )
                for position, (line, priced, line_total) in enumerate(
                    zip(payload.items, lines, breakdown.line_totals), start=1
                )
            ]
            quotation.charges = [
                PipelineQuotationCharge(
                    position=position,
                    title=charge.title,
                    kind=charge.kind.upper(),
                    value=charge.value,
                    amount=amount,
                )
                for position, (charge, amount) in enumerate(zip(charges, breakdown.charge_amounts), start=1)
            ]
            self.repositories.quotations.add(session, quotation)

            after = {
                "quotation_no": quotation.quotation_no,
                "lead_id": str(lead.id),
                "status": quotation.status,
                "total_amount": str(breakdown.total_amount),
            }
            unit.record(actor, QUOTATION, quotation.id, "create", None, after)
            unit.publish(actor, "pipeline.quotation.created", QUOTATION, quotation.id, after)
            return QuotationRead.model_validate(quotation)

        return self._run(session, actor, "quotation.create", work)

    def send_quotation(
        self,
        session: Session,
        actor: PipelineActor,
        quotation_id: uuid.UUID,
        cc_emails: Sequence[str] = (),
    ) -> QuotationRead:
        self._authorize(actor, "quotation.send")

        def work(unit: _UnitOfWork) -> QuotationRead:
            quotation = self.repositories.quotations.get(session, quotation_id)
            self._ensure_sales_visible(actor, QUOTATION, quotation)
            lead = self.repositories.leads.get(session, quotation.lead_id)
            recipient = lead.party.email
            if not recipient:
                raise ValidationFailed(
                    "party has no e-mail address to send the quotation to",
                    details={"party_id": str(lead.party_id), "quotation_id": str(quotation.id)},
                )
            cc = [str(address) for address in cc_emails]
            values = {"email_sent_at": self.clock(), "email_sent_to": ", ".join([recipient, *cc])}
            command = plan_quotation_send(self.policy, quotation, lead, values)
            quotation = self._apply(session, actor, unit, command, action="send")[quotation.id]
            self.mailer.send_quotation(quotation, recipient, cc)
            unit.publish(
                actor,
                "pipeline.quotation.sent",
                QUOTATION,
                quotation.id,
                {"quotation_no": quotation.quotation_no, "to": recipient, "cc": cc},
            )
            return QuotationRead.model_validate(quotation)

        return self._run(session, actor, "quotation.send", work)

    def decide_quotation(
        self,
        session: Session,
        actor: PipelineActor,
        quotation_id: uuid.UUID,
        decision: str,
    ) -> QuotationRead:
        self._authorize(actor, "quotation.decide")

        def work(unit: _UnitOfWork) -> QuotationRead:
            quotation = self.repositories.quotations.get(session, quotation_id)
            self._ensure_sales_visible(actor, QUOTATION, quotation)
            lead = self.repositories.leads.get(session, quotation.lead_id)
            command = plan_quotation_decision(self.policy, quotation, lead, decision.upper())
            quotation = self._apply(session, actor, unit, command, action="decide")[quotation.id]
            return QuotationRead.model_validate(quotation)

        return self._run(session, actor, "quotation.decide", work)

    def get_quotation(self, session: Session, actor: PipelineActor, quotation_id: uuid.UUID) -> QuotationRead:
        self._authorize(actor, "quotation.read")
        quotation = self.repositories.quotations.get(session, quotation_id)
        self._ensure_sales_visible(actor, QUOTATION, quotation)
        return QuotationRead.model_validate(quotation)

    # Orders

    def convert_to_order(self, session: Session, actor: PipelineActor, quotation_id: uuid.UUID) -> OrderRead:
        self._authorize(actor, "order.convert")

        def work(unit: _UnitOfWork) -> OrderRead:
            quotation = self.repositories.quotations.get(session, quotation_id)
            self._ensure_sales_visible(actor, QUOTATION, quotation)
            existing = self.repositories.orders.find_one(session, PipelineOrder.quotation_id == quotation.id)
            if existing is not None:
                raise AlreadyConverted(quotation.id, existing.id)
            ensure_convertible(quotation)
            lead = self.repositories.leads.get(session, quotation.lead_id)
            party = lead.party
            command = plan_conversion(self.policy, lead)

            order = PipelineOrder(
                order_no=self.sequences.next(session, ORDER_PREFIX),
                lead_id=lead.id,
                quotation_id=quotation.id,
                customer_name=party.name,
                customer_contact=party.contact,
                customer_email=party.email,
                customer_company_name=party.company_name,
                customer_address=party.address,
                sales_person_id=quotation.sales_person_id,
                status="CREATED",
                total_amount=quotation.total_amount,
                created_by=actor.user_id,
            )
            order.items = [
                PipelineOrderItem(
                    item_id=line.item_id,
                    position=line.position,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    line_total=line.line_total,
                )
                for line in quotation.items
            ]
            try:
                self.repositories.orders.add(session, order)
            except IntegrityError:
                # Lost the race against a concurrent conversion of the same quotation.
                raise AlreadyConverted(quotation.id) from None

            self._apply(session, actor, unit, command, action="convert")
            if party.party_type != "CUSTOMER":
                unit.record(actor, PARTY, party.id, "promote", {"party_type": party.party_type}, {"party_type": "CUSTOMER"})
                party.party_type = "CUSTOMER"
                party.row_version += 1
                session.flush()

            after = {
                "order_no": order.order_no,
                "quotation_id": str(quotation.id),
                "lead_id": str(lead.id),
                "status": order.status,
                "total_amount": str(order.total_amount),
            }
            unit.record(actor, ORDER, order.id, "create", None, after)
            unit.publish(actor, "pipeline.order.created", ORDER, order.id, after)
            return OrderRead.model_validate(order)

        return self._run(session, actor, "order.convert", work)

    def receive_po(
        self,
        session: Session,
        actor: PipelineActor,
        order_id: uuid.UUID,
        po: PurchaseOrderInput,
    ) -> OrderRead:
        self._authorize(actor, "order.receive_po")

        def work(unit: _UnitOfWork) -> OrderRead:
            order = self.repositories.orders.get(session, order_id)
            self._ensure_sales_visible(actor, ORDER, order)
            values = {
                "po_number": po.po_number,
                "po_date": po.po_date or self.clock().date(),
                "po_file": po.po_file,
                "po_amount": po.po_amount,
                "po_punched_by": actor.user_id,
                "po_punched_at": self.clock(),
            }
            command = plan_order_transition(order, "PO_RECEIVED", values=values, name="order.receive_po")
            order = self._apply(session, actor, unit, command, action="receive_po")[order.id]
            unit.publish(
                actor,
                "pipeline.order.po_received",
                ORDER,
                order.id,
                {"po_number": po.po_number, "po_amount": _jsonable(po.po_amount)},
            )
            return OrderRead.model_validate(order)

        return self._run(session, actor, "order.receive_po", work)

    def update_order_status(self, session: Session, actor: PipelineActor, order_id: uuid.UUID, status: str) -> OrderRead:
        self._authorize(actor, "order.update_status")
        target = status.upper()
        if target == "PO_RECEIVED":
            raise ValidationFailed("purchase orders are recorded through receive_po", details={"requested_status": target})

        def work(unit: _UnitOfWork) -> OrderRead:
            order = self.repositories.orders.get(session, order_id)
            self._ensure_sales_visible(actor, ORDER, order)
            values: dict[str, Any] = {}
            if target == "CONFIRMED":
                values["confirmed_at"] = self.clock()
            elif target == "CANCELLED":
                values["cancelled_at"] = self.clock()
            command = plan_order_transition(order, target, values=values)
            order = self._apply(session, actor, unit, command, action="update_status")[order.id]
            return OrderRead.model_validate(order)

        return self._run(session, actor, "order.update_status", work)

    def get_order(self, session: Session, actor: PipelineActor, order_id: uuid.UUID) -> OrderRead:
        self._authorize(actor, "order.read")
        order = self.repositories.orders.get(session, order_id)
        self._ensure_sales_visible(actor, ORDER, order)
        return OrderRead.model_validate(order)

    def next_sequence_number(self, session: Session, prefix: str, year: int | None = None) -> str:
        return self.sequences.next(session, prefix, year)

    # Internals

    def _authorize(self, actor: PipelineActor, capability: str) -> None:
        if not has_capability(actor.role, capability):
            logger.info(
                "pipeline.forbidden",
                extra={"operation": capability, "actor_id": actor.user_id, "error_code": Forbidden.code},
            )
            raise Forbidden(
                f"role {actor.role or 'anonymous'} may not perform {capability}",
                details={"role": actor.role, "capability": capability},
            )

    @staticmethod
    def _ensure_lead_visible(actor: PipelineActor, lead: PipelineLead) -> None:
        if actor.is_admin:
            return
        if actor.user_id in {lead.created_by, lead.assigned_to}:
            return
        raise Forbidden(
            f"lead {lead.id} is not visible to {actor.user_id}",
            details={"entity_type": LEAD, "entity_id": str(lead.id)},
        )

    @staticmethod
    def _ensure_sales_visible(actor: PipelineActor, entity_type: str, entity: PipelineQuotation | PipelineOrder) -> None:
        if actor.is_admin or entity.sales_person_id == actor.user_id:
            return
        raise Forbidden(
            f"{entity_type} {entity.id} is not visible to {actor.user_id}",
            details={"entity_type": entity_type, "entity_id": str(entity.id)},
        )

    @staticmethod
    def _normalize_party(payload: PartyCreate) -> dict[str, Any]:
        return {
            "name": payload.name.strip(),
            "contact": payload.contact.strip() if payload.contact else None,
            "email": str(payload.email).lower() if payload.email else None,
            "company_name": payload.company_name.strip() if payload.company_name else None,
            "address": payload.address,
            "gstin": payload.gstin.upper() if payload.gstin else None,
            "pan": payload.pan.upper() if payload.pan else None,
        }

    def _add_party(
        self,
        session: Session,
        actor: PipelineActor,
        unit: _UnitOfWork,
        data: dict[str, Any],
    ) -> PipelineParty:
        party = PipelineParty(**data, party_type="PROSPECT", status="ACTIVE", created_by=actor.user_id)
        try:
            self.repositories.parties.add(session, party)
        except IntegrityError:
            raise AlreadyExists("party already exists", details={"email": data.get("email")}) from None
        unit.record(actor, PARTY, party.id, "create", None, {"name": party.name, "email": party.email})
        return party

    def _apply(
        self,
        session: Session,
        actor: PipelineActor,
        unit: _UnitOfWork,
        command: TransitionCommand,
        *,
        action: str,
    ) -> dict[uuid.UUID, Any]:
        saved = self.repositories.apply(session, command)
        for change in command.changes:
            before = {"status": change.from_status, "row_version": change.expected_version}
            after = {"status": change.to_status, **{key: _jsonable(value) for key, value in change.values.items()}}
            unit.record(actor, change.entity_type, change.entity_id, action, before, after)
            unit.transitions.append(change)
            event_type = _status_event(change)
            if event_type is not None:
                unit.publish(
                    actor,
                    event_type,
                    change.entity_type,
                    change.entity_id,
                    {"from_status": change.from_status, "to_status": change.to_status, "operation": command.name},
                )
        return saved

    def _emit(self, unit: _UnitOfWork) -> None:
        for entry in unit.audit_entries:
            audit.record(**entry)
        for change in unit.transitions:
            if change.from_status != change.to_status:
                observe_transition(change.entity_type, change.to_status)
        for envelope in unit.envelopes:
            events.publish(envelope)

    def _run(
        self,
        session: Session,
        actor: PipelineActor,
        operation: str,
        work: Callable[[_UnitOfWork], ResultT],
    ) -> ResultT:
        token = set_actor_id(actor.user_id)
        try:
            with tracer.start_as_current_span(f"pipeline.{operation}") as span:
                span.set_attribute("operation", operation)
                span.set_attribute("actor_role", actor.role or "")
                span.set_attribute("correlation_id", actor.correlation_id or "")
                attempt = 0
                while True:
                    attempt += 1
                    unit = _UnitOfWork()
                    try:
                        result = with_transaction(session, partial(work, unit))
                    except ConcurrencyConflict as exc:
                        if attempt > self.max_conflict_retries:
                            logger.info(
                                "pipeline.operation_failed",
                                extra={"operation": operation, "attempt": attempt, "error_code": exc.code, "error": exc.message},
                            )
                            raise
                        observe_conflict_retry(operation)
                        logger.warning(
                            "pipeline.conflict_retry",
                            extra={
                                "operation": operation,
                                "attempt": attempt,
                                "entity_type": exc.entity_type,
                                "entity_id": str(exc.entity_id),
                            },
                        )
                        continue
                    except PipelineError as exc:
                        logger.info(
                            "pipeline.operation_failed",
                            extra={"operation": operation, "attempt": attempt, "error_code": exc.code, "error": exc.message},
                        )
                        raise

                    span.set_attribute("attempts", attempt)
                    self._emit(unit)
                    logger.info(
                        f"pipeline.{operation}",
                        extra={"operation": operation, "attempt": attempt, "actor_id": actor.user_id},
                    )
                    return result
        finally:
            reset_actor_id(token)


pipeline_service = PipelineService()
