from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from app.pipeline.errors import InvalidTransition, ValidationFailed


LEAD = "lead"
QUOTATION = "quotation"
ORDER = "order"


@dataclass(frozen=True, slots=True)
class TransitionTable:
    """Legal status edges for one entity type.

    `forced` statuses are reachable from every status outside `closed`,
    including themselves, without appearing in `transitions`. A status is
    terminal when nothing at all is reachable from it.
    """

    entity_type: str
    transitions: Mapping[str, frozenset[str]]
    forced: frozenset[str] = frozenset()
    closed: frozenset[str] = frozenset()

    @property
    def statuses(self) -> frozenset[str]:
        return frozenset(self.transitions)

    def is_terminal(self, status: str) -> bool:
        return not self.targets(status)

    def targets(self, status: str) -> frozenset[str]:
        if status not in self.transitions:
            return frozenset()
        if status in self.closed:
            return self.transitions[status]
        return self.transitions[status] | self.forced

    def can_transition(self, current: str, target: str) -> bool:
        return target in self.targets(current)

    def ensure(self, current: str, target: str, *, entity_id: uuid.UUID | None = None) -> None:
        if target not in self.transitions:
            raise ValidationFailed(
                f"unknown {self.entity_type} status {target}",
                details={"entity_type": self.entity_type, "status": target},
            )
        if not self.can_transition(current, target):
            reason = "terminal status" if self.is_terminal(current) else None
            raise InvalidTransition(self.entity_type, current, target, entity_id=entity_id, reason=reason)


def _table(
    entity_type: str,
    edges: Mapping[str, set[str]],
    forced: set[str] | None = None,
    closed: set[str] | None = None,
) -> TransitionTable:
    return TransitionTable(
        entity_type=entity_type,
        transitions={status: frozenset(targets) for status, targets in edges.items()},
        forced=frozenset(forced or ()),
        closed=frozenset(closed or ()),
    )


CANONICAL_LEAD_TRANSITIONS = _table(
    LEAD,
    {
        "NEW": {"APPROVED", "REJECTED"},
        "APPROVED": {"ASSIGNED", "REJECTED"},
        "ASSIGNED": {"FOLLOW_UP", "CLIENT_APPROVAL_PENDING", "REJECTED"},
        "FOLLOW_UP": {"CLIENT_APPROVAL_PENDING", "REJECTED", "CONVERTED_TO_ORDER"},
        "CLIENT_APPROVAL_PENDING": {"APPROVED_BY_CLIENT", "FOLLOW_UP", "REJECTED"},
        "APPROVED_BY_CLIENT": {"CONVERTED_TO_ORDER", "REJECTED"},
        "REJECTED": set(),
        "CONVERTED_TO_ORDER": set(),
    },
)

LEGACY_LEAD_TRANSITIONS = _table(
    LEAD,
    {
        "NEW": {"ASSIGNED", "REJECTED"},
        "ASSIGNED": {"CONTACTED", "QUALIFIED", "LOST"},
        "CONTACTED": {"QUALIFIED", "FOLLOW_UP", "LOST"},
        "QUALIFIED": {"QUOTATION_SENT", "FOLLOW_UP", "LOST"},
        "QUOTATION_SENT": {"FOLLOW_UP", "QUALIFIED", "LOST"},
        "FOLLOW_UP": {"QUALIFIED", "QUOTATION_SENT", "LOST"},
        "REJECTED": set(),
        "LOST": set(),
    },
)

QUOTATION_TRANSITIONS = _table(
    QUOTATION,
    {
        "CREATED": {"SENT"},
        "SENT": {"APPROVED", "REJECTED"},
        "APPROVED": set(),
        "REJECTED": set(),
    },
)

ORDER_TRANSITIONS = _table(
    ORDER,
    {
        "CREATED": {"PO_PENDING", "CANCELLED"},
        "PO_PENDING": {"CANCELLED"},
        "PO_RECEIVED": {"CONFIRMED", "CANCELLED"},
        "CONFIRMED": set(),
        "CANCELLED": set(),
    },
    # A purchase order can arrive after confirmation; only cancellation is final.
    forced={"PO_RECEIVED"},
    closed={"CANCELLED"},
)


@dataclass(frozen=True, slots=True)
class PipelinePolicy:
    """A versioned business-rule set: lead table, gating and status propagation.

    A `None` propagation target means the event leaves the lead untouched.
    Logging a follow-up moves the lead to `follow_up_status` unless it
    already sits in one of `follow_up_holds`.
    """

    name: str
    lead_transitions: TransitionTable
    initial_lead_status: str
    review_outcomes: Mapping[str, str | None]
    assignable_from: frozenset[str]
    assigned_status: str
    quotation_gate: frozenset[str]
    on_quotation_sent: str | None
    on_quotation_approved: str | None
    on_quotation_rejected: str | None
    on_order_converted: str | None
    follow_up_status: str
    follow_up_holds: frozenset[str]

    @property
    def reserved_lead_targets(self) -> frozenset[str]:
        """Lead statuses only reachable through their dedicated operation."""
        targets = (self.assigned_status, self.on_quotation_approved, self.on_order_converted)
        return frozenset(target for target in targets if target is not None)


CANONICAL_POLICY = PipelinePolicy(
    name="canonical",
    lead_transitions=CANONICAL_LEAD_TRANSITIONS,
    initial_lead_status="NEW",
    review_outcomes={"APPROVED": "APPROVED", "REJECTED": "REJECTED"},
    assignable_from=frozenset({"APPROVED"}),
    assigned_status="ASSIGNED",
    quotation_gate=frozenset({"ASSIGNED", "FOLLOW_UP"}),
    on_quotation_sent="CLIENT_APPROVAL_PENDING",
    on_quotation_approved="APPROVED_BY_CLIENT",
    on_quotation_rejected="FOLLOW_UP",
    on_order_converted="CONVERTED_TO_ORDER",
    follow_up_status="FOLLOW_UP",
    follow_up_holds=frozenset({"FOLLOW_UP", "CLIENT_APPROVAL_PENDING"}),
)

# Older rule set: leads carry a simpler status list and quotations are gated on QUALIFIED.
LEGACY_POLICY = PipelinePolicy(
    name="legacy",
    lead_transitions=LEGACY_LEAD_TRANSITIONS,
    initial_lead_status="NEW",
    review_outcomes={"APPROVED": None, "REJECTED": "REJECTED"},
    assignable_from=frozenset({"NEW"}),
    assigned_status="ASSIGNED",
    quotation_gate=frozenset({"QUALIFIED"}),
    on_quotation_sent="QUOTATION_SENT",
    on_quotation_approved=None,
    on_quotation_rejected="FOLLOW_UP",
    on_order_converted=None,
    follow_up_status="FOLLOW_UP",
    follow_up_holds=frozenset({"FOLLOW_UP"}),
)

POLICIES: dict[str, PipelinePolicy] = {
    CANONICAL_POLICY.name: CANONICAL_POLICY,
    LEGACY_POLICY.name: LEGACY_POLICY,
}


def get_policy(name: str) -> PipelinePolicy:
    try:
        return POLICIES[name.lower()]
    except KeyError:
        raise ValueError(f"unknown pipeline policy {name!r}; expected one of {sorted(POLICIES)}") from None


@dataclass(frozen=True, slots=True)
class StatusChange:
    entity_type: str
    entity_id: uuid.UUID
    expected_version: int
    from_status: str
    to_status: str
    values: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TransitionCommand:
    """Status changes that must be applied together or not at all."""

    name: str
    changes: list[StatusChange] = field(default_factory=list)

    def add(self, change: StatusChange) -> TransitionCommand:
        self.changes.append(change)
        return self

    def change_for(self, entity_type: str) -> StatusChange | None:
        for change in self.changes:
            if change.entity_type == entity_type:
                return change
        return None


class _Versioned(Protocol):
    # Structural view of the ORM rows the planners read.
    id: uuid.UUID
    status: str
    row_version: int


def _change(
    table: TransitionTable,
    entity: _Versioned,
    target: str,
    values: Mapping[str, Any] | None = None,
) -> StatusChange:
    table.ensure(entity.status, target, entity_id=entity.id)
    return StatusChange(
        entity_type=table.entity_type,
        entity_id=entity.id,
        expected_version=entity.row_version,
        from_status=entity.status,
        to_status=target,
        values=dict(values or {}),
    )


def _lead_in_place(entity: _Versioned, values: Mapping[str, Any]) -> StatusChange:
    return StatusChange(
        entity_type=LEAD,
        entity_id=entity.id,
        expected_version=entity.row_version,
        from_status=entity.status,
        to_status=entity.status,
        values=dict(values),
    )


def _ensure_lead_open(policy: PipelinePolicy, lead: _Versioned, requested: str) -> None:
    if policy.lead_transitions.is_terminal(lead.status):
        raise InvalidTransition(LEAD, lead.status, requested, entity_id=lead.id, reason="terminal status")


def _propagate_to_lead(
    command: TransitionCommand,
    policy: PipelinePolicy,
    lead: _Versioned,
    target: str | None,
    *,
    allow_current: bool = False,
) -> None:
    """Add the lead side of a cross-entity event.

    The lead must make a real table edge; `allow_current` lets a lead that
    already sits at `target` stay there (a second quotation sent, or
    rejected, within the same cycle).
    """
    if target is None:
        return
    if allow_current and lead.status == target:
        return
    command.add(_change(policy.lead_transitions, lead, target))


def plan_lead_transition(
    policy: PipelinePolicy,
    lead: _Versioned,
    target: str,
    *,
    values: Mapping[str, Any] | None = None,
    name: str = "lead.update_status",
) -> TransitionCommand:
    if lead.status == policy.initial_lead_status:
        raise ValidationFailed(
            "lead must be reviewed before its status can change",
            details={"entity_id": str(lead.id), "current_status": lead.status},
        )
    if target in policy.reserved_lead_targets:
        raise ValidationFailed(
            f"lead status {target} is set by its own operation",
            details={"entity_id": str(lead.id), "requested_status": target},
        )
    return TransitionCommand(name).add(_change(policy.lead_transitions, lead, target, values))


def plan_lead_review(
    policy: PipelinePolicy,
    lead: _Versioned,
    decision: str,
    values: Mapping[str, Any],
) -> TransitionCommand:
    if decision not in policy.review_outcomes:
        raise ValidationFailed(
            f"invalid review decision {decision}",
            details={"decision": decision, "allowed": sorted(policy.review_outcomes)},
        )
    if lead.status != policy.initial_lead_status:
        raise InvalidTransition(LEAD, lead.status, decision, entity_id=lead.id, reason="lead has already been reviewed")
    target = policy.review_outcomes[decision]
    if target is None:
        # Review recorded without moving the lead.
        return TransitionCommand("lead.review").add(_lead_in_place(lead, values))
    return TransitionCommand("lead.review").add(_change(policy.lead_transitions, lead, target, values))


def plan_assignment(policy: PipelinePolicy, lead: _Versioned, values: Mapping[str, Any]) -> TransitionCommand:
    if lead.status == policy.assigned_status:
        # Reassignment: history grows, status stays.
        return TransitionCommand("lead.assign").add(_lead_in_place(lead, values))
    if lead.status not in policy.assignable_from:
        raise InvalidTransition(
            LEAD,
            lead.status,
            policy.assigned_status,
            entity_id=lead.id,
            reason=f"lead must be {'/'.join(sorted(policy.assignable_from))} before assignment",
        )
    return TransitionCommand("lead.assign").add(_change(policy.lead_transitions, lead, policy.assigned_status, values))


def ensure_quotation_allowed(policy: PipelinePolicy, lead: _Versioned) -> None:
    if lead.status not in policy.quotation_gate:
        raise InvalidTransition(
            LEAD,
            lead.status,
            "QUOTATION",
            entity_id=lead.id,
            reason=f"quotations require lead status {'/'.join(sorted(policy.quotation_gate))}",
        )


def plan_quotation_send(
    policy: PipelinePolicy,
    quotation: _Versioned,
    lead: _Versioned,
    values: Mapping[str, Any],
) -> TransitionCommand:
    command = TransitionCommand("quotation.send").add(_change(QUOTATION_TRANSITIONS, quotation, "SENT", values))
    _propagate_to_lead(command, policy, lead, policy.on_quotation_sent, allow_current=True)
    return command


def plan_quotation_decision(
    policy: PipelinePolicy,
    quotation: _Versioned,
    lead: _Versioned,
    decision: str,
) -> TransitionCommand:
    if decision not in {"APPROVED", "REJECTED"}:
        raise ValidationFailed(
            f"invalid quotation decision {decision}",
            details={"decision": decision, "allowed": ["APPROVED", "REJECTED"]},
        )
    _ensure_lead_open(policy, lead, decision)
    command = TransitionCommand("quotation.decide").add(_change(QUOTATION_TRANSITIONS, quotation, decision))
    if decision == "APPROVED":
        _propagate_to_lead(command, policy, lead, policy.on_quotation_approved)
    else:
        _propagate_to_lead(command, policy, lead, policy.on_quotation_rejected, allow_current=True)
    return command


def ensure_convertible(quotation: _Versioned) -> None:
    if quotation.status != "APPROVED":
        raise InvalidTransition(
            QUOTATION,
            quotation.status,
            "CONVERTED",
            entity_id=quotation.id,
            reason="quotation must be APPROVED before conversion",
        )


def plan_conversion(policy: PipelinePolicy, lead: _Versioned) -> TransitionCommand:
    _ensure_lead_open(policy, lead, policy.on_order_converted or "ORDER")
    command = TransitionCommand("order.convert")
    _propagate_to_lead(command, policy, lead, policy.on_order_converted)
    return command


def plan_order_transition(
    order: _Versioned,
    target: str,
    *,
    values: Mapping[str, Any] | None = None,
    name: str = "order.update_status",
) -> TransitionCommand:
    return TransitionCommand(name).add(_change(ORDER_TRANSITIONS, order, target, values))


def plan_follow_up(policy: PipelinePolicy, lead: _Versioned) -> TransitionCommand:
    command = TransitionCommand("lead.follow_up")
    if lead.status in policy.follow_up_holds:
        return command.add(_lead_in_place(lead, {}))
    return command.add(_change(policy.lead_transitions, lead, policy.follow_up_status))
