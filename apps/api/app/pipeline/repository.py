from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from sqlalchemy import and_, select, update
from sqlalchemy.orm import Session

from app.pipeline.errors import ConcurrencyConflict, NotFound
from app.pipeline.models import (
    PipelineFollowup,
    PipelineItem,
    PipelineLead,
    PipelineOrder,
    PipelineParty,
    PipelineQuotation,
    PipelineUser,
    utcnow,
)
from app.pipeline.state_machine import LEAD, ORDER, QUOTATION, StatusChange, TransitionCommand


ModelT = TypeVar("ModelT")
ResultT = TypeVar("ResultT")


class BaseRepository(Generic[ModelT]):
    model: type[Any]
    entity_type = ""

    def get(self, session: Session, entity_id: Any) -> ModelT:
        row = session.get(self.model, entity_id)
        if row is None or not getattr(row, "is_active", True):
            raise NotFound(self.entity_type, entity_id)
        return row

    def find_one(self, session: Session, *criteria: Any) -> ModelT | None:
        return session.scalar(select(self.model).where(*criteria).limit(1))

    def add(self, session: Session, row: ModelT) -> ModelT:
        session.add(row)
        session.flush()
        return row


class VersionedRepository(BaseRepository[ModelT]):
    def save(self, session: Session, change: StatusChange) -> ModelT:
        """Write one status change guarded by status and row_version.

        Zero matched rows means another writer got there first.
        """
        values: dict[str, Any] = dict(change.values)
        values.update(
            status=change.to_status,
            row_version=self.model.row_version + 1,
            updated_at=utcnow(),
        )
        result = session.execute(
            update(self.model)
            .where(
                and_(
                    self.model.id == change.entity_id,
                    self.model.status == change.from_status,
                    self.model.row_version == change.expected_version,
                    self.model.is_active.is_(True),
                )
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ConcurrencyConflict(change.entity_type, change.entity_id, change.expected_version)
        return session.get(self.model, change.entity_id, populate_existing=True)

    def deactivate(self, session: Session, row: ModelT) -> None:
        result = session.execute(
            update(self.model)
            .where(
                and_(
                    self.model.id == row.id,
                    self.model.row_version == row.row_version,
                    self.model.is_active.is_(True),
                )
            )
            .values(is_active=False, row_version=self.model.row_version + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ConcurrencyConflict(self.entity_type, row.id, row.row_version)
        session.expire(row)


class UserRepository(BaseRepository[PipelineUser]):
    model = PipelineUser
    entity_type = "user"


class ItemRepository(BaseRepository[PipelineItem]):
    model = PipelineItem
    entity_type = "item"


class PartyRepository(BaseRepository[PipelineParty]):
    model = PipelineParty
    entity_type = "party"


class FollowupRepository(BaseRepository[PipelineFollowup]):
    model = PipelineFollowup
    entity_type = "followup"


class LeadRepository(VersionedRepository[PipelineLead]):
    model = PipelineLead
    entity_type = LEAD


class QuotationRepository(VersionedRepository[PipelineQuotation]):
    model = PipelineQuotation
    entity_type = QUOTATION


class OrderRepository(VersionedRepository[PipelineOrder]):
    model = PipelineOrder
    entity_type = ORDER


@dataclass(slots=True)
class PipelineRepositories:
    users: UserRepository = field(default_factory=UserRepository)
    items: ItemRepository = field(default_factory=ItemRepository)
    parties: PartyRepository = field(default_factory=PartyRepository)
    leads: LeadRepository = field(default_factory=LeadRepository)
    quotations: QuotationRepository = field(default_factory=QuotationRepository)
    orders: OrderRepository = field(default_factory=OrderRepository)
    followups: FollowupRepository = field(default_factory=FollowupRepository)

    def for_entity(self, entity_type: str) -> VersionedRepository[Any]:
        if entity_type == LEAD:
            return self.leads
        if entity_type == QUOTATION:
            return self.quotations
        if entity_type == ORDER:
            return self.orders
        raise ValueError(f"no versioned repository for {entity_type!r}")

    def apply(self, session: Session, command: TransitionCommand) -> dict[uuid.UUID, Any]:
        """Persist every change of a planned command; the caller owns commit/rollback."""
        saved: dict[uuid.UUID, Any] = {}
        for change in command.changes:
            saved[change.entity_id] = self.for_entity(change.entity_type).save(session, change)
        return saved


def with_transaction(session: Session, fn: Callable[[], ResultT]) -> ResultT:
    try:
        result = fn()
        session.commit()
    except Exception:
        session.rollback()
        raise
    return result
