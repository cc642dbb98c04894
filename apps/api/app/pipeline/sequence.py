from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import and_, insert, select, update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.metrics import observe_sequence_allocated, observe_sequence_failure
from app.pipeline.errors import SequenceAllocationFailed
from app.pipeline.models import PipelineSequenceCounter, utcnow


logger = logging.getLogger("app.pipeline.sequence")

LEAD_PREFIX = "LEAD"
QUOTATION_PREFIX = "QUO"
ORDER_PREFIX = "ORD"
PREFIXES = frozenset({LEAD_PREFIX, QUOTATION_PREFIX, ORDER_PREFIX})


def format_sequence_number(prefix: str, year: int, ordinal: int) -> str:
    # Ordinals past 999 simply grow wider.
    return f"{prefix}-{year}-{ordinal:03d}"


def _default_max_attempts() -> int:
    return get_settings().sequence_max_attempts


@dataclass(slots=True)
class SequenceGenerator:
    """Hands out `{PREFIX}-{YEAR}-{NNN}` numbers from a per-(prefix, year) counter row.

    Allocation joins the caller's transaction: the increment commits or rolls
    back together with the entity that carries the number.
    """

    max_attempts: int = field(default_factory=_default_max_attempts)
    clock: Callable[[], datetime] = utcnow

    def next(self, session: Session, prefix: str, year: int | None = None) -> str:
        if prefix not in PREFIXES:
            raise ValueError(f"unknown sequence prefix {prefix!r}")
        resolved_year = year if year is not None else self.clock().year
        if resolved_year < 1:
            raise ValueError(f"invalid sequence year {resolved_year}")

        for attempt in range(1, self.max_attempts + 1):
            ordinal = self._increment(session, prefix, resolved_year)
            if ordinal is not None:
                sequence_number = format_sequence_number(prefix, resolved_year, ordinal)
                observe_sequence_allocated(prefix)
                logger.debug(
                    "sequence.allocated",
                    extra={
                        "prefix": prefix,
                        "year": resolved_year,
                        "attempt": attempt,
                        "sequence_number": sequence_number,
                    },
                )
                return sequence_number
            self._create_counter(session, prefix, resolved_year)

        observe_sequence_failure(prefix)
        logger.error(
            "sequence.allocation_failed",
            extra={"prefix": prefix, "year": resolved_year, "attempt": self.max_attempts},
        )
        raise SequenceAllocationFailed(prefix, resolved_year, self.max_attempts)

    def _increment(self, session: Session, prefix: str, year: int) -> int | None:
        condition = and_(PipelineSequenceCounter.prefix == prefix, PipelineSequenceCounter.year == year)
        result = session.execute(
            update(PipelineSequenceCounter)
            .where(condition)
            .values(last_value=PipelineSequenceCounter.last_value + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return None
        return session.execute(select(PipelineSequenceCounter.last_value).where(condition)).scalar_one()

    def _create_counter(self, session: Session, prefix: str, year: int) -> None:
        values = {"prefix": prefix, "year": year, "last_value": 0, "updated_at": utcnow()}
        dialect = session.get_bind().dialect.name
        if dialect == "postgresql":
            session.execute(
                postgresql_insert(PipelineSequenceCounter)
                .values(**values)
                .on_conflict_do_nothing(index_elements=["prefix", "year"])
            )
            return
        if dialect == "sqlite":
            session.execute(
                sqlite_insert(PipelineSequenceCounter)
                .values(**values)
                .on_conflict_do_nothing(index_elements=["prefix", "year"])
            )
            return
        try:
            with session.begin_nested():
                session.execute(insert(PipelineSequenceCounter).values(**values))
        except IntegrityError:
            # Another transaction created the row first; the next update picks it up.
            logger.debug("sequence.counter_exists", extra={"prefix": prefix, "year": year})
