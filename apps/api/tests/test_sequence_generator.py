from __future__ import annotations

from collections.abc import Generator
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path

import pytest
from sqlalchemy import create_engine, event, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base
from app.pipeline.errors import SequenceAllocationFailed
from app.pipeline.models import PipelineSequenceCounter
from app.pipeline.sequence import (
    LEAD_PREFIX,
    ORDER_PREFIX,
    QUOTATION_PREFIX,
    SequenceGenerator,
    format_sequence_number,
)


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


def _generator(year: int = 2026) -> SequenceGenerator:
    return SequenceGenerator(max_attempts=5, clock=lambda: datetime(year, 3, 1, tzinfo=timezone.utc))


def test_format_pads_to_three_digits_and_grows_past_999() -> None:
    assert format_sequence_number("LEAD", 2026, 7) == "LEAD-2026-007"
    assert format_sequence_number("QUO", 2026, 999) == "QUO-2026-999"
    assert format_sequence_number("ORD", 2026, 1000) == "ORD-2026-1000"


def test_numbers_increase_per_prefix(db_session: Session) -> None:
    generator = _generator()

    assert generator.next(db_session, LEAD_PREFIX) == "LEAD-2026-001"
    assert generator.next(db_session, LEAD_PREFIX) == "LEAD-2026-002"
    assert generator.next(db_session, QUOTATION_PREFIX) == "QUO-2026-001"
    assert generator.next(db_session, ORDER_PREFIX) == "ORD-2026-001"
    assert generator.next(db_session, LEAD_PREFIX) == "LEAD-2026-003"
    db_session.commit()

    counter = db_session.get(PipelineSequenceCounter, (LEAD_PREFIX, 2026))
    assert counter is not None
    assert counter.last_value == 3


def test_each_year_starts_again_at_one(db_session: Session) -> None:
    generator = _generator(2026)
    generator.next(db_session, LEAD_PREFIX)
    generator.next(db_session, LEAD_PREFIX)

    assert generator.next(db_session, LEAD_PREFIX, year=2027) == "LEAD-2027-001"
    assert _generator(2027).next(db_session, LEAD_PREFIX) == "LEAD-2027-002"
    assert generator.next(db_session, LEAD_PREFIX) == "LEAD-2026-003"


def test_allocation_rolls_back_with_the_caller(db_session: Session) -> None:
    generator = _generator()
    generator.next(db_session, LEAD_PREFIX)
    db_session.commit()

    generator.next(db_session, LEAD_PREFIX)
    db_session.rollback()

    assert generator.next(db_session, LEAD_PREFIX) == "LEAD-2026-002"


def test_unknown_prefix_and_bad_year_are_rejected(db_session: Session) -> None:
    generator = _generator()
    with pytest.raises(ValueError):
        generator.next(db_session, "INV")
    with pytest.raises(ValueError):
        generator.next(db_session, LEAD_PREFIX, year=0)


def test_exhausted_attempts_raise(db_session: Session, monkeypatch: pytest.MonkeyPatch) -> None:
    generator = SequenceGenerator(max_attempts=2)
    monkeypatch.setattr(SequenceGenerator, "_increment", lambda self, session, prefix, year: None)

    with pytest.raises(SequenceAllocationFailed) as exc_info:
        generator.next(db_session, ORDER_PREFIX, year=2026)

    assert exc_info.value.details == {"prefix": ORDER_PREFIX, "year": 2026, "attempts": 2}


def test_concurrent_allocation_yields_distinct_numbers(tmp_path: Path) -> None:
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'sequence.db'}",
        connect_args={"timeout": 30, "check_same_thread": False},
    )

    # pysqlite defers BEGIN; take the write lock up front so increments serialize.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record) -> None:  # type: ignore[no-untyped-def]
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn) -> None:  # type: ignore[no-untyped-def]
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    generator = _generator()

    def allocate(_: int) -> str:
        with SessionLocal() as session:
            number = generator.next(session, LEAD_PREFIX)
            session.commit()
            return number

    try:
        with ThreadPoolExecutor(max_workers=8) as pool:
            numbers = list(pool.map(allocate, range(1000)))

        assert len(set(numbers)) == 1000
        assert set(numbers) == {format_sequence_number(LEAD_PREFIX, 2026, ordinal) for ordinal in range(1, 1001)}

        with SessionLocal() as session:
            last_value = session.scalar(
                select(PipelineSequenceCounter.last_value).where(PipelineSequenceCounter.prefix == LEAD_PREFIX)
            )
        assert last_value == 1000
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()
