"""Shared fixtures: in-memory SQLite engine, clock and installed sessions."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from sqlalchemy import Engine, StaticPool, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from tests.models import metadata
from versionlog import StaticTimeProvider, VersionLog


class FakeClock:
    """Write clock advanced by hand."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class StatementRecorder:
    """Collects every SQL string sent to the database."""

    def __init__(self) -> None:
        self.statements: list[str] = []

    def record(
        self,
        conn: Any,
        cursor: Any,
        statement: str,
        parameters: Any,
        context: Any,
        executemany: bool,
    ) -> None:
        self.statements.append(statement)

    def clear(self) -> None:
        self.statements.clear()

    def mentions(self, name: str) -> bool:
        return any(name in s for s in self.statements)


@pytest.fixture
def engine() -> Iterator[Engine]:
    # One shared connection so threads (e.g. the test client) see the same database
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def time_provider() -> StaticTimeProvider:
    return StaticTimeProvider()


@pytest.fixture
def versionlog(time_provider: StaticTimeProvider, clock: FakeClock) -> VersionLog:
    return VersionLog(time_provider, clock=clock)


@pytest.fixture
def session_factory(engine: Engine, versionlog: VersionLog) -> Iterator[sessionmaker[Session]]:
    factory = sessionmaker(engine)
    versionlog.install(factory)
    yield factory
    versionlog.uninstall(factory)


@pytest.fixture
def session(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    with session_factory() as session:
        yield session


@pytest.fixture
def recorder(engine: Engine) -> Iterator[StatementRecorder]:
    recorder = StatementRecorder()
    event.listen(engine, "before_cursor_execute", recorder.record)
    yield recorder
    event.remove(engine, "before_cursor_execute", recorder.record)
