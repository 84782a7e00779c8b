"""Time sources: the write clock and as-of time providers for reads.

A time provider answers "which point in time should this session read?".
``None`` means the current state, in which case no read is rewritten.
"""

from __future__ import annotations

import contextlib
from collections.abc import Iterator
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Protocol

from sqlalchemy.orm import Session

from versionlog.config import settings


def utcnow() -> datetime:
    """Default write clock."""
    return datetime.now(UTC)


def normalize(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class TimeProvider(Protocol):
    """Source of the as-of time for a session."""

    def get_time(self, session: Session) -> datetime | None: ...


class StaticTimeProvider:
    """Provider returning one settable time for every session."""

    def __init__(self, time: datetime | None = None) -> None:
        self.time = time

    def get_time(self, session: Session) -> datetime | None:
        return self.time


class SessionInfoTimeProvider:
    """Provider reading the as-of time from ``Session.info``.

    Example:
        session.info["versionlog_as_of"] = datetime(2024, 1, 1, tzinfo=UTC)
    """

    def __init__(self, key: str | None = None) -> None:
        self.key = key or settings.as_of_info_key

    def get_time(self, session: Session) -> datetime | None:
        return session.info.get(self.key)


_as_of: ContextVar[datetime | None] = ContextVar("versionlog_as_of", default=None)


class ContextVarTimeProvider:
    """Provider reading the as-of time from a context variable.

    Suited to request-scoped reads: the HTTP middleware sets the variable for
    the duration of one request and every session used inside it reads
    historical state.
    """

    def get_time(self, session: Session) -> datetime | None:
        return _as_of.get()

    @staticmethod
    @contextlib.contextmanager
    def scope(as_of: datetime | None) -> Iterator[None]:
        """Read as of ``as_of`` inside the block."""
        token = _as_of.set(as_of)
        try:
            yield
        finally:
            _as_of.reset(token)
