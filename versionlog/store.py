"""Version log store: append-only snapshot tables.

Every log row is one snapshot. Rows are only ever inserted; the database
assigns ``seq`` through the autoincrement primary key, which gives a total
order over all snapshots of one log table.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import Connection, Select, Table, and_, func, insert, select
from sqlalchemy.exc import SQLAlchemyError

from versionlog.clock import normalize, utcnow
from versionlog.config import settings
from versionlog.exceptions import WriteError
from versionlog.models import VersionedSchema

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Snapshot:
    """One historical state of an entity, keyed by column name."""

    seq: int
    timestamp: datetime
    values: dict[str, Any]


class VersionLogStore:
    """Appends snapshots and builds the queries that read them back."""

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self.clock = clock

    def append(
        self,
        connection: Connection,
        log_table: Table,
        fields: Mapping[str, Any],
    ) -> int:
        """Append one snapshot row and return its seq.

        Runs on the caller's connection so the row commits or rolls back with
        the write that produced it.

        Raises:
            WriteError: The insert failed.
        """
        values = dict(fields)
        values[settings.timestamp_column] = normalize(self.clock())
        try:
            result = connection.execute(insert(log_table).values(values))
        except SQLAlchemyError as exc:
            logger.error("Failed to append snapshot to %s: %s", log_table.name, exc)
            raise WriteError(f"Failed to append snapshot to {log_table.name}") from exc

        seq = result.inserted_primary_key[0]
        logger.debug("Appended %s seq=%s", log_table.name, seq)
        return seq

    def latest_seq_as_of(
        self,
        log_table: Table,
        key_columns: Sequence[str],
        as_of: datetime,
    ) -> Select[Any]:
        """Sub-query yielding, per natural key, the newest seq at or before ``as_of``.

        Keys with no snapshot at or before ``as_of`` yield nothing, so the
        entity reads as not existing yet.
        """
        seq = log_table.c[settings.seq_column]
        timestamp = log_table.c[settings.timestamp_column]
        return (
            select(func.max(seq).label(settings.seq_column))
            .where(timestamp <= normalize(as_of))
            .group_by(*(log_table.c[name] for name in key_columns))
        )

    def history(
        self,
        connection: Connection,
        schema: VersionedSchema,
        key: Mapping[str, Any],
    ) -> list[Snapshot]:
        """Return every snapshot of one natural key, oldest first."""
        log = schema.log_table
        stmt = (
            select(log)
            .where(and_(*(log.c[name] == key[name] for name in schema.key_columns)))
            .order_by(log.c[settings.seq_column])
        )
        snapshots = []
        for row in connection.execute(stmt).mappings():
            values = {name: row[name] for name in schema.columns}
            snapshots.append(
                Snapshot(
                    seq=row[settings.seq_column],
                    timestamp=row[settings.timestamp_column],
                    values=values,
                )
            )
        return snapshots
