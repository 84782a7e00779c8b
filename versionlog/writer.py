"""Snapshot writer: one log row per committed write of a versioned entity.

Two write paths reach the database:

- the unit of work (``Session.add`` / attribute changes / ``Session.delete``),
  observed after each flush;
- ORM-enabled ``update()`` / ``delete()`` statements, observed around their
  execution, since they bypass the unit of work.

Both append through the session's own connection, so a snapshot can never
commit without its write or the other way around.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from sqlalchemy import Connection, and_, inspect, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import ORMExecuteState, Session
from sqlalchemy.orm.attributes import NO_VALUE

from versionlog.exceptions import ResolutionError, WriteError
from versionlog.models import VersionedSchema, schema_for, schema_for_mapper
from versionlog.store import VersionLogStore

logger = logging.getLogger(__name__)

Key = tuple[Any, ...]


class SnapshotWriter:
    """Builds snapshots from entity state and appends them to the store."""

    def __init__(self, store: VersionLogStore) -> None:
        self.store = store

    # -------------------------------------------------------------------------
    # Unit of work
    # -------------------------------------------------------------------------

    def convert_deletes(self, session: Session) -> None:
        """Turn ``Session.delete()`` of soft-deletable entities into updates.

        Sets the soft-delete marker and puts the object back in the session,
        which removes it from ``Session.deleted``; the flush then issues an
        UPDATE that ``snapshot_flush`` records. Entities without a marker are
        hard-deleted and get no snapshot.
        """
        for obj in list(session.deleted):
            schema = schema_for(type(obj))
            if schema is None:
                continue
            if schema.soft_delete is None:
                logger.debug("Hard delete of %r is not versioned", obj)
                continue
            setattr(obj, schema.soft_delete, self.store.clock())
            session.add(obj)
            logger.debug("Converted delete of %r into a soft delete", obj)

    def snapshot_flush(self, session: Session) -> None:
        """Snapshot every versioned object the flush just inserted or updated.

        Called from ``after_flush``, where ``Session.new`` and
        ``Session.dirty`` still describe what the flush wrote.
        """
        pending = [(obj, "create") for obj in session.new]
        pending += [
            (obj, "update")
            for obj in session.dirty
            if session.is_modified(obj, include_collections=False)
        ]
        if not pending:
            return

        connection = session.connection()
        for obj, action in pending:
            schema = schema_for(type(obj))
            if schema is None:
                continue
            seq = self.snapshot_instance(connection, schema, obj)
            logger.debug("Snapshot %s of %r -> seq %s", action, obj, seq)

    def snapshot_instance(
        self, connection: Connection, schema: VersionedSchema, obj: Any
    ) -> int:
        """Append the full current state of ``obj``.

        Attributes that are not loaded (partial loads, server-side defaults
        expired by the flush) are filled by re-reading the row.
        """
        state = inspect(obj)
        values: dict[str, Any] = {}
        missing = []
        for name in schema.columns:
            value = state.dict.get(schema.attribute_for(name), NO_VALUE)
            if value is NO_VALUE:
                missing.append(name)
            else:
                values[name] = value

        if missing:
            # Expired instances still carry their key in the identity
            identity = dict(zip((c.name for c in state.mapper.primary_key), state.identity or ()))
            key = tuple(
                values[name] if name in values else identity.get(name)
                for name in schema.key_columns
            )
            if None in key:
                row = None
            else:
                row = self.read_rows(connection, schema, [key]).get(key)
            if row is None:
                raise ResolutionError(
                    f"Can't read {schema.live_table.name} row {key} to complete its snapshot"
                )
            for name in missing:
                values[name] = row[name]

        return self.store.append(connection, schema.log_table, values)

    # -------------------------------------------------------------------------
    # ORM bulk statements
    # -------------------------------------------------------------------------

    def execute_bulk(self, orm_execute_state: ORMExecuteState) -> Any:
        """Run an ORM bulk write against a versioned entity with snapshots.

        Returns the statement result, or None when the statement doesn't
        concern a versioned entity and should run normally.
        """
        schema = schema_for_mapper(orm_execute_state.bind_mapper)
        if schema is None:
            return None

        if orm_execute_state.is_insert:
            raise WriteError(
                f"Bulk INSERT into versioned {schema.live_table.name} would skip its "
                f"snapshots; add the objects to the session instead"
            )

        if orm_execute_state.is_delete:
            if schema.soft_delete is None:
                logger.debug("Hard delete on %s is not versioned", schema.live_table.name)
                return None
            return self._soft_delete(orm_execute_state, schema)

        return self._update_with_snapshots(orm_execute_state, schema)

    def _soft_delete(self, orm_execute_state: ORMExecuteState, schema: VersionedSchema) -> Any:
        """Run a bulk DELETE as an UPDATE setting the soft-delete marker.

        The UPDATE goes through ``Session.execute`` again so it is snapshotted
        like any other bulk update.
        """
        delete = orm_execute_state.statement
        stmt = update(orm_execute_state.bind_mapper.class_).values(
            {schema.soft_delete: self.store.clock()}
        )
        if delete.whereclause is not None:
            stmt = stmt.where(delete.whereclause)
        stmt = stmt.execution_options(**delete.get_execution_options())
        # Options the ORM resolved for the DELETE don't apply to the UPDATE
        options = {
            k: v
            for k, v in orm_execute_state.local_execution_options.items()
            if not k.startswith("_sa_orm")
        }
        logger.debug("Converted bulk delete on %s into a soft delete", schema.live_table.name)
        return orm_execute_state.session.execute(
            stmt, orm_execute_state.parameters, execution_options=options
        )

    def _update_with_snapshots(
        self, orm_execute_state: ORMExecuteState, schema: VersionedSchema
    ) -> Any:
        session = orm_execute_state.session
        connection = session.connection(
            bind_arguments={"mapper": orm_execute_state.bind_mapper}
        )
        keys = self._targeted_keys(connection, schema, orm_execute_state)
        result = orm_execute_state.invoke_statement()

        rows = self.read_rows(connection, schema, keys)
        for key in keys:
            row = rows.get(key)
            if row is None:
                raise ResolutionError(
                    f"Row {key} of {schema.live_table.name} vanished during its update"
                )
            self.store.append(connection, schema.log_table, {n: row[n] for n in schema.columns})
        logger.debug("Bulk update on %s -> %d snapshots", schema.live_table.name, len(keys))
        return result

    def _targeted_keys(
        self,
        connection: Connection,
        schema: VersionedSchema,
        orm_execute_state: ORMExecuteState,
    ) -> list[Key]:
        """Resolve the natural keys a bulk UPDATE will touch, before it runs.

        Reading first with the statement's own WHERE clause means criteria the
        update invalidates (such as ``deleted_at IS NULL`` on a soft delete)
        still match, so nothing has to be stripped from the clause. A WHERE
        joining other tables matches a row once per joined row; each key is
        kept once, in the order read.
        """
        params = orm_execute_state.parameters
        if isinstance(params, list):
            # UPDATE by primary key: one parameter set per row
            return [
                tuple(p[schema.attribute_for(name)] for name in schema.key_columns)
                for p in params
            ]

        live = schema.live_table
        stmt = select(*(live.c[name] for name in schema.key_columns)).with_for_update()
        where = orm_execute_state.statement.whereclause
        if where is not None:
            stmt = stmt.where(where)
        try:
            rows = connection.execute(stmt, params or {})
            return list(dict.fromkeys(tuple(row) for row in rows))
        except SQLAlchemyError as exc:
            raise ResolutionError(
                f"Can't resolve rows targeted by an update of {live.name}"
            ) from exc

    def read_rows(
        self,
        connection: Connection,
        schema: VersionedSchema,
        keys: Iterable[Key],
    ) -> dict[Key, Mapping[str, Any]]:
        """Read the versioned columns of live rows, keyed by natural key."""
        keys = list(keys)
        if not keys:
            return {}
        live = schema.live_table
        key_cols = [live.c[name] for name in schema.key_columns]
        match = or_(*(and_(*(c == v for c, v in zip(key_cols, key))) for key in keys))
        stmt = select(*(live.c[name] for name in schema.columns)).where(match)
        try:
            rows = connection.execute(stmt).mappings().all()
        except SQLAlchemyError as exc:
            raise ResolutionError(f"Can't re-read rows of {live.name}") from exc
        return {tuple(row[name] for name in schema.key_columns): row for row in rows}

