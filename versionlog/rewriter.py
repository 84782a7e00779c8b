"""Point-in-time rewriting of reads against versioned entities.

A read of ``User`` as of T gains one CTE per versioned table it touches, and
every reference to the live table renders from that CTE under the live name::

    WITH shadow_users_as_of AS (
        SELECT shadow_users.seq, shadow_users.timestamp, shadow_users.id, ...
        FROM shadow_users
        WHERE shadow_users.seq IN (SELECT max(shadow_users.seq) FROM shadow_users
                                   WHERE shadow_users.timestamp <= :as_of
                                   GROUP BY shadow_users.id))
    SELECT users.id, users.name FROM shadow_users_as_of AS users
    WHERE <caller criteria>

Columns the caller (or the ORM) refers to keep rendering unchanged. This holds
wherever the table appears: selected entities, ``select_from()``, joins, joined
eager loads under an anonymous alias, ``aliased()`` entities and nested
subqueries such as the one ``Query.count()`` wraps. The CTE is part of the
statement, which keeps the rewritten statement's cache key distinct from the
live one.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from sqlalchemy import CTE, Select, Table, null, select
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.orm import ORMExecuteState
from sqlalchemy.sql import visitors

from versionlog.clock import TimeProvider, normalize
from versionlog.config import settings
from versionlog.exceptions import RewriteSkipped
from versionlog.models import VersionedSchema, schema_for_table
from versionlog.store import VersionLogStore

logger = logging.getLogger(__name__)

UNSCOPED = "versionlog_unscoped"
AS_OF = "versionlog_as_of"


def view_name(schema: VersionedSchema) -> str:
    """Name of the CTE holding the as-of state of ``schema``'s log."""
    return f"{schema.log_table.name}_as_of"


@compiles(Table)
def _render_table(element: Table, compiler: Any, **kw: Any) -> str:
    if kw.get("asfrom") and not kw.get("iscrud"):
        view = _view_for(compiler, element)
        if view is not None:
            enclosing = kw.pop("enclosing_alias", None)
            if enclosing is not None and enclosing.element is element:
                # The alias appends its own name
                return compiler.process(view, **kw)
            linter = kw.pop("from_linter", None)
            if linter is not None:
                linter.froms[element] = element.fullname
            name = compiler.process(view, **kw)
            return name + compiler.get_render_as_alias_suffix(
                compiler.preparer.quote(element.name)
            )
    return compiler.visit_table(element, **kw)


def _view_for(compiler: Any, table: Table) -> CTE | None:
    """The as-of CTE of ``table`` in the statement being compiled, if any."""
    schema = schema_for_table(table.fullname)
    if schema is None:
        return None
    name = view_name(schema)
    statements = [getattr(compiler, "statement", None)]
    statements += [entry.get("selectable") for entry in getattr(compiler, "stack", ())]
    for stmt in statements:
        for cte in getattr(stmt, "_independent_ctes", ()):
            if cte.name == name:
                return cte
    return None


def historical_view(schema: VersionedSchema, latest: Select[Any]) -> CTE:
    """The log rows current at the as-of time, shaped like the live table.

    Unversioned columns have no log column; they read as NULL.
    """
    log = schema.log_table
    columns: list[Any] = [
        log.c[c] for c in (schema.seq.name, schema.timestamp.name, *schema.columns)
    ]
    columns += [null().label(c) for c in schema.unversioned_columns]
    return (
        select(*columns)
        .where(schema.seq.in_(latest.correlate(None)))
        .cte(view_name(schema))
    )


def defined_views(stmt: Any) -> set[str]:
    """Names of every CTE defined anywhere in ``stmt``."""
    return {e.name for e in visitors.iterate(stmt) if isinstance(e, CTE)}


def versioned_sources(stmt: Select[Any]) -> list[VersionedSchema]:
    """Versioned tables ``stmt`` reads, in order of first appearance.

    Covers the statement's own tree (columns, FROM list, joins, subqueries)
    and the FROM list the ORM finally renders, which adds joined eager loads.
    """
    found: dict[str, VersionedSchema] = {}
    for source in (stmt, *stmt.get_final_froms()):
        for element in visitors.iterate(source):
            if not isinstance(element, Table) or element.fullname in found:
                continue
            schema = schema_for_table(element.fullname)
            if schema is not None:
                found[element.fullname] = schema
    return list(found.values())


class PointInTimeRewriter:
    """Rewrites ORM SELECTs reading versioned tables to read their logs."""

    def __init__(self, store: VersionLogStore, time_provider: TimeProvider) -> None:
        self.store = store
        self.time_provider = time_provider

    def resolve_as_of(
        self, orm_execute_state: ORMExecuteState
    ) -> tuple[datetime | None, RewriteSkipped | None]:
        """Return the as-of time of an execution, or the reason there is none.

        An unscoped execution always reads live state, even with an explicit
        ``versionlog_as_of`` option.
        """
        options = orm_execute_state.execution_options
        if options.get(UNSCOPED, False):
            return None, RewriteSkipped.UNSCOPED

        as_of = options.get(AS_OF)
        if as_of is None:
            try:
                as_of = self.time_provider.get_time(orm_execute_state.session)
            except Exception:
                logger.warning("Time provider failed; reading current state", exc_info=True)
                return None, RewriteSkipped.PROVIDER_ERROR
        if as_of is None:
            return None, RewriteSkipped.NO_AS_OF
        return normalize(as_of), None

    def rewrite(
        self,
        stmt: Select[Any],
        schemas: Iterable[VersionedSchema],
        as_of: datetime,
    ) -> Select[Any]:
        """Make every read of ``schemas`` in ``stmt`` return the state at ``as_of``.

        Tables whose view the statement already defines are left alone, so
        rewriting twice returns ``stmt`` unchanged.
        """
        existing = defined_views(stmt)
        views = []
        for schema in schemas:
            if view_name(schema) in existing:
                logger.debug(
                    "%s: %s", schema.live_table.name, RewriteSkipped.ALREADY_REWRITTEN.value
                )
                continue
            latest = self.store.latest_seq_as_of(schema.log_table, schema.key_columns, as_of)
            views.append(historical_view(schema, latest))
        if not views:
            return stmt
        return stmt.add_cte(*views)

    def apply(
        self, orm_execute_state: ORMExecuteState, as_of: datetime
    ) -> list[VersionedSchema]:
        """Rewrite the statement of an execution in place.

        Returns the versioned tables it reads; empty when there are none and
        the statement was left as is.
        """
        stmt = orm_execute_state.statement
        schemas = versioned_sources(stmt)
        if not schemas:
            return []
        orm_execute_state.statement = self.rewrite(stmt, schemas, as_of)
        if settings.populate_existing:
            orm_execute_state.update_execution_options(populate_existing=True)
        return schemas

    def on_select(self, orm_execute_state: ORMExecuteState) -> None:
        """Rewrite a top-level SELECT reading any versioned table."""
        if not isinstance(orm_execute_state.statement, Select):
            return
        as_of, skipped = self.resolve_as_of(orm_execute_state)
        if as_of is None:
            logger.debug("Reading live state: %s", skipped.value if skipped else "")
            return

        schemas = self.apply(orm_execute_state, as_of)
        if schemas:
            logger.debug(
                "Reading %s as of %s",
                ", ".join(s.live_table.name for s in schemas),
                as_of.isoformat(),
            )
