"""Plugin facade wiring the version log into SQLAlchemy sessions.

Usage:

    versionlog = VersionLog(SessionInfoTimeProvider())
    versionlog.install(SessionLocal)

    with SessionLocal() as session:
        session.add(User(name="John"))
        session.commit()

        session.info["versionlog_as_of"] = yesterday
        users = session.scalars(select(User)).all()
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any
from weakref import WeakKeyDictionary

from sqlalchemy import event, update
from sqlalchemy.orm import ORMExecuteState, Session

from versionlog.clock import TimeProvider, utcnow
from versionlog.models import schema_for
from versionlog.relations import RelationRewriter
from versionlog.rewriter import AS_OF, UNSCOPED, PointInTimeRewriter
from versionlog.store import Snapshot, VersionLogStore
from versionlog.writer import SnapshotWriter

logger = logging.getLogger(__name__)

Hook = tuple[str, Callable[..., Any]]

# Target -> hook name -> the listener registered under that name
_installed: WeakKeyDictionary[Any, dict[str, Hook]] = WeakKeyDictionary()


def unscoped(stmt: Any) -> Any:
    """Mark ``stmt`` to read current state whatever the as-of time."""
    return stmt.execution_options(**{UNSCOPED: True})


def as_of(stmt: Any, when: datetime) -> Any:
    """Read ``stmt`` as of ``when``, overriding the time provider."""
    return stmt.execution_options(**{AS_OF: when})


class VersionLog:
    """Owns the store, writer and rewriters, and registers their hooks.

    Args:
        time_provider: Source of the as-of time for reads.
        clock: Write clock stamping every snapshot and soft delete.
    """

    def __init__(
        self,
        time_provider: TimeProvider,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = VersionLogStore(clock)
        self.writer = SnapshotWriter(self.store)
        self.rewriter = PointInTimeRewriter(self.store, time_provider)
        self.relations = RelationRewriter(self.rewriter)
        self.hooks: dict[str, Hook] = {
            "versionlog:delete": ("before_flush", self._before_flush),
            "versionlog:flush": ("after_flush", self._after_flush),
            "versionlog:execute": ("do_orm_execute", self._on_execute),
        }

    @property
    def time_provider(self) -> TimeProvider:
        return self.rewriter.time_provider

    def install(self, target: Any) -> None:
        """Register the hooks on a ``Session`` class, ``sessionmaker`` or session.

        Hooks are registered by name: a name already installed on ``target``
        is skipped, whichever ``VersionLog`` installed it.
        """
        installed = _installed.setdefault(target, {})
        for name, hook in self.hooks.items():
            if name in installed:
                logger.debug("Hook %s already installed on %r", name, target)
                continue
            event.listen(target, *hook)
            installed[name] = hook
            logger.debug("Installed hook %s on %r", name, target)

    def uninstall(self, target: Any) -> None:
        """Remove the hooks this instance installed on ``target``."""
        installed = _installed.get(target, {})
        for name, hook in self.hooks.items():
            if installed.get(name) == hook:
                event.remove(target, *hook)
                del installed[name]
                logger.debug("Removed hook %s from %r", name, target)

    def _before_flush(self, session: Session, flush_context: Any, instances: Any) -> None:
        self.writer.convert_deletes(session)

    def _after_flush(self, session: Session, flush_context: Any) -> None:
        self.writer.snapshot_flush(session)

    def _on_execute(self, orm_execute_state: ORMExecuteState) -> Any:
        if (
            orm_execute_state.is_update
            or orm_execute_state.is_delete
            or orm_execute_state.is_insert
        ):
            return self.writer.execute_bulk(orm_execute_state)
        if not orm_execute_state.is_select:
            return None
        if orm_execute_state.is_relationship_load:
            self.relations.on_relationship_load(orm_execute_state)
        else:
            self.rewriter.on_select(orm_execute_state)
        return None

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def soft_delete(self, session: Session, entity: type, *criteria: Any) -> int:
        """Set the soft-delete marker on every row of ``entity`` matching ``criteria``.

        Returns the number of rows marked. Each one gets a snapshot when the
        plugin is installed on ``session``.

        Raises:
            ValueError: ``entity`` isn't versioned or declares no marker.
        """
        schema = schema_for(entity)
        if schema is None or schema.soft_delete is None:
            raise ValueError(f"{entity.__name__} has no soft-delete marker")
        stmt = (
            update(entity)
            .where(*criteria)
            .values({schema.soft_delete: self.store.clock()})
        )
        result = session.execute(stmt)
        logger.debug("Soft-deleted %d %s rows", result.rowcount, schema.live_table.name)
        return result.rowcount

    def history(self, session: Session, entity: type, **key: Any) -> list[Snapshot]:
        """Every snapshot of one entity, oldest first.

        Example:
            versionlog.history(session, User, id=1)
        """
        schema = schema_for(entity)
        if schema is None:
            raise ValueError(f"{entity.__name__} is not versioned")
        missing = set(schema.key_columns) - set(key)
        if missing:
            raise ValueError(f"Missing key columns {sorted(missing)} for {entity.__name__}")
        connection = session.connection(bind_arguments={"mapper": entity})
        return self.store.history(connection, schema, key)
