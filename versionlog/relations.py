"""Point-in-time rewriting across relationship loads.

Joined eager loads render inside the parent statement and are rewritten with
it. Every other loader (``selectinload``, ``subqueryload``, ``immediateload``
and lazy loads) runs its own SELECT; each one reading a versioned table is
read from the log as of the same time as the statement that triggered it.
``preload()`` builds those loader options from dotted relation paths.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from sqlalchemy import Select, inspect
from sqlalchemy.orm import Mapper, ORMExecuteState, RelationshipProperty, selectinload

from versionlog.exceptions import RewriteError, RewriteSkipped
from versionlog.models import VersionedSchema, schema_for_mapper
from versionlog.rewriter import PointInTimeRewriter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RelationHop:
    """One distinct prefix of a requested relation path."""

    path: str
    relationship: RelationshipProperty[Any]
    schema: VersionedSchema | None

    @property
    def mapper(self) -> Mapper[Any]:
        return self.relationship.mapper

    @property
    def versioned(self) -> bool:
        return self.schema is not None


def resolve_relation_paths(root: Any, paths: Iterable[str]) -> list[RelationHop]:
    """Walk dotted relation paths from ``root``, one hop per distinct prefix.

    ``["addresses", "addresses.tags", "orders"]`` yields the hops
    ``addresses``, ``addresses.tags`` and ``orders``: the shared ``addresses``
    prefix is resolved once.

    Raises:
        ValueError: A hop names no relationship of the entity it starts from.
    """
    root_mapper: Mapper[Any] = inspect(root).mapper
    handled: set[str] = set()
    hops: list[RelationHop] = []
    for path in paths:
        mapper = root_mapper
        prefix: list[str] = []
        for name in path.split("."):
            if name not in mapper.relationships:
                raise ValueError(
                    f"{mapper.class_.__name__} has no relationship {name!r} (in {path!r})"
                )
            relationship = mapper.relationships[name]
            mapper = relationship.mapper
            prefix.append(name)
            subpath = ".".join(prefix)
            if subpath in handled:
                continue
            handled.add(subpath)
            hops.append(RelationHop(subpath, relationship, schema_for_mapper(mapper)))
    return hops


def preload(
    root: Any,
    *paths: str,
    criteria: Mapping[str, Sequence[Any]] | None = None,
) -> list[Any]:
    """Build ``selectinload`` options for dotted relation paths.

    Args:
        root: The mapped class the statement selects.
        *paths: Relation paths such as ``"addresses"`` or ``"addresses.tags"``.
        criteria: Extra criteria per path, applied to that hop only.

    Returns:
        One loader option per path that isn't a prefix of another path.

    Example:
        select(User).options(*preload(User, "addresses.tags", "orders"))
    """
    criteria = criteria or {}
    hops = resolve_relation_paths(root, paths)
    unknown = set(criteria) - {hop.path for hop in hops}
    if unknown:
        raise ValueError(f"Criteria given for paths that aren't loaded: {sorted(unknown)}")

    leaves = [
        hop
        for hop in hops
        if not any(other.path.startswith(hop.path + ".") for other in hops)
    ]
    options = []
    for leaf in leaves:
        option = None
        mapper: Mapper[Any] = inspect(root).mapper
        prefix: list[str] = []
        for name in leaf.path.split("."):
            prefix.append(name)
            attribute = getattr(mapper.class_, name)
            extra = criteria.get(".".join(prefix))
            if extra:
                attribute = attribute.and_(*extra)
            option = selectinload(attribute) if option is None else option.selectinload(attribute)
            mapper = mapper.relationships[name].mapper
        options.append(option)
    return options


def _relationships(orm_execute_state: ORMExecuteState) -> list[RelationshipProperty[Any]]:
    path = getattr(orm_execute_state.loader_strategy_path, "path", ())
    return [p for p in path if isinstance(p, RelationshipProperty)]


def relation_path(orm_execute_state: ORMExecuteState) -> str:
    """Dotted relation path of a relationship load, e.g. ``addresses.tags``."""
    return ".".join(p.key for p in _relationships(orm_execute_state))


class RelationRewriter:
    """Applies the point-in-time rewrite to relationship load statements."""

    def __init__(self, rewriter: PointInTimeRewriter) -> None:
        self.rewriter = rewriter

    def on_relationship_load(self, orm_execute_state: ORMExecuteState) -> None:
        path = relation_path(orm_execute_state)
        as_of, skipped = self.rewriter.resolve_as_of(orm_execute_state)
        if as_of is None:
            logger.debug("%s: %s", path, skipped.value if skipped else "")
            return

        if not isinstance(orm_execute_state.statement, Select):
            hops = _relationships(orm_execute_state)
            # bind_mapper may name the parent when the load joins back to it
            target = hops[-1].mapper if hops else orm_execute_state.bind_mapper
            if schema_for_mapper(target) is None:
                logger.debug("%s: %s", path, RewriteSkipped.NOT_VERSIONED.value)
                return
            raise RewriteError(
                f"Can't read relationship {path!r} as of {as_of.isoformat()}: "
                f"unsupported load statement {type(orm_execute_state.statement).__name__}"
            )

        schemas = self.rewriter.apply(orm_execute_state, as_of)
        if not schemas:
            logger.debug("%s: %s", path, RewriteSkipped.NOT_VERSIONED.value)
            return
        logger.debug(
            "Loading %s from %s as of %s",
            path,
            ", ".join(s.log_table.name for s in schemas),
            as_of.isoformat(),
        )
