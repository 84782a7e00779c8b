"""Append-only version logs and point-in-time reads for SQLAlchemy entities."""

from versionlog.clock import (
    ContextVarTimeProvider,
    SessionInfoTimeProvider,
    StaticTimeProvider,
    TimeProvider,
)
from versionlog.exceptions import (
    ResolutionError,
    RewriteError,
    RewriteSkipped,
    VersionLogError,
    WriteError,
)
from versionlog.models import NOT_VERSIONED, Versioned, VersionedSchema, schema_for
from versionlog.plugin import VersionLog, as_of, unscoped
from versionlog.relations import RelationHop, preload, resolve_relation_paths
from versionlog.store import Snapshot, VersionLogStore

__all__ = [
    "NOT_VERSIONED",
    "ContextVarTimeProvider",
    "RelationHop",
    "ResolutionError",
    "RewriteError",
    "RewriteSkipped",
    "SessionInfoTimeProvider",
    "Snapshot",
    "StaticTimeProvider",
    "TimeProvider",
    "VersionLog",
    "VersionLogError",
    "VersionLogStore",
    "Versioned",
    "VersionedSchema",
    "WriteError",
    "as_of",
    "preload",
    "resolve_relation_paths",
    "schema_for",
    "unscoped",
]
