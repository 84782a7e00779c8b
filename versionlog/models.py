"""Versioned entity descriptor and log table construction.

A mapped class opts into version tracking by mixing in ``Versioned``:

    class User(Versioned, Base):
        __tablename__ = "users"
        __versionlog_table__ = "shadow_users"
        __versionlog_soft_delete__ = "deleted_at"

        id: Mapped[int] = mapped_column(primary_key=True)
        name: Mapped[str]
        password_hash: Mapped[str] = mapped_column(info=NOT_VERSIONED)
        deleted_at: Mapped[datetime | None]

When the class is declared, a log ``Table`` is added to the same ``MetaData``
with one column per versioned column of the live table, plus the ordering
(``seq``) and append-time (``timestamp``) columns.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, ClassVar

from sqlalchemy import (
    Column,
    DateTime,
    Index,
    Integer,
    Table,
    event,
    func,
)
from sqlalchemy.orm import Mapper

from versionlog.config import settings

logger = logging.getLogger(__name__)

NOT_VERSIONED: dict[str, Any] = {"versionlog": "ignore"}

# Live table fullname -> schema; consulted when rendering historical FROMs
_schemas: dict[str, VersionedSchema] = {}


def is_versioned_column(column: Column[Any]) -> bool:
    return column.info.get("versionlog") != "ignore"


@dataclass
class VersionedSchema:
    """Everything the writer and rewriters need to know about one entity."""

    live_table: Table
    log_table: Table
    key_columns: tuple[str, ...]
    columns: tuple[str, ...]
    soft_delete: str | None = None
    # column name -> mapped attribute key, bound at mapper configuration
    attributes: dict[str, str] = field(default_factory=dict)

    @property
    def seq(self) -> Column[Any]:
        return self.log_table.c[settings.seq_column]

    @property
    def timestamp(self) -> Column[Any]:
        return self.log_table.c[settings.timestamp_column]

    @property
    def unversioned_columns(self) -> tuple[str, ...]:
        return tuple(c.name for c in self.live_table.columns if c.name not in self.columns)

    def attribute_for(self, column_name: str) -> str:
        return self.attributes.get(column_name, column_name)


class Versioned:
    """Capability mixin: mapped classes carrying it get a version log."""

    __versionlog_table__: ClassVar[str | None] = None
    __versionlog_soft_delete__: ClassVar[str | None] = None
    __versionlog_schema__: ClassVar[VersionedSchema]

    def __init_subclass__(cls, **kw: Any) -> None:
        super().__init_subclass__(**kw)
        table = cls.__dict__.get("__table__")
        if isinstance(table, Table):
            cls.__versionlog_schema__ = _build_schema(cls, table)

    @classmethod
    def log_table_name(cls) -> str:
        live: Table = cls.__dict__["__table__"]
        return cls.__versionlog_table__ or f"{settings.log_table_prefix}{live.name}"


def _build_schema(cls: type[Versioned], live: Table) -> VersionedSchema:
    existing = _schemas.get(live.fullname)
    if existing is not None and existing.live_table is live:
        return existing

    reserved = {settings.seq_column, settings.timestamp_column}
    clash = reserved & set(live.columns.keys())
    if clash:
        raise ValueError(
            f"{cls.__name__}: columns {sorted(clash)} collide with the log table's "
            f"ordering columns; set VERSIONLOG_SEQ_COLUMN / VERSIONLOG_TIMESTAMP_COLUMN"
        )

    keys = tuple(c.name for c in live.primary_key.columns)
    if not keys:
        raise ValueError(f"{cls.__name__}: a versioned entity needs a primary key")

    columns = tuple(c.name for c in live.columns if is_versioned_column(c))
    missing = set(keys) - set(columns)
    if missing:
        raise ValueError(
            f"{cls.__name__}: primary key columns {sorted(missing)} can't be unversioned"
        )

    soft_delete = cls.__versionlog_soft_delete__
    log = build_log_table(cls.log_table_name(), live, columns, keys)
    schema = VersionedSchema(
        live_table=live,
        log_table=log,
        key_columns=keys,
        columns=columns,
        soft_delete=soft_delete,
    )
    _schemas[live.fullname] = schema
    logger.debug("Registered version log %s for %s", log.name, live.fullname)
    return schema


def build_log_table(
    name: str,
    live: Table,
    columns: tuple[str, ...],
    keys: tuple[str, ...],
) -> Table:
    """Create the log ``Table`` for ``live`` in the same ``MetaData``.

    Copies name and type of each versioned column only: no primary key,
    foreign keys, unique constraints or defaults, since one live row maps to
    many log rows and log rows must outlive the live row.
    """
    if name in live.metadata.tables:
        return live.metadata.tables[name]

    copied = [Column(live.c[c].name, live.c[c].type, nullable=True) for c in columns]
    return Table(
        name,
        live.metadata,
        Column(settings.seq_column, Integer, primary_key=True, autoincrement=True),
        Column(
            settings.timestamp_column,
            DateTime(timezone=True),
            nullable=False,
            index=True,
            server_default=func.now(),
        ),
        *copied,
        Index(f"ix_{name}_natural_key", *keys),
        schema=live.schema,
    )


def schema_for(cls: type) -> VersionedSchema | None:
    """Return the version schema of a mapped class, or None if it isn't versioned."""
    if isinstance(cls, type) and issubclass(cls, Versioned):
        return getattr(cls, "__versionlog_schema__", None)
    return None


def schema_for_mapper(mapper: Mapper[Any] | None) -> VersionedSchema | None:
    if mapper is None:
        return None
    return schema_for(mapper.class_)


def schema_for_table(fullname: str) -> VersionedSchema | None:
    return _schemas.get(fullname)


@event.listens_for(Versioned, "mapper_configured", propagate=True)
def _bind_attributes(mapper: Mapper[Any], class_: type) -> None:
    """Bind each versioned column to the attribute key it is mapped under."""
    schema = schema_for(class_)
    if schema is None:
        return
    for name in schema.columns:
        prop = mapper.get_property_by_column(schema.live_table.c[name])
        schema.attributes[name] = prop.key
    if schema.soft_delete is not None and schema.soft_delete not in mapper.attrs:
        raise ValueError(
            f"{class_.__name__}: soft-delete attribute {schema.soft_delete!r} is not mapped"
        )
