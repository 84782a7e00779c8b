"""Tests for point-in-time reads of versioned entities."""

import logging
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session, aliased, sessionmaker

from tests.conftest import FakeClock, StatementRecorder
from tests.models import Note, Tag, User
from versionlog import StaticTimeProvider, VersionLog, as_of, schema_for, unscoped
from versionlog.store import VersionLogStore

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def renamed_user(session: Session, clock: FakeClock) -> User:
    """John, created at T0 and renamed to Jane one hour later."""
    user = User(name="John", password_hash="secret")
    session.add(user)
    session.commit()

    clock.advance(hours=1)
    user.name = "Jane"
    session.commit()
    return user


class TestRewrittenSQL:
    """Shape of a rewritten statement."""

    def test_reads_log_view_under_live_name(self, versionlog: VersionLog) -> None:
        schema = schema_for(Tag)
        stmt = versionlog.rewriter.rewrite(select(Tag).where(Tag.label == "red"), [schema], T0)
        sql = str(stmt)

        assert sql.startswith("WITH tag_history_as_of AS")
        assert "FROM tag_history_as_of AS tags" in sql
        assert "tags.label = " in sql
        assert "tag_history.seq IN (SELECT max(tag_history.seq) AS seq" in sql
        assert "GROUP BY tag_history.id" in sql

    def test_unversioned_columns_read_as_null(self, versionlog: VersionLog) -> None:
        stmt = versionlog.rewriter.rewrite(select(User), [schema_for(User)], T0)
        sql = str(stmt)

        assert "NULL AS password_hash" in sql
        assert "FROM shadow_users_as_of AS users" in sql

    def test_rewrite_is_idempotent(self, versionlog: VersionLog) -> None:
        schemas = [schema_for(Tag)]
        once = versionlog.rewriter.rewrite(select(Tag), schemas, T0)
        twice = versionlog.rewriter.rewrite(once, schemas, T0)

        assert twice is once
        assert str(twice).count("max(tag_history.seq)") == 1

    def test_nested_select_rewritten(self, versionlog: VersionLog) -> None:
        inner = select(User.id).where(User.name == "John").subquery()
        stmt = select(func.count()).select_from(inner)
        sql = str(versionlog.rewriter.rewrite(stmt, [schema_for(User)], T0))

        assert sql.startswith("WITH shadow_users_as_of AS")
        assert "FROM shadow_users_as_of AS users" in sql

    def test_alias_keeps_its_name(self, versionlog: VersionLog) -> None:
        stmt = select(aliased(User, name="author"))
        sql = str(versionlog.rewriter.rewrite(stmt, [schema_for(User)], T0))

        assert "FROM shadow_users_as_of AS author" in sql

    def test_live_statement_unchanged(self) -> None:
        sql = str(select(Tag))
        assert "tag_history" not in sql

    def test_distinct_cache_keys(self, versionlog: VersionLog) -> None:
        stmt = select(Tag)
        rewritten = versionlog.rewriter.rewrite(stmt, [schema_for(Tag)], T0)
        assert stmt._generate_cache_key() != rewritten._generate_cache_key()


class TestPointInTime:
    """Reads as of a time return the state current at that time."""

    def test_john_jane(
        self, session: Session, time_provider: StaticTimeProvider, renamed_user: User
    ) -> None:
        time_provider.time = T0 + timedelta(minutes=30)
        assert session.scalars(select(User.name)).all() == ["John"]

        time_provider.time = T0 + timedelta(minutes=90)
        assert session.scalars(select(User.name)).all() == ["Jane"]

    def test_before_creation_reads_nothing(
        self, session: Session, time_provider: StaticTimeProvider, renamed_user: User
    ) -> None:
        time_provider.time = T0 - timedelta(seconds=1)
        assert session.scalars(select(User)).all() == []

    def test_exact_timestamp_included(
        self, session: Session, time_provider: StaticTimeProvider, renamed_user: User
    ) -> None:
        time_provider.time = T0 + timedelta(hours=1)
        assert session.scalars(select(User.name)).all() == ["Jane"]

    def test_entity_rows_overwrite_identity_map(
        self, session: Session, time_provider: StaticTimeProvider, renamed_user: User
    ) -> None:
        assert renamed_user.name == "Jane"

        time_provider.time = T0 + timedelta(minutes=30)
        user = session.scalars(select(User)).one()

        assert user is renamed_user
        assert user.name == "John"
        assert user.password_hash is None

    def test_caller_criteria_preserved(
        self, session: Session, clock: FakeClock, time_provider: StaticTimeProvider
    ) -> None:
        session.add_all([User(name="John"), User(name="Ann")])
        session.commit()
        clock.advance(hours=1)
        session.add(User(name="Zed"))
        session.commit()

        time_provider.time = T0 + timedelta(minutes=30)
        names = session.scalars(
            select(User.name).where(User.name != "Ann").order_by(User.name)
        ).all()
        assert names == ["John"]

    def test_interleaved_keys(
        self, session: Session, clock: FakeClock, time_provider: StaticTimeProvider
    ) -> None:
        first = User(name="a1")
        session.add(first)
        session.commit()
        clock.advance(minutes=10)
        second = User(name="b1")
        session.add(second)
        session.commit()
        clock.advance(minutes=10)
        first.name = "a2"
        session.commit()
        clock.advance(minutes=10)
        second.name = "b2"
        session.commit()

        time_provider.time = T0 + timedelta(minutes=25)
        names = session.scalars(select(User.name).order_by(User.id)).all()
        assert names == ["a2", "b1"]

    def test_soft_delete_visibility(
        self, session: Session, clock: FakeClock, time_provider: StaticTimeProvider
    ) -> None:
        session.add(User(name="John"))
        session.commit()
        clock.advance(hours=1)
        session.delete(session.scalars(select(User)).one())
        session.commit()

        active = select(User.name).where(User.deleted_at.is_(None))
        time_provider.time = T0 + timedelta(minutes=30)
        assert session.scalars(active).all() == ["John"]
        time_provider.time = T0 + timedelta(minutes=90)
        assert session.scalars(active).all() == []

    def test_as_of_option_overrides_provider(
        self, session: Session, time_provider: StaticTimeProvider, renamed_user: User
    ) -> None:
        time_provider.time = T0 + timedelta(minutes=90)
        stmt = as_of(select(User.name), T0 + timedelta(minutes=30))
        assert session.scalars(stmt).all() == ["John"]

    def test_naive_as_of_taken_as_utc(
        self, session: Session, time_provider: StaticTimeProvider, renamed_user: User
    ) -> None:
        time_provider.time = datetime(2024, 1, 1, 12, 30)
        assert session.scalars(select(User.name)).all() == ["John"]

    def test_aliased_entity_reads_history(
        self, session: Session, time_provider: StaticTimeProvider, renamed_user: User
    ) -> None:
        time_provider.time = T0 + timedelta(minutes=30)
        author = aliased(User)
        assert session.scalars(select(author.name)).all() == ["John"]

    def test_counts_read_history(
        self, session: Session, clock: FakeClock, time_provider: StaticTimeProvider
    ) -> None:
        session.add(User(name="John"))
        session.commit()
        clock.advance(hours=1)
        session.add(User(name="Ann"))
        session.commit()

        time_provider.time = T0 + timedelta(minutes=30)
        assert session.scalar(select(func.count()).select_from(User)) == 1
        assert session.scalar(select(func.count(User.id))) == 1
        assert session.query(User).count() == 1

        time_provider.time = T0 + timedelta(minutes=90)
        assert session.query(User).count() == 2

    def test_subquery_reads_history(
        self, session: Session, time_provider: StaticTimeProvider, renamed_user: User
    ) -> None:
        johns = select(User.id).where(User.name == "John").subquery()
        stmt = select(func.count()).select_from(johns)

        time_provider.time = T0 + timedelta(minutes=30)
        assert session.scalar(stmt) == 1
        time_provider.time = T0 + timedelta(minutes=90)
        assert session.scalar(stmt) == 0


class TestBypass:
    """Reads that are left untouched."""

    def test_no_as_of_no_rewrite(
        self, session: Session, renamed_user: User, recorder: StatementRecorder
    ) -> None:
        recorder.clear()
        assert session.scalars(select(User.name)).all() == ["Jane"]
        assert not recorder.mentions("shadow_users")

    def test_unscoped_reads_live(
        self,
        session: Session,
        time_provider: StaticTimeProvider,
        renamed_user: User,
        recorder: StatementRecorder,
    ) -> None:
        time_provider.time = T0 + timedelta(minutes=30)
        recorder.clear()
        assert session.scalars(unscoped(select(User.name))).all() == ["Jane"]
        assert not recorder.mentions("shadow_users")

    def test_unscoped_wins_over_explicit_as_of(
        self, session: Session, renamed_user: User
    ) -> None:
        stmt = unscoped(as_of(select(User.name), T0 + timedelta(minutes=30)))
        assert session.scalars(stmt).all() == ["Jane"]

    def test_non_versioned_entity(
        self,
        session: Session,
        time_provider: StaticTimeProvider,
        renamed_user: User,
        recorder: StatementRecorder,
    ) -> None:
        session.add(Note(user_id=renamed_user.id, body="hi"))
        session.commit()

        time_provider.time = T0 + timedelta(minutes=30)
        recorder.clear()
        assert session.scalars(select(Note.body)).all() == ["hi"]
        assert not recorder.mentions("shadow_")

    def test_provider_failure_reads_live(
        self,
        session_factory: sessionmaker[Session],
        clock: FakeClock,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        class BrokenProvider:
            def get_time(self, session: Session) -> datetime | None:
                raise RuntimeError("no clock")

        versionlog = VersionLog(BrokenProvider(), clock=clock)
        with session_factory() as session:
            session.add(User(name="John"))
            session.commit()

            versionlog.install(session)
            with caplog.at_level(logging.WARNING, logger="versionlog.rewriter"):
                assert session.scalars(select(User.name)).all() == ["John"]

        assert "Time provider failed" in caplog.text

    def test_aliased_entity_allowed_without_as_of(
        self, session: Session, renamed_user: User
    ) -> None:
        assert session.scalars(select(aliased(User).name)).all() == ["Jane"]


class TestStoreQueries:
    """The latest-seq sub-query on its own."""

    def test_latest_seq_as_of_sql(self) -> None:
        schema = schema_for(Tag)
        stmt = VersionLogStore().latest_seq_as_of(schema.log_table, schema.key_columns, T0)
        sql = str(stmt)

        assert sql.startswith("SELECT max(tag_history.seq) AS seq")
        assert "GROUP BY tag_history.id" in sql
