"""
Tests for schema reconciliation.

Tests cover:
- Table creation and idempotence
- Adding missing optional columns without data loss
- Destructive fallback only when allowed
- Tables or indexes created concurrently between check and DDL
- legacy_url relaxation reporting
- Carrying over messages from the legacy mensajes_captcha table
- Store error classification for SQLite and PostgreSQL shaped errors
"""

import pytest
from sqlalchemy import inspect, text
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from conftest import drop_all_tables
from violet_api.reconcile import (
    SchemaDrift,
    classify_store_error,
    ensure_schema,
    import_legacy_messages,
    live_columns,
    relax_legacy_url,
)
from violet_api.storage import engine


EXPECTED_CAROUSEL_COLUMNS = {
    "id", "name", "legacy_url", "encoded_image", "mime_type",
    "byte_size", "created_date", "created_at",
}
EXPECTED_MESSAGE_COLUMNS = {
    "id", "text", "verification_token", "origin_address",
    "client_descriptor", "created_at",
}


@pytest.fixture
def empty_db():
    """Database with neither table present."""
    drop_all_tables()
    yield engine
    drop_all_tables()


def create_legacy_carousel(conn, with_created_date=True):
    created_date = ", created_date DATE DEFAULT CURRENT_DATE" if with_created_date else ""
    conn.execute(text(
        "CREATE TABLE carousel_images ("
        "id INTEGER PRIMARY KEY AUTOINCREMENT, "
        "name VARCHAR(255) NOT NULL, "
        "legacy_url TEXT NOT NULL"
        f"{created_date})"
    ))
    conn.execute(text(
        "INSERT INTO carousel_images (name, legacy_url) VALUES ('vieja', 'https://cdn.example/vieja.jpg')"
    ))


def carousel_rows(bound_engine) -> list:
    with bound_engine.connect() as conn:
        return conn.execute(text("SELECT name, legacy_url FROM carousel_images")).all()


class TestEnsureSchema:
    """Test ensure_schema()."""

    def test_creates_both_tables(self, empty_db):
        ensure_schema(empty_db)

        inspector = inspect(empty_db)
        assert inspector.has_table("messages")
        assert inspector.has_table("carousel_images")
        assert live_columns(empty_db, "messages") == EXPECTED_MESSAGE_COLUMNS
        assert live_columns(empty_db, "carousel_images") == EXPECTED_CAROUSEL_COLUMNS

    def test_idempotent(self, empty_db):
        ensure_schema(empty_db)
        ensure_schema(empty_db)

        columns = [c["name"] for c in inspect(empty_db).get_columns("carousel_images")]
        assert len(columns) == len(set(columns))
        assert set(columns) == EXPECTED_CAROUSEL_COLUMNS
        indexes = [i["name"] for i in inspect(empty_db).get_indexes("carousel_images")]
        assert indexes.count("ix_carousel_images_created_date") == 1

    def test_adds_missing_columns_without_data_loss(self, empty_db):
        with empty_db.begin() as conn:
            create_legacy_carousel(conn)

        ensure_schema(empty_db)

        assert live_columns(empty_db, "carousel_images") == EXPECTED_CAROUSEL_COLUMNS
        assert carousel_rows(empty_db) == [("vieja", "https://cdn.example/vieja.jpg")]

    def test_missing_created_date_recreates_table_when_allowed(self, empty_db):
        with empty_db.begin() as conn:
            create_legacy_carousel(conn, with_created_date=False)

        ensure_schema(empty_db, allow_destructive=True)

        assert live_columns(empty_db, "carousel_images") == EXPECTED_CAROUSEL_COLUMNS
        assert carousel_rows(empty_db) == []

    def test_missing_created_date_left_alone_when_not_allowed(self, empty_db):
        with empty_db.begin() as conn:
            create_legacy_carousel(conn, with_created_date=False)

        ensure_schema(empty_db, allow_destructive=False)

        assert "created_date" not in live_columns(empty_db, "carousel_images")
        assert carousel_rows(empty_db) == [("vieja", "https://cdn.example/vieja.jpg")]

    def test_never_raises(self, empty_db, monkeypatch):
        from violet_api import reconcile

        def broken(bound_engine):
            raise OperationalError("CREATE TABLE", {}, Exception("database is locked"))

        monkeypatch.setattr(reconcile, "_create_tables", broken)

        ensure_schema(empty_db, allow_destructive=True)

    def test_tables_created_meanwhile_do_not_fail_reconciliation(self, empty_db, monkeypatch):
        from violet_api import reconcile

        ensure_schema(empty_db)
        with empty_db.begin() as conn:
            conn.execute(text("INSERT INTO carousel_images (name, legacy_url) VALUES ('vieja', '')"))

        # Another caller created both tables between the check and the DDL
        def stale_inspect(bound_engine):
            inspector = inspect(bound_engine)
            inspector.has_table = lambda table_name, schema=None: False
            return inspector

        monkeypatch.setattr(reconcile, "inspect", stale_inspect)

        reconcile._create_tables(empty_db)
        reconcile._create_indexes(empty_db)

        assert carousel_rows(empty_db) == [("vieja", "")]
        indexes = [i["name"] for i in inspect(empty_db).get_indexes("carousel_images")]
        assert indexes.count("ix_carousel_images_created_date") == 1


class TestRelaxLegacyUrl:
    """Test relax_legacy_url()."""

    def test_already_nullable(self, empty_db):
        ensure_schema(empty_db)

        assert relax_legacy_url(empty_db) is True

    def test_not_relaxable_on_sqlite(self, empty_db):
        with empty_db.begin() as conn:
            create_legacy_carousel(conn)

        assert relax_legacy_url(empty_db) is False

    def test_missing_table(self, empty_db):
        assert relax_legacy_url(empty_db) is False


def create_legacy_messages(conn, with_created_at=True):
    created_at = ", created_at DATE" if with_created_at else ""
    conn.execute(text(
        "CREATE TABLE mensajes_captcha ("
        "id INTEGER PRIMARY KEY AUTOINCREMENT, "
        "texto TEXT NOT NULL, "
        "token_captcha TEXT, "
        "ip_address VARCHAR(100), "
        "user_agent TEXT"
        f"{created_at})"
    ))


class TestImportLegacyMessages:
    """Test import_legacy_messages()."""

    def test_copies_rows_in_order(self, empty_db):
        ensure_schema(empty_db)
        with empty_db.begin() as conn:
            create_legacy_messages(conn)
            conn.execute(text(
                "INSERT INTO mensajes_captcha (texto, token_captcha, ip_address, user_agent, created_at) VALUES "
                "('primero', 'tok-1', '10.0.0.1', 'curl/8', '2024-01-02'), "
                "('segundo', NULL, :ip, NULL, NULL)"
            ), {"ip": "1" * 80})

        assert import_legacy_messages(empty_db) == 2

        with empty_db.connect() as conn:
            rows = conn.execute(text(
                "SELECT text, verification_token, origin_address, client_descriptor, created_at "
                "FROM messages ORDER BY id"
            )).all()
        assert [r.text for r in rows] == ["primero", "segundo"]
        assert rows[0].verification_token == "tok-1"
        assert rows[0].origin_address == "10.0.0.1"
        assert rows[0].client_descriptor == "curl/8"
        assert rows[1].origin_address == "1" * 50
        assert rows[1].created_at is not None

    def test_runs_once(self, empty_db):
        ensure_schema(empty_db)
        with empty_db.begin() as conn:
            create_legacy_messages(conn)
            conn.execute(text("INSERT INTO mensajes_captcha (texto) VALUES ('hola')"))

        assert import_legacy_messages(empty_db) == 1
        assert import_legacy_messages(empty_db) == 0

        with empty_db.connect() as conn:
            assert conn.execute(text("SELECT COUNT(*) FROM messages")).scalar() == 1
            assert conn.execute(text("SELECT COUNT(*) FROM mensajes_captcha")).scalar() == 1

    def test_legacy_table_without_created_at(self, empty_db):
        ensure_schema(empty_db)
        with empty_db.begin() as conn:
            create_legacy_messages(conn, with_created_at=False)
            conn.execute(text("INSERT INTO mensajes_captcha (texto) VALUES ('hola')"))

        assert import_legacy_messages(empty_db) == 1

        with empty_db.connect() as conn:
            assert conn.execute(text("SELECT created_at FROM messages")).scalar() is not None

    def test_no_legacy_table(self, empty_db):
        ensure_schema(empty_db)

        assert import_legacy_messages(empty_db) == 0


class FakePgError(Exception):
    """Stand-in for a psycopg2 error: pgcode plus diagnostics."""

    class Diag:
        def __init__(self, column_name):
            self.column_name = column_name

    def __init__(self, message, pgcode, column_name=None):
        super().__init__(message)
        self.pgcode = pgcode
        self.diag = self.Diag(column_name)


def pg_error(message, pgcode, column_name=None, wrapper=DBAPIError):
    return wrapper("INSERT INTO carousel_images ...", {}, FakePgError(message, pgcode, column_name))


class TestClassifyStoreError:
    """Test classify_store_error()."""

    def test_sqlite_missing_column(self, empty_db):
        ensure_schema(empty_db)
        with pytest.raises(DBAPIError) as exc_info:
            with empty_db.connect() as conn:
                conn.execute(text("SELECT nonexistent FROM carousel_images"))

        assert classify_store_error(exc_info.value) is SchemaDrift.MISSING_COLUMN

    def test_sqlite_insert_unknown_column(self, empty_db):
        ensure_schema(empty_db)
        with pytest.raises(DBAPIError) as exc_info:
            with empty_db.begin() as conn:
                conn.execute(text("INSERT INTO carousel_images (name, nonexistent) VALUES ('a', 'b')"))

        assert classify_store_error(exc_info.value) is SchemaDrift.MISSING_COLUMN

    def test_sqlite_missing_table(self, empty_db):
        with pytest.raises(DBAPIError) as exc_info:
            with empty_db.connect() as conn:
                conn.execute(text("SELECT id FROM carousel_images"))

        assert classify_store_error(exc_info.value) is SchemaDrift.MISSING_TABLE

    def test_sqlite_duplicate_column(self, empty_db):
        ensure_schema(empty_db)
        with pytest.raises(DBAPIError) as exc_info:
            with empty_db.begin() as conn:
                conn.execute(text("ALTER TABLE carousel_images ADD COLUMN mime_type VARCHAR(100)"))

        assert classify_store_error(exc_info.value) is SchemaDrift.DUPLICATE_COLUMN

    def test_sqlite_legacy_url_not_null(self, empty_db):
        with empty_db.begin() as conn:
            create_legacy_carousel(conn)
        with pytest.raises(DBAPIError) as exc_info:
            with empty_db.begin() as conn:
                conn.execute(text("INSERT INTO carousel_images (name, legacy_url) VALUES ('a', NULL)"))

        assert classify_store_error(exc_info.value) is SchemaDrift.LEGACY_URL_NOT_NULL

    def test_sqlite_other_not_null_unrecognized(self, empty_db):
        ensure_schema(empty_db)
        with pytest.raises(DBAPIError) as exc_info:
            with empty_db.begin() as conn:
                conn.execute(text("INSERT INTO carousel_images (name) VALUES (NULL)"))

        assert classify_store_error(exc_info.value) is None

    def test_pg_legacy_url_not_null(self):
        error = pg_error(
            'null value in column "legacy_url" of relation "carousel_images" violates not-null constraint',
            "23502",
            column_name="legacy_url",
            wrapper=IntegrityError,
        )

        assert classify_store_error(error) is SchemaDrift.LEGACY_URL_NOT_NULL

    def test_pg_not_null_on_other_column(self):
        error = pg_error(
            'null value in column "name" of relation "carousel_images" violates not-null constraint',
            "23502",
            column_name="name",
            wrapper=IntegrityError,
        )

        assert classify_store_error(error) is None

    def test_pg_codes(self):
        assert classify_store_error(
            pg_error('column "mime_type" of relation "carousel_images" does not exist', "42703")
        ) is SchemaDrift.MISSING_COLUMN
        assert classify_store_error(
            pg_error('relation "carousel_images" does not exist', "42P01")
        ) is SchemaDrift.MISSING_TABLE
        assert classify_store_error(
            pg_error('column "mime_type" of relation "carousel_images" already exists', "42701")
        ) is SchemaDrift.DUPLICATE_COLUMN

    def test_pg_code_wins_over_message(self):
        # A unique violation whose text happens to mention a missing column
        error = pg_error("duplicate key value violates unique constraint: no such column", "23505")

        assert classify_store_error(error) is None

    def test_unrelated_error(self):
        assert classify_store_error(Exception("connection refused")) is None
