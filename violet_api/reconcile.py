"""
Schema reconciliation for the messages and carousel_images tables.

There is no migration ledger: tables were created by several deployments of
this service, each with a slightly different column set. ensure_schema()
brings whatever is live up to what the models expect, and the write paths in
storage.py call back into it when an insert fails with a recognized drift.
import_legacy_messages() carries messages over from the earlier deployment's
mensajes_captcha table on first start.

Store errors are classified by the driver's SQLSTATE when it exposes one
(psycopg2 / psycopg); message text is only consulted for drivers without
structured codes (sqlite3).
"""

import enum
import logging
from typing import Iterable, Optional

from sqlalchemy import MetaData, Table, func, inspect, insert, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.schema import CreateIndex, CreateTable

from violet_api.metrics import record_schema_repair
from violet_api.models import (
    CAROUSEL_OPTIONAL_COLUMNS,
    CLIENT_DESCRIPTOR_MAX,
    MESSAGE_OPTIONAL_COLUMNS,
    ORIGIN_ADDRESS_MAX,
    CarouselImage,
    Message,
)

logger = logging.getLogger(__name__)


class SchemaDrift(enum.Enum):
    """Recoverable schema mismatches recognized on a failed statement."""

    LEGACY_URL_NOT_NULL = "legacy_url_not_null"
    MISSING_COLUMN = "missing_column"
    MISSING_TABLE = "missing_table"
    DUPLICATE_COLUMN = "duplicate_column"


# PostgreSQL SQLSTATE codes
PG_NOT_NULL_VIOLATION = "23502"
PG_UNDEFINED_COLUMN = "42703"
PG_UNDEFINED_TABLE = "42P01"
PG_DUPLICATE_COLUMN = "42701"

_PG_CODES = {
    PG_UNDEFINED_COLUMN: SchemaDrift.MISSING_COLUMN,
    PG_UNDEFINED_TABLE: SchemaDrift.MISSING_TABLE,
    PG_DUPLICATE_COLUMN: SchemaDrift.DUPLICATE_COLUMN,
}

# Fallback patterns for drivers that expose no SQLSTATE (sqlite3)
_MISSING_COLUMN_PATTERNS = ("no such column", "has no column named", "unknown column")
_MISSING_TABLE_PATTERNS = ("no such table",)
_DUPLICATE_COLUMN_PATTERNS = ("duplicate column",)
_NOT_NULL_PATTERNS = ("not null", "not-null")

LEGACY_URL_COLUMN = "legacy_url"

# Messages table of the earlier Express deployment
LEGACY_MESSAGES_TABLE = "mensajes_captcha"


def _driver_error(exc: BaseException) -> BaseException:
    """Unwrap a SQLAlchemy DBAPIError to the driver exception."""
    return getattr(exc, "orig", None) or exc


def _driver_code(error: BaseException) -> Optional[str]:
    # psycopg2 exposes pgcode, psycopg 3 exposes sqlstate
    return getattr(error, "pgcode", None) or getattr(error, "sqlstate", None)


def _driver_column(error: BaseException) -> Optional[str]:
    diag = getattr(error, "diag", None)
    return getattr(diag, "column_name", None)


def classify_store_error(exc: BaseException) -> Optional[SchemaDrift]:
    """
    Map a failed statement to a recoverable SchemaDrift, or None.

    Args:
        exc: SQLAlchemy DBAPIError (or the raw driver exception)

    Returns:
        The drift kind when the failure is one reconciliation can repair,
        None for every other failure.
    """
    error = _driver_error(exc)
    code = _driver_code(error)
    message = str(error).lower()

    if code is not None:
        if code == PG_NOT_NULL_VIOLATION:
            column = _driver_column(error)
            if column == LEGACY_URL_COLUMN or (column is None and LEGACY_URL_COLUMN in message):
                return SchemaDrift.LEGACY_URL_NOT_NULL
            return None
        return _PG_CODES.get(code)

    if LEGACY_URL_COLUMN in message and any(p in message for p in _NOT_NULL_PATTERNS):
        return SchemaDrift.LEGACY_URL_NOT_NULL
    if any(p in message for p in _MISSING_COLUMN_PATTERNS):
        return SchemaDrift.MISSING_COLUMN
    if "column" in message and "does not exist" in message:
        return SchemaDrift.MISSING_COLUMN
    if any(p in message for p in _MISSING_TABLE_PATTERNS):
        return SchemaDrift.MISSING_TABLE
    if any(p in message for p in _DUPLICATE_COLUMN_PATTERNS):
        return SchemaDrift.DUPLICATE_COLUMN
    return None


# =============================================================================
# Reconciliation Steps
# =============================================================================

def _quote(engine: Engine, name: str) -> str:
    return engine.dialect.identifier_preparer.quote(name)


def live_columns(engine: Engine, table_name: str) -> set[str]:
    """Column names currently present on table_name."""
    return {column["name"] for column in inspect(engine).get_columns(table_name)}


def _create_tables(engine: Engine) -> None:
    for table in (Message.__table__, CarouselImage.__table__):
        if inspect(engine).has_table(table.name):
            continue
        logger.info(f"Creating missing table: {table.name}")
        # IF NOT EXISTS: a concurrent reconciliation may have created it meanwhile
        with engine.begin() as conn:
            conn.execute(CreateTable(table, if_not_exists=True))
        record_schema_repair("created")


def _add_missing_columns(engine: Engine, table, column_names: Iterable[str]) -> None:
    """
    Add each expected column absent from the live table.

    Columns are added nullable and without defaults so existing rows stay
    valid. A column added meanwhile by a concurrent caller is skipped.
    """
    present = live_columns(engine, table.name)
    for name in column_names:
        if name in present:
            continue
        column_type = table.c[name].type.compile(dialect=engine.dialect)
        ddl = (
            f"ALTER TABLE {_quote(engine, table.name)} "
            f"ADD COLUMN {_quote(engine, name)} {column_type}"
        )
        try:
            with engine.begin() as conn:
                conn.execute(text(ddl))
        except Exception as e:
            if classify_store_error(e) is SchemaDrift.DUPLICATE_COLUMN:
                logger.info(f"Column {table.name}.{name} already added by another caller")
                continue
            raise
        logger.warning(f"Added missing column {table.name}.{name} ({column_type})")
        record_schema_repair("column_added")


def _create_indexes(engine: Engine) -> None:
    with engine.begin() as conn:
        for index in CarouselImage.__table__.indexes:
            conn.execute(CreateIndex(index, if_not_exists=True))


def _recreate_carousel_table(engine: Engine) -> None:
    table = CarouselImage.__table__
    logger.warning(f"Dropping and recreating {table.name}; existing rows are lost")
    table.drop(bind=engine, checkfirst=True)
    table.create(bind=engine)
    record_schema_repair("recreated")


def relax_legacy_url(engine: Engine) -> bool:
    """
    Drop the NOT NULL constraint on carousel_images.legacy_url.

    Best effort: any failure (column absent, dialect without ALTER COLUMN,
    insufficient privileges) is logged and reported as False.

    Returns:
        True if legacy_url now accepts NULL, False otherwise.
    """
    try:
        columns = inspect(engine).get_columns(CarouselImage.__tablename__)
        legacy = next((c for c in columns if c["name"] == LEGACY_URL_COLUMN), None)
        if legacy is None:
            logger.debug("carousel_images has no legacy_url column, nothing to relax")
            return False
        if legacy["nullable"]:
            return True

        ddl = (
            f"ALTER TABLE {_quote(engine, CarouselImage.__tablename__)} "
            f"ALTER COLUMN {_quote(engine, LEGACY_URL_COLUMN)} DROP NOT NULL"
        )
        with engine.begin() as conn:
            conn.execute(text(ddl))
    except Exception as e:
        logger.warning(f"Could not relax legacy_url NOT NULL constraint: {e}")
        return False

    logger.info("Relaxed NOT NULL constraint on carousel_images.legacy_url")
    record_schema_repair("relaxed")
    return True


def ensure_schema(engine: Engine, allow_destructive: bool = False) -> None:
    """
    Bring both tables to the shape the models expect. Idempotent.

    Steps:
    1. Create messages / carousel_images when absent
    2. Add missing optional columns to both tables
    3. Create the carousel listing index when absent
    4. Best-effort relaxation of legacy_url NOT NULL

    If steps 1-3 fail on a missing column (e.g. a legacy carousel_images
    without created_date) and allow_destructive is set, carousel_images is
    dropped and recreated. Only the startup path sets allow_destructive.

    Never raises: failures are logged and counted.
    """
    logger.info(f"Reconciling database schema (allow_destructive={allow_destructive})")
    try:
        _create_tables(engine)
        _add_missing_columns(engine, Message.__table__, MESSAGE_OPTIONAL_COLUMNS)
        _add_missing_columns(engine, CarouselImage.__table__, CAROUSEL_OPTIONAL_COLUMNS)
        _create_indexes(engine)
    except Exception as e:
        drift = classify_store_error(e)
        if drift is SchemaDrift.MISSING_COLUMN and allow_destructive:
            logger.error(f"Schema reconciliation hit a missing column: {e}")
            try:
                _recreate_carousel_table(engine)
            except Exception as recreate_error:
                logger.error(f"Failed to recreate carousel_images: {recreate_error}")
                record_schema_repair("failed")
        elif drift is SchemaDrift.MISSING_COLUMN:
            logger.error(
                f"Schema reconciliation hit a missing column and destructive repair is disabled: {e}"
            )
            record_schema_repair("failed")
        else:
            logger.error(f"Schema reconciliation failed: {e}")
            record_schema_repair("failed")

    relax_legacy_url(engine)
    logger.info("Schema reconciliation finished")


def import_legacy_messages(engine: Engine) -> int:
    """
    Copy rows from the earlier deployment's mensajes_captcha into messages.

    Only runs while messages is empty, so rows are copied at most once and
    the legacy table is left untouched. Columns the legacy table lacks are
    skipped (created_at then falls back to the server default).

    Returns:
        Number of rows copied.
    """
    inspector = inspect(engine)
    if not inspector.has_table(LEGACY_MESSAGES_TABLE):
        return 0
    if "texto" not in {c["name"] for c in inspector.get_columns(LEGACY_MESSAGES_TABLE)}:
        logger.warning(f"{LEGACY_MESSAGES_TABLE} has no texto column, not importing it")
        return 0

    messages = Message.__table__
    with engine.begin() as conn:
        if conn.execute(select(func.count()).select_from(messages)).scalar():
            return 0

        legacy = Table(LEGACY_MESSAGES_TABLE, MetaData(), autoload_with=conn)
        sources = {"text": legacy.c.texto}
        if "token_captcha" in legacy.c:
            sources["verification_token"] = legacy.c.token_captcha
        if "ip_address" in legacy.c:
            sources["origin_address"] = func.substr(legacy.c.ip_address, 1, ORIGIN_ADDRESS_MAX)
        if "user_agent" in legacy.c:
            sources["client_descriptor"] = func.substr(legacy.c.user_agent, 1, CLIENT_DESCRIPTOR_MAX)
        if "created_at" in legacy.c:
            sources["created_at"] = func.coalesce(legacy.c.created_at, func.current_timestamp())

        query = select(*sources.values()).where(legacy.c.texto.is_not(None))
        if "id" in legacy.c:
            query = query.order_by(legacy.c.id)
        copied = conn.execute(insert(messages).from_select(list(sources), query)).rowcount

    if copied:
        logger.warning(f"Imported {copied} messages from {LEGACY_MESSAGES_TABLE}")
        record_schema_repair("legacy_imported")
    return copied
