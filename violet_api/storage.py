import logging
from typing import Callable, Generator, Optional, TypeVar

from sqlalchemy import create_engine, delete, func, insert, inspect, select, text
from sqlalchemy.engine import Row
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from violet_api.config import settings
from violet_api.errors import NotFoundError, PayloadValidationError, SchemaDriftError, ServiceError, StoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Value written to legacy_url when the column is NOT NULL and cannot be relaxed
LEGACY_URL_PLACEHOLDER = "inline"


def normalize_database_url(url: str) -> str:
    """Hosting providers hand out postgres:// URLs; SQLAlchemy only accepts postgresql://."""
    if url.startswith("postgres://"):
        return "postgresql://" + url[len("postgres://"):]
    return url


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        # check_same_thread=False lets FastAPI's threadpool share connections
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}


DATABASE_URL = normalize_database_url(settings.DATABASE_URL)

engine = create_engine(DATABASE_URL, echo=False, **_engine_options(DATABASE_URL))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()


def init_db() -> None:
    """
    Reconcile the schema once at startup and carry over legacy messages.
    Only this path may fall back to dropping and recreating carousel_images.
    """
    from violet_api.reconcile import ensure_schema, import_legacy_messages

    logger.debug(f"Initializing database with URL: {engine.url!r}")
    ensure_schema(engine, allow_destructive=settings.SCHEMA_DESTRUCTIVE_REPAIR)
    try:
        import_legacy_messages(engine)
    except SQLAlchemyError as e:
        logger.error(f"Failed to import legacy messages: {e}")


def dispose_engine() -> None:
    """Close every pooled connection. Called on shutdown."""
    logger.info("Disposing database connection pool")
    engine.dispose()


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _store_error_text(exc: BaseException) -> str:
    return str(getattr(exc, "orig", None) or exc)


def _retry_failure(exc: BaseException) -> ServiceError:
    """Error for a retry that failed again; still-drifting schemas keep their drift kind."""
    from violet_api.reconcile import classify_store_error

    drift = classify_store_error(exc)
    if drift is not None:
        return SchemaDriftError(_store_error_text(exc), drift=drift)
    return StoreError(_store_error_text(exc))


def describe_database(db: Session) -> dict:
    """
    Connectivity and schema report for GET /health.

    Raises:
        StoreError: if the database cannot be reached or introspected
    """
    from violet_api.models import CarouselImage, Message

    logger.debug("Checking database health...")
    try:
        db.execute(text("SELECT 1"))
        inspector = inspect(db.connection())
        tables = {
            Message.__tablename__: inspector.has_table(Message.__tablename__),
            CarouselImage.__tablename__: inspector.has_table(CarouselImage.__tablename__),
        }
        total_messages = None
        total_images = None
        carousel_columns = []
        if tables[Message.__tablename__]:
            total_messages = db.scalar(select(func.count()).select_from(Message))
        if tables[CarouselImage.__tablename__]:
            total_images = db.scalar(select(func.count()).select_from(CarouselImage))
            carousel_columns = [
                column["name"] for column in inspector.get_columns(CarouselImage.__tablename__)
            ]
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        raise StoreError(_store_error_text(e)) from e

    return {
        "tables": tables,
        "total_messages": total_messages,
        "total_images": total_images,
        "carousel_columns": carousel_columns,
    }


# =============================================================================
# Defensive Insert
# =============================================================================

def _insert_with_schema_repair(db: Session, label: str, attempt: Callable[[], T]) -> tuple[T, bool]:
    """
    Run an insert, repairing missing tables/columns once on failure.

    Args:
        db: Database session (rolled back after a failed attempt)
        label: Entity name used in log lines
        attempt: Executes and commits the insert, returning its result

    Returns:
        Tuple of (result, repaired) where repaired is True when the insert
        only succeeded after reconciliation.

    Raises:
        StoreError: on an unrecognized failure or a failed retry
    """
    from violet_api import reconcile

    try:
        return attempt(), False
    except DBAPIError as e:
        db.rollback()
        drift = reconcile.classify_store_error(e)
        if drift not in (reconcile.SchemaDrift.MISSING_COLUMN, reconcile.SchemaDrift.MISSING_TABLE):
            logger.error(f"Failed to insert {label}: {e}")
            raise StoreError(_store_error_text(e)) from e
        logger.warning(f"Insert of {label} hit schema drift ({drift.value}), reconciling")

    reconcile.ensure_schema(engine, allow_destructive=False)
    try:
        return attempt(), True
    except DBAPIError as e:
        db.rollback()
        logger.error(f"Retry after reconciliation failed for {label}: {e}")
        raise _retry_failure(e) from e


# =============================================================================
# Message Repository Functions
# =============================================================================

def create_message(
    db: Session,
    text_value: Optional[str],
    verification_token: Optional[str],
    origin_address: Optional[str],
    client_descriptor: Optional[str],
    require_token: bool = False,
) -> tuple[Row, bool]:
    """
    Store a submitted message.

    Args:
        db: Database session
        text_value: Raw message text, trimmed before storage
        verification_token: hCaptcha token, stored as submitted
        origin_address: Caller network origin, truncated to 50 chars
        client_descriptor: Caller User-Agent, truncated to 500 chars
        require_token: Reject messages without a verification token

    Returns:
        Tuple of (row with id and created_at, repaired)

    Raises:
        PayloadValidationError: empty text or missing required token
        StoreError: the insert failed
    """
    from violet_api.models import CLIENT_DESCRIPTOR_MAX, ORIGIN_ADDRESS_MAX, Message
    from violet_api.utils import truncate

    cleaned = (text_value or "").strip()
    if not cleaned:
        raise PayloadValidationError("El texto del mensaje es obligatorio")
    if require_token and not verification_token:
        raise PayloadValidationError("Completa el captcha")

    values = {
        "text": cleaned,
        "verification_token": verification_token,
        "origin_address": truncate(origin_address, ORIGIN_ADDRESS_MAX),
        "client_descriptor": truncate(client_descriptor, CLIENT_DESCRIPTOR_MAX),
    }
    logger.info(f"Creating message: {cleaned[:30]!r} from {values['origin_address']}")

    def attempt() -> Row:
        row = db.execute(
            insert(Message).values(**values).returning(Message.id, Message.created_at)
        ).one()
        db.commit()
        return row

    row, repaired = _insert_with_schema_repair(db, "message", attempt)
    logger.info(f"Message created successfully: id={row.id}")
    return row, repaired


def get_messages(db: Session, limit: int) -> list[Row]:
    """
    Most recent messages first, by id.

    Raises:
        StoreError: the query failed
    """
    from violet_api.models import Message

    logger.info(f"Querying messages: limit={limit}")
    try:
        rows = db.execute(
            select(Message.id, Message.text, Message.created_at)
            .order_by(Message.id.desc())
            .limit(limit)
        ).all()
    except SQLAlchemyError as e:
        logger.error(f"Failed to list messages: {e}")
        raise StoreError(_store_error_text(e)) from e
    logger.info(f"Retrieved {len(rows)} messages")
    return rows


# =============================================================================
# Carousel Repository Functions
# =============================================================================

def validate_image_upload(
    name: Optional[str],
    encoded_image: Optional[str],
    max_bytes: int,
) -> None:
    """
    Reject an upload before touching the database.

    Raises:
        PayloadValidationError: missing name/payload, payload without the
            data:image/ marker, payload longer than max_bytes, or a name
            longer than its column
    """
    from violet_api.models import IMAGE_NAME_MAX
    from violet_api.utils import has_image_marker

    if not name or not name.strip():
        raise PayloadValidationError("El nombre de la imagen es obligatorio")
    if len(name.strip()) > IMAGE_NAME_MAX:
        raise PayloadValidationError(
            f"El nombre de la imagen no puede superar {IMAGE_NAME_MAX} caracteres"
        )
    if not encoded_image:
        raise PayloadValidationError("La imagen en base64 es obligatoria")
    if not has_image_marker(encoded_image):
        raise PayloadValidationError("Formato de imagen inválido: se esperaba data:image/...")
    if len(encoded_image) > max_bytes:
        raise PayloadValidationError(
            f"La imagen supera el tamaño máximo de {max_bytes // (1024 * 1024)}MB"
        )


def create_carousel_image(
    db: Session,
    name: Optional[str],
    encoded_image: Optional[str],
    mime_type: Optional[str] = None,
    max_bytes: Optional[int] = None,
) -> tuple[Row, bool]:
    """
    Store a carousel image, repairing legacy schema drift once.

    Recovery on a failed insert:
    - legacy_url NOT NULL violation: relax the constraint and retry with "";
      if it cannot be relaxed, retry with LEGACY_URL_PLACEHOLDER
    - missing column/table: reconcile (non-destructively) and retry
    - anything else: StoreError

    Not idempotent: identical uploads create distinct rows.

    Returns:
        Tuple of (row with id, name, mime_type, byte_size, created_date, repaired)

    Raises:
        PayloadValidationError: see validate_image_upload, or a resolved
            mime type longer than its column
        StoreError: the insert (or its single retry) failed
    """
    from violet_api import reconcile
    from violet_api.models import MIME_TYPE_MAX, CarouselImage
    from violet_api.utils import DEFAULT_MIME_TYPE, mime_type_from_data_url

    if max_bytes is None:
        max_bytes = settings.MAX_IMAGE_BYTES
    validate_image_upload(name, encoded_image, max_bytes)

    name = name.strip()
    mime_type = mime_type or mime_type_from_data_url(encoded_image) or DEFAULT_MIME_TYPE
    if len(mime_type) > MIME_TYPE_MAX:
        raise PayloadValidationError(f"El tipo MIME no puede superar {MIME_TYPE_MAX} caracteres")
    values = {
        "name": name,
        "encoded_image": encoded_image,
        "mime_type": mime_type,
        # Encoded length, not decoded size
        "byte_size": len(encoded_image),
    }
    logger.info(f"Uploading carousel image: name={name!r}, mime={mime_type}, size={len(encoded_image)}")

    def insert_row(legacy_url: str) -> Row:
        row = db.execute(
            insert(CarouselImage)
            .values(legacy_url=legacy_url, **values)
            .returning(
                CarouselImage.id,
                CarouselImage.name,
                CarouselImage.mime_type,
                CarouselImage.byte_size,
                CarouselImage.created_date,
            )
        ).one()
        db.commit()
        return row

    try:
        row = insert_row("")
        logger.info(f"Carousel image created: id={row.id}")
        return row, False
    except DBAPIError as e:
        db.rollback()
        drift = reconcile.classify_store_error(e)
        if drift not in (
            reconcile.SchemaDrift.LEGACY_URL_NOT_NULL,
            reconcile.SchemaDrift.MISSING_COLUMN,
            reconcile.SchemaDrift.MISSING_TABLE,
        ):
            logger.error(f"Failed to insert carousel image: {e}")
            raise StoreError(_store_error_text(e)) from e

    if drift is reconcile.SchemaDrift.LEGACY_URL_NOT_NULL:
        logger.warning("Carousel insert rejected by legacy_url NOT NULL constraint")
        legacy_url = "" if reconcile.relax_legacy_url(engine) else LEGACY_URL_PLACEHOLDER
    else:
        logger.warning(f"Carousel insert hit schema drift ({drift.value}), reconciling")
        reconcile.ensure_schema(engine, allow_destructive=False)
        legacy_url = ""

    try:
        row = insert_row(legacy_url)
    except DBAPIError as e:
        db.rollback()
        logger.error(f"Retry of carousel image insert failed: {e}")
        raise _retry_failure(e) from e
    logger.info(f"Carousel image created after schema repair: id={row.id}")
    return row, True


def list_carousel_images(db: Session) -> list[Row]:
    """Image metadata, newest first. The encoded payload is left out."""
    from violet_api.models import CarouselImage

    try:
        rows = db.execute(
            select(
                CarouselImage.id,
                CarouselImage.name,
                CarouselImage.mime_type,
                CarouselImage.byte_size,
                CarouselImage.created_date,
            ).order_by(CarouselImage.id.desc())
        ).all()
    except SQLAlchemyError as e:
        logger.error(f"Failed to list carousel images: {e}")
        raise StoreError(_store_error_text(e)) from e
    logger.info(f"Retrieved {len(rows)} carousel images")
    return rows


def _require_image_id(image_id: int) -> None:
    """Ids outside the key column's range cannot exist; some drivers fail to bind them."""
    from violet_api.models import IMAGE_ID_MAX

    if not 1 <= image_id <= IMAGE_ID_MAX:
        raise NotFoundError("Imagen no encontrada")


def get_carousel_image(db: Session, image_id: int) -> Row:
    """
    One image including its encoded payload.

    Raises:
        NotFoundError: no image with image_id
        StoreError: the query failed
    """
    from violet_api.models import CarouselImage

    logger.info(f"Looking up carousel image: {image_id}")
    _require_image_id(image_id)
    try:
        row = db.execute(
            select(
                CarouselImage.id,
                CarouselImage.name,
                CarouselImage.mime_type,
                CarouselImage.byte_size,
                CarouselImage.created_date,
                CarouselImage.encoded_image,
            ).where(CarouselImage.id == image_id)
        ).first()
    except SQLAlchemyError as e:
        logger.error(f"Failed to fetch carousel image {image_id}: {e}")
        raise StoreError(_store_error_text(e)) from e
    if row is None:
        raise NotFoundError("Imagen no encontrada")
    return row


def delete_carousel_image(db: Session, image_id: int) -> int:
    """
    Hard-delete one image.

    Returns:
        The deleted id

    Raises:
        NotFoundError: no image with image_id
        StoreError: the delete failed
    """
    from violet_api.models import CarouselImage

    logger.info(f"Deleting carousel image: {image_id}")
    _require_image_id(image_id)
    try:
        deleted_id = db.execute(
            delete(CarouselImage)
            .where(CarouselImage.id == image_id)
            .returning(CarouselImage.id)
        ).scalar_one_or_none()
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to delete carousel image {image_id}: {e}")
        raise StoreError(_store_error_text(e)) from e
    if deleted_id is None:
        raise NotFoundError("Imagen no encontrada")
    logger.info(f"Carousel image deleted: {image_id}")
    return deleted_id
