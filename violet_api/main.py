import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Annotated

from fastapi import FastAPI, Response, Request, Depends, Query, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from violet_api.config import settings
from violet_api.errors import PayloadValidationError, ServiceError
from violet_api.storage import (
    init_db,
    dispose_engine,
    get_db,
    describe_database,
    create_message,
    get_messages,
    create_carousel_image,
    list_carousel_images,
    get_carousel_image,
    delete_carousel_image,
)
from violet_api.logging_utils import setup_logging, RequestLoggingMiddleware, log_route_data
from violet_api.utils import client_origin, client_descriptor
from violet_api.metrics import (
    record_message_outcome,
    record_upload_outcome,
    get_metrics,
    get_metrics_content_type,
)
from violet_api.schemas import (
    DeleteImageResponse,
    ErrorResponse,
    HealthResponse,
    ImageDetail,
    ImageDetailResponse,
    ImageMetadata,
    ImageResponse,
    ImagesListResponse,
    LiveResponse,
    MessageItem,
    MessagesListResponse,
    SaveMessageRequest,
    SaveMessageResponse,
    UploadImageRequest,
)


setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: reconcile the database schema
    - Shutdown: dispose the connection pool
    """
    init_db()
    yield
    dispose_engine()


app = FastAPI(
    title="Violet Virgo API",
    description="Message wall and image carousel backend",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid input"},
    500: {"model": ErrorResponse, "description": "Database error"},
}


# =============================================================================
# Error Handlers
# =============================================================================

@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.message},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed JSON or wrongly typed fields are plain client errors (400)."""
    errors = exc.errors()
    detail = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    logger.warning(f"Request validation failed: {detail}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "error": detail},
    )


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health", response_model=HealthResponse, responses={500: {"model": ErrorResponse}})
def health(db: Session = Depends(get_db)) -> HealthResponse:
    """
    Database connectivity and schema report.

    Returns 500 when the database cannot be reached.
    """
    report = describe_database(db)
    return HealthResponse(
        status="ok",
        database="connected",
        tablas=report["tables"],
        total_mensajes=report["total_messages"],
        total_imagenes=report["total_images"],
        columnas_carrusel=report["carousel_columns"],
        timestamp=datetime.now(timezone.utc),
    )


@app.get("/health/live", response_model=LiveResponse)
async def health_live() -> LiveResponse:
    """
    Liveness check: always returns 200 once the app is running.
    """
    return LiveResponse(status="ok")


# =============================================================================
# Message Routes
# =============================================================================

@app.post("/api/guardar", response_model=SaveMessageResponse, responses=ERROR_RESPONSES)
def save_message(
    body: SaveMessageRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> SaveMessageResponse:
    """
    Store a message from the front-end form.

    - texto: required, trimmed; empty or whitespace-only is rejected with 400
    - hcaptcha: stored as submitted; required only when HCAPTCHA_REQUIRED is set
    - Caller origin (X-Forwarded-For / peer) and User-Agent are recorded
    """
    try:
        row, repaired = create_message(
            db=db,
            text_value=body.texto,
            verification_token=body.hcaptcha,
            origin_address=client_origin(request),
            client_descriptor=client_descriptor(request),
            require_token=settings.HCAPTCHA_REQUIRED,
        )
    except PayloadValidationError:
        record_message_outcome("validation_error")
        log_route_data(request, result="validation_error")
        raise
    except ServiceError:
        record_message_outcome("error")
        log_route_data(request, result="error")
        raise

    result = "repaired" if repaired else "created"
    record_message_outcome(result)
    log_route_data(request, result=result, message_pk=row.id, repaired=repaired)

    return SaveMessageResponse(
        message=f"Guardado: \"{body.texto.strip()}\"",
        id=row.id,
        fecha=row.created_at,
    )


@app.get("/api/mensajes", response_model=MessagesListResponse, responses={500: {"model": ErrorResponse}})
def list_messages(
    limite: Annotated[int | None, Query(ge=1, le=100, description="Maximum number of messages to return")] = None,
    db: Session = Depends(get_db),
) -> MessagesListResponse:
    """
    Most recent messages first (by id), never more than MESSAGES_LIMIT.
    """
    limit = settings.MESSAGES_LIMIT if limite is None else min(limite, settings.MESSAGES_LIMIT)
    rows = get_messages(db, limit=limit)
    return MessagesListResponse(
        mensajes=[
            MessageItem(id=row.id, texto=row.text, created_at=row.created_at)
            for row in rows
        ]
    )


# =============================================================================
# Carousel Routes
# =============================================================================

def _image_metadata(row) -> ImageMetadata:
    return ImageMetadata(
        id=row.id,
        nombre=row.name,
        tipo_mime=row.mime_type,
        tamano_bytes=row.byte_size,
        fecha_creacion=row.created_date,
    )


@app.get("/api/carrusel", response_model=ImagesListResponse, responses={500: {"model": ErrorResponse}})
def list_images(db: Session = Depends(get_db)) -> ImagesListResponse:
    """Image metadata for the carousel, newest first, without payloads."""
    rows = list_carousel_images(db)
    return ImagesListResponse(imagenes=[_image_metadata(row) for row in rows])


@app.post("/api/carrusel", response_model=ImageResponse, responses=ERROR_RESPONSES)
def upload_image(
    body: UploadImageRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> ImageResponse:
    """
    Add an image to the carousel.

    - nombre and imagen_base64 are required
    - imagen_base64 must be a data:image/... URL of at most MAX_IMAGE_BYTES characters
    - Legacy schema drift is repaired once before the insert is retried
    """
    try:
        row, repaired = create_carousel_image(
            db=db,
            name=body.nombre,
            encoded_image=body.imagen_base64,
            mime_type=body.tipo_mime,
            max_bytes=settings.MAX_IMAGE_BYTES,
        )
    except PayloadValidationError:
        record_upload_outcome("validation_error")
        log_route_data(request, result="validation_error")
        raise
    except ServiceError:
        record_upload_outcome("error")
        log_route_data(request, result="error")
        raise

    result = "repaired" if repaired else "created"
    record_upload_outcome(result)
    log_route_data(request, result=result, image_id=row.id, repaired=repaired)
    return ImageResponse(imagen=_image_metadata(row))


@app.get(
    "/api/carrusel/{image_id}",
    response_model=ImageDetailResponse,
    responses={404: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
def get_image(image_id: int, db: Session = Depends(get_db)) -> ImageDetailResponse:
    """One image including its data URL."""
    row = get_carousel_image(db, image_id)
    return ImageDetailResponse(
        imagen=ImageDetail(
            **_image_metadata(row).model_dump(),
            imagen_base64=row.encoded_image,
        )
    )


@app.delete(
    "/api/carrusel/{image_id}",
    response_model=DeleteImageResponse,
    responses={404: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
def delete_image(image_id: int, request: Request, db: Session = Depends(get_db)) -> DeleteImageResponse:
    """Hard-delete an image. 404 when it does not exist."""
    deleted_id = delete_carousel_image(db, image_id)
    log_route_data(request, image_id=deleted_id)
    return DeleteImageResponse(id=deleted_id)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
