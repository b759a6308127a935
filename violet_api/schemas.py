"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data
- Response models for API responses

Field names follow the public (Spanish) API of the front-end. Request
fields are optional at the schema level so that missing values reach the
service validation and are answered with 400 like every other bad input.
"""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, Field


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SaveMessageRequest(BaseModel):
    """Body of POST /api/guardar."""
    texto: Optional[str] = Field(None, description="Message text, trimmed before storage")
    hcaptcha: Optional[str] = Field(None, description="hCaptcha verification token")

    model_config = {
        "json_schema_extra": {
            "examples": [{"texto": "Hola desde el muro", "hcaptcha": "10000000-aaaa-bbbb-cccc-000000000001"}]
        }
    }


class UploadImageRequest(BaseModel):
    """Body of POST /api/carrusel."""
    nombre: Optional[str] = Field(None, description="Display name")
    imagen_base64: Optional[str] = Field(None, description="Data URL, e.g. data:image/png;base64,...")
    tipo_mime: Optional[str] = Field(None, description="Media type; taken from the data URL when omitted")


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    success: bool = False
    error: str = Field(..., description="Error description")


class SaveMessageResponse(BaseModel):
    success: bool = True
    message: str
    id: int
    fecha: Optional[datetime] = Field(None, description="Store creation timestamp")


class MessageItem(BaseModel):
    id: int
    texto: str
    created_at: Optional[datetime] = None


class MessagesListResponse(BaseModel):
    success: bool = True
    mensajes: list[MessageItem] = Field(default_factory=list)


class ImageMetadata(BaseModel):
    """Carousel image without its payload."""
    id: int
    nombre: str
    tipo_mime: Optional[str] = None
    tamano_bytes: Optional[int] = Field(None, description="Length of the encoded data URL")
    fecha_creacion: Optional[date] = None


class ImageDetail(ImageMetadata):
    imagen_base64: Optional[str] = None


class ImagesListResponse(BaseModel):
    success: bool = True
    imagenes: list[ImageMetadata] = Field(default_factory=list)


class ImageResponse(BaseModel):
    success: bool = True
    imagen: ImageMetadata


class ImageDetailResponse(BaseModel):
    success: bool = True
    imagen: ImageDetail


class DeleteImageResponse(BaseModel):
    success: bool = True
    id: int


class LiveResponse(BaseModel):
    status: str = Field(..., description="Health status")


class HealthResponse(BaseModel):
    """
    Response model for GET /health.

    - tablas: which of the two tables exist
    - total_*: row counts (null when the table is missing)
    - columnas_carrusel: live column set of carousel_images
    """
    status: str
    database: str
    tablas: dict[str, bool]
    total_mensajes: Optional[int] = None
    total_imagenes: Optional[int] = None
    columnas_carrusel: list[str] = Field(default_factory=list)
    timestamp: datetime
