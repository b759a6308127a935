"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import Column, Date, DateTime, Index, Integer, String, Text
from sqlalchemy import text as sql_text

from violet_api.storage import Base


# Column lengths enforced before insert (see utils.truncate)
ORIGIN_ADDRESS_MAX = 50
CLIENT_DESCRIPTOR_MAX = 500

# Enforced by storage.validate_image_upload
IMAGE_NAME_MAX = 255
MIME_TYPE_MAX = 100

# Integer primary keys are int4 on PostgreSQL
IMAGE_ID_MAX = 2**31 - 1


class Message(Base):
    """
    Short user-submitted message.

    Table: messages
    Primary Key: id (store generated, creation order)
    """
    __tablename__ = "messages"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    text = Column(Text, nullable=False)
    verification_token = Column(Text, nullable=True)
    origin_address = Column(String(ORIGIN_ADDRESS_MAX), nullable=True)
    client_descriptor = Column(String(CLIENT_DESCRIPTOR_MAX), nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=sql_text("CURRENT_TIMESTAMP"))


class CarouselImage(Base):
    """
    Image shown in the front-end carousel, stored inline as a data URL.

    Table: carousel_images
    legacy_url is kept only so older deployments' rows stay readable;
    writers always store an empty string.
    """
    __tablename__ = "carousel_images"
    __table_args__ = (
        Index("ix_carousel_images_created_date", "created_date"),
        {"sqlite_autoincrement": True},
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(IMAGE_NAME_MAX), nullable=False)
    legacy_url = Column(Text, nullable=True)
    encoded_image = Column(Text, nullable=True)
    mime_type = Column(String(MIME_TYPE_MAX), nullable=True)
    byte_size = Column(Integer, nullable=True)
    created_date = Column(Date, server_default=sql_text("CURRENT_DATE"))
    created_at = Column(DateTime, server_default=sql_text("CURRENT_TIMESTAMP"))


# Columns that older tables may lack; added in place when missing
MESSAGE_OPTIONAL_COLUMNS = ("verification_token", "origin_address", "client_descriptor", "created_at")
CAROUSEL_OPTIONAL_COLUMNS = ("encoded_image", "mime_type", "byte_size", "created_at")
