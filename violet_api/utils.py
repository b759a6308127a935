"""
Utility functions for the Violet Virgo API.
"""

import logging
from typing import Optional

from fastapi import Request

logger = logging.getLogger(__name__)

# Every carousel payload is a data URL: data:image/<subtype>;base64,<data>
IMAGE_DATA_MARKER = "data:image/"
DEFAULT_MIME_TYPE = "image/jpeg"

UNKNOWN_ORIGIN = "desconocida"
UNKNOWN_CLIENT = "desconocido"


def truncate(value: Optional[str], max_length: int) -> Optional[str]:
    """Cut value to max_length characters; None passes through."""
    if value is None:
        return None
    return value[:max_length]


def client_origin(request: Request) -> str:
    """
    Network origin of the caller.

    Behind the hosting proxy the socket peer is the proxy itself, so the
    first X-Forwarded-For hop wins when present.
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    if request.client and request.client.host:
        return request.client.host
    return UNKNOWN_ORIGIN


def client_descriptor(request: Request) -> str:
    """Declared client identity (User-Agent)."""
    return request.headers.get("user-agent") or UNKNOWN_CLIENT


def has_image_marker(encoded_image: str) -> bool:
    return encoded_image.startswith(IMAGE_DATA_MARKER)


def mime_type_from_data_url(encoded_image: str) -> Optional[str]:
    """
    Extract the media type embedded in a data URL.

    Returns:
        "image/png" for "data:image/png;base64,...", None if the prefix is
        not a well-formed data URL header.
    """
    if not encoded_image.startswith("data:"):
        return None
    header, sep, _ = encoded_image.partition(",")
    if not sep:
        return None
    media_type = header[len("data:"):].split(";")[0].strip()
    kind, slash, subtype = media_type.partition("/")
    if not kind or not slash or not subtype:
        return None
    return media_type
