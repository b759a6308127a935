"""Violet Virgo backend: message wall and image carousel API."""

__version__ = "1.0.0"
