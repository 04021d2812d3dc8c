"""SQLAlchemy ORM models for albumsync."""

from albumsync.models.base import Base
from albumsync.models.mapping import PhotoMapping

__all__ = [
    "Base",
    "PhotoMapping",
]
