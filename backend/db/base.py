"""SQLAlchemy declarative base and shared metadata for settlement state models."""

from __future__ import annotations

import logging

from sqlalchemy import JSON, MetaData
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)

metadata = MetaData()

# JSONB on PostgreSQL, generic JSON elsewhere (SQLite test engines).
PayloadJSON = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy declarative models."""

    metadata = metadata
