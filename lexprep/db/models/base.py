"""Declarative base and column helpers shared by every model module."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all lexprep models."""


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column stores UTC without tzinfo."""
    return datetime.now(UTC).replace(tzinfo=None)


def enum_column(enum_cls: type[Enum]) -> SAEnum:
    """Portable VARCHAR-backed enum column type."""
    return SAEnum(enum_cls, native_enum=False, length=32, validate_strings=True)
