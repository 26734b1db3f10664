"""Airtable-backed repositories."""

from .content import ContentRepository
from .records import RecordRepository

__all__ = ["ContentRepository", "RecordRepository"]
