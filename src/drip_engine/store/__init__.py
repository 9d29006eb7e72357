"""Rule, campaign and execution-state persistence."""

from .backends import DatabaseBackend, PostgresBackend, SQLiteBackend, create_backend
from .repository import CampaignStore

__all__ = [
    "CampaignStore",
    "DatabaseBackend",
    "PostgresBackend",
    "SQLiteBackend",
    "create_backend",
]
