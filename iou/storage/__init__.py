"""Storage layer package."""

from iou.config import get_settings
from iou.storage.base import Repository
from iou.storage.database import (
    get_db_session,
    init_db,
    DatabaseService,
)
from iou.storage.memory import MemoryRepository
from iou.storage.sql_repository import SqlRepository


def create_repository() -> Repository:
    """Build the Repository selected by ``Settings.storage_backend``."""
    if get_settings().storage_backend == "postgres":
        return SqlRepository()
    return MemoryRepository()


__all__ = [
    "create_repository",
    "get_db_session",
    "init_db",
    "DatabaseService",
    "MemoryRepository",
    "Repository",
    "SqlRepository",
]
