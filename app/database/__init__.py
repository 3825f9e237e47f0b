"""Database package exports."""

from .database import (
    AsyncSessionLocal,
    close_db,
    engine,
    health_check,
    init_db,
)

__all__ = [
    "AsyncSessionLocal",
    "close_db",
    "engine",
    "health_check",
    "init_db",
]
