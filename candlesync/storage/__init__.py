"""Candle persistence.

`SqlCandleStore` talks to any SQLAlchemy URL whose dialect supports
`INSERT ... ON CONFLICT DO UPDATE` (SQLite >= 3.24, PostgreSQL).
"""

from .config import StoreConfig
from .interfaces import CandleStore
from .stores import SqlCandleStore

__all__ = ["CandleStore", "SqlCandleStore", "StoreConfig"]
