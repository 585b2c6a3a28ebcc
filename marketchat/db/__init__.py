"""Database module."""

from marketchat.db.base import Base
from marketchat.db.session import async_session_maker, get_db, init_db

__all__ = ["Base", "async_session_maker", "get_db", "init_db"]
