"""
Database Module
===============

Provides database session management and base model.
"""

from entitlement_engine.db.base import Base
from entitlement_engine.db.session import (
    close_db,
    get_db,
    get_session_factory,
    init_db,
)

__all__ = ["Base", "get_db", "get_session_factory", "init_db", "close_db"]
