"""Core app configuration and database."""

from sastscan.core.config import Settings, get_settings
from sastscan.core.database import get_db, get_session_factory

__all__ = ["Settings", "get_settings", "get_db", "get_session_factory"]
