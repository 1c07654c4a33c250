"""SQLAlchemy ORM models."""

from sastscan.models.base import Base
from sastscan.models.finding import Finding
from sastscan.models.repository import Repository
from sastscan.models.scan import Scan

__all__ = ["Base", "Finding", "Repository", "Scan"]
