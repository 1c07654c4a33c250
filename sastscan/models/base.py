"""SQLAlchemy declarative Base shared by repository, scan and finding models."""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""

    pass
