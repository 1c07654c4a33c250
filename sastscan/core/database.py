"""PostgreSQL connection and session management."""

from collections.abc import Generator
from functools import lru_cache

from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, sessionmaker

from sastscan.core.config import Settings, get_settings


def create_session_factory(settings: Settings) -> sessionmaker[Session]:
    """Build an engine for settings.DATABASE_URL and return a session factory bound to it."""
    engine = create_engine(
        settings.DATABASE_URL,
        pool_pre_ping=True,
        echo=settings.DEBUG,
    )
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@lru_cache
def get_session_factory() -> sessionmaker[Session]:
    """Process-wide session factory built once from cached settings."""
    return create_session_factory(get_settings())


def get_db() -> Generator[Session, None, None]:
    """Dependency that yields a DB session and closes it when done."""
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()


def check_db_connected(db: Session) -> bool:
    """Run a trivial query to verify the database is reachable."""
    try:
        db.execute(text("SELECT 1"))
        return True
    except Exception:
        return False
