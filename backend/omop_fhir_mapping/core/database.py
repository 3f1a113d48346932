"""Database configuration and session management."""

from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import BigInteger, Integer, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from omop_fhir_mapping.core.config import settings

# OMOP keys are BIGINT; SQLite only autoincrements INTEGER PRIMARY KEY columns.
BigIntKey = BigInteger().with_variant(Integer, "sqlite")

# Lazy initialized sync engine
_sync_engine: Engine | None = None


def get_sync_engine() -> Engine:
    """Get or create the sync engine.

    Lazily creates the engine on first use to avoid import errors
    when the database driver is not installed (e.g., in test environments).
    """
    global _sync_engine
    if _sync_engine is None:
        _sync_engine = create_engine(
            settings.database_url,
            echo=settings.debug,
            future=True,
        )
    return _sync_engine


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models.

    OMOP tables own their native integer keys, so no common columns are
    declared here.
    """


@contextmanager
def session_scope(engine: Engine | None = None) -> Generator[Session, None, None]:
    """Provide a transactional session.

    Usage:
        with session_scope() as session:
            store = DatabaseObservationStore(session)
            ...
    """
    factory = sessionmaker(
        bind=engine or get_sync_engine(),
        expire_on_commit=False,
        autoflush=False,
    )
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(engine: Engine | None = None) -> None:
    """Initialize database tables.

    For development only - the OMOP schema is normally provisioned externally.
    """
    # Import models so every table is registered on Base.metadata
    import omop_fhir_mapping.models  # noqa: F401

    Base.metadata.create_all(bind=engine or get_sync_engine())


def close_db() -> None:
    """Dispose of the engine's connection pool."""
    global _sync_engine
    if _sync_engine is not None:
        _sync_engine.dispose()
        _sync_engine = None
