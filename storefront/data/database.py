"""
Database connection and session management.
Uses SQLAlchemy for Postgres connections (SQLite for local runs and tests).
"""
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DataError, IntegrityError, OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from starlette.requests import Request

from storefront.core.config import StorefrontConfig
from storefront.core.errors import ClientInputError, DuplicateError, TransientStorageError
from storefront.utils.logger import get_logger

logger = get_logger("data.database")

# Base class for all our database models
Base = declarative_base()


def create_engine_from_config(config: StorefrontConfig) -> Engine:
    """
    Create the SQLAlchemy engine for ``config.database_url``.

    Postgres connections carry a server-side statement_timeout so no single
    statement can hang a request; SQLite gets a busy timeout and foreign keys.
    """
    url = config.database_url
    if url.startswith("sqlite"):
        in_memory = url in ("sqlite://", "sqlite:///:memory:")
        engine = create_engine(
            url,
            echo=config.echo_sql,
            connect_args={"check_same_thread": False, "timeout": 30},
            # One shared connection, otherwise every thread sees its own empty database
            poolclass=StaticPool if in_memory else None,
        )
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        return engine

    # pool_pre_ping ensures connections are alive before using them
    return create_engine(
        url,
        echo=config.echo_sql,
        pool_pre_ping=True,
        pool_size=config.pool_size,
        max_overflow=config.max_overflow,
        connect_args={
            "connect_timeout": 15,
            "options": f"-c statement_timeout={int(config.statement_timeout_ms)}",
        },
    )


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_session_factory(engine: Engine) -> sessionmaker:
    """Session factory; objects stay readable after commit for response serialization."""
    return sessionmaker(bind=engine, expire_on_commit=False)


def get_db(request: Request) -> Iterator[Session]:
    """
    FastAPI dependency for a request-scoped session.
    Usage: def endpoint(db: Session = Depends(get_db)): ...
    """
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def dialect_name(session: Session) -> str:
    return session.get_bind().dialect.name


def apply_statement_timeout(session: Session, seconds: Optional[float]) -> None:
    """
    Bound the statements of the current transaction to ``seconds``.
    Only Postgres supports a per-transaction timeout; other dialects rely on
    the engine-level settings.
    """
    if not seconds or dialect_name(session) != "postgresql":
        return
    session.execute(text(f"SET LOCAL statement_timeout = {int(seconds * 1000)}"))


@contextmanager
def storage_errors(operation: str) -> Iterator[None]:
    """
    Translate storage-engine failures into the storefront error taxonomy.

    Unique/check violations become DuplicateError; values the engine rejects
    (a bad regex, an out-of-range number) become ClientInputError; timeouts,
    lock contention and serialization failures become TransientStorageError.
    The driver's message is logged, never passed through to the caller.
    """
    try:
        yield
    except IntegrityError as e:
        logger.warning("storage: operation=%s result=integrity_error error=%s", operation, e.orig)
        raise DuplicateError(f"{operation} conflicts with an existing record") from e
    except DataError as e:
        logger.warning("storage: operation=%s result=data_error error=%s", operation, e.orig)
        raise ClientInputError(f"{operation} was given a value the database cannot use") from e
    except OperationalError as e:
        logger.error("storage: operation=%s result=operational_error error=%s", operation, e.orig)
        raise TransientStorageError(f"{operation} could not be completed, please retry") from e


@contextmanager
def transaction(session: Session, name: str = "transaction") -> Iterator[Session]:
    """
    Run a unit of work all-or-nothing: commit when the block finishes,
    roll back and re-raise on any exception.
    """
    try:
        with storage_errors(name):
            yield session
            session.commit()
        logger.info("%s committed", name)
    except Exception as e:
        session.rollback()
        logger.error("%s rolled back: %s", name, e)
        raise


def init_db(engine: Engine) -> None:
    """Create tables that don't exist yet. In production, use migrations instead."""
    # Import models so they register with Base.metadata
    from storefront.data import models  # noqa: F401
    Base.metadata.create_all(bind=engine)
