import logging
from contextlib import contextmanager

from sqlalchemy import create_engine, event, text
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from .config import DB_TIMEOUT_SECONDS
from .errors import ConflictError, TransientError

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Database:
    """Connection handle for the relational store.

    The handle is created once by the application and handed to whoever needs
    a session. ``open`` builds the engine, ``close`` disposes of it, and
    ``is_healthy`` runs a trivial round trip.
    """

    def __init__(self, url: str, timeout: float = DB_TIMEOUT_SECONDS):
        self.url = url
        self.timeout = timeout
        self.engine = None
        self._sessionmaker = None

    @property
    def is_open(self) -> bool:
        return self.engine is not None

    def open(self) -> "Database":
        if self.engine is not None:
            return self
        if self.url.startswith("sqlite"):
            # For SQLite in FastAPI, allow cross-thread access
            engine = create_engine(
                self.url,
                echo=False,
                pool_pre_ping=True,
                connect_args={"check_same_thread": False, "timeout": self.timeout},
            )
            event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        else:
            engine = create_engine(
                self.url,
                echo=False,
                pool_pre_ping=True,
                pool_timeout=self.timeout,
                connect_args={"connect_timeout": int(self.timeout)},
            )
        self.engine = engine
        self._sessionmaker = sessionmaker(bind=engine, autoflush=False, autocommit=False)
        logger.info("Opened database %s", engine.url.render_as_string(hide_password=True))
        return self

    def close(self) -> None:
        if self.engine is None:
            return
        self.engine.dispose()
        self.engine = None
        self._sessionmaker = None
        logger.info("Closed database")

    def is_healthy(self) -> bool:
        if self.engine is None:
            return False
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            logger.warning("Database health check failed: %s", exc)
            return False
        return True

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    @contextmanager
    def session(self):
        if self._sessionmaker is None:
            raise TransientError("Database is not open")
        session = self._sessionmaker()
        try:
            yield session
            session.commit()
        except OperationalError as exc:
            session.rollback()
            logger.error("Storage operation failed: %s", exc)
            raise TransientError("Storage is temporarily unavailable") from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


def _is_unique_violation(exc: IntegrityError) -> bool:
    message = str(exc.orig).lower()
    return "unique" in message or "duplicate key" in message


def insert_unique(session, row, constraint: str, message: str):
    """Add ``row`` and flush it, letting the store's unique constraint decide.

    A violation surfaces as ``ConflictError`` naming ``constraint``; the
    surrounding transaction is left for the caller's scope to roll back.
    """
    session.add(row)
    try:
        session.flush()
    except IntegrityError as exc:
        if _is_unique_violation(exc):
            raise ConflictError(message, constraint=constraint) from exc
        raise ConflictError("Write rejected by a storage constraint") from exc
    return row
