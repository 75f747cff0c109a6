# swimdesk/core/db.py - Engine and session handling for the billing database
from sqlalchemy import create_engine, text, event
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool, QueuePool
from typing import Generator, Optional
import logging
import time
import threading
from contextlib import contextmanager

from swimdesk.core.config import settings

logger = logging.getLogger(__name__)

SLOW_QUERY_SECONDS = 0.1


class DatabaseManager:
    """
    Lazily builds one engine and session factory per database URL.

    Sessions never expire attributes on commit: the payment service reads
    back the rows it just wrote (allocations, enrolment fields) to build
    its result.
    """

    def __init__(self, url: Optional[str] = None):
        self.url = url or settings.DATABASE_URL
        self.engine: Optional[Engine] = None
        self.SessionLocal: Optional[sessionmaker] = None
        self._ready = False
        self._init_lock = threading.Lock()

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    @property
    def display_url(self) -> str:
        return self.url.split("@")[-1] if "@" in self.url else "local"

    def initialize(self):
        if self._ready:
            return
        with self._init_lock:
            if self._ready:
                return
            try:
                self.engine = self._build_engine()
                self._register_listeners()
                self.SessionLocal = sessionmaker(
                    bind=self.engine,
                    autocommit=False,
                    autoflush=False,
                    expire_on_commit=False,
                )
                with self.engine.connect() as conn:
                    conn.execute(text("SELECT 1"))
                self._ready = True
                logger.info(f"Database ready ({self.display_url})")
            except Exception as e:
                logger.error(f"Could not initialize database {self.display_url}: {e}")
                raise

    def _build_engine(self) -> Engine:
        if self.is_sqlite:
            # One shared connection so in-memory databases survive across sessions
            return create_engine(
                self.url,
                echo=settings.DATABASE_ECHO,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False, "timeout": 30},
            )
        return create_engine(
            self.url,
            echo=settings.DATABASE_ECHO,
            poolclass=QueuePool,
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW,
            pool_timeout=settings.DATABASE_POOL_TIMEOUT,
            pool_recycle=settings.DATABASE_POOL_RECYCLE,
            pool_pre_ping=True,
            connect_args={
                "connect_timeout": 10,
                "application_name": f"swimdesk_{settings.ENV}",
                "options": "-c timezone=UTC",
            },
        )

    def _register_listeners(self):
        is_sqlite = self.is_sqlite

        @event.listens_for(self.engine, "connect")
        def enable_sqlite_foreign_keys(dbapi_connection, connection_record):
            if is_sqlite:
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()

        @event.listens_for(self.engine, "before_cursor_execute")
        def start_query_timer(conn, cursor, statement, parameters, context, executemany):
            context._swimdesk_started = time.time()

        @event.listens_for(self.engine, "after_cursor_execute")
        def log_slow_query(conn, cursor, statement, parameters, context, executemany):
            started = getattr(context, "_swimdesk_started", None)
            if started is None:
                return
            elapsed = time.time() - started
            if elapsed > SLOW_QUERY_SECONDS:
                logger.warning(f"Slow query ({elapsed:.3f}s): {statement[:100]}...")

    def get_session(self) -> Generator[Session, None, None]:
        """Yield a session and always close it; errors roll back first."""
        self.initialize()
        session = self.SessionLocal()
        try:
            yield session
        except Exception as e:
            session.rollback()
            logger.error(f"Session rolled back: {e}")
            raise
        finally:
            session.close()

    @contextmanager
    def transaction(self):
        """
        Commit on success, roll back on any error.

        Usage:
            with db_manager.transaction() as session:
                session.add(Product(name="Goggles", price_cents=2500))
        """
        self.initialize()
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Transaction rolled back: {e}")
            raise
        finally:
            session.close()

    def health_check(self) -> dict:
        try:
            self.initialize()
            started = time.time()
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return {
                "status": "healthy",
                "response_time_ms": round((time.time() - started) * 1000, 2),
                "database_url": self.display_url,
            }
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return {"status": "unhealthy", "error": str(e)}

    def close(self):
        if self.engine is not None:
            self.engine.dispose()
            logger.info("Database connections closed")


db_manager = DatabaseManager()


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency: one session per request."""
    yield from db_manager.get_session()


def get_engine() -> Engine:
    db_manager.initialize()
    return db_manager.engine


def health_check() -> dict:
    return db_manager.health_check()


__all__ = ["DatabaseManager", "db_manager", "get_db", "get_engine", "health_check"]
