"""Database connection manager with SQLite WAL mode support."""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import Engine, create_engine, event, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from quota_engine.db.base import Base

logger = logging.getLogger(__name__)


class DatabaseManager:
    """Owns the SQLAlchemy engine and hands out transactional sessions."""

    def __init__(
        self,
        database_url: str = "sqlite:///data/quota.db",
        echo: bool = False,
    ) -> None:
        """
        Initialize the database manager.

        Args:
            database_url: SQLAlchemy database URL
            echo: Enable SQL echo logging
        """
        self._database_url = database_url
        self._echo = echo
        self._engine: Engine | None = None
        self._session_factory: sessionmaker[Session] | None = None

    @property
    def is_sqlite(self) -> bool:
        return self._database_url.startswith("sqlite")

    @property
    def engine(self) -> Engine:
        """Get or create the database engine."""
        if self._engine is None:
            self._engine = self._create_engine()
        return self._engine

    def _create_engine(self) -> Engine:
        if self._database_url.startswith("sqlite:///"):
            db_path = self._database_url.replace("sqlite:///", "")
            if db_path and db_path != ":memory:":
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        engine = create_engine(
            self._database_url,
            echo=self._echo,
            pool_pre_ping=True,
        )
        if self.is_sqlite:
            self._configure_sqlite_pragmas(engine)
        return engine

    def _configure_sqlite_pragmas(self, engine: Engine) -> None:
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record) -> None:  # type: ignore
            cursor = dbapi_connection.cursor()
            # WAL lets the sweeper and request handlers read while one writes
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.close()

        logger.info("SQLite pragmas configured (WAL, foreign keys, busy timeout)")

    @property
    def session_factory(self) -> sessionmaker[Session]:
        if self._session_factory is None:
            self._session_factory = sessionmaker(
                bind=self.engine,
                autocommit=False,
                autoflush=False,
                expire_on_commit=False,
            )
        return self._session_factory

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        Get a database session that commits on success and rolls back on error.

        Yields:
            SQLAlchemy Session instance

        Usage:
            with db_manager.get_session() as session:
                session.execute(select(QuotaRecordRow))
        """
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def init_db(self) -> None:
        """Create all tables if they don't exist."""
        Base.metadata.create_all(bind=self.engine)
        logger.info("Database tables created/verified")

    def health_check(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False

    def close(self) -> None:
        """Dispose of the engine and its pool."""
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Database connection closed")
