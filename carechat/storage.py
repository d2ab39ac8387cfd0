import logging
from typing import Generator

from fastapi import Request
from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session, declarative_base

logger = logging.getLogger(__name__)

# Base class for SQLAlchemy models
Base = declarative_base()

REQUIRED_TABLES = ("users", "conversations", "conversation_participants", "messages")


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Store:
    """
    Access object for the shared relational store.

    Owns the engine and the session factory. One instance is created by the
    process entry point and handed to request handlers; every messaging
    component receives a Session from it rather than reaching for a global.
    """

    def __init__(self, database_url: str, echo: bool = False) -> None:
        self.database_url = database_url
        connect_args = {}
        if database_url.startswith("sqlite"):
            # check_same_thread=False is required for SQLite to work with FastAPI's threadpool
            connect_args = {"check_same_thread": False}
        self.engine: Engine = create_engine(
            database_url,
            connect_args=connect_args,
            echo=echo,
        )
        if self.engine.dialect.name == "sqlite":
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def init_db(self) -> None:
        """
        Create all tables.
        Called during application startup.
        """
        logger.debug(f"Initializing database with URL: {self.engine.url!r}")
        try:
            # Import models to register them with Base.metadata
            from carechat import models  # noqa: F401

            logger.debug("Creating database tables...")
            Base.metadata.create_all(bind=self.engine)
            logger.info("Database initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise

    def drop_all(self) -> None:
        Base.metadata.drop_all(bind=self.engine)

    def session(self) -> Session:
        return self.SessionLocal()

    def check_health(self) -> bool:
        """
        Check if the database is reachable and schema is applied.

        Returns:
            True if DB is healthy and schema exists, False otherwise.
        """
        logger.debug("Checking database health...")
        try:
            with self.SessionLocal() as db:
                db.execute(text("SELECT 1"))
                logger.debug("Database connectivity OK")
            existing = set(inspect(self.engine).get_table_names())
            missing = [name for name in REQUIRED_TABLES if name not in existing]
            if missing:
                logger.error(f"Database schema not applied: missing tables {missing}")
                return False
            logger.debug("Database health check passed")
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

    def dispose(self) -> None:
        self.engine.dispose()


def get_store(request: Request) -> Store:
    return request.app.state.store


def get_db(request: Request) -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use; anything not
    committed by the operation is rolled back on close.
    """
    db = get_store(request).session()
    try:
        yield db
    finally:
        db.close()
