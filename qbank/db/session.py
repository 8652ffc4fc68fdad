"""
Database session management for the question bank workflow.
Owns the SQLAlchemy engine for the configured DATABASE_URL and hands out
transactional sessions to the SQL stores.
"""

import logging
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from qbank.core.settings import Settings, get_settings
from qbank.db.models import Base

logger = logging.getLogger(__name__)


class DatabaseSessionManager:
    """Engine plus session factory for one database; tables are created on start."""

    def __init__(self, settings: Optional[Settings] = None, database_url: Optional[str] = None):
        self.settings = settings or get_settings()
        self.database_url = database_url or self.settings.database_url

        try:
            self._engine = create_engine(
                self.database_url,
                echo=self.settings.database_echo,
                **self._engine_options(),
            )
            Base.metadata.create_all(self._engine)
        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise

        self._session_factory = sessionmaker(bind=self._engine, autoflush=False, expire_on_commit=False)
        logger.info(f"Database ready: {self._engine.url.render_as_string(hide_password=True)}")

    def _engine_options(self) -> dict:
        if not self.database_url.startswith("sqlite"):
            return {"pool_pre_ping": True, "pool_recycle": 3600}

        options: dict = {"connect_args": {"check_same_thread": False}}
        if self.settings.is_in_memory_database(self.database_url):
            # One shared connection, otherwise every session sees an empty database
            options["poolclass"] = StaticPool
        return options

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """One transaction: committed when the block exits cleanly, rolled back otherwise."""
        with self._session_factory.begin() as session:
            yield session

    def close(self) -> None:
        self._engine.dispose()
