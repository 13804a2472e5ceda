# wct_rewards/db.py
"""Engine and session lifecycle for the rewards database"""

import logging
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.exc import SQLAlchemyError

from wct_rewards.models.db import Base
from wct_rewards.db_config import DatabaseManager

logger = logging.getLogger(__name__)


class Database:
    """Owns one engine; the API, the scheduled jobs and the tests share it through `db`"""

    def __init__(self):
        self._engine = None
        self._SessionLocal = None

    @property
    def initialized(self) -> bool:
        return self._SessionLocal is not None

    def init(self, connection_string: Optional[str] = None, **engine_kwargs) -> None:
        """
        Bind to `connection_string` (or the URL resolved from settings) and
        create any missing tables. Extra keyword arguments go to create_engine.
        """
        if connection_string is None:
            try:
                connection_string = DatabaseManager.initialize_from_env()
            except ValueError as e:
                logger.error(f"No usable database configuration: {e}")
                raise

        try:
            self._engine = create_engine(connection_string, **engine_kwargs)
            Base.metadata.create_all(self._engine)
        except SQLAlchemyError as e:
            logger.error(f"Database initialization failed: {e}")
            raise
        # services keep using rows after they commit
        self._SessionLocal = sessionmaker(bind=self._engine, expire_on_commit=False)
        logger.info(f"Database initialized ({self._engine.url.get_backend_name()})")

    def get_session(self) -> Session:
        if not self._SessionLocal:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._SessionLocal()

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Session committed on exit, rolled back if the block raises"""
        session = self.get_session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        if self._engine:
            self._engine.dispose()
        self._engine = None
        self._SessionLocal = None


db = Database()
