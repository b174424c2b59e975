"""Base class for database stores with common session management."""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy.orm import Session, sessionmaker


class StoreError(Exception):
    """A read the trading path depends on could not be served."""


class BaseStore:
    """Base class providing common database session management.

    Stores are handed a session factory at construction so each service
    (and each test) decides which database it talks to.

        with self._db_session() as session:
            session.add(...)

    The session will be committed on normal exit and rolled back on exception.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @contextmanager
    def _db_session(self) -> Generator[Session, None, None]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
