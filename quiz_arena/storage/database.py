"""Engine, session factory and the transaction boundary used by every service."""

from __future__ import annotations

from contextlib import contextmanager
import logging
from typing import Callable, Iterator, TypeVar

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from quiz_arena.constants.storage_constants import DEFAULT_DATABASE_URL, SQLITE_BUSY_TIMEOUT_SECONDS
from quiz_arena.core.errors import ArenaError, ConcurrentUpdateError
from quiz_arena.core.models import Base

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_WRITE_RETRIES: int = 3


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Database:
    """Owns the engine and hands out transactional sessions."""

    def __init__(self, url: str = DEFAULT_DATABASE_URL, echo: bool = False) -> None:
        self.url = url
        connect_args: dict[str, object] = {}
        if url.startswith("sqlite"):
            connect_args = {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_SECONDS}
        self.engine: Engine = create_engine(url, echo=echo, connect_args=connect_args)
        if self.engine.dialect.name == "sqlite":
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    def drop_schema(self) -> None:
        Base.metadata.drop_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Yield a session whose work commits together or not at all.

        Unique-constraint violations raised while flushing or committing are
        reported as ``ConcurrentUpdateError``: another request changed the
        same rows first.
        """
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            logger.info("Transaction rejected by a constraint: %s", exc.orig)
            raise ConcurrentUpdateError("The record was changed by a concurrent request.") from exc
        except OperationalError as exc:
            session.rollback()
            if "locked" in str(exc.orig).lower():
                raise ConcurrentUpdateError("The store is busy with a concurrent request; retry.") from exc
            raise
        except ArenaError:
            session.rollback()
            raise
        except Exception:
            session.rollback()
            logger.exception("Transaction rolled back after an unexpected error")
            raise
        finally:
            session.close()


def retry_on_concurrent_update(operation: Callable[[], T], attempts: int = MAX_WRITE_RETRIES) -> T:
    """Run an idempotent unit of work again when a concurrent write beat it."""
    for attempt in range(1, attempts):
        try:
            return operation()
        except ConcurrentUpdateError:
            logger.debug("Concurrent update detected, retrying (%d/%d)", attempt, attempts)
    return operation()
