import logging
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, TypeVar

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import InterfaceError, OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, sessionmaker

from errors import StoreUnavailableError

logger = logging.getLogger(__name__)

# Driver errors that mean "could not talk to the store"
UNAVAILABLE_ERRORS = (OperationalError, InterfaceError, PoolTimeoutError)

T = TypeVar("T")


class Database:
    """
    Store client for one database.

    Replaces a process-wide engine: each store gets its own instance, opened
    and closed explicitly by whoever owns it (the app lifespan, a test fixture,
    a CLI run).
    """

    def __init__(self, name: str, url: str, metadata, timeout: float = 10.0):
        self.name = name
        self.url = url
        self.metadata = metadata
        self.timeout = timeout
        self.engine: Optional[Engine] = None
        self.SessionLocal: Optional[sessionmaker] = None

    def open(self) -> "Database":
        connect_args = {}
        if self.url.startswith("sqlite"):
            connect_args = {"check_same_thread": False, "timeout": self.timeout}
        self.engine = create_engine(
            self.url,
            connect_args=connect_args,
            echo=False,
            pool_pre_ping=True,
        )
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, autocommit=False, expire_on_commit=False)
        self.metadata.create_all(bind=self.engine)
        logger.info("%s store opened (%s)", self.name, self.engine.url.render_as_string(hide_password=True))
        return self

    def close(self) -> None:
        if self.engine is not None:
            self.engine.dispose()
            logger.info("%s store closed", self.name)
        self.engine = None
        self.SessionLocal = None

    def __enter__(self) -> "Database":
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

    def session(self) -> Session:
        if self.SessionLocal is None:
            raise StoreUnavailableError(f"{self.name} store is not open")
        return self.SessionLocal()

    def read(self, query: Callable[[Session], T]) -> T:
        """Run a read-only query in a short-lived session."""
        db = self.session()
        try:
            return query(db)
        except UNAVAILABLE_ERRORS as exc:
            raise StoreUnavailableError(f"{self.name} store unavailable: {exc}") from exc
        finally:
            db.close()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Local transaction scope: commit on success, roll back on any error."""
        db = self.session()
        try:
            yield db
            db.commit()
        except UNAVAILABLE_ERRORS as exc:
            db.rollback()
            raise StoreUnavailableError(f"{self.name} store unavailable: {getattr(exc, 'orig', None) or exc}") from exc
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
