from typing import Iterator, Optional

from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from cartrecovery.logging_config import get_logger

logger = get_logger("database")

Base = declarative_base()


class Database:
    """Owns the engine and session factory for one process."""

    def __init__(self, url: str, *, statement_timeout_ms: Optional[int] = None, pool_timeout: float = 5.0):
        self.url = url
        self.statement_timeout_ms = statement_timeout_ms
        self.pool_timeout = pool_timeout
        self.engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None

    def open(self) -> None:
        if self.engine is not None:
            return
        connect_args = {}
        if self.statement_timeout_ms and self.url.startswith("postgresql"):
            connect_args["options"] = f"-c statement_timeout={self.statement_timeout_ms}"
        self.engine = create_engine(
            self.url,
            pool_pre_ping=True,
            pool_timeout=self.pool_timeout,
            connect_args=connect_args,
        )
        self._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        logger.info("Database engine created", extra={"context": {"url": self.engine.url.render_as_string()}})

    def close(self) -> None:
        if self.engine is None:
            return
        self.engine.dispose()
        self.engine = None
        self._session_factory = None
        logger.info("Database engine disposed")

    def session(self) -> Session:
        if self._session_factory is None:
            raise RuntimeError("Database is not open")
        return self._session_factory()


def get_db(request: Request) -> Iterator[Session]:
    db = request.app.state.container.database.session()
    try:
        yield db
    finally:
        db.close()
