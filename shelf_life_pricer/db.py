"""
Database handle.

A ``Database`` is built once per app (or per CLI run / test) and passed to the
services that need it; nothing here is a module-level global.
"""

from __future__ import annotations

import logging
import pathlib
import typing as t
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.pool import StaticPool

from .errors import PersistenceError

log = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


def _sqlite_fk_pragma(dbapi_conn, _record) -> None:
    cur = dbapi_conn.cursor()
    cur.execute("PRAGMA foreign_keys=ON")
    cur.close()


class Database:
    def __init__(self, url: str, echo: bool = False):
        self.url = url
        kwargs: dict[str, t.Any] = {"echo": echo, "future": True}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if url in ("sqlite://", "sqlite:///:memory:"):
                # one shared connection, otherwise every session sees an empty db
                kwargs["poolclass"] = StaticPool
            else:
                path = url.split("sqlite:///", 1)[-1]
                if path:
                    pathlib.Path(path).parent.mkdir(parents=True, exist_ok=True)
        self.engine: Engine = create_engine(url, **kwargs)
        if url.startswith("sqlite"):
            event.listen(self.engine, "connect", _sqlite_fk_pragma)
        self._sessions = sessionmaker(bind=self.engine, expire_on_commit=False)

    def create_all(self) -> None:
        # imported for the side effect of registering the tables
        from . import models  # noqa: F401

        Base.metadata.create_all(self.engine)
        log.info("schema ready at %s", self.engine.url.render_as_string(hide_password=True))

    def drop_all(self) -> None:
        Base.metadata.drop_all(self.engine)

    @contextmanager
    def session(self) -> t.Iterator[Session]:
        """Commit on success, roll back and wrap DB errors as PersistenceError."""
        s = self._sessions()
        try:
            yield s
            s.commit()
        except StaleDataError as e:
            s.rollback()
            raise PersistenceError(f"Row was modified by another request: {e}") from e
        except SQLAlchemyError as e:
            s.rollback()
            raise PersistenceError(f"Database error: {e}") from e
        except Exception:
            s.rollback()
            raise
        finally:
            s.close()

    def dispose(self) -> None:
        self.engine.dispose()
