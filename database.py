from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings


def build_engine(database_url: str, **kwargs) -> Engine:
    connect_args: dict[str, object] = dict(kwargs.pop("connect_args", {}))
    if database_url.startswith("sqlite"):
        connect_args.setdefault("check_same_thread", False)
    eng = create_engine(database_url, connect_args=connect_args, **kwargs)
    if database_url.startswith("sqlite"):
        event.listen(eng, "connect", _enable_sqlite_pragmas)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


def make_session_factory(eng: Engine) -> sessionmaker:
    return sessionmaker(bind=eng, autoflush=False, expire_on_commit=False)


engine = build_engine(get_settings().database_url)
SessionLocal = make_session_factory(engine)


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope(factory: Optional[sessionmaker] = None) -> Iterator[Session]:
    session: Session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
