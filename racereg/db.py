from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session, DeclarativeBase
from sqlalchemy.pool import StaticPool

from .settings import settings

class Base(DeclarativeBase):
    pass

_engine = None
_SessionLocal = None

def init_db(db_url: str | None = None) -> None:
    global _engine, _SessionLocal
    if _engine is not None:
        return
    url = db_url or settings.RACEREG_DB_URL
    kwargs = {}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # one shared connection, otherwise every session sees an empty database
            kwargs["poolclass"] = StaticPool
    _engine = create_engine(url, future=True, echo=False, **kwargs)
    _SessionLocal = sessionmaker(bind=_engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
    from . import models  # noqa
    Base.metadata.create_all(bind=_engine)

def dispose_db() -> None:
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None

def session_factory() -> sessionmaker:
    if _SessionLocal is None:
        init_db()
    return _SessionLocal

def get_session() -> Session:
    db = session_factory()()
    try:
        yield db
    finally:
        db.close()
