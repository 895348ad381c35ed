import pytest

from racereg import db


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def session_factory(tmp_path):
    """File-backed SQLite so concurrent sessions see each other's commits."""
    db.dispose_db()
    db.init_db(f"sqlite:///{tmp_path / 'racereg.db'}")
    yield db.session_factory()
    db.dispose_db()


@pytest.fixture
def session(session_factory):
    s = session_factory()
    yield s
    s.close()
