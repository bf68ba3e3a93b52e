import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from fieldtrack.models_sqlalchemy import Base
from fieldtrack.models_sqlalchemy import models  # noqa: F401  (registers tables)
from fieldtrack.mobile.local_store import LocalStore


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite database so the worker and the test get separate connections."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'fieldtrack-test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def local_store(tmp_path):
    store = LocalStore(str(tmp_path / "offline-test.db")).start()
    yield store
    store.stop()
