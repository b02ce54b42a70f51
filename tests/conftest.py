# tests/conftest.py
import pytest

from selfservice.config import Settings
from selfservice.database import Base, create_session_factory
from selfservice.database import models  # noqa: F401  테이블 등록


@pytest.fixture
def session_factory(tmp_path):
    """테스트마다 새 임시 파일 SQLite DB를 만들고 세션 팩토리를 반환합니다."""
    engine, factory = create_session_factory(f"sqlite:///{tmp_path / 'selfservice-test.db'}")
    Base.metadata.create_all(bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def settings() -> Settings:
    return Settings(database_url="sqlite://", log_file="/tmp/selfservice-test.log")
