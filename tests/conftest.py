import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from marksapi.models.base import Base
from marksapi.models import marks, user  # noqa: F401
from marksapi.models.user import UserRole
from marksapi.repositories.user_repository import UserRepository


@pytest.fixture
def engine():
    """테스트마다 새 인메모리 SQLite"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def db_session(engine):
    TestingSession = sessionmaker(
        bind=engine, autocommit=False, autoflush=False, expire_on_commit=False
    )
    session = TestingSession()
    yield session
    session.close()


@pytest.fixture
def make_user(db_session):
    counter = {"n": 0}

    def _make(marks: int = 0, role: UserRole = UserRole.USER):
        counter["n"] += 1
        return UserRepository(db_session).create_user(
            world_id_nullifier=f"0xnullifier{counter['n']}",
            nickname=f"helper{counter['n']}",
            role=role,
            marks=marks,
        )

    return _make
