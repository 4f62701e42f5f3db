"""
Pytest configuration and fixtures for testing.
Provides test database, test client, seeded users and token helpers.
"""
import os

# Settings are read at import time; configure them before importing the app
os.environ.setdefault("JWT_SECRET", "test-signing-key-not-for-production")
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_chatty.db")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOG_JSON", "false")

import pytest
from typing import Dict, Generator, List
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from fastapi.testclient import TestClient
from db.database import Base
from db.models import Group, Message, User
from db.repository import Repository
from core.security import hash_password, issue_token
from main import app
from api.dependencies import get_db, get_event_bus, get_session_factory
from services.context import RequestContext
from services.event_bus import EventBus
from services.mediator import Mediator


# Test database URL (file-backed so live channels can open their own sessions)
TEST_DATABASE_URL = "sqlite:///./test_chatty.db"
TEST_PASSWORD = "password123"

# Create test engine
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False}
)
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture(scope="function")
def test_db() -> Generator[Session, None, None]:
    """
    Create a fresh database for each test.
    Automatically creates and destroys tables.
    """
    Base.metadata.create_all(bind=test_engine)

    db = TestSessionLocal()

    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def bus() -> EventBus:
    """A fresh event bus per test so subscribers never leak between tests."""
    return EventBus()


@pytest.fixture(scope="function")
def test_client(test_db: Session, bus: EventBus) -> TestClient:
    """
    Create a test client with test database dependency overrides.
    """
    def override_get_db():
        db = TestSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: TestSessionLocal
    app.dependency_overrides[get_event_bus] = lambda: bus

    client = TestClient(app)
    yield client

    # Clean up dependency overrides
    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def seed_test_users(test_db: Session) -> List[User]:
    """
    Seed test database with 4 users.

    user1, user2 and user3 are friends with each other; user4 has no friends.
    """
    repository = Repository(test_db)
    users = []

    for i in range(1, 5):
        user = repository.create_user(
            email=f"user{i}@example.com",
            password_hash=hash_password(TEST_PASSWORD),
            username=f"user{i}"
        )
        users.append(user)

    repository.add_friendship(users[0].id, users[1].id)
    repository.add_friendship(users[0].id, users[2].id)
    repository.add_friendship(users[1].id, users[2].id)

    return users


@pytest.fixture(scope="function")
def tokens(seed_test_users: List[User]) -> Dict[int, str]:
    """Current bearer token of every seeded user, keyed by user id."""
    return {user.id: issue_token(user.id, user.token_version) for user in seed_test_users}


@pytest.fixture(scope="function")
def seed_group(test_db: Session, seed_test_users: List[User]) -> Group:
    """A group holding user1, user2 and user3."""
    repository = Repository(test_db)
    return repository.create_group(name="Team", members=seed_test_users[:3])


@pytest.fixture(scope="function")
def seed_messages(test_db: Session, seed_group: Group, seed_test_users: List[User]) -> List[Message]:
    """Messages 101..105 (oldest to newest) in the seeded group."""
    messages = []
    for message_id in range(101, 106):
        message = Message(
            id=message_id,
            group_id=seed_group.id,
            user_id=seed_test_users[0].id,
            text=f"message {message_id}"
        )
        test_db.add(message)
        messages.append(message)
    test_db.commit()
    return messages


def auth_headers(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def context_for(user: User) -> RequestContext:
    """A resolved-ready context as a one-shot request would build it."""
    return RequestContext.from_token(issue_token(user.id, user.token_version))


@pytest.fixture(scope="function")
def mediator(test_db: Session, bus: EventBus) -> Mediator:
    return Mediator(Repository(test_db), bus)
