"""
Pytest configuration and fixtures
"""
from datetime import date

import pytest
from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from convo_ai.database import Base
from convo_ai.models import Conversation
from convo_ai.services.generation import EndpointReply, GenerationClient, GenerationEndpoint
from convo_ai.services.message_store import MessageStore
from convo_ai.services.rate_limiter import RateLimiter
from convo_ai.services.thread_linker import ConversationLocks


# Use in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"


class FakeEndpoint(GenerationEndpoint):
    """Generation endpoint double that records every call"""

    def __init__(self, reply="Here is a thoughtful answer.", fail_times=0, error=None):
        self.reply = reply
        self.fail_times = fail_times
        self.error = error or RuntimeError("endpoint unavailable")
        self.calls = []

    def _answer(self, kind, payload, options):
        self.calls.append((kind, payload, options))
        if self.fail_times != 0:
            self.fail_times -= 1
            raise self.error
        return EndpointReply(text=self.reply, tokens_used=42, model="fake-model")

    def complete(self, prompt, options):
        return self._answer("complete", prompt, options)

    def chat(self, history, options):
        return self._answer("chat", history, options)


class Clock:
    """Mutable 'today' for the rate limiter"""

    def __init__(self, today=date(2024, 3, 10)):
        self.today = today

    def __call__(self):
        return self.today


@pytest.fixture
def test_engine():
    """Create test database engine"""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def file_engine(tmp_path):
    """File-backed engine for tests where worker threads open their own sessions"""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def test_db_session(test_engine):
    """Create test database session"""
    TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)
    session = TestSessionLocal()
    yield session
    session.close()


@pytest.fixture
def store(test_db_session):
    return MessageStore(test_db_session)


@pytest.fixture
def locks():
    return ConversationLocks()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def rate_limiter(clock):
    return RateLimiter(daily_limit=10, today=clock)


@pytest.fixture
def make_endpoint():
    """Factory for endpoint doubles with custom replies or failures"""
    return FakeEndpoint


@pytest.fixture
def endpoint():
    return FakeEndpoint()


@pytest.fixture
def generation_client(endpoint, rate_limiter):
    return GenerationClient(endpoint, rate_limiter, default_model="fake-model")


@pytest.fixture
def scheduler():
    """Running background scheduler, shut down after the test"""
    sched = BackgroundScheduler(timezone="UTC")
    sched.start()
    yield sched
    sched.shutdown(wait=False)


@pytest.fixture
def sample_conversation(test_db_session):
    """Create sample conversation"""
    conv = Conversation(user_id="test_user", assessment_pattern="regular")
    test_db_session.add(conv)
    test_db_session.commit()
    test_db_session.refresh(conv)
    return conv


@pytest.fixture
def sample_messages(store, sample_conversation):
    """Create a linked user/assistant exchange"""
    first = store.insert_message(sample_conversation.id, "user", "My period has been irregular lately")
    second = store.insert_message(
        sample_conversation.id, "assistant", "Thanks for telling me. How long has that been going on?",
        parent_message_id=first.id,
    )
    return [first, second]


# Test markers
def pytest_configure(config):
    """Register custom markers"""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow tests")
