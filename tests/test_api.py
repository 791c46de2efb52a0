"""
Integration tests for API endpoints
"""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from convo_ai.api import deps
from convo_ai.database import get_db
from convo_ai.main import app
from convo_ai.queue.ai_worker import AIWorker
from convo_ai.queue.config import BackoffConfig, QueueConfig
from convo_ai.queue.job_queue import JobQueue


@pytest.fixture
def client(test_db_session, generation_client, rate_limiter, locks):
    """Create test client wired to the in-memory database and fake endpoint"""

    def override_get_db():
        yield test_db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[deps.get_generation_client] = lambda: generation_client
    app.dependency_overrides[deps.get_rate_limiter] = lambda: rate_limiter
    app.dependency_overrides[deps.get_locks] = lambda: locks
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def ai_queue(test_engine, generation_client, locks, scheduler):
    worker = AIWorker(sessionmaker(bind=test_engine), generation_client, locks)
    queue = JobQueue(
        QueueConfig(name="ai-api-test", attempts=2, backoff=BackoffConfig(delay=10)),
        worker.process,
        scheduler,
    )
    app.dependency_overrides[deps.get_ai_queue] = lambda: queue
    app.dependency_overrides[deps.get_job_queues] = lambda: {queue.name: queue}
    return queue


def _chat(client, message, user="u1", **extra):
    return client.post("/chat", json=dict(message=message, **extra), headers={"X-User-Id": user})


class TestHealthEndpoint:
    """Test health check endpoint"""

    def test_health_check(self, client):
        """Test health check returns OK"""
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert "Convo AI" in response.json()["app"]

    def test_root_endpoint(self, client):
        """Test root endpoint"""
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert "message" in data
        assert "docs" in data
        assert "health" in data


@pytest.mark.integration
class TestChatEndpoint:
    """Test chat endpoint"""

    def test_requires_user_header(self, client):
        """Test chat without a caller header is unauthorized"""
        response = client.post("/chat", json={"message": "Hello"})
        assert response.status_code == 401

    def test_rejects_empty_message(self, client):
        """Test empty message fails validation"""
        response = _chat(client, "")
        assert response.status_code == 422

    def test_new_conversation(self, client):
        """Test chat without conversation id starts one"""
        response = _chat(client, "Hello", assessment={"pattern": "regular"})

        assert response.status_code == 200
        data = response.json()
        assert data["conversation_id"] > 0
        assert data["user_message"]["role"] == "user"
        assert data["assistant_message"]["parent_message_id"] == data["user_message"]["id"]
        assert data["is_fallback"] is False
        assert data["preview"] == "Here is a thoughtful answer."

    def test_follow_up(self, client):
        """Test follow-up message links to the previous reply"""
        first = _chat(client, "Hello").json()

        response = _chat(client, "More please", conversation_id=first["conversation_id"])

        assert response.status_code == 200
        assert response.json()["user_message"]["parent_message_id"] == first["assistant_message"]["id"]

    def test_other_users_conversation_forbidden(self, client):
        """Test posting into another user's conversation"""
        first = _chat(client, "Hello").json()

        response = _chat(client, "Let me in", user="u2", conversation_id=first["conversation_id"])

        assert response.status_code == 403

    def test_unknown_conversation(self, client):
        """Test chat with unknown conversation id"""
        response = _chat(client, "Hello", conversation_id=12345)
        assert response.status_code == 404

    def test_quota_exhausted(self, client, rate_limiter):
        """Test chat once the daily limit is reached"""
        for _ in range(10):
            rate_limiter.increment_call_count()

        response = _chat(client, "Hello")

        assert response.status_code == 429
        assert "X-RateLimit-Reset" in response.headers
        assert "Daily generation limit reached" in response.json()["detail"]


@pytest.mark.integration
class TestConversationEndpoints:
    """Test conversation history, deletion and editing"""

    def test_get_conversation_history(self, client):
        """Test get conversation history"""
        first = _chat(client, "Hello").json()

        response = client.get(f"/conversations/{first['conversation_id']}", headers={"X-User-Id": "u1"})

        assert response.status_code == 200
        data = response.json()
        assert data["conversation"]["user_id"] == "u1"
        assert [m["role"] for m in data["messages"]] == ["user", "assistant"]

    def test_list_conversations(self, client):
        """Test listing only the caller's conversations"""
        _chat(client, "One")
        _chat(client, "Two")
        _chat(client, "Other", user="u2")

        response = client.get("/conversations", headers={"X-User-Id": "u1"})

        assert response.status_code == 200
        assert len(response.json()) == 2

    def test_delete_conversation(self, client):
        """Test delete conversation"""
        first = _chat(client, "Hello").json()
        url = f"/conversations/{first['conversation_id']}"

        assert client.delete(url, headers={"X-User-Id": "u2"}).status_code == 403
        assert client.delete(url, headers={"X-User-Id": "u1"}).status_code == 204
        assert client.get(url, headers={"X-User-Id": "u1"}).status_code == 404

    def test_edit_message(self, client):
        """Test edit message and regenerate the reply"""
        first = _chat(client, "Hello").json()
        url = f"/conversations/{first['conversation_id']}/messages/{first['user_message']['id']}"

        response = client.put(url, json={"content": "Hello again"}, headers={"X-User-Id": "u1"})

        assert response.status_code == 200
        data = response.json()
        assert data["updated_message"]["content"] == "Hello again"
        assert data["deleted_message_ids"] == [first["assistant_message"]["id"]]
        assert data["new_response"]["parent_message_id"] == first["user_message"]["id"]

    def test_edit_assistant_message_rejected(self, client):
        """Test assistant messages cannot be edited"""
        first = _chat(client, "Hello").json()
        url = f"/conversations/{first['conversation_id']}/messages/{first['assistant_message']['id']}"

        response = client.put(url, json={"content": "nope"}, headers={"X-User-Id": "u1"})

        assert response.status_code == 400

    def test_repair_conversation(self, client, store):
        """Test repair endpoint backfills parent links"""
        first = _chat(client, "Hello").json()
        store.insert_message(first["conversation_id"], "user", "legacy")

        response = client.post(
            f"/conversations/{first['conversation_id']}/repair", headers={"X-User-Id": "u1"}
        )

        assert response.status_code == 200
        assert response.json()["repaired"] == 1


@pytest.mark.integration
class TestJobEndpoints:
    """Test background generation endpoints"""

    def test_usage(self, client, rate_limiter):
        """Test usage endpoint reports quota"""
        rate_limiter.increment_call_count()

        response = client.get("/usage")

        assert response.status_code == 200
        assert response.json()["callsToday"] == 1
        assert response.json()["dailyLimit"] == 10

    def test_enqueue_without_workers(self, client):
        """Test enqueue when workers are disabled"""
        response = client.post("/jobs/generate", json={"prompt": "Hi"}, headers={"X-User-Id": "u1"})
        assert response.status_code == 503

    def test_enqueue_and_poll(self, client, ai_queue):
        """Test a queued prompt completes and its owner can poll it"""
        response = client.post("/jobs/generate", json={"prompt": "Hi"}, headers={"X-User-Id": "u1"})

        assert response.status_code == 202
        job_id = response.json()["job_id"]
        ai_queue.wait_for(job_id, timeout=5)

        job = client.get(f"/jobs/{job_id}", headers={"X-User-Id": "u1"}).json()
        assert job["status"] == "completed"
        assert job["queue"] == "ai-api-test"
        assert job["result"]["response"] == "Here is a thoughtful answer."

    def test_job_hidden_from_other_users(self, client, ai_queue):
        """Test another user cannot read a job they did not queue"""
        response = client.post("/jobs/generate", json={"prompt": "Private"}, headers={"X-User-Id": "u1"})
        job_id = response.json()["job_id"]
        ai_queue.wait_for(job_id, timeout=5)

        assert client.get(f"/jobs/{job_id}", headers={"X-User-Id": "u2"}).status_code == 404
        assert client.get(f"/jobs/{job_id}").status_code == 401

    def test_enqueue_for_foreign_conversation(self, client, ai_queue):
        """Test queuing into another user's conversation is forbidden"""
        first = _chat(client, "Hello").json()

        response = client.post(
            "/jobs/generate",
            json={"prompt": "Hi", "conversation_id": first["conversation_id"]},
            headers={"X-User-Id": "u2"},
        )

        assert response.status_code == 403

    def test_enqueue_for_unknown_conversation(self, client, ai_queue, store):
        """Test an unknown conversation id is rejected before queuing"""
        response = client.post(
            "/jobs/generate",
            json={"prompt": "Hi", "conversation_id": 777},
            headers={"X-User-Id": "u1"},
        )

        assert response.status_code == 404
        assert ai_queue.counts()["waiting"] == 0
        assert store.get_conversation(777) is None

    def test_enqueue_without_conversation_creates_one(self, client, ai_queue, store):
        """Test a job with no conversation id gets a server-assigned conversation"""
        response = client.post("/jobs/generate", json={"prompt": "Hi"}, headers={"X-User-Id": "u1"})
        job_id = response.json()["job_id"]
        ai_queue.wait_for(job_id, timeout=5)

        job = client.get(f"/jobs/{job_id}", headers={"X-User-Id": "u1"}).json()
        conversation = store.get_conversation(job["result"]["conversationId"])
        assert conversation is not None
        assert conversation.user_id == "u1"

    def test_unknown_job(self, client, ai_queue):
        """Test polling an unknown job id"""
        assert client.get("/jobs/nope", headers={"X-User-Id": "u1"}).status_code == 404
