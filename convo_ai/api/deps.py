"""
Shared FastAPI dependencies.

The rate limiter, generation client and conversation locks are process-wide
so that every request and worker thread sees the same quota and the same
per-conversation locks.
"""
from typing import Optional

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from convo_ai.config import settings
from convo_ai.database import get_db
from convo_ai.queue.job_queue import JobQueue
from convo_ai.services.generation import GenerationClient, create_generation_client
from convo_ai.services.message_store import MessageStore
from convo_ai.services.orchestrator import ConversationOrchestrator
from convo_ai.services.rate_limiter import RateLimiter, create_rate_limiter
from convo_ai.services.scheduler import get_scheduler
from convo_ai.services.thread_linker import ConversationLocks

_rate_limiter: Optional[RateLimiter] = None
_generation_client: Optional[GenerationClient] = None
_locks = ConversationLocks()


def get_rate_limiter() -> RateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = create_rate_limiter(settings)
    return _rate_limiter


def get_generation_client() -> GenerationClient:
    global _generation_client
    if _generation_client is None:
        _generation_client = create_generation_client(settings, get_rate_limiter())
    return _generation_client


def get_locks() -> ConversationLocks:
    return _locks


def get_store(db: Session = Depends(get_db)) -> MessageStore:
    return MessageStore(db)


def get_orchestrator(
    store: MessageStore = Depends(get_store),
    generation_client: GenerationClient = Depends(get_generation_client),
    locks: ConversationLocks = Depends(get_locks),
) -> ConversationOrchestrator:
    return ConversationOrchestrator(
        store, generation_client, locks=locks, preview_max_length=settings.preview_max_length
    )


def get_ai_queue() -> JobQueue:
    scheduler = get_scheduler()
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Background workers are disabled")
    return scheduler.ai_queue


def get_job_queues() -> dict:
    scheduler = get_scheduler()
    if scheduler is None:
        return {}
    return scheduler.queues


def get_current_user(x_user_id: Optional[str] = Header(None)) -> str:
    """Caller identity; authentication happens upstream"""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="X-User-Id header is required")
    return x_user_id.strip()
