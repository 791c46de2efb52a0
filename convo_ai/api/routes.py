from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from convo_ai.api.deps import (
    get_ai_queue,
    get_current_user,
    get_job_queues,
    get_locks,
    get_orchestrator,
    get_rate_limiter,
)
from convo_ai.config import settings
from convo_ai.errors import (
    ConversationNotFound,
    ConvoAIError,
    MessageNotFound,
    OwnershipViolation,
    PersistenceFailure,
    RateLimitExceeded,
)
from convo_ai.queue.ai_worker import AIProcessingJobData, ContextMessage, JobContext
from convo_ai.queue.job_queue import JobQueue
from convo_ai.services.orchestrator import ConversationOrchestrator
from convo_ai.services.rate_limiter import RateLimiter
from convo_ai.services.thread_linker import ConversationLocks, ThreadLinker
from convo_ai.utils.logger import get_logger

router = APIRouter()
logger = get_logger("api")


class ChatRequest(BaseModel):
    """Request model for /chat endpoint"""

    message: str = Field(..., min_length=1)
    conversation_id: Optional[int] = None
    assessment_id: Optional[str] = None
    assessment: Optional[dict] = None


class MessageOut(BaseModel):
    id: int
    conversation_id: int
    role: str
    content: str
    parent_message_id: Optional[int] = None
    metadata: dict = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    edited_at: Optional[datetime] = None


class ChatResponse(BaseModel):
    """Response model for /chat endpoint"""

    conversation_id: int
    user_message: MessageOut
    assistant_message: MessageOut
    is_fallback: bool
    preview: Optional[str] = None


class ConversationOut(BaseModel):
    id: int
    user_id: str
    assessment_id: Optional[str] = None
    assessment_pattern: Optional[str] = None
    title: Optional[str] = None
    preview: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class EditMessageRequest(BaseModel):
    content: str = Field(..., min_length=1)
    regenerate: bool = True


class GenerateJobRequest(BaseModel):
    """Request model for /jobs/generate endpoint"""

    prompt: str = Field(..., min_length=1)
    conversation_id: Optional[int] = None
    assessment_id: Optional[str] = None
    assessment: Optional[dict] = None
    previous_messages: List[ContextMessage] = Field(default_factory=list)
    options: Optional[dict] = None
    webhook_url: Optional[str] = None


def _http_error(e: Exception) -> HTTPException:
    """Map pipeline errors onto HTTP status codes"""
    if isinstance(e, RateLimitExceeded):
        headers = {}
        if e.reset_at is not None:
            headers["X-RateLimit-Reset"] = e.reset_at.isoformat()
        return HTTPException(status_code=429, detail=str(e), headers=headers)
    if isinstance(e, OwnershipViolation):
        return HTTPException(status_code=403, detail="Access denied")
    if isinstance(e, (ConversationNotFound, MessageNotFound)):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, ValueError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, PersistenceFailure):
        return HTTPException(status_code=500, detail="Storage error")
    return HTTPException(status_code=500, detail=str(e))


@router.post("/chat", response_model=ChatResponse)
def chat(
    request: ChatRequest,
    user_id: str = Depends(get_current_user),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    """
    Handle a chat message.

    - Load or create the conversation
    - Save the user message
    - Generate and save the assistant reply
    - Update the conversation preview
    """
    try:
        result = orchestrator.send_message(
            user_id,
            request.message,
            conversation_id=request.conversation_id,
            assessment_id=request.assessment_id,
            assessment=request.assessment,
        )
    except (ConvoAIError, ValueError) as e:
        raise _http_error(e)

    return ChatResponse(
        conversation_id=result.conversation.id,
        user_message=MessageOut(**result.user_message.to_dict()),
        assistant_message=MessageOut(**result.assistant_message.to_dict()),
        is_fallback=result.generation.is_fallback,
        preview=result.conversation.preview,
    )


@router.get("/conversations", response_model=List[ConversationOut])
def list_conversations(
    user_id: str = Depends(get_current_user),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    """Conversations of the caller, most recently updated first"""
    try:
        return orchestrator.store.find_conversations_by("user_id", user_id)
    except ConvoAIError as e:
        raise _http_error(e)


@router.get("/conversations/{conversation_id}")
def get_conversation_history(
    conversation_id: int,
    user_id: str = Depends(get_current_user),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    """Get conversation history"""
    try:
        conversation, messages = orchestrator.get_conversation(conversation_id, user_id)
    except ConvoAIError as e:
        raise _http_error(e)

    return {
        "conversation": ConversationOut.model_validate(conversation),
        "messages": [MessageOut(**m.to_dict()) for m in messages],
    }


@router.delete("/conversations/{conversation_id}", status_code=204)
def delete_conversation(
    conversation_id: int,
    user_id: str = Depends(get_current_user),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    try:
        orchestrator.delete_conversation(conversation_id, user_id)
    except ConvoAIError as e:
        raise _http_error(e)


@router.put("/conversations/{conversation_id}/messages/{message_id}")
def edit_message(
    conversation_id: int,
    message_id: int,
    request: EditMessageRequest,
    user_id: str = Depends(get_current_user),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    """Edit a user message and regenerate the reply that follows it"""
    try:
        result = orchestrator.edit_message(
            conversation_id, message_id, user_id, request.content, regenerate=request.regenerate
        )
    except (ConvoAIError, ValueError) as e:
        raise _http_error(e)

    return {
        "updated_message": MessageOut(**result.updated_message.to_dict()),
        "new_response": MessageOut(**result.new_response.to_dict()) if result.new_response else None,
        "deleted_message_ids": result.deleted_message_ids,
    }


@router.post("/conversations/{conversation_id}/repair")
def repair_conversation(
    conversation_id: int,
    user_id: str = Depends(get_current_user),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
    locks: ConversationLocks = Depends(get_locks),
):
    """Backfill parent links on legacy messages"""
    try:
        conversation = orchestrator.get_owned_conversation(conversation_id, user_id)
        repaired = ThreadLinker(orchestrator.store, locks).repair_conversation(conversation.id)
    except ConvoAIError as e:
        raise _http_error(e)
    return {"conversation_id": conversation.id, "repaired": repaired}


@router.post("/jobs/generate", status_code=202)
def enqueue_generation(
    request: GenerateJobRequest,
    user_id: str = Depends(get_current_user),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
    queue: JobQueue = Depends(get_ai_queue),
):
    """Queue a prompt for background generation"""
    if request.conversation_id is not None:
        try:
            orchestrator.get_owned_conversation(request.conversation_id, user_id)
        except ConvoAIError as e:
            raise _http_error(e)

    data = AIProcessingJobData(
        conversation_id=request.conversation_id,
        user_id=user_id,
        prompt=request.prompt,
        assessment_id=request.assessment_id,
        context=JobContext(previous_messages=request.previous_messages, assessment=request.assessment),
        options=request.options,
        webhook_url=request.webhook_url,
    )
    job_id = queue.enqueue(data.model_dump(), name="generate")
    logger.info(f"Queued generation job {job_id} for user {user_id}")
    return {"job_id": job_id, "status": "waiting"}


@router.get("/jobs/{job_id}")
def get_job(
    job_id: str,
    user_id: str = Depends(get_current_user),
    queues: dict = Depends(get_job_queues),
):
    """Job status; only the user who queued the job can see it"""
    for queue in queues.values():
        job = queue.get_job(job_id)
        if job is not None and str(job.data.get("user_id")) == user_id:
            return dict(job.to_dict(), queue=queue.name)
    raise HTTPException(status_code=404, detail="Job not found")


@router.get("/usage")
def get_usage(rate_limiter: RateLimiter = Depends(get_rate_limiter)):
    """Daily generation quota usage"""
    return rate_limiter.get_usage_stats()


@router.get("/health")
def health_check(queues: dict = Depends(get_job_queues)):
    """Health check endpoint"""
    return {
        "status": "ok",
        "app": settings.app_name,
        "queues": {name: queue.counts() for name, queue in queues.items()},
    }
