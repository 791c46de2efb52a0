"""
AI processing worker.

Runs generation for queued prompts, stores the assistant reply and hands the
outcome to the webhook queue. Generation failures are retried by the queue;
the canned fallback reply is never used here.
"""
import time
import traceback
from datetime import datetime, timezone
from typing import Callable, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from convo_ai.errors import JobDeferred, RateLimitExceeded, UnrecoverableJobError
from convo_ai.queue.job_queue import JobQueue, QueueJob
from convo_ai.queue.webhook_worker import WebhookDeliveryJobData
from convo_ai.services.generation import GenerationClient, GenerationContext, GenerationOptions
from convo_ai.services.message_store import MessageStore
from convo_ai.services.prompt_builder import PromptMessage
from convo_ai.services.thread_linker import ConversationLocks, MessageDraft, ThreadLinker
from convo_ai.utils.logger import get_logger

logger = get_logger("ai_worker")

JOB_TYPE = "ai-processing"


class ContextMessage(BaseModel):
    role: str
    content: str


class JobContext(BaseModel):
    previous_messages: List[ContextMessage] = Field(default_factory=list)
    assessment: Optional[dict] = None


class AIProcessingJobData(BaseModel):
    """Payload of an ai-processing job"""
    conversation_id: Optional[int] = None
    user_id: str
    prompt: str = Field(..., min_length=1)
    assessment_id: Optional[str] = None
    context: JobContext = Field(default_factory=JobContext)
    options: Optional[dict] = None
    webhook_url: Optional[str] = None
    persist_prompt: bool = True


class AIWorker:
    """Processor for the ai-processing queue"""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        generation_client: GenerationClient,
        locks: ConversationLocks,
        webhook_queue: Optional[JobQueue] = None,
        preview_max_length: int = 50,
    ):
        self.session_factory = session_factory
        self.generation_client = generation_client
        self.locks = locks
        self.webhook_queue = webhook_queue
        self.preview_max_length = preview_max_length

    def attach(self, queue: JobQueue):
        """Record every attempt outcome in the job log table"""
        queue.on_failed(self.record_failure)
        queue.on_completed(self.record_success)

    def process(self, job: QueueJob) -> dict:
        data = AIProcessingJobData(**job.data)
        started = time.monotonic()
        logger.info(f"Processing AI job {job.id} for conversation {data.conversation_id}")

        db = self.session_factory()
        try:
            store = MessageStore(db)
            conversation = None
            if data.conversation_id is not None:
                conversation = store.get_conversation(data.conversation_id)
                if conversation is None:
                    raise UnrecoverableJobError(f"Conversation {data.conversation_id} not found")
            if conversation is not None and str(conversation.user_id) != str(data.user_id):
                raise UnrecoverableJobError(
                    f"Conversation {data.conversation_id} does not belong to user {data.user_id}"
                )

            context = self._build_context(store, data, conversation)
            try:
                result = self.generation_client.generate(data.prompt, context, allow_fallback=False)
            except RateLimitExceeded as e:
                raise JobDeferred(str(e), run_at=e.reset_at or self.generation_client.rate_limiter.next_reset_at())

            if conversation is None:
                conversation = store.create_conversation(
                    data.user_id,
                    assessment_id=data.assessment_id,
                    assessment=data.context.assessment,
                )

            linker = ThreadLinker(store, self.locks)
            with self.locks.hold(conversation.id):
                if data.persist_prompt:
                    linker.insert(conversation.id, MessageDraft(role="user", content=data.prompt))
                metadata = dict(result.metadata, processed_by_worker=True, job_id=job.id)
                assistant_message = linker.insert(
                    conversation.id,
                    MessageDraft(role="assistant", content=result.content, metadata=metadata),
                )
                store.update_preview(conversation, result.content, self.preview_max_length)

            outcome = {
                "conversationId": conversation.id,
                "messageId": assistant_message.id,
                "response": result.content,
                "tokensUsed": result.metadata.get("tokens_used", 0),
                "processingTime": round((time.monotonic() - started) * 1000),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        finally:
            db.close()

        if data.webhook_url and self.webhook_queue is not None:
            payload = {"conversationId": conversation.id, "status": "completed", "result": outcome}
            self.webhook_queue.enqueue(
                WebhookDeliveryJobData(url=data.webhook_url, payload=payload).model_dump(),
                name="ai-completion",
            )

        logger.info(f"AI job {job.id} stored reply {assistant_message.id} in conversation {conversation.id}")
        return outcome

    def _build_context(self, store: MessageStore, data: AIProcessingJobData, conversation) -> GenerationContext:
        if data.context.previous_messages:
            history = [PromptMessage(role=m.role, content=m.content) for m in data.context.previous_messages]
        elif conversation is not None:
            history = store.list_messages(conversation.id)
        else:
            history = []

        assessment = data.context.assessment
        if assessment is None and conversation is not None:
            assessment = conversation.assessment_snapshot
        pattern = (assessment or {}).get("pattern")
        if pattern is None and conversation is not None:
            pattern = conversation.assessment_pattern

        return GenerationContext(
            previous_messages=history,
            assessment=assessment,
            assessment_pattern=pattern,
            options=GenerationOptions.from_dict(data.options),
        )

    def _log(self, job: QueueJob, status: str, final: bool = False, error: Optional[BaseException] = None):
        db = self.session_factory()
        try:
            MessageStore(db).add_job_log(
                job_id=job.id,
                job_type=JOB_TYPE,
                status=status,
                attempt=job.attempts_made,
                conversation_id=job.data.get("conversation_id"),
                final=final,
                error_message=str(error) if error is not None else None,
                error_stack=(
                    "".join(traceback.format_exception(type(error), error, error.__traceback__))
                    if error is not None else None
                ),
            )
        finally:
            db.close()

    def record_failure(self, job: QueueJob, error: BaseException, final: bool):
        logger.error(f"AI job {job.id} attempt {job.attempts_made} failed: {error}")
        self._log(job, "failed", final=final, error=error)

    def record_success(self, job: QueueJob):
        self._log(job, "completed", final=True)
