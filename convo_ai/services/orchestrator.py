"""
Synchronous send-message flow.

VALIDATING -> CONVERSATION_READY -> USER_MESSAGE_PERSISTED ->
RESPONSE_GENERATED -> PREVIEW_UPDATED -> DONE, with ERROR reachable from
every step.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional, Tuple

from convo_ai.errors import (
    ConversationNotFound,
    MessageNotFound,
    OwnershipViolation,
    RateLimitExceeded,
)
from convo_ai.models import Conversation, Message
from convo_ai.models.conversation import utcnow
from convo_ai.services.generation import GenerationClient, GenerationContext, GenerationResult
from convo_ai.services.message_store import MessageStore
from convo_ai.services.thread_linker import ConversationLocks, MessageDraft, ThreadLinker
from convo_ai.utils.logger import get_logger

logger = get_logger("orchestrator")


class FlowState(str, Enum):
    VALIDATING = "validating"
    CONVERSATION_READY = "conversation_ready"
    USER_MESSAGE_PERSISTED = "user_message_persisted"
    RESPONSE_GENERATED = "response_generated"
    PREVIEW_UPDATED = "preview_updated"
    DONE = "done"
    ERROR = "error"


@dataclass
class SendMessageResult:
    conversation: Conversation
    user_message: Message
    assistant_message: Message
    generation: GenerationResult
    states: List[FlowState] = field(default_factory=list)


@dataclass
class EditMessageResult:
    conversation: Conversation
    updated_message: Message
    new_response: Optional[Message]
    deleted_message_ids: List[int]


class ConversationOrchestrator:
    """Creates conversations, appends messages and stores assistant replies"""

    def __init__(
        self,
        store: MessageStore,
        generation_client: GenerationClient,
        locks: Optional[ConversationLocks] = None,
        preview_max_length: int = 50,
    ):
        self.store = store
        self.generation_client = generation_client
        self.locks = locks or ConversationLocks()
        self.linker = ThreadLinker(store, self.locks)
        self.preview_max_length = preview_max_length

    def _ensure_quota(self):
        limiter = self.generation_client.rate_limiter
        if not limiter.can_make_call():
            raise RateLimitExceeded(limiter.limit_exceeded_message(), reset_at=limiter.next_reset_at())

    def get_owned_conversation(self, conversation_id: Any, user_id: Any) -> Conversation:
        conversation = self.store.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFound(f"Conversation {conversation_id} not found")
        if str(conversation.user_id) != str(user_id):
            logger.warning(f"User {user_id} denied access to conversation {conversation_id}")
            raise OwnershipViolation(f"Conversation {conversation_id} does not belong to user {user_id}")
        return conversation

    def create_conversation(
        self,
        user_id: Any,
        assessment_id: Optional[Any] = None,
        assessment: Optional[dict] = None,
        title: Optional[str] = None,
    ) -> Conversation:
        if user_id is None or str(user_id).strip() == "":
            raise ValueError("User ID is required and cannot be empty")
        return self.store.create_conversation(
            str(user_id), assessment_id=assessment_id, assessment=assessment, title=title
        )

    def _generate(self, conversation: Conversation, prompt: str, history: List[Message]) -> GenerationResult:
        context = GenerationContext(
            previous_messages=history,
            assessment=conversation.assessment_snapshot,
            assessment_pattern=conversation.assessment_pattern,
        )
        return self.generation_client.generate(prompt, context)

    def _store_reply(self, conversation: Conversation, parent: Message, result: GenerationResult) -> Message:
        assistant_message = self.linker.insert(
            conversation.id,
            MessageDraft(
                role="assistant",
                content=result.content,
                parent_message_id=parent.id,
                metadata=result.metadata,
            ),
        )
        self.store.update_preview(conversation, result.content, self.preview_max_length)
        return assistant_message

    def append_message(
        self,
        conversation: Conversation,
        content: str,
        parent_message_id: Optional[int] = None,
        states: Optional[List[FlowState]] = None,
    ) -> Tuple[Message, Message, GenerationResult]:
        """
        Store a user message, generate a reply and store it.

        Args:
            conversation: Conversation already validated for the caller
            content: User message text
            parent_message_id: Optional explicit parent for the user message
            states: Optional list that receives each state reached

        Returns:
            (user message, assistant message, generation result)
        """
        states = states if states is not None else []

        with self.locks.hold(conversation.id):
            history = self.store.list_messages(conversation.id)

            user_message = self.linker.insert(
                conversation.id,
                MessageDraft(role="user", content=content, parent_message_id=parent_message_id),
            )
            self.store.update_conversation(conversation)
            states.append(FlowState.USER_MESSAGE_PERSISTED)

            try:
                result = self._generate(conversation, content, history)
            except RateLimitExceeded:
                # quota ran out between the check and the call; nothing was answered
                self.store.delete_message(user_message)
                logger.warning(f"Rolled back message {user_message.id}: quota exhausted during generation")
                raise
            states.append(FlowState.RESPONSE_GENERATED)

            assistant_message = self._store_reply(conversation, user_message, result)
            states.append(FlowState.PREVIEW_UPDATED)

        return user_message, assistant_message, result

    def send_message(
        self,
        user_id: Any,
        content: str,
        conversation_id: Optional[Any] = None,
        assessment_id: Optional[Any] = None,
        assessment: Optional[dict] = None,
    ) -> SendMessageResult:
        """Full send flow: validate or create the conversation, then append"""
        states = [FlowState.VALIDATING]
        logger.info(f"Send message flow starting for user {user_id} (conversation {conversation_id})")
        created = None

        try:
            if conversation_id is not None:
                conversation = self.get_owned_conversation(conversation_id, user_id)
                self._ensure_quota()
            else:
                self._ensure_quota()
                conversation = created = self.create_conversation(user_id, assessment_id, assessment)
            states.append(FlowState.CONVERSATION_READY)

            user_message, assistant_message, result = self.append_message(
                conversation, content, states=states
            )
        except RateLimitExceeded:
            states.append(FlowState.ERROR)
            logger.error(f"Send message flow for user {user_id} stopped by the daily limit")
            if created is not None and self.store.count_messages(created.id) == 0:
                self.store.delete_conversation(created)
            raise
        except Exception:
            states.append(FlowState.ERROR)
            logger.error(f"Send message flow failed for user {user_id} after {states[-2].value}")
            raise

        states.append(FlowState.DONE)
        return SendMessageResult(
            conversation=conversation,
            user_message=user_message,
            assistant_message=assistant_message,
            generation=result,
            states=states,
        )

    def get_conversation(self, conversation_id: Any, user_id: Any) -> Tuple[Conversation, List[Message]]:
        conversation = self.get_owned_conversation(conversation_id, user_id)
        return conversation, self.store.list_messages(conversation.id)

    def delete_conversation(self, conversation_id: Any, user_id: Any):
        conversation = self.get_owned_conversation(conversation_id, user_id)
        with self.locks.hold(conversation.id):
            self.store.delete_conversation(conversation)
        self.locks.discard(conversation_id)

    def edit_message(
        self,
        conversation_id: Any,
        message_id: Any,
        user_id: Any,
        new_content: str,
        regenerate: bool = True,
    ) -> EditMessageResult:
        """
        Edit a user message, drop everything after it and optionally
        generate a fresh reply to the edited text.
        """
        conversation = self.get_owned_conversation(conversation_id, user_id)
        message = self.store.get_message(message_id)
        if message is None or message.conversation_id != conversation.id:
            raise MessageNotFound(f"Message {message_id} not found in conversation {conversation_id}")
        if message.role != "user":
            raise ValueError("Only user messages can be edited")
        if regenerate:
            self._ensure_quota()

        new_response = None
        with self.locks.hold(conversation.id):
            deleted_ids = self.store.delete_messages_after(conversation.id, message)
            updated = self.store.update_message(message, content=new_content, edited_at=utcnow())
            logger.info(f"Message {message_id} edited in conversation {conversation_id}")

            if regenerate:
                history = [m for m in self.store.list_messages(conversation.id) if m.id != updated.id]
                result = self._generate(conversation, new_content, history)
                new_response = self._store_reply(conversation, updated, result)

        return EditMessageResult(
            conversation=conversation,
            updated_message=updated,
            new_response=new_response,
            deleted_message_ids=deleted_ids,
        )
