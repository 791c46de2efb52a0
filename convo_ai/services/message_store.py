"""
Persistence for conversations and messages over a SQLAlchemy session
"""
from contextlib import contextmanager
from typing import Any, List, Optional

from sqlalchemy import and_, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from convo_ai.errors import PersistenceFailure
from convo_ai.models import Conversation, JobLog, Message
from convo_ai.models.conversation import utcnow
from convo_ai.utils.logger import get_logger

logger = get_logger("store")


def make_preview(content: str, max_length: int = 50) -> str:
    if len(content) > max_length:
        return content[:max_length] + "..."
    return content


class MessageStore:
    """Conversation and message access; the database is the single source of truth"""

    def __init__(self, db: Session):
        self.db = db

    @contextmanager
    def _guard(self, action: str):
        try:
            yield
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to {action}: {e}")
            raise PersistenceFailure(f"Failed to {action}: {e}") from e

    # Conversations

    def get_conversation(self, conversation_id: Any) -> Optional[Conversation]:
        with self._guard(f"load conversation {conversation_id}"):
            return self.db.get(Conversation, conversation_id)

    def find_conversations_by(self, field: str, value: Any) -> List[Conversation]:
        column = getattr(Conversation, field)
        with self._guard(f"find conversations by {field}"):
            return (
                self.db.query(Conversation)
                .filter(column == value)
                .order_by(Conversation.updated_at.desc())
                .all()
            )

    def create_conversation(
        self,
        user_id: str,
        assessment_id: Optional[str] = None,
        assessment: Optional[dict] = None,
        title: Optional[str] = None,
    ) -> Conversation:
        conversation = Conversation(
            user_id=str(user_id),
            assessment_id=str(assessment_id) if assessment_id is not None else None,
            assessment_snapshot=assessment,
            assessment_pattern=(assessment or {}).get("pattern"),
            title=title or "New Chat",
        )
        with self._guard("create conversation"):
            self.db.add(conversation)
            self.db.commit()
            self.db.refresh(conversation)

        logger.info(f"Created conversation {conversation.id} for user {conversation.user_id}")
        return conversation

    def update_conversation(self, conversation: Conversation, **fields) -> Conversation:
        new_assessment = fields.get("assessment_id")
        if (
            "assessment_id" in fields
            and conversation.assessment_id is not None
            and new_assessment != conversation.assessment_id
        ):
            raise ValueError("assessment_id cannot be changed once set")

        with self._guard(f"update conversation {conversation.id}"):
            for name, value in fields.items():
                setattr(conversation, name, value)
            conversation.updated_at = utcnow()
            self.db.commit()
            self.db.refresh(conversation)
        return conversation

    def update_preview(self, conversation: Conversation, content: str, max_length: int = 50) -> Conversation:
        return self.update_conversation(conversation, preview=make_preview(content, max_length))

    def delete_conversation(self, conversation: Conversation):
        with self._guard(f"delete conversation {conversation.id}"):
            self.db.delete(conversation)
            self.db.commit()
        logger.info(f"Deleted conversation {conversation.id}")

    # Messages

    def get_message(self, message_id: Any) -> Optional[Message]:
        with self._guard(f"load message {message_id}"):
            return self.db.get(Message, message_id)

    def message_exists(self, message_id: Any, conversation_id: Any = None) -> bool:
        with self._guard(f"check message {message_id}"):
            query = self.db.query(Message.id).filter(Message.id == message_id)
            if conversation_id is not None:
                query = query.filter(Message.conversation_id == conversation_id)
            return query.first() is not None

    def list_messages(self, conversation_id: Any) -> List[Message]:
        """Messages in creation order"""
        with self._guard(f"list messages of conversation {conversation_id}"):
            return (
                self.db.query(Message)
                .filter(Message.conversation_id == conversation_id)
                .order_by(Message.created_at, Message.id)
                .all()
            )

    def count_messages(self, conversation_id: Any) -> int:
        with self._guard(f"count messages of conversation {conversation_id}"):
            return self.db.query(Message).filter(Message.conversation_id == conversation_id).count()

    def latest_message(self, conversation_id: Any) -> Optional[Message]:
        with self._guard(f"load latest message of conversation {conversation_id}"):
            return (
                self.db.query(Message)
                .filter(Message.conversation_id == conversation_id)
                .order_by(Message.created_at.desc(), Message.id.desc())
                .first()
            )

    def latest_message_before(self, conversation_id: Any, message: Message) -> Optional[Message]:
        """Nearest message created before the given one"""
        with self._guard(f"load message before {message.id}"):
            return (
                self.db.query(Message)
                .filter(
                    Message.conversation_id == conversation_id,
                    or_(
                        Message.created_at < message.created_at,
                        and_(Message.created_at == message.created_at, Message.id < message.id),
                    ),
                )
                .order_by(Message.created_at.desc(), Message.id.desc())
                .first()
            )

    def insert_message(
        self,
        conversation_id: Any,
        role: str,
        content: str,
        parent_message_id: Optional[int] = None,
        metadata: Optional[dict] = None,
    ) -> Message:
        message = Message(
            conversation_id=conversation_id,
            role=role,
            content=content,
            parent_message_id=parent_message_id,
            message_metadata=metadata,
            created_at=utcnow(),
        )
        with self._guard(f"insert {role} message into conversation {conversation_id}"):
            self.db.add(message)
            self.db.commit()
            self.db.refresh(message)

        logger.debug(f"Inserted {role} message {message.id} into conversation {conversation_id}")
        return message

    def update_message(self, message: Message, **fields) -> Message:
        with self._guard(f"update message {message.id}"):
            for name, value in fields.items():
                setattr(message, name, value)
            self.db.commit()
            self.db.refresh(message)
        return message

    def delete_message(self, message: Message):
        message_id = message.id
        with self._guard(f"delete message {message_id}"):
            self.db.delete(message)
            self.db.commit()
        logger.info(f"Deleted message {message_id}")

    def delete_messages_after(self, conversation_id: Any, message: Message) -> List[int]:
        """Delete every message created after the given one; returns deleted ids"""
        with self._guard(f"delete messages after {message.id}"):
            later = (
                self.db.query(Message)
                .filter(
                    Message.conversation_id == conversation_id,
                    or_(
                        Message.created_at > message.created_at,
                        and_(Message.created_at == message.created_at, Message.id > message.id),
                    ),
                )
                .all()
            )
            deleted_ids = [m.id for m in later]
            for m in later:
                self.db.delete(m)
            self.db.commit()

        if deleted_ids:
            logger.info(f"Deleted {len(deleted_ids)} messages after {message.id} in conversation {conversation_id}")
        return deleted_ids

    # Job logs

    def add_job_log(
        self,
        job_id: str,
        job_type: str,
        status: str,
        attempt: int,
        conversation_id: Optional[int] = None,
        final: bool = False,
        error_message: Optional[str] = None,
        error_stack: Optional[str] = None,
    ) -> JobLog:
        entry = JobLog(
            job_id=job_id,
            job_type=job_type,
            conversation_id=conversation_id,
            status=status,
            attempt=attempt,
            final=final,
            error_message=error_message,
            error_stack=error_stack,
        )
        with self._guard(f"log job {job_id}"):
            self.db.add(entry)
            self.db.commit()
        return entry

    def job_logs(self, job_id: str) -> List[JobLog]:
        with self._guard(f"load logs for job {job_id}"):
            return (
                self.db.query(JobLog)
                .filter(JobLog.job_id == job_id)
                .order_by(JobLog.id)
                .all()
            )
