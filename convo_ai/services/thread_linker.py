"""
Thread linking: each message points at the message created just before it.

The "most recent message" lookup is a read-then-write race, so every insert
into a conversation must happen while holding that conversation's lock.
"""
import threading
import warnings
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional

from convo_ai.errors import MessageNotFound, ThreadIntegrityWarning
from convo_ai.models import Message
from convo_ai.services.message_store import MessageStore
from convo_ai.utils.logger import get_logger

logger = get_logger("threads")


@dataclass(frozen=True)
class MessageDraft:
    """A message that has not been persisted yet"""
    role: str
    content: str
    parent_message_id: Optional[int] = None
    metadata: Optional[dict] = None


class ConversationLocks:
    """One re-entrant lock per conversation id, shared across threads.

    A lock lives only while somebody holds or waits on it, so the registry
    stays as small as the number of conversations being written right now.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Any, threading.RLock] = {}
        self._holders: Dict[Any, int] = {}

    def active_count(self) -> int:
        with self._guard:
            return len(self._locks)

    def _acquire_entry(self, conversation_id: Any) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(conversation_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[conversation_id] = lock
            self._holders[conversation_id] = self._holders.get(conversation_id, 0) + 1
            return lock

    def _release_entry(self, conversation_id: Any):
        with self._guard:
            remaining = self._holders.get(conversation_id, 0) - 1
            if remaining > 0:
                self._holders[conversation_id] = remaining
            else:
                self._holders.pop(conversation_id, None)
                self._locks.pop(conversation_id, None)

    @contextmanager
    def hold(self, conversation_id: Any):
        lock = self._acquire_entry(conversation_id)
        try:
            with lock:
                yield
        finally:
            self._release_entry(conversation_id)

    def discard(self, conversation_id: Any):
        # an entry still in use is evicted by its last holder instead
        with self._guard:
            if not self._holders.get(conversation_id):
                self._holders.pop(conversation_id, None)
                self._locks.pop(conversation_id, None)


class ThreadLinker:
    """Assigns and repairs parent_message_id links"""

    def __init__(self, store: MessageStore, locks: Optional[ConversationLocks] = None):
        self.store = store
        self.locks = locks or ConversationLocks()

    def resolve_parent(self, conversation_id: Any, candidate: MessageDraft) -> MessageDraft:
        """
        Set the parent of a message about to be inserted.

        A caller-supplied parent is kept when it exists in this conversation;
        otherwise the most recent message becomes the parent.
        """
        most_recent = self.store.latest_message(conversation_id)

        if most_recent is None:
            logger.debug(f"First message in conversation {conversation_id}, no parent")
            return replace(candidate, parent_message_id=None)

        if candidate.parent_message_id is not None:
            if self.store.message_exists(candidate.parent_message_id, conversation_id):
                return candidate

            message = (
                f"Parent message {candidate.parent_message_id} not found in conversation "
                f"{conversation_id}, using most recent message {most_recent.id} instead"
            )
            logger.warning(message)
            warnings.warn(message, ThreadIntegrityWarning, stacklevel=2)

        return replace(candidate, parent_message_id=most_recent.id)

    def insert(self, conversation_id: Any, candidate: MessageDraft) -> Message:
        """Resolve the parent and persist the message under the conversation lock"""
        with self.locks.hold(conversation_id):
            resolved = self.resolve_parent(conversation_id, candidate)
            return self.store.insert_message(
                conversation_id,
                role=resolved.role,
                content=resolved.content,
                parent_message_id=resolved.parent_message_id,
                metadata=resolved.metadata,
            )

    def repair_parent(self, conversation_id: Any, message_id: Any) -> Message:
        """Backfill the parent of a legacy message that has none"""
        message = self.store.get_message(message_id)
        if message is None:
            raise MessageNotFound(f"Message {message_id} not found")

        if message.parent_message_id is not None:
            return message

        earlier = self.store.latest_message_before(conversation_id, message)
        if earlier is None:
            return message

        logger.info(f"Updated message {message_id} with parent_message_id: {earlier.id}")
        return self.store.update_message(message, parent_message_id=earlier.id)

    def repair_conversation(self, conversation_id: Any) -> int:
        """Repair every parentless message in a conversation; returns how many changed"""
        repaired = 0
        with self.locks.hold(conversation_id):
            for message in self.store.list_messages(conversation_id):
                if message.parent_message_id is not None:
                    continue
                if self.repair_parent(conversation_id, message.id).parent_message_id is not None:
                    repaired += 1
        return repaired
