"""
Error taxonomy for the conversation pipeline.

Generation failures are absorbed by the fallback path; storage and
authorization failures always propagate to the caller.
"""
from datetime import datetime
from typing import Optional


class ConvoAIError(Exception):
    """Base class for pipeline errors"""


class RateLimitExceeded(ConvoAIError):
    """Daily generation quota is exhausted; no external call was attempted"""

    def __init__(self, message: str, reset_at: Optional[datetime] = None):
        super().__init__(message)
        self.reset_at = reset_at


class GenerationFailure(ConvoAIError):
    """The external generation endpoint failed or returned nothing usable"""


class PersistenceFailure(ConvoAIError):
    """A storage read or write failed"""


class OwnershipViolation(ConvoAIError):
    """The conversation does not belong to the requesting user"""


class ConversationNotFound(ConvoAIError):
    """No conversation exists with the given id"""


class MessageNotFound(ConvoAIError):
    """No message exists with the given id"""


class ThreadIntegrityWarning(UserWarning):
    """A supplied parent_message_id did not exist and was replaced"""


class UnrecoverableJobError(ConvoAIError):
    """Raised from a job processor to fail the job without further retries"""


class JobDeferred(ConvoAIError):
    """Raised from a job processor to run the job again later without spending an attempt"""

    def __init__(self, message: str, run_at: datetime):
        super().__init__(message)
        self.run_at = run_at
