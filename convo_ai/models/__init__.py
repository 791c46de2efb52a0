from convo_ai.models.conversation import Conversation, Message
from convo_ai.models.job_log import JobLog

__all__ = ["Conversation", "Message", "JobLog"]
