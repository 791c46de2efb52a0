from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean
from convo_ai.database import Base
from convo_ai.models.conversation import utcnow


class JobLog(Base):
    """Store the outcome of each queue job attempt for operator visibility"""
    __tablename__ = "job_logs"

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(String(64), index=True)
    job_type = Column(String(50))  # queue name, e.g. "ai-processing"
    conversation_id = Column(Integer, index=True, nullable=True)
    status = Column(String(20))  # "failed" or "completed"
    attempt = Column(Integer)
    final = Column(Boolean, default=False)  # True once the job will not run again
    error_message = Column(Text, nullable=True)
    error_stack = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
