"""
APScheduler Service
Hosts the ai-processing and webhook-delivery queues and their periodic upkeep
"""
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from convo_ai.queue.ai_worker import AIWorker
from convo_ai.queue.config import QueueConfig, ai_processing_queue_config, webhook_delivery_queue_config
from convo_ai.queue.job_queue import JobQueue
from convo_ai.queue.webhook_worker import WebhookWorker
from convo_ai.services.generation import GenerationClient
from convo_ai.services.thread_linker import ConversationLocks
from convo_ai.utils.logger import get_logger

logger = get_logger("scheduler")


class SchedulerService:
    """Owns the background scheduler and the job queues running on it"""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        generation_client: GenerationClient,
        locks: ConversationLocks,
        preview_max_length: int = 50,
        webhook_timeout: float = 5.0,
        webhook_user_agent: str = "ConvoAI-Webhook/1.0",
        retention_sweep_minutes: int = 5,
        ai_config: Optional[QueueConfig] = None,
        webhook_config: Optional[QueueConfig] = None,
        webhook_transport=None,
    ):
        self.scheduler = BackgroundScheduler(timezone="UTC")
        self.retention_sweep_minutes = retention_sweep_minutes

        self.webhook_worker = WebhookWorker(
            timeout=webhook_timeout, user_agent=webhook_user_agent, transport=webhook_transport
        )
        self.webhook_queue = JobQueue(
            webhook_config or webhook_delivery_queue_config(),
            self.webhook_worker.process,
            self.scheduler,
        )

        self.ai_worker = AIWorker(
            session_factory,
            generation_client,
            locks,
            webhook_queue=self.webhook_queue,
            preview_max_length=preview_max_length,
        )
        self.ai_queue = JobQueue(
            ai_config or ai_processing_queue_config(),
            self.ai_worker.process,
            self.scheduler,
        )
        self.ai_worker.attach(self.ai_queue)

        self._setup_jobs()

    def _setup_jobs(self):
        """Setup periodic jobs"""
        # Apply retention policies even when no job has finished recently
        self.scheduler.add_job(
            self._prune_queues,
            IntervalTrigger(minutes=self.retention_sweep_minutes),
            id="queue_retention",
            name="Prune finished queue jobs",
            replace_existing=True,
        )

    def _prune_queues(self):
        for queue in (self.ai_queue, self.webhook_queue):
            try:
                queue.prune()
            except Exception:
                logger.exception(f"Error pruning queue {queue.name}")

    @property
    def queues(self) -> dict:
        return {queue.name: queue for queue in (self.ai_queue, self.webhook_queue)}

    def start(self):
        """Start the scheduler"""
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Scheduler started")

    def stop(self, wait: bool = True):
        """Stop the scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info("Scheduler stopped")


# Global scheduler instance
_scheduler_service: Optional[SchedulerService] = None


def init_scheduler(*args, **kwargs) -> SchedulerService:
    """Create the process-wide scheduler instance"""
    global _scheduler_service
    if _scheduler_service is not None and _scheduler_service.scheduler.running:
        _scheduler_service.stop()
    _scheduler_service = SchedulerService(*args, **kwargs)
    return _scheduler_service


def get_scheduler() -> Optional[SchedulerService]:
    """Get the scheduler instance, if one was created"""
    return _scheduler_service


def start_scheduler():
    """Start the background scheduler"""
    scheduler = get_scheduler()
    if scheduler is not None:
        scheduler.start()


def stop_scheduler():
    """Stop the background scheduler"""
    scheduler = get_scheduler()
    if scheduler is not None:
        scheduler.stop()
