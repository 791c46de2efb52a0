"""
Webhook delivery worker
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel, Field

from convo_ai.errors import ConvoAIError
from convo_ai.queue.job_queue import QueueJob
from convo_ai.utils.logger import get_logger

logger = get_logger("webhook_worker")


class WebhookDeliveryError(ConvoAIError):
    """The receiver answered with a non-2xx status"""

    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


class WebhookDeliveryJobData(BaseModel):
    """Payload of a webhook-delivery job"""
    url: str
    payload: Dict[str, Any]
    method: str = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)


class WebhookWorker:
    """Processor for the webhook-delivery queue"""

    def __init__(
        self,
        timeout: float = 5.0,
        user_agent: str = "ConvoAI-Webhook/1.0",
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.timeout = timeout
        self.user_agent = user_agent
        self.transport = transport

    def process(self, job: QueueJob) -> dict:
        data = WebhookDeliveryJobData(**job.data)
        logger.info(f"Delivering webhook job {job.id} to {data.url} (attempt {job.attempts_made})")

        headers = {"Content-Type": "application/json", "User-Agent": self.user_agent}
        headers.update(data.headers)

        with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
            response = client.request(data.method, data.url, json=data.payload, headers=headers)

        if not response.is_success:
            raise WebhookDeliveryError(
                f"Webhook returned {response.status_code}: {response.reason_phrase}",
                status_code=response.status_code,
            )

        logger.info(f"Webhook job {job.id} delivered with status {response.status_code}")
        return {
            "statusCode": response.status_code,
            "success": True,
            "attempts": job.attempts_made,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
