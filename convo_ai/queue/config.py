"""
Queue configuration.

Field names mirror the operator-facing knobs: attempts, backoff.delay,
removeOnComplete {age, count}, removeOnFail {age, count}, worker concurrency
and limiter {max, duration}. Delays and durations are milliseconds, ages are
seconds.
"""
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field


class QueueName(str, Enum):
    AI_PROCESSING = "ai-processing"
    WEBHOOK_DELIVERY = "webhook-delivery"


class BackoffConfig(BaseModel):
    type: Literal["exponential", "fixed"] = "exponential"
    delay: int = Field(1000, ge=0, description="Base delay in milliseconds")

    def delay_for(self, attempts_made: int) -> float:
        """Seconds to wait before the next try after `attempts_made` failures"""
        if self.type == "fixed":
            return self.delay / 1000
        return self.delay * (2 ** max(attempts_made - 1, 0)) / 1000


class RetentionPolicy(BaseModel):
    age: int = Field(..., ge=0, description="Seconds to keep finished jobs")
    count: int = Field(..., ge=0, description="Maximum finished jobs to keep")


class LimiterConfig(BaseModel):
    max: int = Field(100, ge=1, description="Jobs allowed per window")
    duration: int = Field(60000, ge=1, description="Window length in milliseconds")


class WorkerConfig(BaseModel):
    concurrency: int = Field(5, ge=1)
    limiter: LimiterConfig = Field(default_factory=LimiterConfig)


class QueueConfig(BaseModel):
    name: str
    attempts: int = Field(3, ge=1)
    backoff: BackoffConfig = Field(default_factory=BackoffConfig)
    remove_on_complete: RetentionPolicy = Field(
        default_factory=lambda: RetentionPolicy(age=86400, count=1000),
        alias="removeOnComplete",
    )
    remove_on_fail: RetentionPolicy = Field(
        default_factory=lambda: RetentionPolicy(age=604800, count=5000),
        alias="removeOnFail",
    )
    worker: WorkerConfig = Field(default_factory=WorkerConfig)

    class Config:
        populate_by_name = True


def ai_processing_queue_config() -> QueueConfig:
    """AI calls are expensive: one retry, lowest concurrency, strict per-minute cap"""
    return QueueConfig(
        name=QueueName.AI_PROCESSING.value,
        attempts=2,
        backoff=BackoffConfig(type="exponential", delay=2000),
        worker=WorkerConfig(concurrency=3, limiter=LimiterConfig(max=60, duration=60000)),
    )


def webhook_delivery_queue_config() -> QueueConfig:
    """Webhooks are cheap and idempotent: more retries, higher concurrency"""
    return QueueConfig(
        name=QueueName.WEBHOOK_DELIVERY.value,
        attempts=5,
        backoff=BackoffConfig(type="exponential", delay=1000),
        worker=WorkerConfig(concurrency=10, limiter=LimiterConfig(max=100, duration=60000)),
    )
