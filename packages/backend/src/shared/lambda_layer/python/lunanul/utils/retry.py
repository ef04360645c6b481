import random
import time
from typing import Callable, TypeVar

from aws_lambda_powertools import Logger
from pydantic import BaseModel, Field

from ..models.errors import SubscriptionError

logger = Logger()

T = TypeVar("T")


class RetryPolicy(BaseModel):
    max_retries: int = Field(default=3, ge=0)
    base_delay: float = Field(default=1.0, ge=0, description="Seconds before the first retry")
    max_delay: float = Field(default=30.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    jitter: float = Field(default=0.1, ge=0, le=1)

    def delay_for(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.multiplier ** attempt), self.max_delay)
        return delay * (1 + random.uniform(-self.jitter, self.jitter))


def retry_call(fn: Callable[[], T], policy: RetryPolicy = RetryPolicy(),
               sleep: Callable[[float], None] = time.sleep) -> T:
    """Exponential backoff retry for retryable subscription errors"""
    attempt = 0
    while True:
        try:
            return fn()
        except SubscriptionError as e:
            if not e.retryable or attempt >= policy.max_retries:
                raise
            delay = policy.delay_for(attempt)
            logger.warning(f"{type(e).__name__} on attempt {attempt + 1}, retrying in {delay:.2f}s")
            sleep(delay)
            attempt += 1
