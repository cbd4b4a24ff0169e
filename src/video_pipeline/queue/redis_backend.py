"""Redis list implementation of WorkQueue.

Producers LPUSH onto the queue key and consumers BRPOP from it, so the
oldest message is always popped first and each pop is delivered to exactly
one client. Messages come back as raw bytes so a payload that is not
valid UTF-8 reaches the message decoder instead of failing inside the
client. Connection failures surface as QueueUnavailable so the worker
loop can back off without touching job state.
"""

import math
from typing import Optional, Union

import redis
from redis.backoff import ExponentialBackoff
from redis.retry import Retry

from ..errors import QueueUnavailable
from .backends import WorkQueue


def connect(redis_url: str, socket_timeout_s: float = 10.0) -> "redis.Redis":
    """Create a Redis client for the work queue."""
    return redis.Redis.from_url(
        redis_url,
        decode_responses=False,
        socket_keepalive=True,
        socket_timeout=socket_timeout_s,
        socket_connect_timeout=5,
        health_check_interval=30,
        retry_on_timeout=True,
        retry=Retry(ExponentialBackoff(cap=10, base=1), retries=3),
    )


class RedisWorkQueue(WorkQueue):
    """Blocking FIFO hand-off on a Redis list."""

    def __init__(self, client: "redis.Redis"):
        self.client = client

    def enqueue(self, queue_name: str, message: Union[str, bytes]) -> None:
        try:
            self.client.lpush(queue_name, message)
        except redis.exceptions.RedisError as e:
            raise QueueUnavailable(queue_name, str(e)) from e

    def dequeue(self, queue_name: str, timeout: float) -> Optional[bytes]:
        """Pop the oldest message as raw bytes; decoding is left to the consumer."""
        # BRPOP treats 0 as "block forever"; always wait at least one second
        wait_s = max(1, int(math.ceil(timeout)))
        try:
            result = self.client.brpop([queue_name], timeout=wait_s)
        except redis.exceptions.RedisError as e:
            raise QueueUnavailable(queue_name, str(e)) from e

        if not result:
            return None

        _, message = result
        return message

    def size(self, queue_name: str) -> int:
        try:
            return int(self.client.llen(queue_name))
        except redis.exceptions.RedisError as e:
            raise QueueUnavailable(queue_name, str(e)) from e

    def close(self) -> None:
        self.client.close()
