"""Background job queue (rq on Redis).

Categorization never embeds inline: it only enqueues. Services depend on the
small EmbeddingQueue protocol so tests can record calls instead of talking to
Redis. Enqueue failures are logged and dropped: anything left without an
embedding is picked up again by the next ``generate_embeddings_batch`` sweep.
"""

from typing import Protocol

import structlog
from redis import Redis
from redis.exceptions import RedisError
from rq import Queue, Retry

from spendsense.config import settings

logger = structlog.get_logger()

# Pauses (seconds) between rq retries of a failed job
RETRY_INTERVALS = [10, 30, 60]

_TASKS = "spendsense.jobs.tasks"


class EmbeddingQueue(Protocol):
    def enqueue_transaction(self, transaction_id: int) -> None: ...

    def enqueue_transactions(self, transaction_ids: list[int], user_id: int | None = None) -> None: ...

    def enqueue_labeled_example(self, example_id: int) -> None: ...


class RQEmbeddingQueue:
    """Enqueues jobs by dotted path, so the API process never imports the worker code."""

    def __init__(self, redis_url: str | None = None, queue_name: str | None = None):
        self.redis_url = redis_url or settings.redis_url
        self.queue_name = queue_name or settings.embedding_queue_name
        self._queue: Queue | None = None

    @property
    def queue(self) -> Queue:
        if self._queue is None:
            self._queue = Queue(self.queue_name, connection=Redis.from_url(self.redis_url))
        return self._queue

    def enqueue_transaction(self, transaction_id: int) -> None:
        if self._enqueue("generate_embedding", transaction_id):
            logger.debug("embedding_job_queued", transaction_id=transaction_id)

    def enqueue_transactions(self, transaction_ids: list[int], user_id: int | None = None) -> None:
        if not transaction_ids:
            return
        if self._enqueue("generate_embeddings_batch", list(transaction_ids), user_id):
            logger.info("embedding_batch_job_queued", count=len(transaction_ids), user_id=user_id)

    def enqueue_labeled_example(self, example_id: int) -> None:
        if self._enqueue("generate_labeled_example_embedding", example_id):
            logger.debug("labeled_example_embedding_job_queued", example_id=example_id)

    def _enqueue(self, task: str, *args) -> bool:
        try:
            self.queue.enqueue(
                f"{_TASKS}.{task}",
                *args,
                retry=Retry(max=len(RETRY_INTERVALS), interval=RETRY_INTERVALS),
            )
        except RedisError as e:
            logger.warning("job_enqueue_failed", task=task, error=type(e).__name__)
            return False
        return True


def enqueue_categorize_batch(transaction_ids: list[int], user_id: int | None = None):
    """Queue a background categorization run and return the rq job."""
    queue = Queue(settings.categorization_queue_name, connection=Redis.from_url(settings.redis_url))
    job = queue.enqueue(f"{_TASKS}.categorize_batch", list(transaction_ids), user_id)
    logger.info("categorize_batch_job_queued", count=len(transaction_ids), user_id=user_id, job_id=job.id)
    return job


_embedding_queue: RQEmbeddingQueue | None = None


def get_embedding_queue() -> RQEmbeddingQueue:
    global _embedding_queue
    if _embedding_queue is None:
        _embedding_queue = RQEmbeddingQueue()
    return _embedding_queue
