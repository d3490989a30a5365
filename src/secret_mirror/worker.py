# src/secret_mirror/worker.py
"""
Defines the core reconciliation worker.

A worker is a long-lived task that pulls keys from the work queue, hands
each one to a sync handler, and feeds the outcome back into the queue's
retry policy. The queue never gives the same key to two workers at once,
so a sync handler may assume it is the only one working on its key.
"""

import enum
import logging
from typing import Awaitable, Callable, Optional

from secret_mirror.exceptions import SecretMirrorError
from secret_mirror.workqueue import WorkQueue

logger: logging.Logger = logging.getLogger(__name__)

# With the default backoff (5ms * 2**n) a failing key is retried after
# 5ms, 10ms, 20ms, 40ms, 80ms, 160ms, 320ms, 640ms, 1.3s, 2.6s, 5.1s,
# 10.2s, 20.4s, 41s and 82s before it is dropped.
MAX_RETRIES: int = 15

SyncHandler = Callable[[str], Awaitable[None]]


class ItemOutcome(enum.Enum):
    """What happened to a key after one pass through the sync handler."""

    SUCCEEDED = "succeeded"
    REQUEUED = "requeued"
    DROPPED = "dropped"


def handle_error(
    queue: WorkQueue,
    key: str,
    error: Exception,
    max_retries: int = MAX_RETRIES,
) -> ItemOutcome:
    """
    Apply the retry policy to a failed key.

    Args:
        queue (WorkQueue): The queue the key came from.
        key (str): The key whose sync failed.
        error (Exception): The failure.
        max_retries (int): Requeues allowed before the key is dropped.

    Returns:
        ItemOutcome: `REQUEUED` if the key will be retried, else `DROPPED`.
    """
    if queue.num_requeues(key) < max_retries:
        logger.error(f"Error syncing '{key}', retrying: {error}")
        queue.add_rate_limited(key)
        return ItemOutcome.REQUEUED

    logger.error(
        f"Dropping '{key}' out of the queue after {max_retries} retries: {error}"
    )
    queue.forget(key)
    return ItemOutcome.DROPPED


async def process_item(
    queue: WorkQueue,
    key: str,
    sync_handler: SyncHandler,
    max_retries: int = MAX_RETRIES,
) -> ItemOutcome:
    """
    Run the sync handler for one checked-out key and release it.

    `queue.done(key)` is always called, even if the handler raises
    something unexpected or the worker is cancelled mid-sync.

    Args:
        queue (WorkQueue): The queue the key came from.
        key (str): A key returned by `queue.get()`.
        sync_handler (SyncHandler): Reconciles the key; raises on failure.
        max_retries (int): Requeues allowed before the key is dropped.

    Returns:
        ItemOutcome: What happened to the key.
    """
    try:
        await sync_handler(key)
    except SecretMirrorError as e:
        return handle_error(queue, key, e, max_retries)
    except Exception as e:
        logger.exception(f"Unexpected error while syncing '{key}'")
        return handle_error(queue, key, e, max_retries)
    else:
        queue.forget(key)
        return ItemOutcome.SUCCEEDED
    finally:
        queue.done(key)


async def process_next_work_item(
    queue: WorkQueue,
    sync_handler: SyncHandler,
    max_retries: int = MAX_RETRIES,
) -> bool:
    """
    Take the next key from the queue and process it.

    Args:
        queue (WorkQueue): The queue to pull from.
        sync_handler (SyncHandler): Reconciles a key; raises on failure.
        max_retries (int): Requeues allowed before a key is dropped.

    Returns:
        bool: False once the queue is shut down and drained.
    """
    key: Optional[str]
    shutdown: bool
    key, shutdown = await queue.get()
    if shutdown or key is None:
        return False
    await process_item(queue, key, sync_handler, max_retries)
    return True


async def reconcile_worker(
    worker_id: int,
    queue: WorkQueue,
    sync_handler: SyncHandler,
    max_retries: int = MAX_RETRIES,
) -> None:
    """
    A long-lived worker task that processes keys until the queue shuts down.

    Args:
        worker_id (int): A unique identifier for this worker.
        queue (WorkQueue): The queue to pull keys from.
        sync_handler (SyncHandler): Reconciles a key; raises on failure.
        max_retries (int): Requeues allowed before a key is dropped.
    """
    logger.debug(f"Worker {worker_id} started.")
    while await process_next_work_item(queue, sync_handler, max_retries):
        pass
    logger.debug(f"Worker {worker_id} shutting down.")
