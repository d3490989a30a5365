# src/secret_mirror/controller.py
"""
The reconciliation engine.

A `Controller` owns a pool of worker tasks draining one `WorkQueue`. It
waits for the cluster cache to sync before any key is processed, and on
shutdown lets every worker finish the key it holds before returning.
"""

import asyncio
import logging
from typing import Callable, List

from secret_mirror.worker import MAX_RETRIES, SyncHandler, reconcile_worker
from secret_mirror.workqueue import WorkQueue

logger: logging.Logger = logging.getLogger(__name__)


async def wait_for_cache_sync(
    has_synced: Callable[[], bool],
    stop_event: asyncio.Event,
    poll_interval_s: float = 0.1,
) -> bool:
    """
    Wait until `has_synced()` is true or `stop_event` is set.

    Args:
        has_synced (Callable[[], bool]): Reports whether the cache is complete.
        stop_event (asyncio.Event): Abandons the wait when set.
        poll_interval_s (float): How often to poll `has_synced`.

    Returns:
        bool: True if the cache synced, False if stopped first.
    """
    while not has_synced():
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=poll_interval_s)
            return False
        except asyncio.TimeoutError:
            pass
    return True


class Controller:
    """Runs a sync handler over a work queue with a fixed pool of workers."""

    def __init__(
        self,
        name: str,
        queue: WorkQueue,
        sync_handler: SyncHandler,
        has_synced: Callable[[], bool],
        max_retries: int = MAX_RETRIES,
        cache_sync_poll_s: float = 0.1,
    ) -> None:
        """
        Initialize the controller.

        Args:
            name (str): Used in log messages.
            queue (WorkQueue): The queue feeding the workers.
            sync_handler (SyncHandler): Reconciles one key; raises on failure.
            has_synced (Callable[[], bool]): Reports whether the cache is complete.
            max_retries (int): Requeues allowed before a key is dropped.
            cache_sync_poll_s (float): Poll interval while waiting for the cache.
        """
        self._name: str = name
        self._queue: WorkQueue = queue
        self._sync_handler: SyncHandler = sync_handler
        self._has_synced: Callable[[], bool] = has_synced
        self._max_retries: int = max_retries
        self._cache_sync_poll_s: float = cache_sync_poll_s

    async def run(self, workers: int, stop_event: asyncio.Event) -> None:
        """
        Process keys until `stop_event` is set.

        Args:
            workers (int): How many keys are handled in parallel.
            stop_event (asyncio.Event): Set to begin a graceful shutdown.
        """
        logger.info(f"Starting {self._name} controller.")
        worker_tasks: List[asyncio.Task[None]] = []
        try:
            logger.info(f"Waiting for caches to sync for {self._name} controller.")
            if not await wait_for_cache_sync(
                self._has_synced, stop_event, self._cache_sync_poll_s
            ):
                logger.error(f"Unable to sync caches for {self._name} controller.")
                return
            logger.info(f"Caches are synced for {self._name} controller.")

            worker_tasks = [
                asyncio.create_task(
                    reconcile_worker(
                        worker_id=i,
                        queue=self._queue,
                        sync_handler=self._sync_handler,
                        max_retries=self._max_retries,
                    )
                )
                for i in range(workers)
            ]
            await stop_event.wait()
        finally:
            self._queue.shut_down()
            if worker_tasks:
                logger.info(
                    f"Waiting for {len(worker_tasks)} workers to finish "
                    "their current items..."
                )
                await asyncio.gather(*worker_tasks, return_exceptions=True)
            logger.info(f"Shut down {self._name} controller.")
