# src/secret_mirror/pipeline.py
"""Wires the configuration agent, cluster backend and controller together."""

import asyncio
import logging
from typing import Optional

from secret_mirror.agent import ConfigAgent
from secret_mirror.cluster import Cluster, InMemoryCluster, resync_periodically
from secret_mirror.config import AppConfig
from secret_mirror.controller import Controller
from secret_mirror.mirror import CONTROLLER_NAME, SecretMirror
from secret_mirror.ratelimit import default_controller_rate_limiter
from secret_mirror.workqueue import WorkQueue

logger: logging.Logger = logging.getLogger(__name__)


class SecretMirrorPipeline:
    """Runs the secret mirroring controller until shutdown."""

    def __init__(
        self,
        config: AppConfig,
        shutdown_event: asyncio.Event,
        cluster: Optional[Cluster] = None,
    ) -> None:
        """
        Initializes the pipeline with the given configuration.

        Args:
            config (AppConfig): The application configuration.
            shutdown_event (asyncio.Event): Event to signal graceful shutdown.
            cluster (Cluster, optional): The cluster backend. Defaults to an
                in-memory backend, seeded from `config.cluster_state_path`
                when set.
        """
        self._config: AppConfig = config
        self._shutdown_event: asyncio.Event = shutdown_event
        self.cluster: Optional[Cluster] = cluster
        self.agent: ConfigAgent = ConfigAgent()

    def _build_cluster(self) -> Cluster:
        if self.cluster is not None:
            return self.cluster
        if self._config.cluster_state_path is not None:
            return InMemoryCluster.from_state_file(self._config.cluster_state_path)
        logger.warning("No cluster state given; starting with an empty cluster.")
        return InMemoryCluster()

    async def run(self) -> None:
        """
        Load the rules, start the controller and block until shutdown.

        Raises:
            ConfigError: If the rules file or cluster state cannot be loaded.
                Nothing is started in that case.
        """
        logger.info("Starting secret-mirror pipeline.")
        cluster: Cluster = self._build_cluster()
        self.cluster = cluster
        self.agent.start(self._config.config_path)
        resync_task: Optional[asyncio.Task[None]] = None
        try:
            queue: WorkQueue = WorkQueue(
                default_controller_rate_limiter(
                    base_delay=self._config.base_delay_s,
                    max_delay=self._config.max_delay_s,
                    qps=self._config.bucket_qps,
                    burst=self._config.bucket_burst,
                ),
                name=CONTROLLER_NAME,
            )
            mirror: SecretMirror = SecretMirror(cluster, cluster, self.agent.config, queue)
            cluster.add_event_handler(mirror.on_add, mirror.on_update)
            controller: Controller = Controller(
                CONTROLLER_NAME,
                queue,
                mirror.reconcile,
                cluster.has_synced,
                max_retries=self._config.max_retries,
                cache_sync_poll_s=self._config.cache_sync_poll_s,
            )

            controller_task: asyncio.Task[None] = asyncio.create_task(
                controller.run(self._config.num_workers, self._shutdown_event)
            )
            cluster.start()
            if self._config.resync_period_s > 0:
                resync_task = asyncio.create_task(
                    resync_periodically(
                        cluster, self._config.resync_period_s, self._shutdown_event
                    )
                )
            await controller_task
        finally:
            if resync_task is not None:
                resync_task.cancel()
                await asyncio.gather(resync_task, return_exceptions=True)
            self.agent.stop()

        logger.info("Secret-mirror pipeline stopped.")
