# src/secret_mirror/mirror.py
"""
Mirrors secrets according to the configured rules.

`SecretMirror` is both ends of the controller: its `on_add` / `on_update`
callbacks turn cluster notifications into queue keys, and its `reconcile`
coroutine is the sync handler that copies a source secret's data to every
target named by the current configuration.
"""

import dataclasses
import logging
from typing import List

from secret_mirror.cluster import (
    Secret,
    SecretLister,
    SecretWriter,
    meta_namespace_key,
    split_meta_namespace_key,
)
from secret_mirror.config import ConfigGetter, Configuration, Location, MirrorRule
from secret_mirror.exceptions import MirrorError, NotFoundError
from secret_mirror.workqueue import WorkQueue

logger: logging.Logger = logging.getLogger(__name__)

CONTROLLER_NAME: str = "secret-mirroring-manager"


class SecretMirror:
    """Copies source secrets to their configured targets."""

    def __init__(
        self,
        lister: SecretLister,
        client: SecretWriter,
        config: ConfigGetter,
        queue: WorkQueue,
    ) -> None:
        """
        Initialize the mirror.

        Args:
            lister (SecretLister): Cached read access to secrets.
            client (SecretWriter): Used to create and update targets.
            config (ConfigGetter): Returns the current mirror rules.
            queue (WorkQueue): Receives the keys of changed secrets.
        """
        self._lister: SecretLister = lister
        self._client: SecretWriter = client
        self._config: ConfigGetter = config
        self._queue: WorkQueue = queue

    def on_add(self, secret: Secret) -> None:
        logger.debug(f"Enqueueing added secret {secret.namespace}/{secret.name}")
        self.enqueue(secret)

    def on_update(self, old: Secret, new: Secret) -> None:
        logger.debug(f"Enqueueing updated secret {new.namespace}/{new.name}")
        self.enqueue(new)

    def enqueue(self, secret: Secret) -> None:
        self._queue.add(meta_namespace_key(secret.namespace, secret.name))

    def requeue(self, key: str) -> None:
        """
        Reconcile `key` again with a fresh retry budget.

        This is how a key dropped after exhausting its retries is brought
        back without waiting for the next change or resync.

        Args:
            key (str): The key of the source secret.
        """
        self._queue.forget(key)
        self._queue.add(key)

    async def reconcile(self, key: str) -> None:
        """
        Bring every target of the source secret `key` up to date.

        A missing source, or one being deleted, needs no work. Every matching
        rule is attempted even if an earlier one fails.

        Args:
            key (str): The `namespace/name` key of the source secret.

        Raises:
            InvalidKeyError: If the key cannot be split.
            ClusterError: If the source lookup fails for a reason other
                than not-found.
            MirrorError: If one or more rules failed.
        """
        logger.info(f"Reconciling secret '{key}'")
        namespace, name = split_meta_namespace_key(key)

        try:
            source: Secret = self._lister.get(namespace, name)
        except NotFoundError:
            logger.info(f"Not doing work for '{key}' because it has been deleted.")
            return
        except Exception as e:
            logger.error(f"Unable to retrieve secret '{key}' from store: {e}")
            raise
        if source.deletion_requested:
            logger.info(f"Not doing work for '{key}' because it is being deleted.")
            return

        config: Configuration = self._config()
        rules: List[MirrorRule] = config.rules_from(namespace, name)

        errors: List[Exception] = []
        for rule in rules:
            try:
                await self.mirror_secret(source, rule.target)
            except Exception as e:
                logger.error(f"Failed to mirror '{key}' to '{rule.target}': {e}")
                errors.append(e)

        logger.info(f"Finished handling secret '{key}' ({len(rules)} mirror rules).")
        if errors:
            raise MirrorError(errors)

    async def mirror_secret(self, source: Secret, to: Location) -> None:
        """
        Make the secret at `to` hold the same data as `source`.

        An empty source never overwrites a target, and a target that already
        matches is left alone. Other fields of an existing target are kept.

        Args:
            source (Secret): The source secret.
            to (Location): The target location.
        """
        where: str = f"{source.namespace}/{source.name} -> {to}"
        logger.debug(f"Processing mirror request {where}")

        if not source.data:
            logger.info(f"Not updating target secret ({where}) as source has no data.")
            return

        try:
            target: Secret = self._lister.get(to.namespace, to.name)
        except NotFoundError:
            logger.info(f"Creating target secret ({where}).")
            await self._client.create(
                Secret(namespace=to.namespace, name=to.name, data=dict(source.data))
            )
            return

        if target.data == source.data:
            logger.info(
                f"Not updating target secret ({where}) as it already matches the source."
            )
            return

        logger.info(f"Updating target secret ({where}).")
        await self._client.update(dataclasses.replace(target, data=dict(source.data)))
