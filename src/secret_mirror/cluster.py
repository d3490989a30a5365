# src/secret_mirror/cluster.py
"""
The cluster-facing side of the controller.

The controller talks to the cluster through three narrow interfaces: a
`SecretLister` backed by a local cache, a `SecretWriter` for creates and
updates, and an informer-style event feed that calls registered handlers
on add and update. `InMemoryCluster` implements all three and is the
backend used by the command line and the test suite.
"""

import asyncio
import dataclasses
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Tuple,
)

import yaml

from secret_mirror.exceptions import (
    AlreadyExistsError,
    ClusterError,
    ConfigError,
    InvalidKeyError,
    NotFoundError,
)

logger: logging.Logger = logging.getLogger(__name__)

KEY_SEPARATOR: str = "/"


@dataclass(frozen=True)
class Secret:
    """
    A namespaced mapping of keys to bytes.

    Attributes:
        namespace (str): The namespace holding the secret.
        name (str): The secret's name.
        data (Dict[str, bytes]): The payload.
        labels (Dict[str, str]): Labels, preserved across mirror updates.
        annotations (Dict[str, str]): Annotations, preserved across mirror updates.
        type (str): The secret type.
        deletion_requested (bool): Whether deletion of the secret is pending.
        resource_version (int): Bumped by the backend on every write.
    """

    namespace: str
    name: str
    data: Dict[str, bytes] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    type: str = "Opaque"
    deletion_requested: bool = False
    resource_version: int = 0


def meta_namespace_key(namespace: str, name: str) -> str:
    """
    Build the queue key for a secret.

    Args:
        namespace (str): The namespace, may be empty.
        name (str): The name.

    Returns:
        str: `namespace/name`, or just `name` without a namespace.
    """
    if namespace:
        return f"{namespace}{KEY_SEPARATOR}{name}"
    return name


def split_meta_namespace_key(key: str) -> Tuple[str, str]:
    """
    Split a queue key back into namespace and name.

    Args:
        key (str): A key built by `meta_namespace_key`.

    Returns:
        Tuple[str, str]: The namespace (possibly empty) and the name.

    Raises:
        InvalidKeyError: If the key has more than one separator.
    """
    parts: List[str] = key.split(KEY_SEPARATOR)
    if len(parts) == 1:
        return "", parts[0]
    if len(parts) == 2:
        return parts[0], parts[1]
    raise InvalidKeyError(f"unexpected key format: {key!r}")


class SecretLister(Protocol):
    """Read access to the local secret cache."""

    def get(self, namespace: str, name: str) -> Secret:
        """Return the cached secret or raise `NotFoundError`."""
        ...

    def has_synced(self) -> bool:
        """Whether the cache holds a complete view of the cluster."""
        ...


class SecretWriter(Protocol):
    """Write access to the cluster API."""

    async def create(self, secret: Secret) -> Secret:
        ...

    async def update(self, secret: Secret) -> Secret:
        ...


AddHandler = Callable[[Secret], None]
UpdateHandler = Callable[[Secret, Secret], None]


class Cluster(SecretLister, SecretWriter, Protocol):
    """A backend offering the cache, the writer and the event feed."""

    def add_event_handler(self, on_add: AddHandler, on_update: UpdateHandler) -> None:
        ...

    def start(self) -> None:
        ...

    def resync(self) -> None:
        ...


class InMemoryCluster:
    """
    A cluster backend that keeps every secret in memory.

    Writes are applied immediately and notify the registered event handlers
    the way an informer would. Every create and update is recorded in
    `actions`, and `fail_on` makes the next writes of a verb fail, which is
    how tests observe and disturb the controller.
    """

    def __init__(self, secrets: Optional[List[Secret]] = None) -> None:
        """
        Initialize the backend.

        Args:
            secrets (List[Secret], optional): Initial content of the cache.
        """
        self._secrets: Dict[Tuple[str, str], Secret] = {}
        self._add_handlers: List[AddHandler] = []
        self._update_handlers: List[UpdateHandler] = []
        self._failures: Dict[str, List[Exception]] = {}
        self._synced: bool = False
        self.actions: List[Tuple[str, Secret]] = []
        for secret in secrets or []:
            self._secrets[(secret.namespace, secret.name)] = secret

    @classmethod
    def from_state_file(cls, path: Path) -> "InMemoryCluster":
        """
        Seed a backend from a YAML file.

        The file holds a `secrets` list whose entries have `namespace`,
        `name` and a `data` mapping of string values, stored UTF-8 encoded.

        Args:
            path (Path): The state file.

        Returns:
            InMemoryCluster: The seeded backend, not yet started.
        """
        try:
            document: Any = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"unable to load cluster state '{path}': {e}") from e

        secrets: List[Secret] = []
        for index, entry in enumerate((document or {}).get("secrets") or []):
            if not isinstance(entry, Mapping) or not entry.get("name"):
                raise ConfigError(f"secrets[{index}]: expected a mapping with a 'name'")
            data: Mapping[str, Any] = entry.get("data") or {}
            secrets.append(
                Secret(
                    namespace=str(entry.get("namespace", "")),
                    name=str(entry["name"]),
                    data={k: str(v).encode("utf-8") for k, v in data.items()},
                    labels=dict(entry.get("labels") or {}),
                )
            )
        return cls(secrets)

    def add_event_handler(self, on_add: AddHandler, on_update: UpdateHandler) -> None:
        """
        Register callbacks for add and update notifications.

        Args:
            on_add (AddHandler): Called with each new secret.
            on_update (UpdateHandler): Called with the old and new secret.
        """
        self._add_handlers.append(on_add)
        self._update_handlers.append(on_update)

    def start(self) -> None:
        """Mark the cache as synced and announce every known secret."""
        self._synced = True
        logger.info(f"In-memory cluster started with {len(self._secrets)} secrets.")
        for secret in list(self._secrets.values()):
            self._notify_add(secret)

    def has_synced(self) -> bool:
        return self._synced

    def resync(self) -> None:
        """Deliver an update notification for every cached secret."""
        for secret in list(self._secrets.values()):
            self._notify_update(secret, secret)

    def get(self, namespace: str, name: str) -> Secret:
        try:
            return self._secrets[(namespace, name)]
        except KeyError:
            raise NotFoundError(f"secret '{namespace}/{name}' not found") from None

    def list_secrets(self) -> List[Secret]:
        """Return every cached secret."""
        return list(self._secrets.values())

    def fail_on(self, verb: str, error: Optional[Exception] = None, times: int = 1) -> None:
        """
        Make the next `times` calls of `verb` raise `error`.

        Args:
            verb (str): `create` or `update`.
            error (Exception, optional): The error to raise.
                Defaults to a `ClusterError`.
            times (int): How many calls should fail.
        """
        failure: Exception = error or ClusterError(f"injected {verb} error")
        self._failures.setdefault(verb, []).extend([failure] * times)

    def _check_failure(self, verb: str) -> None:
        pending: List[Exception] = self._failures.get(verb, [])
        if pending:
            raise pending.pop(0)

    async def create(self, secret: Secret) -> Secret:
        self._check_failure("create")
        key: Tuple[str, str] = (secret.namespace, secret.name)
        if key in self._secrets:
            raise AlreadyExistsError(
                f"secret '{secret.namespace}/{secret.name}' already exists"
            )
        stored: Secret = dataclasses.replace(secret, resource_version=1)
        self._secrets[key] = stored
        self.actions.append(("create", stored))
        self._notify_add(stored)
        return stored

    async def update(self, secret: Secret) -> Secret:
        self._check_failure("update")
        key: Tuple[str, str] = (secret.namespace, secret.name)
        old: Secret = self.get(*key)
        stored: Secret = dataclasses.replace(
            secret, resource_version=old.resource_version + 1
        )
        self._secrets[key] = stored
        self.actions.append(("update", stored))
        self._notify_update(old, stored)
        return stored

    def apply(self, secret: Secret) -> Secret:
        """
        Create or replace a secret outside the controller, e.g. a user edit.

        The write is not recorded in `actions` but does notify handlers.

        Args:
            secret (Secret): The desired secret.

        Returns:
            Secret: The stored secret.
        """
        key: Tuple[str, str] = (secret.namespace, secret.name)
        old: Optional[Secret] = self._secrets.get(key)
        version: int = old.resource_version + 1 if old else 1
        stored: Secret = dataclasses.replace(secret, resource_version=version)
        self._secrets[key] = stored
        if old is None:
            self._notify_add(stored)
        else:
            self._notify_update(old, stored)
        return stored

    def mark_deleted(self, namespace: str, name: str) -> Secret:
        """
        Flag a secret as being deleted.

        Args:
            namespace (str): The namespace.
            name (str): The name.

        Returns:
            Secret: The flagged secret.
        """
        return self.apply(
            dataclasses.replace(self.get(namespace, name), deletion_requested=True)
        )

    def _notify_add(self, secret: Secret) -> None:
        if not self._synced:
            return
        for handler in self._add_handlers:
            handler(secret)

    def _notify_update(self, old: Secret, new: Secret) -> None:
        if not self._synced:
            return
        for handler in self._update_handlers:
            handler(old, new)


async def resync_periodically(
    cluster: Cluster, period_s: float, shutdown_event: asyncio.Event
) -> None:
    """
    Call `cluster.resync()` every `period_s` seconds until shutdown.

    Args:
        cluster (Cluster): The backend to resync.
        period_s (float): The resync period in seconds.
        shutdown_event (asyncio.Event): Ends the loop when set.
    """
    while not shutdown_event.is_set():
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=period_s)
            break
        except asyncio.TimeoutError:
            pass
        logger.debug("Resyncing all cached secrets.")
        cluster.resync()
