# src/secret_mirror/config.py
"""
Configuration for the secret-mirror controller.

This module holds two kinds of configuration: the operational settings of
the process (`AppConfig`), fixed at startup, and the declarative mirror
rules (`Configuration`), loaded from a YAML file that may be replaced at
runtime.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, List, Mapping, Optional, Tuple

import yaml

from secret_mirror.exceptions import ConfigError


@dataclass(frozen=True)
class Location:
    """
    Identifies a secret.

    Attributes:
        namespace (str): The namespace holding the secret.
        name (str): The secret's name.
    """

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class MirrorRule:
    """
    Copy the data of the `source` secret into the `target` secret.

    Attributes:
        source (Location): Where the data is read from (`from` in YAML).
        target (Location): Where the data is written to (`to` in YAML).
    """

    source: Location
    target: Location


@dataclass(frozen=True)
class Configuration:
    """
    An immutable set of mirror rules.

    Instances are published whole and replaced, never modified, so readers
    may keep a reference for as long as they need it.

    Attributes:
        secrets (Tuple[MirrorRule, ...]): The rules, in file order.
    """

    secrets: Tuple[MirrorRule, ...] = ()

    def rules_from(self, namespace: str, name: str) -> List[MirrorRule]:
        """
        Select the rules whose source is the given secret.

        Args:
            namespace (str): The source namespace.
            name (str): The source secret name.

        Returns:
            List[MirrorRule]: The matching rules, in file order.
        """
        return [
            rule
            for rule in self.secrets
            if rule.source.namespace == namespace and rule.source.name == name
        ]


ConfigGetter = Callable[[], Configuration]


def _parse_location(value: Any, where: str) -> Location:
    if not isinstance(value, Mapping):
        raise ConfigError(f"{where}: expected a mapping with 'namespace' and 'name'")
    parts: List[str] = []
    for attr in ("namespace", "name"):
        item: Any = value.get(attr)
        if not isinstance(item, str) or not item.strip():
            raise ConfigError(f"{where}.{attr}: expected a non-empty string")
        parts.append(item)
    return Location(namespace=parts[0], name=parts[1])


def parse_configuration(document: Any) -> Configuration:
    """
    Build a `Configuration` from a parsed YAML document.

    Args:
        document (Any): The result of `yaml.safe_load`.

    Returns:
        Configuration: The validated rules.

    Raises:
        ConfigError: If the document does not describe a list of rules.
            The message names the offending entry, e.g. `secrets[2].to.name`.
    """
    if document is None:
        raise ConfigError("configuration is empty")
    if not isinstance(document, Mapping):
        raise ConfigError("configuration must be a mapping with a 'secrets' list")

    if "secrets" not in document:
        raise ConfigError("configuration must be a mapping with a 'secrets' list")
    entries: Any = document["secrets"]
    if not isinstance(entries, list):
        raise ConfigError("secrets: expected a list of mirror rules")

    rules: List[MirrorRule] = []
    for index, entry in enumerate(entries):
        where: str = f"secrets[{index}]"
        if not isinstance(entry, Mapping):
            raise ConfigError(f"{where}: expected a mapping with 'from' and 'to'")
        rules.append(
            MirrorRule(
                source=_parse_location(entry.get("from"), f"{where}.from"),
                target=_parse_location(entry.get("to"), f"{where}.to"),
            )
        )
    return Configuration(secrets=tuple(rules))


def load_configuration(path: Path) -> Configuration:
    """
    Read and validate the mirror rules file.

    Args:
        path (Path): The YAML file. Symlinks are followed.

    Returns:
        Configuration: The loaded rules.

    Raises:
        ConfigError: If the file cannot be read or is invalid.
    """
    try:
        text: str = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"unable to read configuration '{path}': {e}") from e

    try:
        document: Any = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"unable to parse configuration '{path}': {e}") from e

    try:
        return parse_configuration(document)
    except ConfigError as e:
        raise ConfigError(f"invalid configuration '{path}': {e}") from e


@dataclass(frozen=True)
class AppConfig:
    """
    Defines the controller's operational parameters.

    Attributes:
        config_path (Path): The mirror rules file to load and watch.
        num_workers (int): Number of keys reconciled in parallel.
        max_retries (int): Requeues allowed for a failing key before it is dropped.
        base_delay_s (float): Backoff after the first failure of a key.
        max_delay_s (float): Upper bound on the per-key backoff.
        bucket_qps (float): Overall retry rate across all keys.
        bucket_burst (int): Retries allowed in a burst before `bucket_qps` applies.
        resync_period_s (float): How often every cached secret is re-enqueued.
            Zero disables the periodic resync.
        cache_sync_poll_s (float): Poll interval while waiting for the cache.
        cluster_state_path (Path, optional): YAML file used to seed the
            in-memory cluster backend.
    """

    config_path: Path
    num_workers: int = 10
    max_retries: int = 15
    base_delay_s: float = 0.005
    max_delay_s: float = 1000.0
    bucket_qps: float = 10.0
    bucket_burst: int = 100
    resync_period_s: float = 300.0
    cache_sync_poll_s: float = 0.1
    cluster_state_path: Optional[Path] = field(default=None)

    def __post_init__(self) -> None:
        if self.num_workers < 1:
            raise ConfigError(
                f"a non-zero, positive number of workers is necessary, "
                f"not {self.num_workers}"
            )
        if self.max_retries < 0:
            raise ConfigError(f"max_retries must not be negative: {self.max_retries}")
        if self.resync_period_s < 0:
            raise ConfigError(
                f"resync period must not be negative: {self.resync_period_s}"
            )
