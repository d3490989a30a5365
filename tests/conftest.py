# tests/conftest.py
"""
Pytest configuration and fixtures for the secret-mirror tests.

This module provides:
- Factories for writing mirror rules files, including the symlinked
  `..data` layout produced by mounted configuration volumes.
- An in-memory cluster seeded with secrets.
- Work queues with short backoff so retry behaviour can be observed quickly.
- A polling helper for assertions on state changed by background threads.
"""

import asyncio
import os
import time
from pathlib import Path
from typing import Callable, Dict, Generator, List, Optional, Tuple

import pytest

from secret_mirror.agent import ConfigAgent
from secret_mirror.cluster import InMemoryCluster, Secret
from secret_mirror.ratelimit import ExponentialBackoffRateLimiter
from secret_mirror.workqueue import WorkQueue

CONFIG_ONE_RULE: str = """
secrets:
- from:
    namespace: source-namespace-1
    name: dev-secret-1
  to:
    namespace: target-namespace-2
    name: prod-secret-1
"""

CONFIG_TWO_RULES: str = """
secrets:
- from:
    namespace: source-namespace-1
    name: dev-secret-1
  to:
    namespace: target-namespace-2
    name: prod-secret-1
- from:
    namespace: source-namespace-3
    name: dev-secret-1
  to:
    namespace: target-namespace-4
    name: prod-secret-1
"""


def rules_yaml(rules: List[Tuple[str, str, str, str]]) -> str:
    """
    Render mirror rules as YAML.

    Args:
        rules (List[Tuple[str, str, str, str]]): Tuples of source namespace,
            source name, target namespace and target name.

    Returns:
        str: The rules file content.
    """
    lines: List[str] = ["secrets:"]
    for src_ns, src_name, dst_ns, dst_name in rules:
        lines.append(f"- from: {{namespace: {src_ns}, name: {src_name}}}")
        lines.append(f"  to: {{namespace: {dst_ns}, name: {dst_name}}}")
    return "\n".join(lines) + "\n"


def wait_until(
    predicate: Callable[[], bool], timeout: float = 10.0, interval: float = 0.05
) -> bool:
    """
    Poll `predicate` until it holds or `timeout` elapses.

    Returns:
        bool: Whether the predicate held in time.
    """
    deadline: float = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


async def async_wait_until(
    predicate: Callable[[], bool], timeout: float = 10.0, interval: float = 0.01
) -> bool:
    """
    Like `wait_until`, but yields to the event loop between polls.

    Returns:
        bool: Whether the predicate held in time.
    """
    loop: asyncio.AbstractEventLoop = asyncio.get_running_loop()
    deadline: float = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


class MountedConfig:
    """
    A rules file laid out like a mounted configuration volume.

    `<dir>/mapping.yaml` links to `..data/mapping.yaml`, and `..data` links
    to a timestamped directory. `swap` writes a new timestamped directory
    and retargets `..data` by removing and recreating the link.
    """

    def __init__(self, root: Path, content: str) -> None:
        self.root: Path = root
        self.path: Path = root / "mapping.yaml"
        self._generation: int = 0
        self._write_generation(content)
        os.symlink(self._current_dir_name(), root / "..data")
        os.symlink("..data/mapping.yaml", self.path)

    def _current_dir_name(self) -> str:
        return f"..2019_08_0{self._generation + 1}_18_16_30.006116574"

    def _write_generation(self, content: str) -> None:
        date_dir: Path = self.root / self._current_dir_name()
        date_dir.mkdir()
        (date_dir / "mapping.yaml").write_text(content)

    def swap(self, content: str) -> None:
        self._generation += 1
        self._write_generation(content)
        os.remove(self.root / "..data")
        os.symlink(self._current_dir_name(), self.root / "..data")


@pytest.fixture(scope="function")
def rules_file(tmp_path: Path) -> Callable[[str], Path]:
    """
    Provide a factory writing a plain rules file into a fresh directory.

    Args:
        tmp_path (Path): The pytest fixture for a temporary directory.

    Returns:
        Callable[[str], Path]: Writes the given content and returns its path.
    """
    config_dir: Path = tmp_path / "config"
    config_dir.mkdir()

    def _writer(content: str) -> Path:
        path: Path = config_dir / "mapping.yaml"
        path.write_text(content)
        return path

    return _writer


@pytest.fixture(scope="function")
def mounted_config(tmp_path: Path) -> Callable[[str], MountedConfig]:
    """
    Provide a factory for a rules file behind `..data` symlinks.

    Args:
        tmp_path (Path): The pytest fixture for a temporary directory.

    Returns:
        Callable[[str], MountedConfig]: Creates the layout with initial content.
    """
    config_dir: Path = tmp_path / "mounted"
    config_dir.mkdir()

    def _creator(content: str) -> MountedConfig:
        return MountedConfig(config_dir, content)

    return _creator


@pytest.fixture(scope="function")
def config_agent() -> Generator[ConfigAgent, None, None]:
    """
    Provide a configuration agent that is stopped after the test.

    Yields:
        ConfigAgent: A not yet started agent.
    """
    agent: ConfigAgent = ConfigAgent()
    yield agent
    agent.stop()


@pytest.fixture(scope="function")
def cluster_factory() -> Callable[..., InMemoryCluster]:
    """
    Provide a factory for a started in-memory cluster.

    Returns:
        Callable[..., InMemoryCluster]: Accepts `(namespace, name, data)`
            tuples and returns a started cluster holding those secrets.
    """

    def _creator(
        *secrets: Tuple[str, str, Optional[Dict[str, bytes]]],
    ) -> InMemoryCluster:
        cluster: InMemoryCluster = InMemoryCluster(
            [
                Secret(namespace=ns, name=name, data=dict(data or {}))
                for ns, name, data in secrets
            ]
        )
        cluster.start()
        return cluster

    return _creator


@pytest.fixture(scope="function")
def fast_queue() -> WorkQueue:
    """
    Provide a work queue whose retries fire within milliseconds.

    Returns:
        WorkQueue: A queue with 1ms base and 10ms maximum backoff.
    """
    return WorkQueue(
        ExponentialBackoffRateLimiter(base_delay=0.001, max_delay=0.01),
        name="test",
    )
