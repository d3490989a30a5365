# src/secret_mirror/agent.py
"""
Hot-reloading holder for the mirror rules.

The rules file is usually delivered by mounting a directory in which the
file is a symlink through a hidden `..data` link to a timestamped sibling
directory. An update writes a new sibling directory and swaps the `..data`
link, so the file's inode changes under any watch placed on the file
itself. `ConfigAgent` therefore watches the parent directory and reloads
on every change in it, keeping the previous rules whenever a reload fails.
"""

import logging
import threading
from pathlib import Path
from typing import FrozenSet, Optional

from watchdog.events import (
    EVENT_TYPE_CLOSED_NO_WRITE,
    EVENT_TYPE_OPENED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver

from secret_mirror.config import Configuration, load_configuration
from secret_mirror.exceptions import ConfigError

logger: logging.Logger = logging.getLogger(__name__)

# Reading the rules file produces these, and they never change its content.
_IGNORED_EVENTS: FrozenSet[str] = frozenset(
    {EVENT_TYPE_OPENED, EVENT_TYPE_CLOSED_NO_WRITE}
)


class _ReloadHandler(FileSystemEventHandler):
    """Forwards directory events to the agent."""

    def __init__(self, agent: "ConfigAgent") -> None:
        super().__init__()
        self._agent: ConfigAgent = agent

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type in _IGNORED_EVENTS:
            return
        logger.debug(
            f"Observed '{event.event_type}' on '{event.src_path}' in the watched folder."
        )
        self._agent.reload()


class ConfigAgent:
    """
    Loads the mirror rules file and keeps the published copy current.

    `config()` is safe to call from any thread and returns immediately with
    the latest successfully loaded `Configuration`. The returned object is
    shared and must not be modified.
    """

    def __init__(self) -> None:
        self._lock: threading.Lock = threading.Lock()
        self._config: Optional[Configuration] = None
        self._path: Optional[Path] = None
        self._observer: Optional[BaseObserver] = None

    def start(self, path: Path) -> None:
        """
        Load the rules file and begin watching its directory.

        Args:
            path (Path): The rules file.

        Raises:
            ConfigError: If the initial load fails, in which case nothing is
                watched, or if the agent is already watching.
        """
        if self._observer is not None:
            raise ConfigError(f"configuration agent is already watching '{self._path}'")
        location: Path = Path(path).absolute()
        self.set(load_configuration(location))
        self._path = location

        watching_dir: Path = location.parent
        observer: BaseObserver = Observer()
        observer.schedule(_ReloadHandler(self), str(watching_dir), recursive=False)
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.info(f"Watching '{watching_dir}' for configuration changes.")

    def reload(self) -> bool:
        """
        Re-read the rules file, keeping the current rules on failure.

        A failure here is expected while a directory swap is in progress; the
        swap itself produces further events, which trigger another attempt.

        Returns:
            bool: True if a new configuration was published.
        """
        if self._path is None:
            return False
        try:
            config: Configuration = load_configuration(self._path)
        except ConfigError as e:
            logger.error(f"Error loading config, keeping the previous one: {e}")
            return False

        if config == self.config():
            return False
        self.set(config)
        logger.info(
            f"Loaded updated configuration from '{self._path}' "
            f"({len(config.secrets)} mirror rules)."
        )
        return True

    def config(self) -> Configuration:
        """
        Return the latest configuration.

        Returns:
            Configuration: The published rules. Do not modify them.
        """
        with self._lock:
            if self._config is None:
                raise ConfigError("configuration agent has not been started")
            return self._config

    def set(self, config: Configuration) -> None:
        """
        Publish `config` as the current configuration.

        Args:
            config (Configuration): The rules to publish.
        """
        with self._lock:
            self._config = config

    def stop(self) -> None:
        """Stop watching. The last configuration stays available."""
        observer: Optional[BaseObserver] = self._observer
        self._observer = None
        if observer is None:
            return
        observer.stop()
        observer.join()
        logger.info("Stopped watching for configuration changes.")
