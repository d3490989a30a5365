# src/secret_mirror/signals.py
"""
Translates termination signals into a graceful controller shutdown.

The first SIGINT or SIGTERM sets an `asyncio.Event` that the controller,
the resync loop and the pipeline wait on. A second signal means the
operator does not want to wait for in-flight syncs, and the process exits
immediately.
"""

import asyncio
import logging
import os
import signal
from types import FrameType
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

logger: logging.Logger = logging.getLogger(__name__)

SHUTDOWN_SIGNALS: Tuple[signal.Signals, ...] = (signal.SIGINT, signal.SIGTERM)

# Exit status used when a second signal forces termination.
FORCED_EXIT_CODE: int = 1


class GracefulShutdown:
    """
    An async context manager mapping POSIX signals to a shutdown event.

    Previous handlers are restored on exit.

    Attributes:
        signals_received (int): How many handled signals have arrived.
    """

    def __init__(
        self,
        signals: Iterable[signal.Signals] = SHUTDOWN_SIGNALS,
        force_exit: Callable[[int], Any] = os._exit,
    ) -> None:
        """
        Initialize the shutdown manager.

        Args:
            signals (Iterable[signal.Signals]): The signals to handle.
            force_exit (Callable[[int], Any]): Called with the exit status on
                the second signal. Defaults to `os._exit`, which skips cleanup
                that may be what is hanging.
        """
        self._signals: Tuple[signal.Signals, ...] = tuple(signals)
        self._force_exit: Callable[[int], Any] = force_exit
        self._event: asyncio.Event = asyncio.Event()
        self._old_handlers: Dict[signal.Signals, Any] = {}
        self.signals_received: int = 0

    @property
    def event(self) -> asyncio.Event:
        """The event set by the first signal."""
        return self._event

    async def __aenter__(self) -> asyncio.Event:
        """
        Registers the signal handlers.

        Returns:
            asyncio.Event: Set when the first handled signal arrives.
        """
        loop: asyncio.AbstractEventLoop = asyncio.get_running_loop()

        def _handler(sig: int, _: Optional[FrameType]) -> None:
            self.signals_received += 1
            if self.signals_received > 1:
                logger.critical("Received second shutdown signal. Exiting now.")
                self._force_exit(FORCED_EXIT_CODE)
                return
            logger.warning(
                f"Received {signal.strsignal(sig)}. Stopping the config watcher "
                "and draining workers..."
            )
            loop.call_soon_threadsafe(self._event.set)

        for sig in self._signals:
            try:
                # Only the main thread may install handlers.
                self._old_handlers[sig] = signal.signal(sig, _handler)
            except (ValueError, OSError) as e:
                logger.warning(f"Could not set handler for {sig.name}: {e}")

        return self._event

    async def __aexit__(self, *args: Any) -> None:
        """Restores original signal handlers."""
        for sig, handler in self._old_handlers.items():
            try:
                signal.signal(sig, handler)
            except (ValueError, OSError) as e:
                logger.warning(f"Could not restore handler for {sig.name}: {e}")
        self._old_handlers.clear()
