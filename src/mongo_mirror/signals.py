# src/mongo_mirror/signals.py
"""
Translation of POSIX stop signals into an `asyncio.Event`.

The sync loop checks the event between cycles, so a stop request never
tears a batch apart from its checkpoint.
"""

import asyncio
import logging
import os
import signal
from typing import Any, List, Optional

logger: logging.Logger = logging.getLogger(__name__)

STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class GracefulShutdown:
    """
    An async context manager that turns SIGINT/SIGTERM into a shutdown event.

    The first signal sets the event and lets the current cycle finish. A
    second signal exits the process immediately; the checkpoint on disk is
    still consistent because it is only ever replaced atomically.
    """

    def __init__(self) -> None:
        self._event: asyncio.Event = asyncio.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._installed: List[signal.Signals] = []

    def _on_signal(self, sig: signal.Signals) -> None:
        if self._event.is_set():
            logger.critical("Received second shutdown signal. Forcing immediate exit.")
            os._exit(1)
        logger.warning(
            f"Received {sig.name}. Finishing the current batch before stopping..."
        )
        self._event.set()

    async def __aenter__(self) -> asyncio.Event:
        """
        Installs the signal handlers on the running loop.

        Returns:
            asyncio.Event: Set once a stop signal has been received.
        """
        self._loop = asyncio.get_running_loop()
        for sig in STOP_SIGNALS:
            try:
                self._loop.add_signal_handler(sig, self._on_signal, sig)
                self._installed.append(sig)
            except (NotImplementedError, RuntimeError, ValueError) as e:
                # Unsupported on some platforms and outside the main thread
                logger.warning(f"Could not set handler for {sig.name}: {e}")
        return self._event

    async def __aexit__(self, *args: Any) -> None:
        """Removes the handlers installed on entry."""
        if self._loop is not None:
            for sig in self._installed:
                self._loop.remove_signal_handler(sig)
        self._installed.clear()
