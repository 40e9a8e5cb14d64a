"""Message channel between the privileged host handler and its callers.

The host publishes streaming :class:`HostOutput` events while an
operation runs.  Callers attach a listener for the duration of one
operation with :meth:`HostChannel.listen`, which always detaches the
listener again, including when the operation raises.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Iterator

from azext_mate.deploy.models import HostOutput

logger = logging.getLogger(__name__)

HostListener = Callable[[HostOutput], None]


class HostChannel:
    """Fan-out of host output events to registered listeners."""

    def __init__(self):
        self._listeners: list[HostListener] = []
        self._lock = threading.Lock()

    @contextmanager
    def listen(self, listener: HostListener) -> Iterator[None]:
        """Register *listener*, yield, then deregister on every exit path.

        Usage::

            with host.channel.listen(on_output):
                result = host.execute_script(script)
        """
        with self._lock:
            self._listeners.append(listener)
        try:
            yield
        finally:
            with self._lock:
                try:
                    self._listeners.remove(listener)
                except ValueError:
                    logger.debug("Listener already detached from host channel")

    def publish(self, event: HostOutput) -> None:
        """Deliver *event* to every current listener, in registration order."""
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(event)

    def emit(self, output: str, kind: str = "stdout") -> None:
        """Convenience wrapper around :meth:`publish`."""
        self.publish(HostOutput(output=output, kind=kind))

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)
