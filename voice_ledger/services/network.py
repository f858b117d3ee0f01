"""
Connectivity monitor.

Holds the last reported connectivity state and notifies subscribers on
every change. Whatever watches the real network (an OS hook, a health
check loop, a test) calls set_connected; repeated reports of the same
state are ignored.
"""

from typing import Callable

import structlog


logger = structlog.get_logger(__name__)

ConnectivityListener = Callable[[bool], None]


class ConnectivityMonitor:
    def __init__(self, connected: bool = True):
        self._connected = connected
        self._listeners: list[ConnectivityListener] = []

    @property
    def is_connected(self) -> bool:
        return self._connected

    def subscribe(self, listener: ConnectivityListener) -> Callable[[], None]:
        """
        Register a listener for connectivity changes.

        Returns:
            A callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def set_connected(self, connected: bool) -> None:
        if connected == self._connected:
            return
        self._connected = connected
        logger.info("connectivity_changed", connected=connected)
        for listener in list(self._listeners):
            listener(connected)
