"""Online/offline signal consumed by the sync engine.

The host application reports network transitions with :meth:`ConnectivityMonitor.set_online`,
or lets :meth:`ConnectivityMonitor.watch` poll a TCP probe. A transition from offline to
online emits ``signals.connectivityRestored`` and calls the restored callbacks.
"""
import asyncio
import logging
import socket
from typing import Any, Callable, List

from .signals import signals

PROBE_HOST: str = 'firestore.googleapis.com'
PROBE_PORT: int = 443
PROBE_TIMEOUT: float = 5.0
CHECK_INTERVAL: float = 30.0


def probe(host: str = PROBE_HOST, port: int = PROBE_PORT, timeout: float = PROBE_TIMEOUT) -> bool:
    """Return whether a TCP connection to ``host:port`` can be opened."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError as ex:
        logging.debug(f'Connectivity probe to {host}:{port} failed: {ex}')
        return False


class ConnectivityMonitor:
    """Tracks whether the device is online.

    Starts offline; nothing is sent to the remote store until the first positive report.
    """

    def __init__(self, online: bool = False) -> None:
        self._online: bool = online
        self._changed: List[Callable[[bool], Any]] = []
        self._restored: List[Callable[[], Any]] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        """Report the current network state. Repeated reports of the same state are ignored."""
        online = bool(online)
        if online == self._online:
            return
        self._online = online
        logging.info(f'Connectivity changed: {"online" if online else "offline"}')

        signals.onlineChanged.emit(online)
        for callback in list(self._changed):
            callback(online)

        if not online:
            return
        signals.connectivityRestored.emit()
        for callback in list(self._restored):
            callback()

    def subscribe(self, callback: Callable[[bool], Any]) -> Callable[[], None]:
        """Register ``callback`` for every online/offline transition.

        Returns:
            A disposer that unregisters the callback.
        """
        return _register(self._changed, callback)

    def subscribe_restored(self, callback: Callable[[], Any]) -> Callable[[], None]:
        """Register ``callback`` for offline to online transitions.

        Returns:
            A disposer that unregisters the callback.
        """
        return _register(self._restored, callback)

    async def check(self, host: str = PROBE_HOST, port: int = PROBE_PORT, timeout: float = PROBE_TIMEOUT) -> bool:
        """Probe once and report the result."""
        online = await asyncio.to_thread(probe, host, port, timeout)
        self.set_online(online)
        return online

    async def watch(self, interval: float = CHECK_INTERVAL, **kwargs) -> None:
        """Probe every ``interval`` seconds until cancelled."""
        logging.debug(f'Watching connectivity every {interval}s.')
        while True:
            await self.check(**kwargs)
            await asyncio.sleep(interval)


def _register(callbacks: List[Callable], callback: Callable) -> Callable[[], None]:
    callbacks.append(callback)

    def dispose() -> None:
        if callback in callbacks:
            callbacks.remove(callback)

    return dispose


connectivity = ConnectivityMonitor()
