"""
Connectivity monitor.
Tracks whether the hosted backend is reachable and notifies listeners when the
device comes back online, which is the main trigger for a sync pass.
"""
import inspect
import logging
from typing import Awaitable, Callable, List, Optional, Union

from .remote_client import RemoteClient, remote_client

logger = logging.getLogger(__name__)

Listener = Callable[[], Union[None, Awaitable[None]]]


class ConnectivityMonitor:
    def __init__(self, remote: Optional[RemoteClient] = None, online: bool = False):
        self.remote = remote
        self._online = online
        self._on_reconnect: List[Listener] = []

    def is_online(self) -> bool:
        return self._online

    def on_reconnect(self, listener: Listener) -> None:
        self._on_reconnect.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._on_reconnect:
            self._on_reconnect.remove(listener)

    async def set_online(self, online: bool) -> None:
        """Record a connectivity transition; offline -> online fires listeners."""
        was_online = self._online
        self._online = online
        if online and not was_online:
            logger.info("Connectivity restored")
            for listener in list(self._on_reconnect):
                result = listener()
                if inspect.isawaitable(result):
                    await result
        elif was_online and not online:
            logger.info("Connectivity lost")

    async def probe(self) -> bool:
        """Ping the backend and update the online flag."""
        online = await self.remote.ping() if self.remote is not None else False
        await self.set_online(online)
        return online


connectivity_monitor = ConnectivityMonitor(remote_client)
