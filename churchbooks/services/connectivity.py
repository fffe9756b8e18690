from typing import Awaitable, Callable, List, Optional

from churchbooks.logging_config import get_logger

logger = get_logger(__name__)

Listener = Callable[[bool], None]


class ConnectivityMonitor:
    """
    Online/offline flag with transition notifications.

    The client reports transitions through `set_online` (or `check` with a
    probe such as the remote backend's ping). Listeners only hear about
    actual changes, never repeats of the current state.
    """

    def __init__(self, online: bool = True, probe: Optional[Callable[[], Awaitable[bool]]] = None):
        self._online = online
        self._probe = probe
        self._listeners: List[Listener] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def set_online(self, online: bool) -> bool:
        """Record the current state; returns True when it changed"""
        if online == self._online:
            return False

        self._online = online
        logger.info("Connection restored" if online else "Connection lost, working offline")
        for listener in list(self._listeners):
            listener(online)
        return True

    async def check(self) -> bool:
        if self._probe is not None:
            self.set_online(bool(await self._probe()))
        return self._online
