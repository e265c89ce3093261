"""
Connectivity signals and the edge-triggered monitor.

A signal answers `is_online()` cheaply from its last known state. The
monitor samples it and calls the registered handlers on every
offline -> online edge. It does not debounce: a flicker produces one edge per
return to online, and the sync engine coalesces those into drains.
"""
import abc
import asyncio
import logging
from typing import Callable, List, Optional

import requests

import pos_settings

logger = logging.getLogger(__name__)


class ConnectivitySignal(abc.ABC):

    @abc.abstractmethod
    def is_online(self) -> bool:
        ...

    def refresh(self) -> bool:
        """Re-check connectivity (may block) and return the new state."""
        return self.is_online()


class ManualConnectivitySignal(ConnectivitySignal):
    """Connectivity set by hand: tests, a kiosk toggle, or forced offline mode."""

    def __init__(self, online: bool = True):
        self._online = bool(online)

    def set_online(self, online: bool):
        self._online = bool(online)

    def is_online(self) -> bool:
        return self._online


class HttpProbeSignal(ConnectivitySignal):
    """Online while a GET against the remote health URL answers below 500."""

    def __init__(self, url: str, timeout: float = 5.0, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()
        self._online = False

    def refresh(self) -> bool:
        try:
            resp = self.session.get(self.url, timeout=self.timeout)
            self._online = resp.status_code < 500
        except requests.RequestException as exc:
            logger.debug("Connectivity probe %s failed: %s", self.url, exc)
            self._online = False
        return self._online

    def is_online(self) -> bool:
        return self._online


OnlineHandler = Callable[[], None]


class ConnectivityMonitor:

    def __init__(self, signal: ConnectivitySignal):
        self.signal = signal
        self._last = signal.is_online()
        self._handlers: List[OnlineHandler] = []
        self._stopped = False

    def is_online(self) -> bool:
        return self.signal.is_online()

    def on_online(self, handler: OnlineHandler):
        self._handlers.append(handler)

    def poll(self) -> bool:
        """Sample the signal once; returns True if this sample was an offline->online edge."""
        current = self.signal.is_online()
        previous, self._last = self._last, current
        if current == previous:
            return False
        if not current:
            logger.info("Connectivity lost; writes will queue locally")
            return False
        logger.info("Connectivity restored")
        for handler in list(self._handlers):
            try:
                handler()
            except Exception:
                logger.exception("Online handler %r failed", handler)
        return True

    async def watch(self, interval: Optional[float] = None):
        """Refresh and poll the signal until stop() is called."""
        delay = interval if interval is not None else pos_settings.CONNECTIVITY_INTERVAL
        self._stopped = False
        while not self._stopped:
            await asyncio.to_thread(self.signal.refresh)
            self.poll()
            await asyncio.sleep(delay)

    def stop(self):
        self._stopped = True


def build_signal(base_url: Optional[str] = None) -> ConnectivitySignal:
    base = base_url or pos_settings.REMOTE_BASE
    if pos_settings.POS_FORCE_OFFLINE:
        logger.warning("POS_FORCE_OFFLINE=1; running in offline mode")
        return ManualConnectivitySignal(online=False)
    if not base:
        return ManualConnectivitySignal(online=True)
    url = base.rstrip('/') + pos_settings.REMOTE_HEALTH_PATH
    return HttpProbeSignal(url, timeout=min(5.0, pos_settings.REMOTE_TIMEOUT))
