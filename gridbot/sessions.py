"""Per-(user, symbol) grid sessions, each polled on its own cancellable thread."""
from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from .binance_client import DEFAULT_BASE_URL, BinanceClient
from .grid import GridConfig, GridController


class SessionExistsError(RuntimeError):
    """Raised when a user already runs a session for the requested symbol."""


@dataclass(frozen=True)
class Credentials:
    user_id: str
    api_key: str = field(repr=False)
    api_secret: str = field(repr=False)


ClientFactory = Callable[[Credentials], object]


def binance_client_factory(base_url: str = DEFAULT_BASE_URL, **client_kwargs) -> ClientFactory:
    def build(credentials: Credentials) -> BinanceClient:
        return BinanceClient(credentials.api_key, credentials.api_secret, base_url, **client_kwargs)

    return build


def session_key(user_id: str, symbol: str) -> str:
    return f"{user_id}:{symbol.upper()}"


class EventLog:
    """Bounded in-memory notification log shared by all sessions."""

    def __init__(self, maxlen: int = 1000):
        self._lock = threading.Lock()
        self._logs: deque[Dict[str, object]] = deque(maxlen=maxlen)

    def add_log(
        self,
        message: str,
        kind: str = "info",
        *,
        session_id: Optional[str] = None,
        symbol: Optional[str] = None,
        ts: Optional[datetime] = None,
    ) -> None:
        entry = {
            "ts": (ts or datetime.now(timezone.utc)).isoformat(),
            "msg": message,
            "session_id": session_id,
            "symbol": symbol,
            "kind": kind,
        }
        with self._lock:
            self._logs.append(entry)

    def sink(self, session_id: str, symbol: str) -> Callable[[str, str], None]:
        def notify(message: str, kind: str) -> None:
            self.add_log(message, kind, session_id=session_id, symbol=symbol)

        return notify

    def logs(self, session_id: Optional[str] = None, limit: int = 1000) -> List[Dict[str, object]]:
        if limit <= 0:
            return []
        with self._lock:
            items = list(self._logs)
        if session_id is not None:
            items = [e for e in items if e["session_id"] == session_id]
        return items[-limit:]


class SessionHandle:
    """A running controller plus the thread that ticks it."""

    def __init__(self, session_id: str, user_id: str, controller: GridController):
        self.session_id = session_id
        self.user_id = user_id
        self.controller = controller
        self.started_at = datetime.now(timezone.utc)
        self._stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def symbol(self) -> str:
        return self.controller.symbol

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stopped.is_set()

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self._loop, name=f"grid-{self.session_id}", daemon=True
        )
        self._thread.start()

    def _loop(self) -> None:
        interval = self.controller.config.poll_seconds
        while not self._stopped.wait(interval):
            self.controller.run_tick()

    def stop(self, wait: bool = False, timeout: Optional[float] = None) -> None:
        self._stopped.set()
        self.controller.stop()
        if wait and self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    def status(self) -> Dict[str, object]:
        return {
            **self.controller.status(),
            "session_id": self.session_id,
            "user": self.user_id,
            "started_at": self.started_at.isoformat(),
            "running": self.running,
        }


class SessionSupervisor:
    """Owns one :class:`GridController` per (user, symbol)."""

    def __init__(self, client_factory: Optional[ClientFactory] = None, events: Optional[EventLog] = None):
        self.client_factory = client_factory or binance_client_factory()
        self.events = events or EventLog()
        self._lock = threading.Lock()
        self._sessions: Dict[str, SessionHandle] = {}
        self._starting: set = set()

    def start(self, credentials: Credentials, symbol: str, config: GridConfig) -> SessionHandle:
        """Initialize and schedule a session; raises ``StartupError`` on failure."""

        symbol = symbol.upper()
        sid = session_key(credentials.user_id, symbol)
        with self._lock:
            existing = self._sessions.get(sid)
            if sid in self._starting or (existing is not None and existing.running):
                raise SessionExistsError(f"Session {sid} is already running")
            self._starting.add(sid)
        try:
            client = self.client_factory(credentials)
            controller = GridController(client, symbol, config, notify=self.events.sink(sid, symbol))
            controller.initialize()
            handle = SessionHandle(sid, credentials.user_id, controller)
            handle.start()
            with self._lock:
                self._sessions[sid] = handle
        finally:
            with self._lock:
                self._starting.discard(sid)
        logging.info("Started grid session %s (poll every %.1fs)", sid, config.poll_seconds)
        return handle

    def stop(self, handle: SessionHandle, wait: bool = False) -> None:
        handle.stop(wait=wait)
        with self._lock:
            if self._sessions.get(handle.session_id) is handle:
                del self._sessions[handle.session_id]
        logging.info("Stopped grid session %s", handle.session_id)

    def get(self, session_id: str) -> Optional[SessionHandle]:
        with self._lock:
            return self._sessions.get(session_id)

    def sessions(self) -> List[SessionHandle]:
        with self._lock:
            return list(self._sessions.values())

    def stop_all(self, wait: bool = False) -> List[str]:
        stopped = []
        for handle in self.sessions():
            self.stop(handle, wait=wait)
            stopped.append(handle.session_id)
        return stopped
