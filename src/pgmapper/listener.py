"""Dedicated LISTEN connection and notification payload decoding.

Uses the psycopg2 asynchronous notification pattern: an autocommit
connection issues ``LISTEN``, then ``select()`` on the connection socket
and ``poll()`` move incoming ``NOTIFY`` messages onto
``connection.notifies``.

If the connection drops while waiting, the listener reconnects and
re-subscribes on its own, waiting ``min_reconnect_interval`` seconds
before the first attempt and doubling the wait up to
``max_reconnect_interval`` after each failed one.
"""

from __future__ import annotations

import json
import logging
import select
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

import psycopg2
import psycopg2.extensions

from pgmapper.builder import identifier
from pgmapper.errors import ListenError

logger = logging.getLogger(__name__)

CHANNEL = "finery"
MIN_RECONNECT_INTERVAL = 10.0
MAX_RECONNECT_INTERVAL = 60.0

_CONNECTION_LOST = (psycopg2.OperationalError, psycopg2.InterfaceError)


class ListenerEvent(Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECTED = "reconnected"
    CONNECTION_ATTEMPT_FAILED = "connection_attempt_failed"


EventCallback = Callable[[ListenerEvent, "Exception | None"], None]


@dataclass(frozen=True)
class Decoded:
    channel: str
    pid: int
    value: Any


@dataclass(frozen=True)
class DecodeFailure:
    channel: str
    pid: int
    raw: str
    error: str


Payload = Decoded | DecodeFailure


def decode_notification(notify: psycopg2.extensions.Notify) -> Payload:
    """Decode the JSON payload carried by a notification."""
    try:
        value = json.loads(notify.payload)
    except ValueError as exc:
        return DecodeFailure(notify.channel, notify.pid, notify.payload, str(exc))
    return Decoded(notify.channel, notify.pid, value)


class Listener:
    """A connection subscribed to one or more notification channels.

    ``wait()`` and ``ping()`` may run on different threads; psycopg2
    serializes access to the connection.
    """

    def __init__(
        self,
        dsn: str,
        min_reconnect_interval: float = MIN_RECONNECT_INTERVAL,
        max_reconnect_interval: float = MAX_RECONNECT_INTERVAL,
        event_callback: EventCallback | None = None,
    ):
        self._dsn = dsn
        self._min_interval = min_reconnect_interval
        self._max_interval = max_reconnect_interval
        self._event_callback = event_callback
        self._channels: list[str] = []
        self._conn = None
        self._closed = False

    @property
    def channels(self) -> list[str]:
        return list(self._channels)

    def _report(self, event: ListenerEvent, error: Exception | None = None) -> None:
        if self._event_callback is not None:
            self._event_callback(event, error)

    def _connect(self):
        conn = psycopg2.connect(self._dsn)
        conn.set_isolation_level(psycopg2.extensions.ISOLATION_LEVEL_AUTOCOMMIT)
        return conn

    def _execute(self, conn, sql: str) -> None:
        with conn.cursor() as cur:
            cur.execute(sql)

    def listen(self, channel: str = CHANNEL) -> None:
        """Subscribe to *channel*, connecting first if needed.

        Raises:
            ListenError: the connection or the ``LISTEN`` failed.
        """
        name = identifier(channel)
        if self._closed:
            raise ListenError("Listener is closed")
        if name in self._channels:
            return
        try:
            if self._conn is None:
                self._conn = self._connect()
                self._report(ListenerEvent.CONNECTED)
            self._execute(self._conn, f"LISTEN {name}")
        except psycopg2.Error as exc:
            raise ListenError(f"Cannot listen on channel {name}: {exc}") from exc
        self._channels.append(name)
        logger.debug("Listening on channel %s", name)

    def unlisten(self, channel: str) -> None:
        name = identifier(channel)
        if name not in self._channels:
            return
        self._channels.remove(name)
        if self._conn is not None:
            self._execute(self._conn, f"UNLISTEN {name}")

    def wait(self, timeout: float) -> psycopg2.extensions.Notify | None:
        """Return the next notification, or ``None`` after *timeout* seconds.

        Also returns ``None`` as soon as the listener is closed, even from
        another thread.
        """
        if self._closed:
            return None
        if self._conn is None:
            raise ListenError("Listener is not connected; call listen() first")

        deadline = time.monotonic() + timeout
        while True:
            conn = self._conn
            if self._closed or conn is None:
                return None
            if conn.notifies:
                return conn.notifies.pop(0)
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            try:
                if select.select([conn], [], [], remaining) == ([], [], []):
                    return None
                conn.poll()
            except _CONNECTION_LOST as exc:
                if self._closed:
                    return None
                self._report(ListenerEvent.DISCONNECTED, exc)
                self._reconnect()

    def _reconnect(self) -> None:
        interval = self._min_interval
        while not self._closed:
            time.sleep(interval)
            try:
                conn = self._connect()
                for name in self._channels:
                    self._execute(conn, f"LISTEN {name}")
            except psycopg2.Error as exc:
                self._report(ListenerEvent.CONNECTION_ATTEMPT_FAILED, exc)
                interval = min(interval * 2, self._max_interval)
                continue

            if self._closed:
                conn.close()
                return
            old, self._conn = self._conn, conn
            if old is not None and not old.closed:
                old.close()
            self._report(ListenerEvent.RECONNECTED)
            return

    def ping(self) -> bool:
        """Check the connection with ``SELECT 1``; failures go to the event callback."""
        conn = self._conn
        if conn is None:
            return False
        try:
            self._execute(conn, "SELECT 1")
        except psycopg2.Error as exc:
            logger.warning("Listener ping failed: %s", exc)
            self._report(ListenerEvent.DISCONNECTED, exc)
            return False
        return True

    def ping_in_background(self) -> threading.Thread:
        thread = threading.Thread(target=self.ping, name="pgmapper-ping", daemon=True)
        thread.start()
        return thread

    def close(self) -> None:
        self._closed = True
        if self._conn is not None:
            self._conn.close()
            self._conn = None
