"""PostgreSQL Mapper: lazy connection, query helpers and LISTEN loop."""

import json
import logging
import threading
from collections.abc import Sequence
from contextlib import contextmanager
from enum import Enum
from typing import Any, Iterator

import psycopg2
import psycopg2.extras

from pgmapper.builder import Insert, Name, OnConflict, RawConflict, Select, Statement
from pgmapper.config import DBConfig
from pgmapper.errors import (
    ConfigError,
    MapperConnectionError,
    MapperError,
    StatementError,
)
from pgmapper.listener import (
    CHANNEL,
    MAX_RECONNECT_INTERVAL,
    MIN_RECONNECT_INTERVAL,
    Decoded,
    Listener,
    ListenerEvent,
    decode_notification,
)
from pgmapper.types import Handler, Params, Row, Values

logger = logging.getLogger(__name__)

DEFAULT_IDLE_TIMEOUT = 60.0


class ListenOutcome(Enum):
    NOTIFIED = "notified"
    DECODE_FAILED = "decode_failed"
    IDLE = "idle"
    STOPPED = "stopped"


class Mapper:
    """Session object wrapping one PostgreSQL connection.

    The data connection is opened on first use and runs in autocommit
    mode, so every helper call commits on its own unless it runs inside
    ``transaction()``. ``source`` is the table the insert helpers write to.

    Not thread-safe: share a Mapper between threads only if the callers
    serialize access themselves.
    """

    def __init__(
        self,
        config: DBConfig,
        source: str = "",
        handler: Handler | None = None,
        listen_idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
    ):
        self.config = config
        self.source = source
        self.handler = handler
        self.listen_idle_timeout = listen_idle_timeout
        self.conn = None
        self.listener: Listener | None = None
        self._stop = threading.Event()

    def __enter__(self) -> "Mapper":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def db_info(self) -> str:
        return self.config.info

    def _fail(self, exc_type: type[MapperError], message: str, *args: Any) -> MapperError:
        """Log a failure and return the matching exception for the caller to raise."""
        logger.error(message, *args)
        return exc_type(message % args if args else message)

    # -- connection ---------------------------------------------------------

    def _check_connection(self):
        if self.conn is None or self.conn.closed:
            self._connect()
        return self.conn

    def _connect(self) -> None:
        try:
            conn = psycopg2.connect(
                self.config.connection_info,
                cursor_factory=psycopg2.extras.RealDictCursor,
            )
        except psycopg2.Error as exc:
            raise self._fail(MapperConnectionError, "Connection error: %s", exc) from exc
        if conn is None:
            raise self._fail(MapperConnectionError, "Connection to PostgreSQL is nil")
        conn.autocommit = True
        self.conn = conn
        logger.debug("Connected to %s", self.db_info)

    def close(self) -> None:
        self.stop_listening()
        if self.listener is not None:
            self.listener.close()
            self.listener = None
        if self.conn is not None:
            logger.info("%s closing connection", self.db_info)
            self.conn.close()
            self.conn = None

    @contextmanager
    def transaction(self) -> Iterator["Mapper"]:
        """Run the enclosed helper calls as one transaction."""
        conn = self._check_connection()
        if not conn.autocommit:
            # already inside a transaction; the outer block commits
            yield self
            return
        conn.autocommit = False
        try:
            yield self
            conn.commit()
        except Exception:
            if not conn.closed:
                conn.rollback()
            raise
        finally:
            if not conn.closed:
                conn.autocommit = True

    # -- raw execution ------------------------------------------------------

    def execute(self, sql: str, params: Params | None = None) -> list[Row]:
        """Run *sql* as given and return its rows (empty without a result set)."""
        conn = self._check_connection()
        logger.debug("SQL: %s | params: %s", sql, params)
        try:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                if cur.description is None:
                    return []
                return [dict(row) for row in cur.fetchall()]
        except psycopg2.Error as exc:
            raise self._fail(StatementError, "Exec error: %s (%s)", exc, sql) from exc

    def query(self, sql: str, params: Params | None = None) -> list[Row]:
        return self.execute(sql, params)

    def _run(self, statement: Statement) -> list[Row]:
        return self.execute(statement.sql, statement.params)

    # -- query helpers ------------------------------------------------------

    def load(
        self,
        source: Name,
        fields: Name | Sequence[Name] = "*",
        where: str | None = None,
        params: Params | None = None,
    ) -> list[Row]:
        """Select *fields* from *source*, optionally filtered by *where*.

        *where* is inserted into the statement verbatim; pass values for
        it through *params*.
        """
        return self._run(Select(source, fields, where, params).render())

    def _require_source(self) -> str:
        if not self.source:
            raise self._fail(ConfigError, "Mapper.source is not set")
        return self.source

    def create(self, fields: str | Sequence[Name], values: Values) -> None:
        """Insert one row into ``source``; conflicts raise."""
        statement = Insert(self._require_source(), fields, [values]).render()
        self._run(statement)

    def save(
        self,
        fields: str | Sequence[Name],
        values: Values,
        conflict_keys: Sequence[Name] = (),
    ) -> None:
        """Insert one row into ``source``, updating every field on conflict.

        Without *conflict_keys* a conflicting row is left untouched.
        """
        statement = Insert(
            self._require_source(), fields, [values], OnConflict(tuple(conflict_keys))
        ).render()
        self._run(statement)

    def insert_batch(
        self,
        fields: str | Sequence[Name],
        rows: Sequence[Values],
        on_conflict: str | None = None,
    ) -> None:
        """Insert *rows* into ``source`` with a single multi-row statement.

        *on_conflict* is appended after ``ON CONFLICT`` verbatim, e.g.
        ``"(id) DO NOTHING"``.
        """
        if not rows:
            return
        conflict = RawConflict(on_conflict) if on_conflict is not None else None
        statement = Insert(self._require_source(), fields, rows, conflict).render()
        self._run(statement)
        logger.debug("Inserted %d rows into %s", len(rows), self.source)

    def notify(self, payload: Any, channel: str = CHANNEL) -> None:
        """Publish *payload* as JSON on *channel*."""
        self.execute("SELECT pg_notify(%s, %s)", (channel, json.dumps(payload)))

    # -- notifications ------------------------------------------------------

    def set_handler(self, handler: Handler) -> None:
        self.handler = handler

    def _report_problem(self, event: ListenerEvent, error: Exception | None) -> None:
        if error is not None:
            logger.error("pg_listener_create_error (%s): %s", event.value, error)
        else:
            logger.info("%s listener %s", self.db_info, event.value)

    def listen(self) -> None:
        """Subscribe to the notification channel and dispatch events until stopped.

        Blocks the calling thread. Each JSON payload is decoded and passed
        to ``handler``; when nothing arrives for ``listen_idle_timeout``
        seconds the listener connection is pinged in the background.

        Raises:
            ConfigError: no handler, a non-positive idle timeout, or a
                listener that is already running.
            ListenError: the channel subscription failed.
        """
        if self.handler is None:
            raise self._fail(ConfigError, "Mapper.handler is not set")
        if self.listen_idle_timeout <= 0:
            raise self._fail(
                ConfigError, "listen_idle_timeout must be positive, got %s", self.listen_idle_timeout
            )
        if self.listener is not None:
            raise self._fail(ConfigError, "Listener is already running")
        self._check_connection()
        logger.info("Listen %s connecting", self.db_info)

        listener = Listener(
            self.config.connection_info,
            MIN_RECONNECT_INTERVAL,
            MAX_RECONNECT_INTERVAL,
            self._report_problem,
        )
        self.listener = listener
        self._stop.clear()
        try:
            listener.listen(CHANNEL)
            while not self._stop.is_set():
                self.handle_listen()
        finally:
            listener.close()
            if self.listener is listener:
                self.listener = None

    def stop_listening(self) -> None:
        """Make ``listen()`` return after the current cycle."""
        self._stop.set()

    def handle_listen(self) -> ListenOutcome:
        """Wait for one notification or the idle timeout and act on it."""
        listener = self.listener
        if listener is None:
            if self._stop.is_set():
                return ListenOutcome.STOPPED
            raise self._fail(ConfigError, "Listener is not started")

        notify = listener.wait(self.listen_idle_timeout)
        if notify is None and self._stop.is_set():
            return ListenOutcome.STOPPED
        if notify is None:
            logger.info(
                "%s: Received no events for %ss, checking connection",
                self.db_info,
                self.listen_idle_timeout,
            )
            listener.ping_in_background()
            return ListenOutcome.IDLE

        payload = decode_notification(notify)
        if not isinstance(payload, Decoded):
            logger.error(
                "Error processing JSON on %s: %s (payload %r)",
                payload.channel,
                payload.error,
                payload.raw,
            )
            return ListenOutcome.DECODE_FAILED

        self.handler(payload.value)
        return ListenOutcome.NOTIFIED
