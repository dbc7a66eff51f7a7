"""A PostgreSQL connection with version checking and table-change notifications."""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from hemidb.types import DatabaseError, NotificationCallback

log = logging.getLogger(__name__)

NOTIFICATION_CHANNEL = "events"
PING_INTERVAL = 60.0
_POLL_INTERVAL = 0.1

_SELECT_VERSION = "SELECT * FROM version LIMIT 1;"
_INTEGRITY_CONSTRAINT_CLASS = "23"

ConnectFn = Callable[[str], Any]
PayloadDecoder = Callable[[Any], Any]


def _sqlstate(exc: BaseException) -> Optional[str]:
    for attr in ("sqlstate", "pgcode", "code"):
        value = getattr(exc, attr, None)
        if isinstance(value, str) and len(value) == 5:
            return value
    if exc.args and isinstance(exc.args[0], dict):
        value = exc.args[0].get("C")
        if isinstance(value, str) and len(value) == 5:
            return value
    return None


def _constraint_name(exc: BaseException) -> str:
    diag = getattr(exc, "diag", None)
    if diag is not None:
        name = getattr(diag, "constraint_name", None)
        if name:
            return str(name)
    for attr in ("constraint_name", "constraint"):
        name = getattr(exc, attr, None)
        if name:
            return str(name)
    if exc.args and isinstance(exc.args[0], dict):
        name = exc.args[0].get("n")
        if name:
            return str(name)
    return ""


def constraint_violation(exc: BaseException) -> Optional[str]:
    """Return the violated constraint's name for an integrity error, else None.

    The name is an empty string when the driver does not report it.
    """
    state = _sqlstate(exc)
    if state is None or not state.startswith(_INTEGRITY_CONSTRAINT_CLASS):
        return None
    return _constraint_name(exc)


def _ping(connection: Any) -> None:
    cursor = connection.cursor()
    try:
        cursor.execute("SELECT 1")
        cursor.fetchone()
    finally:
        cursor.close()


def connect(connect_fn: ConnectFn, uri: str) -> Any:
    """Open a connection with ``connect_fn`` and check that it answers."""
    try:
        connection = connect_fn(uri)
    except Exception as exc:
        raise DatabaseError(f"postgres open: {exc}") from exc
    try:
        _ping(connection)
    except Exception as exc:
        try:
            connection.close()
        except Exception:
            log.debug("close after failed ping", exc_info=True)
        raise DatabaseError(f"unable to connect to database: {exc}") from exc
    return connection


@dataclass(frozen=True)
class _Handler:
    name: str
    callback: NotificationCallback
    decoder: PayloadDecoder


def _decode(decoder: PayloadDecoder, raw: Any) -> Any:
    return decoder(json.dumps(raw))


class Database:
    """A database connection that dispatches table-change notifications.

    Notifications arrive through a listener built by ``listener_factory(uri)``.
    The listener offers ``listen(channel)``, ``wait(timeout)`` returning the
    notification payload text or None, ``ping()`` and ``close()``.
    """

    def __init__(
        self,
        connection: Any,
        uri: str,
        listener_factory: Optional[Callable[[str], Any]] = None,
    ) -> None:
        self._connection = connection
        self._uri = uri
        self._listener_factory = listener_factory
        self._lock = threading.RLock()
        self._handlers: Dict[str, _Handler] = {}
        self._listener: Optional[Any] = None
        self._listener_stop: Optional[threading.Event] = None
        self._threads: List[threading.Thread] = []
        self._closed = False

    @classmethod
    def open(
        cls,
        connect_fn: ConnectFn,
        uri: str,
        version: int,
        listener_factory: Optional[Callable[[str], Any]] = None,
    ) -> "Database":
        """Connect and verify that the schema has the expected version."""
        connection = connect(connect_fn, uri)
        try:
            cursor = connection.cursor()
            try:
                cursor.execute(_SELECT_VERSION)
                row = cursor.fetchone()
            finally:
                cursor.close()
            if row is None:
                raise DatabaseError("version table is empty")
            db_version = int(row[0])
            if db_version != version:
                raise DatabaseError(
                    f"wrong database version: expected {version}, got {db_version}"
                )
        except BaseException:
            connection.close()
            raise
        return cls(connection, uri, listener_factory)

    @property
    def connection(self) -> Any:
        """The underlying DB-API connection."""
        return self._connection

    def close(self) -> None:
        """Stop notification delivery and close the connection."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            if self._listener_stop is not None:
                self._listener_stop.set()
                self._listener_stop = None
            threads = list(self._threads)
        try:
            self._connection.close()
        finally:
            for thread in threads:
                if thread is not threading.current_thread():
                    thread.join()

    def __enter__(self) -> "Database":
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.close()

    def register_notification(
        self, name: str, callback: NotificationCallback, payload_decoder: PayloadDecoder
    ) -> None:
        """Call ``callback`` for notifications on the table ``name``."""
        with self._lock:
            if name in self._handlers:
                raise DatabaseError(f"notification already registered: {name}")
            if self._closed:
                raise DatabaseError("database is closed")
            self._handlers[name] = _Handler(name, callback, payload_decoder)
            if self._listener_stop is not None:
                return
            try:
                self._start_listener(name)
            except BaseException:
                del self._handlers[name]
                raise

    def _start_listener(self, name: str) -> None:
        if self._listener_factory is None:
            raise DatabaseError("no notification listener configured")
        listener = self._listener_factory(self._uri)
        try:
            listener.listen(NOTIFICATION_CHANNEL)
        except Exception:
            log.error("notification listen failed (%s)", name)
            try:
                listener.close()
            except Exception:
                log.debug("listener close failed", exc_info=True)
            raise
        stop = threading.Event()
        self._listener = listener
        self._listener_stop = stop
        thread = threading.Thread(
            target=self._listen_loop, args=(listener, stop),
            name="notification-listener", daemon=True,
        )
        self._threads.append(thread)
        thread.start()

    def unregister_notification(self, name: str) -> None:
        """Stop delivering notifications for ``name``."""
        with self._lock:
            if name not in self._handlers:
                raise DatabaseError(f"handler not found: {name}")
            del self._handlers[name]
            if not self._handlers and self._listener_stop is not None:
                self._listener_stop.set()
                self._listener_stop = None

    def handle_notification(self, extra: Optional[str]) -> None:
        """Decode one notification payload and call its registered callback."""
        if extra is None:
            return
        try:
            wrapper = json.loads(extra)
            if not isinstance(wrapper, dict):
                raise ValueError("notification is not a JSON object")
            fields = {str(key).lower(): value for key, value in wrapper.items()}
            table = fields.get("table") or ""
            action = fields.get("action") or ""
            if not isinstance(table, str) or not isinstance(action, str):
                raise ValueError("table and action must be strings")
        except ValueError as exc:
            log.error("notification unmarshal error: %s", exc)
            return

        with self._lock:
            handler = self._handlers.get(table)
        if handler is None:
            return

        if "data_new" not in fields:
            log.error("notification decode: missing data_new")
            return
        try:
            payload_new = _decode(handler.decoder, fields["data_new"])
            payload_old = None
            if fields.get("data_old") is not None:
                payload_old = _decode(handler.decoder, fields["data_old"])
        except (ValueError, TypeError) as exc:
            log.error("notification decode: %s", exc)
            return

        log.debug("notification: calling callback %s %s", action, table)
        handler.callback(table, action, payload_new, payload_old)

    def _listen_loop(self, listener: Any, stop: threading.Event) -> None:
        last_activity = time.monotonic()
        try:
            while not stop.is_set():
                extra = listener.wait(_POLL_INTERVAL)
                if stop.is_set():
                    break
                if extra is None:
                    if time.monotonic() - last_activity >= PING_INTERVAL:
                        last_activity = time.monotonic()
                        try:
                            listener.ping()
                        except Exception as exc:
                            log.error("notification ping: %s", exc)
                    continue
                last_activity = time.monotonic()
                try:
                    self.handle_notification(extra)
                except Exception:
                    log.exception("notification callback failed")
        finally:
            try:
                listener.close()
            except Exception as exc:
                log.error("close listener: %s", exc)
            with self._lock:
                if self._listener is listener:
                    self._listener = None