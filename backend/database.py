import logging
import threading
from enum import Enum
from typing import Callable, Dict, List, Optional
from urllib.parse import urlsplit

from flask_pymongo import PyMongo
from pymongo import MongoClient, monitoring
from pymongo.errors import ConnectionFailure, OperationFailure, PyMongoError

logger = logging.getLogger(__name__)

DEFAULT_RETRY_DELAY = 5.0

# Unauthorized, AuthenticationFailed
ACCESS_ERROR_CODES = {13, 18}
ACCESS_ERROR_MARKERS = (
    "ip whitelist",
    "authentication",
    "auth failed",
    "bad auth",
    "not authorized",
)
TLS_ERROR_MARKERS = ("ssl", "tls", "certificate")


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def timer_scheduler(delay: float, callback: Callable[[], object]):
    timer = threading.Timer(delay, callback)
    timer.daemon = True
    timer.start()
    return timer


def is_tls_error(error) -> bool:
    message = str(error or "").lower()
    return any(marker in message for marker in TLS_ERROR_MARKERS)


def classify_connection_error(error) -> str:
    """Return ``"access"``, ``"tls"`` or ``"generic"`` for a connection failure."""
    if isinstance(error, OperationFailure) and error.code in ACCESS_ERROR_CODES:
        return "access"
    message = str(error or "").lower()
    if any(marker in message for marker in ACCESS_ERROR_MARKERS):
        return "access"
    if is_tls_error(error):
        return "tls"
    return "generic"


class ConnectionEventListener(
    monitoring.TopologyListener, monitoring.ServerHeartbeatListener
):
    """Translates driver monitoring events into connection manager calls."""

    def __init__(self, manager: "ConnectionManager"):
        self.manager = manager

    def opened(self, event):
        pass

    def closed(self, event):
        pass

    def description_changed(self, event):
        was_writable = event.previous_description.has_writable_server()
        is_writable = event.new_description.has_writable_server()
        if was_writable and not is_writable:
            self.manager.handle_disconnect()
        elif is_writable and not was_writable:
            self.manager.handle_reconnect()

    def started(self, event):
        pass

    def succeeded(self, event):
        pass

    def failed(self, event):
        self.manager.handle_error(event.reply)


class ConnectionManager:
    """Owns the MongoDB client and keeps retrying until it is reachable.

    Connection failures never propagate: they are logged, categorized, and a
    new attempt is scheduled after ``retry_delay`` seconds. Only one retry is
    ever pending. ``scheduler`` must run the callback asynchronously and
    return an object with ``cancel()``.
    """

    def __init__(
        self,
        uri: str,
        *,
        database_name: str = "ecommerce",
        options: Optional[Dict[str, object]] = None,
        client_factory: Optional[Callable[..., MongoClient]] = None,
        scheduler: Callable = timer_scheduler,
        retry_delay: float = DEFAULT_RETRY_DELAY,
    ):
        self.uri = uri
        self.database_name = urlsplit(uri).path.lstrip("/") or database_name
        self.options = dict(options or {})
        self.retry_delay = retry_delay
        self.state = ConnectionState.DISCONNECTED
        self.attempts = 0
        self.last_error_category: Optional[str] = None
        self.app = None
        self.mongo = PyMongo()

        self._client_factory = client_factory
        self._schedule = scheduler
        self._lock = threading.RLock()
        self._client: Optional[MongoClient] = None
        self._pending_retry = None
        self._has_connected = False
        self._closed = False
        self._on_connected: List[Callable[["ConnectionManager"], None]] = []
        self._listener = ConnectionEventListener(self)

    def init_app(self, app) -> None:
        self.app = app
        app.extensions["connection_manager"] = self

    def on_connected(self, callback: Callable[["ConnectionManager"], None]) -> None:
        self._on_connected.append(callback)

    @property
    def client(self) -> Optional[MongoClient]:
        return self._client

    @property
    def db(self):
        if self._client is None:
            raise ConnectionFailure("The database connection has not been initialised.")
        return self._client[self.database_name]

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def has_pending_retry(self) -> bool:
        return self._pending_retry is not None

    def start(self) -> None:
        """Schedule the first connection attempt without blocking the caller."""
        with self._lock:
            if self._closed or self._pending_retry is not None:
                return
            self._pending_retry = self._schedule(0, self.connect)

    def connect(self) -> bool:
        with self._lock:
            if self._closed:
                return False
            self._pending_retry = None
            self.state = ConnectionState.CONNECTING
            self.attempts += 1

        try:
            if self._client is None:
                self._client = self._create_client()
            self._client.admin.command("ping")
        except PyMongoError as exc:
            self._log_connection_failure(exc)
            with self._lock:
                self.state = ConnectionState.DISCONNECTED
            self.schedule_retry()
            return False

        with self._lock:
            self.state = ConnectionState.CONNECTED
            self._has_connected = True
            self.last_error_category = None

        logger.info("MongoDB connected successfully")
        logger.info("Database: %s", self.database_name)
        logger.info("Host: %s", self._describe_host())

        for callback in self._on_connected:
            callback(self)
        return True

    def schedule_retry(self) -> None:
        with self._lock:
            if self._closed or self._pending_retry is not None:
                return
            logger.info("Retrying MongoDB connection in %s seconds", self.retry_delay)
            self._pending_retry = self._schedule(self.retry_delay, self.connect)

    def handle_disconnect(self) -> None:
        with self._lock:
            if self._closed:
                return
            self.state = ConnectionState.DISCONNECTED
        logger.warning("MongoDB disconnected. Attempting to reconnect...")
        self.schedule_retry()

    def handle_error(self, error) -> None:
        # The driver keeps monitoring on its own; nothing to schedule here.
        logger.error("MongoDB connection error: %s", error)
        if is_tls_error(error):
            logger.warning("SSL/TLS error detected. Connection will retry...")

    def handle_reconnect(self) -> None:
        with self._lock:
            if self._closed or not self._has_connected:
                return
            self.state = ConnectionState.CONNECTED
        logger.info("MongoDB reconnected successfully")

    def close(self) -> None:
        with self._lock:
            self._closed = True
            pending, self._pending_retry = self._pending_retry, None
            client, self._client = self._client, None
            self.state = ConnectionState.DISCONNECTED
        if pending is not None:
            pending.cancel()
        if client is not None:
            client.close()

    def _client_options(self) -> Dict[str, object]:
        options = dict(self.options)
        options["event_listeners"] = [self._listener]
        return options

    def _create_client(self) -> MongoClient:
        if self._client_factory is not None:
            return self._client_factory(self.uri, **self._client_options())
        if self.app is not None:
            self.mongo.init_app(self.app, self.uri, **self._client_options())
            return self.mongo.cx
        return MongoClient(self.uri, **self._client_options())

    def _describe_host(self) -> str:
        return urlsplit(self.uri).netloc.rpartition("@")[2]

    def _log_connection_failure(self, exc: PyMongoError) -> None:
        category = classify_connection_error(exc)
        self.last_error_category = category
        logger.error("MongoDB connection error: %s", exc)
        if category == "access":
            logger.error(
                "Access was refused. Check that this host's IP address is allowed "
                "in the cluster's network access list and that the MongoDB "
                "username and password are correct."
            )
        elif category == "tls":
            logger.error(
                "SSL/TLS connection issue. This is often a temporary network "
                "problem; the connection will retry automatically."
            )
