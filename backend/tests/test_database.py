import logging

import pytest
from pymongo.errors import (
    AutoReconnect,
    ConfigurationError,
    ConnectionFailure,
    OperationFailure,
    ServerSelectionTimeoutError,
)

from backend.config import MongoOptions
from backend.database import (
    ConnectionEventListener,
    ConnectionManager,
    ConnectionState,
    classify_connection_error,
)

URI = "mongodb://db.internal:27017/shop"


class ScriptedClient:
    """Fails ``ping`` with the queued errors, then succeeds."""

    def __init__(self, failures=()):
        self.failures = list(failures)
        self.pings = 0
        self.closed = False
        self.admin = self

    def command(self, name):
        self.pings += 1
        if self.failures:
            raise self.failures.pop(0)
        return {"ok": 1.0}

    def close(self):
        self.closed = True


class Description:
    def __init__(self, writable):
        self.writable = writable

    def has_writable_server(self):
        return self.writable


class TopologyEvent:
    def __init__(self, previous, new):
        self.previous_description = Description(previous)
        self.new_description = Description(new)


class HeartbeatFailed:
    def __init__(self, reply):
        self.reply = reply


def make_manager(scheduler, client, **kwargs):
    created = []

    def factory(uri, **options):
        created.append(options)
        return client

    manager = ConnectionManager(URI, client_factory=factory, scheduler=scheduler, **kwargs)
    manager.created = created
    return manager


def test_connects_after_n_failures_with_constant_delay(scheduler):
    failures = [ServerSelectionTimeoutError("No servers found") for _ in range(3)]
    client = ScriptedClient(failures)
    manager = make_manager(scheduler, client)

    assert manager.connect() is False
    assert manager.state == ConnectionState.DISCONNECTED

    results = [scheduler.run_next() for _ in range(3)]

    assert results == [False, False, True]
    assert manager.attempts == 4
    assert client.pings == 4
    assert manager.state == ConnectionState.CONNECTED
    assert scheduler.delays == [5.0, 5.0, 5.0]
    assert not manager.has_pending_retry


def test_start_schedules_first_attempt_without_blocking(scheduler):
    client = ScriptedClient()
    manager = make_manager(scheduler, client)

    manager.start()

    assert client.pings == 0
    assert scheduler.delays == [0]
    assert scheduler.run_next() is True
    assert manager.is_connected


def test_failed_client_creation_is_retried(scheduler):
    client = ScriptedClient()
    attempts = []

    def factory(uri, **options):
        attempts.append(uri)
        if len(attempts) == 1:
            raise ConfigurationError("DNS query name does not exist")
        return client

    manager = ConnectionManager(URI, client_factory=factory, scheduler=scheduler)

    assert manager.connect() is False
    assert manager.client is None
    assert scheduler.run_next() is True
    assert len(attempts) == 2


def test_client_receives_configured_options_and_listener(scheduler):
    options = MongoOptions().client_kwargs()
    manager = make_manager(scheduler, ScriptedClient(), options=options)

    manager.connect()

    passed = manager.created[0]
    assert passed["w"] == "majority"
    assert passed["tls"] is True
    assert passed["tlsAllowInvalidCertificates"] is False
    assert passed["serverSelectionTimeoutMS"] == 30000
    assert passed["socketTimeoutMS"] == 45000
    assert passed["connectTimeoutMS"] == 30000
    assert (passed["minPoolSize"], passed["maxPoolSize"]) == (2, 10)
    assert isinstance(passed["event_listeners"][0], ConnectionEventListener)


@pytest.mark.parametrize(
    "error, category",
    [
        (OperationFailure("bad auth : Authentication failed.", code=18), "access"),
        (ServerSelectionTimeoutError("IP whitelist check failed"), "access"),
        (ServerSelectionTimeoutError("SSL handshake failed: tlsv1 alert"), "tls"),
        (AutoReconnect("connection refused"), "generic"),
    ],
)
def test_classify_connection_error(error, category):
    assert classify_connection_error(error) == category


def test_access_failure_logs_network_hint(scheduler, caplog):
    caplog.set_level(logging.INFO, logger="backend.database")
    client = ScriptedClient([OperationFailure("Authentication failed.", code=18)])
    manager = make_manager(scheduler, client)

    manager.connect()

    assert manager.last_error_category == "access"
    assert "network access list" in caplog.text
    assert "Retrying MongoDB connection in 5.0 seconds" in caplog.text


def test_tls_failure_logs_retry_hint(scheduler, caplog):
    caplog.set_level(logging.INFO, logger="backend.database")
    client = ScriptedClient([ServerSelectionTimeoutError("SSL: CERTIFICATE_VERIFY_FAILED")])
    manager = make_manager(scheduler, client)

    manager.connect()

    assert manager.last_error_category == "tls"
    assert "SSL/TLS connection issue" in caplog.text


def test_disconnect_schedules_single_retry(scheduler):
    client = ScriptedClient()
    manager = make_manager(scheduler, client)
    manager.connect()

    manager.handle_disconnect()
    manager.handle_disconnect()

    assert manager.state == ConnectionState.DISCONNECTED
    assert scheduler.delays == [5.0]
    assert scheduler.run_next() is True
    assert manager.is_connected


def test_error_event_does_not_schedule_retry(scheduler, caplog):
    caplog.set_level(logging.INFO, logger="backend.database")
    manager = make_manager(scheduler, ScriptedClient())
    manager.connect()

    manager.handle_error(AutoReconnect("SSL handshake failed"))

    assert scheduler.calls == []
    assert manager.is_connected
    assert "SSL/TLS error detected" in caplog.text


def test_reconnect_is_ignored_before_first_connection(scheduler):
    manager = make_manager(scheduler, ScriptedClient())

    manager.handle_reconnect()

    assert manager.state == ConnectionState.DISCONNECTED


def test_reconnect_after_drop_is_logged(scheduler, caplog):
    caplog.set_level(logging.INFO, logger="backend.database")
    manager = make_manager(scheduler, ScriptedClient())
    manager.connect()
    manager.handle_disconnect()

    manager.handle_reconnect()

    assert manager.is_connected
    assert "MongoDB reconnected successfully" in caplog.text


def test_listener_translates_driver_events(scheduler):
    manager = make_manager(scheduler, ScriptedClient())
    manager.connect()
    listener = ConnectionEventListener(manager)

    listener.description_changed(TopologyEvent(previous=True, new=False))
    assert manager.state == ConnectionState.DISCONNECTED
    assert scheduler.delays == [5.0]

    listener.description_changed(TopologyEvent(previous=False, new=True))
    assert manager.is_connected

    listener.failed(HeartbeatFailed(AutoReconnect("timed out")))
    assert scheduler.delays == [5.0]


def test_on_connected_callbacks_run_after_ping(scheduler):
    manager = make_manager(scheduler, ScriptedClient([AutoReconnect("refused")]))
    seen = []
    manager.on_connected(lambda conn: seen.append(conn.state))

    manager.connect()
    assert seen == []

    scheduler.run_next()
    assert seen == [ConnectionState.CONNECTED]


def test_close_cancels_pending_retry(scheduler):
    client = ScriptedClient([AutoReconnect("refused")])
    manager = make_manager(scheduler, client)
    manager.connect()

    manager.close()

    assert scheduler.calls[0].cancelled
    assert client.closed
    assert manager.connect() is False


def test_database_name_comes_from_uri(scheduler):
    assert ConnectionManager(URI, scheduler=scheduler).database_name == "shop"
    assert (
        ConnectionManager(
            "mongodb://localhost:27017", database_name="ecommerce", scheduler=scheduler
        ).database_name
        == "ecommerce"
    )


def test_db_requires_a_client(scheduler):
    manager = ConnectionManager(URI, scheduler=scheduler)

    with pytest.raises(ConnectionFailure):
        manager.db
