"""Tests del SubscriptionManager.

Cubre:
1. Resultado de dispatch y política de ACK
2. Reintentos del forward (timeout ambiguo, agotamiento, 4xx)
3. Orden de procesamiento
4. Reconexión con backoff
5. Apagado durante reintentos

El broker se simula con FakeMQTTClient: mismo contrato de callbacks que
paho (VERSION2), sin red.

Ejecutar:
    pytest tests/test_subscription.py -v
"""

import json
import threading
import time
from collections import deque
from datetime import datetime
from types import SimpleNamespace
from unittest.mock import MagicMock

import paho.mqtt.client as mqtt
import pytest

from collector_api.store import EventStore
from mqtt_bridge.relay_client import RelayClient, RelayError
from mqtt_bridge.subscription import (
    BridgeConnectionError,
    ConnectionState,
    DispatchOutcome,
    InboundMessage,
    SubscriptionManager,
)


# =============================================================================
# FAKES
# =============================================================================

class FakeReasonCode:
    def __init__(self, failure=False):
        self.is_failure = failure

    def __str__(self):
        return "Failure" if self.is_failure else "Success"


class FakeMQTTClient:
    """Broker + cliente en memoria.

    `sessions` es una lista de scripts, uno por conexión exitosa:
        {"messages": [(payload_bytes, qos), ...], "drop": bool}
    Con drop=True la conexión se pierde cuando todos los mensajes de esa
    sesión fueron confirmados.
    """

    def __init__(self, sessions=None, connect_errors=0, refuse=0):
        self.sessions = deque(sessions or [])
        self.connect_errors = connect_errors
        self.refuse = refuse
        self.connect_calls = 0
        self.acks = []
        self.ack_threads = []
        self.subscriptions = []
        self.unsubscribed = []
        self.disconnects = 0
        self.on_connect = None
        self.on_subscribe = None
        self.on_disconnect = None
        self.on_message = None
        self._events = deque()
        self._connected = False
        self._drop_after_acks = None
        self._next_mid = 0

    def _mid(self):
        self._next_mid += 1
        return self._next_mid

    def connect(self, host, port, keepalive=60):
        self.connect_calls += 1
        if self.connect_errors:
            self.connect_errors -= 1
            raise ConnectionRefusedError("connection refused")
        self._connected = True
        self._events.append(("connack",))
        return mqtt.MQTT_ERR_SUCCESS

    def subscribe(self, topic, qos=0):
        mid = self._mid()
        self.subscriptions.append((topic, qos))
        self._events.append(("suback", mid))
        return mqtt.MQTT_ERR_SUCCESS, mid

    def unsubscribe(self, topic):
        self.unsubscribed.append(topic)
        return mqtt.MQTT_ERR_SUCCESS, self._mid()

    def disconnect(self):
        self.disconnects += 1
        self._connected = False
        self._events.clear()
        return mqtt.MQTT_ERR_SUCCESS

    def ack(self, mid, qos):
        self.acks.append(mid)
        self.ack_threads.append(threading.current_thread().name)
        return mqtt.MQTT_ERR_SUCCESS

    def loop(self, timeout=1.0):
        if not self._connected:
            return mqtt.MQTT_ERR_NO_CONN

        if self._events:
            event = self._events.popleft()
            if event[0] == "connack":
                refused = self.refuse > 0
                if refused:
                    self.refuse -= 1
                self.on_connect(self, None, {}, FakeReasonCode(refused), None)
                if not refused:
                    self._start_session()
            elif event[0] == "suback":
                self.on_subscribe(self, None, event[1], [FakeReasonCode()], None)
            elif event[0] == "message":
                self.on_message(self, None, event[1])
            return mqtt.MQTT_ERR_SUCCESS

        if self._drop_after_acks is not None and len(self.acks) >= self._drop_after_acks:
            self._drop_after_acks = None
            self._connected = False
            self.on_disconnect(self, None, {}, FakeReasonCode(True), None)
            return mqtt.MQTT_ERR_CONN_LOST

        time.sleep(0.005)
        return mqtt.MQTT_ERR_SUCCESS

    def _start_session(self):
        script = self.sessions.popleft() if self.sessions else {"messages": []}
        for payload, qos in script["messages"]:
            msg = SimpleNamespace(topic="train/detection", payload=payload, mid=self._mid(), qos=qos)
            self._events.append(("message", msg))
        if script.get("drop"):
            self._drop_after_acks = len(self.acks) + sum(1 for _, q in script["messages"] if q > 0)


def _payload(rounds=3, relay="activated", second=0):
    return json.dumps(
        {
            "state": "approaching",
            "rounds": rounds,
            "relay": relay,
            "timestamp": f"2026-01-31T08:00:{second:02d}",
        }
    ).encode()


def _stored(event, *args, **kwargs):
    return event.stored_as(1, datetime(2026, 1, 31, 8, 0, 1))


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


@pytest.fixture
def relay():
    relay = MagicMock(spec=RelayClient)
    relay.forward.side_effect = _stored
    return relay


@pytest.fixture
def settings(make_bridge_settings):
    return make_bridge_settings()


@pytest.fixture
def running():
    """Arranca managers en background y garantiza su parada."""
    managers = []

    def _start(manager):
        managers.append(manager)
        manager.start()
        return manager

    yield _start

    for manager in managers:
        manager.stop(timeout=5.0)


# =============================================================================
# TEST 1: RESULTADO DE DISPATCH
# =============================================================================

class TestDispatchOutcome:
    """dispatch() decide el resultado sin necesidad de broker."""

    def test_valid_message_forwarded(self, settings, relay):
        manager = SubscriptionManager(settings, relay)

        outcome = manager.dispatch(InboundMessage("train/detection", _payload(), mid=1, qos=1))

        assert outcome is DispatchOutcome.FORWARDED
        relay.forward.assert_called_once()
        args = relay.forward.call_args.args
        assert args[1] == "http://collector.test/api/train/detection"
        assert args[2] == settings.relay_timeout

    def test_malformed_message_not_forwarded(self, settings, relay):
        manager = SubscriptionManager(settings, relay)

        outcome = manager.dispatch(InboundMessage("train/detection", b"not json", mid=1, qos=1))

        assert outcome is DispatchOutcome.MALFORMED
        relay.forward.assert_not_called()
        assert manager.stats["malformed"] == 1

    def test_missing_field_is_malformed(self, settings, relay):
        manager = SubscriptionManager(settings, relay)
        body = json.dumps({"state": "clear", "rounds": 1, "relay": "activated"}).encode()

        assert manager.dispatch(InboundMessage("train/detection", body)) is DispatchOutcome.MALFORMED

    def test_permanent_rejection_not_retried(self, settings, relay):
        relay.forward.side_effect = RelayError(RelayError.REJECTED, "bad", status_code=422)
        manager = SubscriptionManager(settings, relay)

        outcome = manager.dispatch(InboundMessage("train/detection", _payload(), mid=1, qos=1))

        assert outcome is DispatchOutcome.REJECTED
        assert relay.forward.call_count == 1
        assert manager.stats["rejected"] == 1

    def test_invalid_request_not_retried(self, settings, relay):
        relay.forward.side_effect = RelayError(RelayError.INVALID_REQUEST, "Invalid URL")
        manager = SubscriptionManager(settings, relay)

        outcome = manager.dispatch(InboundMessage("train/detection", _payload(), mid=1, qos=1))

        assert outcome is DispatchOutcome.REJECTED
        assert relay.forward.call_count == 1

    def test_out_of_range_rounds_is_malformed(self, settings, relay):
        manager = SubscriptionManager(settings, relay)
        body = _payload(rounds=2**63)

        assert manager.dispatch(InboundMessage("train/detection", body)) is DispatchOutcome.MALFORMED
        relay.forward.assert_not_called()

    def test_retry_exhausted_drops_message(self, settings, relay):
        relay.forward.side_effect = RelayError(RelayError.UNREACHABLE, "refused")
        manager = SubscriptionManager(settings, relay)

        outcome = manager.dispatch(InboundMessage("train/detection", _payload(), mid=1, qos=1))

        assert outcome is DispatchOutcome.DROPPED
        assert relay.forward.call_count == settings.relay_max_attempts
        assert manager.stats["relay_retries"] == settings.relay_max_attempts - 1

    def test_transient_then_success(self, settings, relay):
        calls = []

        def _flaky(event, *args):
            calls.append(event)
            if len(calls) == 1:
                raise RelayError(RelayError.REJECTED, "unavailable", status_code=503)
            return _stored(event)

        relay.forward.side_effect = _flaky
        manager = SubscriptionManager(settings, relay)

        outcome = manager.dispatch(InboundMessage("train/detection", _payload()))

        assert outcome is DispatchOutcome.FORWARDED
        assert len(calls) == 2
        assert calls[0] == calls[1]

    def test_outcome_acknowledged_flag(self):
        assert DispatchOutcome.FORWARDED.acknowledged
        assert DispatchOutcome.MALFORMED.acknowledged
        assert DispatchOutcome.REJECTED.acknowledged
        assert DispatchOutcome.DROPPED.acknowledged
        assert not DispatchOutcome.INTERRUPTED.acknowledged


# =============================================================================
# TEST 2: TIMEOUT AMBIGUO → UNA SOLA FILA
# =============================================================================

class TestAmbiguousTimeout:
    """El collector almacena pero la respuesta se pierde: el reintento no duplica."""

    def test_timeout_then_success_stored_once(self, settings, engine):
        store = EventStore(engine)
        calls = []

        def _forward(event, endpoint=None, timeout=None):
            calls.append(event)
            stored = store.insert(event, idempotency_key=event.dedup_key())
            if len(calls) == 1:
                raise RelayError(RelayError.TIMEOUT, "read timed out")
            return stored

        relay = MagicMock(spec=RelayClient)
        relay.forward.side_effect = _forward
        manager = SubscriptionManager(settings, relay)

        outcome = manager.dispatch(InboundMessage("train/detection", _payload(rounds=5)))

        assert outcome is DispatchOutcome.FORWARDED
        assert len(calls) == 2
        stored = store.list_all()
        assert len(stored) == 1
        assert stored[0].rounds == 5


# =============================================================================
# TEST 3: POLÍTICA DE ACK
# =============================================================================

class TestAcknowledgement:

    def _attach(self, manager, client, session=1):
        manager._client = client
        manager._session = session

    def test_forwarded_message_acked_once(self, settings, relay):
        client = FakeMQTTClient()
        manager = SubscriptionManager(settings, relay)
        self._attach(manager, client)

        manager.dispatch(InboundMessage("train/detection", _payload(), mid=7, qos=1, session=1))
        manager._flush_acks()

        assert client.acks == [7]

    @pytest.mark.parametrize(
        "error",
        [
            RelayError(RelayError.REJECTED, "bad", status_code=400),
            RelayError(RelayError.TIMEOUT, "timed out"),
        ],
    )
    def test_failed_forward_still_acked(self, settings, relay, error):
        relay.forward.side_effect = error
        client = FakeMQTTClient()
        manager = SubscriptionManager(settings, relay)
        self._attach(manager, client)

        manager.dispatch(InboundMessage("train/detection", _payload(), mid=8, qos=1, session=1))
        manager._flush_acks()

        assert client.acks == [8]

    def test_malformed_acked(self, settings, relay):
        client = FakeMQTTClient()
        manager = SubscriptionManager(settings, relay)
        self._attach(manager, client)

        manager.dispatch(InboundMessage("train/detection", b"{", mid=9, qos=1, session=1))
        manager._flush_acks()

        assert client.acks == [9]

    def test_qos0_never_acked(self, settings, relay):
        client = FakeMQTTClient()
        manager = SubscriptionManager(settings, relay)
        self._attach(manager, client)

        manager.dispatch(InboundMessage("train/detection", _payload(), mid=0, qos=0, session=1))
        manager._flush_acks()

        assert client.acks == []

    def test_stale_session_not_acked(self, settings, relay):
        client = FakeMQTTClient()
        manager = SubscriptionManager(settings, relay)
        self._attach(manager, client, session=2)

        outcome = manager.dispatch(InboundMessage("train/detection", _payload(), mid=3, qos=1, session=1))
        manager._flush_acks()

        assert outcome is DispatchOutcome.FORWARDED
        assert client.acks == []

    def test_dispatch_does_not_write_to_client(self, settings, relay):
        client = FakeMQTTClient()
        manager = SubscriptionManager(settings, relay)
        self._attach(manager, client)

        manager.dispatch(InboundMessage("train/detection", _payload(), mid=4, qos=1, session=1))

        assert client.acks == []
        manager._flush_acks()
        assert client.acks == [4]

    def test_acks_sent_from_supervisor_thread(self, settings, relay, running):
        messages = [(_payload(rounds=i, second=i), 1) for i in range(3)]
        client = FakeMQTTClient(sessions=[{"messages": messages}])
        running(SubscriptionManager(settings, relay, client_factory=lambda s: client))

        assert wait_until(lambda: len(client.acks) == 3)
        assert client.ack_threads == ["mqtt-supervisor"] * 3


# =============================================================================
# TEST 4: ORDEN Y CICLO DE VIDA
# =============================================================================

class TestSubscriptionLifecycle:

    def test_subscribes_with_configured_topic_and_qos(self, settings, relay, running):
        client = FakeMQTTClient()
        manager = running(SubscriptionManager(settings, relay, client_factory=lambda s: client))

        assert manager.wait_for_state(ConnectionState.SUBSCRIBED, timeout=5.0)
        assert client.subscriptions == [("train/detection", 1)]
        assert manager.is_connected
        assert manager.health_check()["healthy"] is True

    def test_messages_forwarded_in_arrival_order(self, settings, relay, running):
        messages = [(_payload(rounds=i, second=i), 1) for i in range(5)]
        client = FakeMQTTClient(sessions=[{"messages": messages}])
        manager = running(SubscriptionManager(settings, relay, client_factory=lambda s: client))

        assert wait_until(lambda: len(client.acks) == 5)

        forwarded = [c.args[0].rounds for c in relay.forward.call_args_list]
        assert forwarded == [0, 1, 2, 3, 4]
        assert client.acks == sorted(client.acks)

    def test_stop_unsubscribes_and_disconnects(self, settings, relay):
        client = FakeMQTTClient()
        manager = SubscriptionManager(settings, relay, client_factory=lambda s: client)
        manager.start()
        assert manager.wait_for_state(ConnectionState.SUBSCRIBED, timeout=5.0)

        manager.stop(timeout=5.0)

        assert manager.state is ConnectionState.STOPPED
        assert client.unsubscribed == ["train/detection"]
        assert client.disconnects >= 1
        assert manager.run_error is None

    def test_stop_before_run_exits_immediately(self, settings, relay):
        client = FakeMQTTClient()
        manager = SubscriptionManager(settings, relay, client_factory=lambda s: client)
        manager.request_stop()

        manager.run()

        assert client.connect_calls == 0
        assert manager.state is ConnectionState.STOPPED


# =============================================================================
# TEST 5: RECONEXIÓN
# =============================================================================

class TestReconnection:

    def _spy_backoff(self, manager):
        spy = MagicMock()
        spy.calculate_delay.return_value = 0.0
        manager._reconnect_retry = spy
        return spy

    def test_reconnects_after_connect_errors(self, settings, relay, running):
        client = FakeMQTTClient(connect_errors=3)
        manager = SubscriptionManager(settings, relay, client_factory=lambda s: client)
        spy = self._spy_backoff(manager)
        running(manager)

        assert manager.wait_for_state(ConnectionState.SUBSCRIBED, timeout=5.0)
        assert client.connect_calls == 4
        assert [c.args[0] for c in spy.calculate_delay.call_args_list] == [1, 2, 3]
        assert manager.stats["reconnects"] == 3

    def test_refused_connack_triggers_reconnect(self, settings, relay, running):
        client = FakeMQTTClient(refuse=1)
        manager = SubscriptionManager(settings, relay, client_factory=lambda s: client)
        self._spy_backoff(manager)
        running(manager)

        assert manager.wait_for_state(ConnectionState.SUBSCRIBED, timeout=5.0)
        assert client.connect_calls == 2

    def test_backoff_resets_after_successful_subscription(self, settings, relay, running):
        client = FakeMQTTClient(
            sessions=[{"messages": [(_payload(), 1)], "drop": True}],
            connect_errors=2,
        )
        manager = SubscriptionManager(settings, relay, client_factory=lambda s: client)
        spy = self._spy_backoff(manager)
        running(manager)

        assert wait_until(lambda: client.connect_calls == 4 and manager.is_connected)
        assert [c.args[0] for c in spy.calculate_delay.call_args_list] == [1, 2, 1]

    def test_acked_messages_not_reprocessed_after_reconnect(self, settings, relay, running):
        client = FakeMQTTClient(
            sessions=[
                {"messages": [(_payload(rounds=1, second=1), 1)], "drop": True},
                {"messages": [(_payload(rounds=2, second=2), 1)]},
            ]
        )
        manager = SubscriptionManager(settings, relay, client_factory=lambda s: client)
        self._spy_backoff(manager)
        running(manager)

        assert wait_until(lambda: len(client.acks) == 2)
        time.sleep(0.1)

        forwarded = [c.args[0].rounds for c in relay.forward.call_args_list]
        assert forwarded == [1, 2]
        assert manager.stats["reconnects"] == 1

    def test_without_automatic_reconnect_connect_failure_raises(self, make_bridge_settings, relay):
        settings = make_bridge_settings(automatic_reconnect=False)
        client = FakeMQTTClient(connect_errors=1)
        manager = SubscriptionManager(settings, relay, client_factory=lambda s: client)

        with pytest.raises(BridgeConnectionError):
            manager.run()

        assert client.connect_calls == 1
        assert manager.state is ConnectionState.STOPPED

    def test_without_automatic_reconnect_connection_loss_raises(self, make_bridge_settings, relay):
        settings = make_bridge_settings(automatic_reconnect=False)
        client = FakeMQTTClient(sessions=[{"messages": [(_payload(), 1)], "drop": True}])
        manager = SubscriptionManager(settings, relay, client_factory=lambda s: client)

        with pytest.raises(BridgeConnectionError):
            manager.run()

        assert client.acks == [2]

    def test_start_records_run_error(self, make_bridge_settings, relay):
        settings = make_bridge_settings(automatic_reconnect=False)
        client = FakeMQTTClient(connect_errors=1)
        manager = SubscriptionManager(settings, relay, client_factory=lambda s: client)

        manager.start()
        assert manager.wait_for_state(ConnectionState.STOPPED, timeout=5.0)
        manager.stop(timeout=5.0)

        assert isinstance(manager.run_error, BridgeConnectionError)


# =============================================================================
# TEST 6: APAGADO DURANTE REINTENTOS
# =============================================================================

class TestShutdown:

    def test_stop_during_retry_leaves_message_unacked(self, make_bridge_settings):
        settings = make_bridge_settings(relay_base_delay=30.0, relay_max_delay=30.0)
        first_attempt = threading.Event()

        def _always_timeout(event, *args):
            first_attempt.set()
            raise RelayError(RelayError.TIMEOUT, "timed out")

        relay = MagicMock(spec=RelayClient)
        relay.forward.side_effect = _always_timeout
        client = FakeMQTTClient(sessions=[{"messages": [(_payload(), 1)]}])
        manager = SubscriptionManager(settings, relay, client_factory=lambda s: client)
        manager.start()

        assert first_attempt.wait(5.0)
        started = time.monotonic()
        manager.stop(timeout=5.0)

        assert time.monotonic() - started < 5.0
        assert client.acks == []
        assert relay.forward.call_count == 1
        assert manager.stats["interrupted"] == 1
        assert manager.state is ConnectionState.STOPPED
