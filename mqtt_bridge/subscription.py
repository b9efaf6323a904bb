"""Gestor de la suscripción MQTT.

Máquina de estados explícita sobre el ciclo de vida de la conexión:

  DISCONNECTED → CONNECTING → SUBSCRIBED → (bucle de mensajes)
       ↑                                          │
       └──────────── backoff exponencial ←────────┘

Flujo por mensaje (un único worker, en orden de llegada):
  decode → forward → (fallo transitorio) reintento acotado con backoff
  → ACK al broker

Política de ACK (manual_ack):
- Payload malformado → ACK (se descarta, no tiene arreglo)
- Forward OK → ACK
- Rechazo permanente (4xx) → ACK (se descarta)
- Reintentos agotados → ACK (log-and-drop, no bloquea la suscripción)
- Shutdown durante reintentos → sin ACK (el broker puede re-entregar)

El worker no toca el socket: deja el ACK en una cola que el hilo supervisor
envía antes de cada client.loop(). paho sin loop_start() no sincroniza
escrituras entre hilos.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import paho.mqtt.client as mqtt
from prometheus_client import Counter, Gauge

from common.config import BridgeSettings
from common.domain import DetectionEvent
from common.retry import RetryConfig
from .codec import DecodeError, decode
from .relay_client import RelayClient, RelayError
from .stats import BridgeStats

logger = logging.getLogger(__name__)

BRIDGE_MESSAGES = Counter(
    "train_bridge_messages_total",
    "MQTT messages handled by the bridge",
    ["status"],  # forwarded, malformed, rejected, dropped, interrupted
)
BRIDGE_RELAY_ATTEMPTS = Counter(
    "train_bridge_relay_attempts_total",
    "Forward attempts to the collector",
    ["outcome"],  # success, timeout, unreachable, rejected, invalid_response, invalid_request
)
BRIDGE_RECONNECTS = Counter(
    "train_bridge_reconnects_total",
    "Broker reconnection attempts after a failure",
)
BRIDGE_CONNECTED = Gauge(
    "train_bridge_connected",
    "1 while the subscription is active",
)


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    STOPPED = "stopped"


class DispatchOutcome(Enum):
    FORWARDED = "forwarded"
    MALFORMED = "malformed"
    REJECTED = "rejected"
    DROPPED = "dropped"
    INTERRUPTED = "interrupted"

    @property
    def acknowledged(self) -> bool:
        return self is not DispatchOutcome.INTERRUPTED


class BridgeConnectionError(RuntimeError):
    """Conexión perdida/fallida con reconexión automática deshabilitada."""


@dataclass(frozen=True)
class InboundMessage:
    """Mensaje MQTT desacoplado del objeto de paho."""

    topic: str
    payload: bytes
    mid: int = 0
    qos: int = 0
    session: int = 0


@dataclass(frozen=True)
class RelayAttempt:
    """Un intento de reenvío (transitorio, solo para diagnóstico)."""

    event: DetectionEvent
    endpoint: str
    attempt: int
    outcome: str  # success, timeout, unreachable, rejected, invalid_response


def create_mqtt_client(settings: BridgeSettings) -> mqtt.Client:
    """Crea el cliente paho configurado (sesión limpia, ACK manual)."""
    client = mqtt.Client(
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        client_id=settings.client_id,
        clean_session=settings.clean_session,
        protocol=mqtt.MQTTv311,
        transport=settings.broker.transport,
        manual_ack=True,
    )
    client.connect_timeout = settings.connection_timeout

    if settings.username:
        client.username_pw_set(settings.username, settings.password)
    if settings.broker.tls:
        client.tls_set()

    return client


class SubscriptionManager:
    """Dueño de la sesión MQTT y del worker secuencial de reenvío.

    Uso:
        manager = SubscriptionManager(settings, relay_client)
        manager.run()            # bloquea hasta request_stop()

    o en background:
        manager.start()
        ...
        manager.stop()
    """

    LOOP_INTERVAL = 0.1  # segundos por iteración de client.loop(); acota la latencia del ACK

    def __init__(
        self,
        settings: BridgeSettings,
        relay_client: RelayClient,
        client_factory: Optional[Callable[[BridgeSettings], mqtt.Client]] = None,
    ):
        self._settings = settings
        self._relay = relay_client
        self._client_factory = client_factory or create_mqtt_client
        self._client: Optional[mqtt.Client] = None

        self._reconnect_retry = RetryConfig(
            max_attempts=0,
            base_delay=settings.reconnect_base_delay,
            max_delay=settings.reconnect_max_delay,
        )
        self._relay_retry = RetryConfig(
            max_attempts=settings.relay_max_attempts,
            base_delay=settings.relay_base_delay,
            max_delay=settings.relay_max_delay,
        )

        self._queue: "queue.Queue[InboundMessage]" = queue.Queue()
        self._pending_acks: "queue.Queue[InboundMessage]" = queue.Queue()
        self._stop_event = threading.Event()
        self._state_changed = threading.Condition()
        self._state = ConnectionState.DISCONNECTED

        # Se incrementa en cada CONNACK: los mid de una sesión anterior no se confirman
        self._session = 0
        self._subscribe_mid: Optional[int] = None
        self._subscribed = False
        self._session_failed = False

        self._worker: Optional[threading.Thread] = None
        self._runner: Optional[threading.Thread] = None
        self._run_error: Optional[BaseException] = None
        self._last_attempt: Optional[RelayAttempt] = None
        self._stats = BridgeStats()

    # ------------------------------------------------------------------
    # Estado
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    def _set_state(self, state: ConnectionState) -> None:
        with self._state_changed:
            if state is self._state:
                return
            logger.info("[MQTT] State %s -> %s", self._state.value, state.value)
            self._state = state
            BRIDGE_CONNECTED.set(1 if state is ConnectionState.SUBSCRIBED else 0)
            self._state_changed.notify_all()

    def wait_for_state(self, state: ConnectionState, timeout: float) -> bool:
        """Espera hasta que el manager alcance `state` (True) o timeout (False)."""
        with self._state_changed:
            return self._state_changed.wait_for(lambda: self._state is state, timeout=timeout)

    # ------------------------------------------------------------------
    # Ciclo de vida
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Ejecuta run() en un hilo de fondo."""
        if self._runner is not None and self._runner.is_alive():
            return
        self._stop_event.clear()
        self._runner = threading.Thread(target=self._run_guarded, name="mqtt-supervisor", daemon=True)
        self._runner.start()

    def _run_guarded(self) -> None:
        try:
            self.run()
        except BridgeConnectionError as e:
            self._run_error = e
            logger.error("[MQTT] Supervisor stopped: %s", e)

    def request_stop(self) -> None:
        """Señala el apagado; run() drena el mensaje en curso y sale."""
        self._stop_event.set()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Detiene el manager y espera a que termine el drenaje."""
        self.request_stop()
        if self._runner is not None:
            self._runner.join(timeout if timeout is not None else self.drain_timeout + 5.0)

    @property
    def drain_timeout(self) -> float:
        """Cota de espera para el dispatch en curso durante el apagado."""
        return self._settings.relay_timeout + 1.0

    @property
    def run_error(self) -> Optional[BaseException]:
        return self._run_error

    def run(self) -> None:
        """Bucle supervisor: conecta, procesa y reconecta con backoff.

        Raises:
            BridgeConnectionError: si falla la conexión con reconexión deshabilitada
        """
        self._client = self._client_factory(self._settings)
        self._client.on_connect = self._on_connect
        self._client.on_subscribe = self._on_subscribe
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message

        self._worker = threading.Thread(target=self._worker_loop, name="mqtt-dispatch", daemon=True)
        self._worker.start()

        failures = 0
        try:
            while not self._stop_event.is_set():
                if self._connect_and_subscribe():
                    failures = 0
                    self._pump_until_disconnect()
                    if self._stop_event.is_set():
                        break
                    if not self._settings.automatic_reconnect:
                        raise BridgeConnectionError("Connection to broker lost")
                elif not self._settings.automatic_reconnect:
                    raise BridgeConnectionError(
                        f"Could not connect to broker at {self._settings.broker}"
                    )

                if self._stop_event.is_set():
                    break

                failures += 1
                self._stats.reconnects += 1
                BRIDGE_RECONNECTS.inc()
                delay = self._reconnect_retry.calculate_delay(failures)
                logger.warning("[MQTT] Reconnecting in %.2fs (attempt=%d)", delay, failures)
                self._stop_event.wait(delay)
        finally:
            self._shutdown()

    def _connect_and_subscribe(self) -> bool:
        """CONNECTING: conecta y espera CONNACK + SUBACK dentro del timeout."""
        self._set_state(ConnectionState.CONNECTING)
        self._subscribed = False
        self._session_failed = False
        self._subscribe_mid = None

        broker = self._settings.broker
        logger.info("[MQTT] Connecting to %s (client_id=%s)", broker, self._settings.client_id)

        try:
            self._client.connect(broker.host, broker.port, keepalive=self._settings.keepalive)
        except (OSError, ValueError) as e:
            logger.warning("[MQTT] Connection failed: %s", e)
            self._set_state(ConnectionState.DISCONNECTED)
            return False

        deadline = time.monotonic() + self._settings.connection_timeout
        while time.monotonic() < deadline and not self._stop_event.is_set():
            rc = self._client.loop(timeout=0.1)
            if self._subscribed:
                self._set_state(ConnectionState.SUBSCRIBED)
                return True
            if self._session_failed or rc != mqtt.MQTT_ERR_SUCCESS:
                break

        if not self._subscribed and not self._stop_event.is_set():
            logger.error("[MQTT] Subscription not confirmed (topic=%s)", self._settings.topic)
        self._drop_connection()
        return False

    def _pump_until_disconnect(self) -> None:
        """SUBSCRIBED: bombea la red hasta perder la conexión o recibir stop."""
        while not self._stop_event.is_set():
            self._flush_acks()
            rc = self._client.loop(timeout=self.LOOP_INTERVAL)
            if rc != mqtt.MQTT_ERR_SUCCESS or self._session_failed:
                logger.warning("[MQTT] Connection lost (rc=%s)", rc)
                break
        if not self._stop_event.is_set():
            self._drop_connection()

    def _drop_connection(self) -> None:
        try:
            self._client.disconnect()
        except Exception as e:
            logger.debug("[MQTT] Disconnect error: %s", e)
        self._set_state(ConnectionState.DISCONNECTED)

    def _shutdown(self) -> None:
        """Drena el dispatch en curso y libera la sesión del broker."""
        self._stop_event.set()

        if self._worker is not None:
            self._worker.join(self.drain_timeout)
            if self._worker.is_alive():
                logger.warning("[MQTT] In-flight dispatch did not finish within %.1fs", self.drain_timeout)

        pending = self._queue.qsize()
        if pending:
            logger.info("[MQTT] %d queued messages left unacknowledged", pending)

        if self._client is not None:
            try:
                self._flush_acks()
                if self._state is ConnectionState.SUBSCRIBED:
                    self._client.unsubscribe(self._settings.topic)
                self._client.disconnect()
            except Exception as e:
                logger.warning("[MQTT] Error stopping: %s", e)

        self._set_state(ConnectionState.STOPPED)
        logger.info("[MQTT] Stopped. %s", self._stats)

    # ------------------------------------------------------------------
    # Callbacks paho (se ejecutan en el hilo supervisor, dentro de loop())
    # ------------------------------------------------------------------

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code.is_failure:
            self._session_failed = True
            logger.error("[MQTT] Connection refused: %s", reason_code)
            return

        self._session += 1
        logger.info("[MQTT] Connected to broker (session=%d)", self._session)
        _, mid = client.subscribe(self._settings.topic, qos=self._settings.qos)
        self._subscribe_mid = mid

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties=None):
        if self._subscribe_mid is not None and mid != self._subscribe_mid:
            return
        if any(rc.is_failure for rc in reason_code_list):
            self._session_failed = True
            logger.error("[MQTT] Subscription refused for %s: %s", self._settings.topic, reason_code_list)
            return
        self._subscribed = True
        logger.info("[MQTT] Subscribed to %s (qos=%d)", self._settings.topic, self._settings.qos)

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None):
        self._session_failed = True
        if not self._stop_event.is_set():
            logger.warning("[MQTT] Disconnected (rc=%s)", reason_code)

    def _on_message(self, client, userdata, msg):
        """Solo encola: el procesamiento ocurre en el worker."""
        self._queue.put(
            InboundMessage(
                topic=msg.topic,
                payload=msg.payload,
                mid=msg.mid,
                qos=msg.qos,
                session=self._session,
            )
        )

    # ------------------------------------------------------------------
    # Worker secuencial
    # ------------------------------------------------------------------

    def _worker_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                message = self._queue.get(timeout=0.2)
            except queue.Empty:
                continue

            try:
                self.dispatch(message)
            except Exception as e:
                # El mensaje queda sin ACK; el worker sigue vivo
                logger.exception("[MQTT] Processing error: %s", e)
            finally:
                self._queue.task_done()

    def dispatch(self, message: InboundMessage) -> DispatchOutcome:
        """Procesa un mensaje: decode → forward con reintentos → ACK."""
        self._stats.received += 1
        self._stats.last_message_at = time.time()

        try:
            event = decode(message.payload)
        except DecodeError as e:
            logger.warning("[CODEC] Discarding malformed message (topic=%s): %s", message.topic, e)
            outcome = DispatchOutcome.MALFORMED
        else:
            outcome = self._forward_with_retry(event)

        if outcome.acknowledged:
            self._ack(message)

        self._record(outcome)
        return outcome

    def _forward_with_retry(self, event: DetectionEvent) -> DispatchOutcome:
        endpoint = self._settings.ingest_url
        max_attempts = self._relay_retry.max_attempts

        for attempt in range(1, max_attempts + 1):
            try:
                stored = self._relay.forward(event, endpoint, self._settings.relay_timeout)
            except RelayError as e:
                self._last_attempt = RelayAttempt(event, endpoint, attempt, e.kind)
                BRIDGE_RELAY_ATTEMPTS.labels(outcome=e.kind).inc()

                if not e.transient:
                    logger.error(
                        "[RELAY] Permanent failure, discarding state=%s observed_at=%s: %s",
                        event.state,
                        event.observed_at.isoformat(),
                        e,
                    )
                    return DispatchOutcome.REJECTED

                if attempt == max_attempts:
                    logger.error(
                        "[RELAY] RETRY_EXHAUSTED attempts=%d state=%s observed_at=%s err=%s",
                        attempt,
                        event.state,
                        event.observed_at.isoformat(),
                        e,
                    )
                    return DispatchOutcome.DROPPED

                delay = self._relay_retry.calculate_delay(attempt)
                logger.warning(
                    "[RELAY] RETRY attempt=%d/%d delay=%.2fs err=%s",
                    attempt,
                    max_attempts,
                    delay,
                    e,
                )
                self._stats.relay_retries += 1
                if self._stop_event.wait(delay):
                    logger.warning("[RELAY] Shutdown during retry; leaving message unacknowledged")
                    return DispatchOutcome.INTERRUPTED
                continue

            self._last_attempt = RelayAttempt(event, endpoint, attempt, "success")
            BRIDGE_RELAY_ATTEMPTS.labels(outcome="success").inc()
            logger.info(
                "[RELAY] Forwarded state=%s rounds=%d relay=%s id=%s",
                stored.state,
                stored.rounds,
                stored.relay,
                stored.id,
            )
            return DispatchOutcome.FORWARDED

        return DispatchOutcome.DROPPED

    def _ack(self, message: InboundMessage) -> None:
        """Encola el ACK; lo envía el hilo supervisor en _flush_acks()."""
        if message.qos == 0:
            return
        self._pending_acks.put(message)

    def _flush_acks(self) -> None:
        """Envía los ACK pendientes. Solo desde el hilo supervisor."""
        while True:
            try:
                message = self._pending_acks.get_nowait()
            except queue.Empty:
                return
            if self._client is None:
                continue
            if message.session != self._session:
                # El mid pertenece a una sesión anterior: el broker ya no lo espera
                logger.debug("[MQTT] Skipping ack for mid=%d from stale session", message.mid)
                continue
            self._client.ack(message.mid, message.qos)

    def _record(self, outcome: DispatchOutcome) -> None:
        if outcome is DispatchOutcome.FORWARDED:
            self._stats.forwarded += 1
        elif outcome is DispatchOutcome.MALFORMED:
            self._stats.malformed += 1
        elif outcome is DispatchOutcome.REJECTED:
            self._stats.rejected += 1
        elif outcome is DispatchOutcome.DROPPED:
            self._stats.dropped += 1
        else:
            self._stats.interrupted += 1
        BRIDGE_MESSAGES.labels(status=outcome.value).inc()

        # Log periódico estructurado
        if self._stats.received % 100 == 0:
            logger.info("[MQTT] %s", self._stats)

    # ------------------------------------------------------------------
    # Observabilidad
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.SUBSCRIBED

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    @property
    def stats(self) -> dict:
        return {
            "state": self._state.value,
            "connected": self.is_connected,
            "broker": str(self._settings.broker),
            "topic": self._settings.topic,
            "queue_depth": self.queue_depth,
            **self._stats.to_dict(),
        }

    def health_check(self) -> dict:
        worker_alive = self._worker is not None and self._worker.is_alive()
        last = self._last_attempt
        return {
            "healthy": self.is_connected and worker_alive,
            "state": self._state.value,
            "connected": self.is_connected,
            "worker_alive": worker_alive,
            "messages_forwarded": self._stats.forwarded,
            "messages_failed": self._stats.failed,
            "last_relay_outcome": last.outcome if last else None,
            "last_message_age_seconds": (
                time.time() - self._stats.last_message_at if self._stats.last_message_at > 0 else None
            ),
        }
