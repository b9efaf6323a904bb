"""Entry point del bridge MQTT → Collector.

Ensamblado explícito: Settings → RelayClient → SubscriptionManager.

Ejecutar:
    train-mqtt-bridge
    python -m mqtt_bridge.main
"""

from __future__ import annotations

import logging
import signal
import sys
from typing import Optional

from prometheus_client import start_http_server

from common.config import BridgeSettings, ConfigError, get_bridge_settings
from .relay_client import RelayClient
from .subscription import BridgeConnectionError, SubscriptionManager

logger = logging.getLogger(__name__)


def build_bridge(
    settings: BridgeSettings,
    relay_client: Optional[RelayClient] = None,
) -> SubscriptionManager:
    """Construye el pipeline completo con dependencias explícitas."""
    relay_client = relay_client or RelayClient(
        endpoint=settings.ingest_url,
        timeout=settings.relay_timeout,
        api_key=settings.api_key,
    )
    return SubscriptionManager(settings, relay_client)


def main() -> None:
    try:
        settings = get_bridge_settings()
    except ConfigError as e:
        logging.basicConfig(level=logging.INFO)
        logger.error("[CONFIG] Invalid configuration: %s", e)
        sys.exit(2)

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
        handlers=[logging.StreamHandler()],
    )

    logger.info("MQTT bridge started")
    logger.info(
        "Config: broker=%s topic=%s qos=%d collector=%s relay_timeout=%.1fs attempts=%d",
        settings.broker,
        settings.topic,
        settings.qos,
        settings.ingest_url,
        settings.relay_timeout,
        settings.relay_max_attempts,
    )

    if settings.metrics_port:
        start_http_server(settings.metrics_port)
        logger.info("Prometheus metrics on :%d", settings.metrics_port)

    manager = build_bridge(settings)

    def _handle_signal(signum, frame):
        logger.info("Signal %d received, shutting down", signum)
        manager.request_stop()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    try:
        manager.run()
    except BridgeConnectionError as e:
        logger.error("[MQTT] %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
