from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import urlsplit

from dotenv import load_dotenv
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError


class ConfigError(ValueError):
    """Configuración inválida detectada al arrancar (aborta el proceso)."""


_BROKER_SCHEMES = {
    # scheme -> (transport, tls, puerto por defecto)
    "tcp": ("tcp", False, 1883),
    "mqtt": ("tcp", False, 1883),
    "ssl": ("tcp", True, 8883),
    "mqtts": ("tcp", True, 8883),
    "ws": ("websockets", False, 80),
    "wss": ("websockets", True, 443),
}


def _load_env_file() -> None:
    # Carga el .env (si existe) sin pisar variables reales del entorno.
    env_file = os.getenv("TRAIN_ENV_FILE", str(Path.cwd() / ".env"))
    if env_file and Path(env_file).exists():
        load_dotenv(env_file, override=False)


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_optional(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got: {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError:
        raise ConfigError(f"{name} must be a number, got: {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    v = raw.strip().lower()
    if v in ("1", "true", "yes", "on"):
        return True
    if v in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"{name} must be a boolean, got: {raw!r}")


@dataclass(frozen=True)
class BrokerEndpoint:
    """Destino del broker ya parseado desde MQTT_BROKER_URL."""

    host: str
    port: int
    transport: str = "tcp"
    tls: bool = False

    def __str__(self) -> str:
        scheme = "ssl" if self.tls else "tcp"
        if self.transport == "websockets":
            scheme = "wss" if self.tls else "ws"
        return f"{scheme}://{self.host}:{self.port}"


def parse_broker_url(url: str) -> BrokerEndpoint:
    """Parsea la URL del broker (tcp://host:port, ssl://, ws://...).

    Raises:
        ConfigError: si la URL no se puede interpretar
    """
    if not url or not url.strip():
        raise ConfigError("MQTT_BROKER_URL is empty")

    raw = url.strip()
    if "://" not in raw:
        raise ConfigError(f"MQTT_BROKER_URL missing scheme: {raw!r}")

    try:
        parts = urlsplit(raw)
        port = parts.port
    except ValueError as e:
        raise ConfigError(f"MQTT_BROKER_URL is not a valid URL: {e}")

    scheme = parts.scheme.lower()
    if scheme not in _BROKER_SCHEMES:
        raise ConfigError(f"MQTT_BROKER_URL has unsupported scheme: {scheme!r}")
    if not parts.hostname:
        raise ConfigError(f"MQTT_BROKER_URL has no host: {raw!r}")

    transport, tls, default_port = _BROKER_SCHEMES[scheme]
    return BrokerEndpoint(
        host=parts.hostname,
        port=port or default_port,
        transport=transport,
        tls=tls,
    )


_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _env_log_level() -> str:
    level = _env_str("LOG_LEVEL", "INFO").upper()
    if level not in _LOG_LEVELS:
        raise ConfigError(f"LOG_LEVEL must be one of {_LOG_LEVELS}, got: {level!r}")
    return level


def _validate_http_url(name: str, url: str) -> str:
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ConfigError(f"{name} must be an http(s) URL, got: {url!r}")
    return url.rstrip("/")


@dataclass(frozen=True)
class BridgeSettings:
    broker: BrokerEndpoint
    client_id: str
    topic: str
    username: Optional[str]
    password: Optional[str]
    qos: int
    connection_timeout: float
    keepalive: int
    automatic_reconnect: bool
    clean_session: bool
    reconnect_base_delay: float
    reconnect_max_delay: float

    api_base_url: str
    api_key: Optional[str]
    relay_timeout: float
    relay_max_attempts: int
    relay_base_delay: float
    relay_max_delay: float

    metrics_port: Optional[int] = None
    log_level: str = "INFO"

    @property
    def ingest_url(self) -> str:
        return f"{self.api_base_url}/api/train/detection"


@dataclass(frozen=True)
class CollectorSettings:
    database_url: str
    api_key: Optional[str]
    host: str
    port: int
    log_level: str = "INFO"


def get_bridge_settings() -> BridgeSettings:
    """Lee la configuración del bridge desde el entorno.

    Raises:
        ConfigError: si algún valor es inválido
    """
    _load_env_file()

    broker = parse_broker_url(_env_str("MQTT_BROKER_URL", "tcp://localhost:1883"))

    topic = _env_str("MQTT_TOPIC", "train/detection")
    qos = _env_int("MQTT_QOS", 1)
    if qos not in (0, 1, 2):
        raise ConfigError(f"MQTT_QOS must be 0, 1 or 2, got: {qos}")

    username = _env_optional("MQTT_USERNAME")
    # La contraseña solo tiene sentido si hay usuario.
    password = os.getenv("MQTT_PASSWORD") if username else None

    relay_max_attempts = _env_int("RELAY_MAX_ATTEMPTS", 3)
    if relay_max_attempts < 1:
        raise ConfigError("RELAY_MAX_ATTEMPTS must be >= 1")

    relay_timeout = _env_float("RELAY_TIMEOUT", 5.0)
    connection_timeout = _env_float("MQTT_CONNECTION_TIMEOUT", 10.0)
    if relay_timeout <= 0 or connection_timeout <= 0:
        raise ConfigError("RELAY_TIMEOUT and MQTT_CONNECTION_TIMEOUT must be > 0")

    return BridgeSettings(
        broker=broker,
        client_id=_env_str("MQTT_CLIENT_ID", "train-mqtt-bridge"),
        topic=topic,
        username=username,
        password=password,
        qos=qos,
        connection_timeout=connection_timeout,
        keepalive=_env_int("MQTT_KEEPALIVE", 60),
        automatic_reconnect=_env_bool("MQTT_AUTOMATIC_RECONNECT", True),
        clean_session=_env_bool("MQTT_CLEAN_SESSION", True),
        reconnect_base_delay=_env_float("MQTT_RECONNECT_BASE_DELAY", 1.0),
        reconnect_max_delay=_env_float("MQTT_RECONNECT_MAX_DELAY", 60.0),
        api_base_url=_validate_http_url(
            "API_BASE_URL", _env_str("API_BASE_URL", "http://localhost:8080")
        ),
        api_key=_env_optional("API_KEY"),
        relay_timeout=relay_timeout,
        relay_max_attempts=relay_max_attempts,
        relay_base_delay=_env_float("RELAY_BASE_DELAY", 0.5),
        relay_max_delay=_env_float("RELAY_MAX_DELAY", 10.0),
        metrics_port=_env_int("BRIDGE_METRICS_PORT", 0) or None,
        log_level=_env_log_level(),
    )


def get_collector_settings() -> CollectorSettings:
    _load_env_file()

    database_url = _env_str("DATABASE_URL", "sqlite:///./train_detections.db")
    try:
        make_url(database_url)
    except ArgumentError:
        # No exponer la URL (puede llevar credenciales)
        raise ConfigError("DATABASE_URL could not be parsed")

    return CollectorSettings(
        database_url=database_url,
        api_key=_env_optional("COLLECTOR_API_KEY"),
        host=_env_str("COLLECTOR_HOST", "0.0.0.0"),
        port=_env_int("COLLECTOR_PORT", 8080),
        log_level=_env_log_level(),
    )
