"""Fixtures compartidas de la suite."""

from datetime import datetime

import pytest

from common.config import BridgeSettings, BrokerEndpoint, CollectorSettings
from common.db import create_db_engine, ensure_schema
from common.domain import DetectionEvent


@pytest.fixture
def engine():
    """SQLite en memoria (StaticPool) con el schema creado."""
    engine = create_db_engine("sqlite://")
    ensure_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def make_bridge_settings():
    """Factory de BridgeSettings con delays nulos para tests rápidos."""

    def _make(**overrides) -> BridgeSettings:
        values = dict(
            broker=BrokerEndpoint(host="broker.test", port=1883),
            client_id="test-bridge",
            topic="train/detection",
            username=None,
            password=None,
            qos=1,
            connection_timeout=1.0,
            keepalive=60,
            automatic_reconnect=True,
            clean_session=True,
            reconnect_base_delay=0.0,
            reconnect_max_delay=0.0,
            api_base_url="http://collector.test",
            api_key=None,
            relay_timeout=1.0,
            relay_max_attempts=3,
            relay_base_delay=0.0,
            relay_max_delay=0.0,
        )
        values.update(overrides)
        return BridgeSettings(**values)

    return _make


@pytest.fixture
def collector_settings() -> CollectorSettings:
    return CollectorSettings(
        database_url="sqlite://",
        api_key=None,
        host="127.0.0.1",
        port=8080,
    )


@pytest.fixture
def make_event():
    def _make(state="approaching", rounds=3, relay="activated", observed_at=None) -> DetectionEvent:
        return DetectionEvent(
            state=state,
            rounds=rounds,
            relay=relay,
            observed_at=observed_at or datetime(2026, 1, 31, 8, 0, 0),
        )

    return _make
