"""Bridge MQTT → Collector HTTP.

Estructura modular:
- codec.py: Decodificación/validación de payloads de detección
- relay_client.py: Reenvío HTTP al endpoint de ingesta del collector
- subscription.py: Sesión MQTT, reconexión con backoff y worker secuencial
- stats.py: Contadores del bridge
- main.py: Ensamblado explícito de componentes y entry point
"""

from .codec import DecodeError, decode, encode
from .relay_client import RelayClient, RelayError
from .subscription import ConnectionState, DispatchOutcome, SubscriptionManager

__all__ = [
    "DecodeError",
    "decode",
    "encode",
    "RelayClient",
    "RelayError",
    "ConnectionState",
    "DispatchOutcome",
    "SubscriptionManager",
]
