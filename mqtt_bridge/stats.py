"""Estadísticas del bridge MQTT."""

from __future__ import annotations


class BridgeStats:
    """Contadores en proceso del SubscriptionManager."""

    def __init__(self):
        self.received = 0
        self.forwarded = 0
        self.malformed = 0
        self.rejected = 0
        self.dropped = 0
        self.interrupted = 0
        self.relay_retries = 0
        self.reconnects = 0
        self.last_message_at: float = 0

    @property
    def failed(self) -> int:
        return self.malformed + self.rejected + self.dropped

    def __str__(self) -> str:
        return (
            f"Stats: received={self.received} forwarded={self.forwarded} "
            f"malformed={self.malformed} rejected={self.rejected} dropped={self.dropped} "
            f"retries={self.relay_retries} reconnects={self.reconnects}"
        )

    def to_dict(self) -> dict:
        return {
            "received": self.received,
            "forwarded": self.forwarded,
            "malformed": self.malformed,
            "rejected": self.rejected,
            "dropped": self.dropped,
            "interrupted": self.interrupted,
            "relay_retries": self.relay_retries,
            "reconnects": self.reconnects,
            "last_message_at": self.last_message_at,
        }
