"""Cliente de reenvío al endpoint de ingesta del collector.

Una sola llamada POST por invocación: sin reintentos. La política de
reintentos vive en el SubscriptionManager.
"""

from __future__ import annotations

import logging
from typing import Optional

import orjson
import requests

from common.domain import DetectionEvent
from .codec import AcknowledgedPayload, DecodeError, decode_mapping, encode

logger = logging.getLogger(__name__)

# Errores locales del request: reintentar no los arregla
_INVALID_REQUEST_ERRORS = (
    requests.exceptions.InvalidURL,
    requests.exceptions.MissingSchema,
    requests.exceptions.InvalidSchema,
    requests.exceptions.InvalidHeader,
    requests.exceptions.URLRequired,
)


class RelayError(Exception):
    """Fallo al reenviar un evento al collector."""

    TIMEOUT = "timeout"
    UNREACHABLE = "unreachable"
    REJECTED = "rejected"
    INVALID_RESPONSE = "invalid_response"
    INVALID_REQUEST = "invalid_request"

    def __init__(self, kind: str, detail: str = "", status_code: Optional[int] = None):
        self.kind = kind
        self.detail = detail
        self.status_code = status_code
        message = kind if status_code is None else f"{kind}({status_code})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)

    @property
    def transient(self) -> bool:
        """True si tiene sentido reintentar.

        - timeout / unreachable → transitorio
        - rejected 5xx → transitorio (fallo del servidor)
        - rejected 4xx → permanente (el request no es válido)
        - invalid_response → permanente (el collector ya respondió 2xx)
        - invalid_request → permanente (URL o headers inválidos, error local)
        """
        if self.kind in (self.TIMEOUT, self.UNREACHABLE):
            return True
        if self.kind == self.REJECTED:
            return self.status_code is not None and self.status_code >= 500
        return False


class RelayClient:
    """Reenvía DetectionEvents al collector vía HTTP.

    Uso:
        client = RelayClient("http://collector:8080/api/train/detection")
        stored = client.forward(event)
    """

    def __init__(
        self,
        endpoint: str,
        timeout: float = 5.0,
        api_key: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ):
        self.endpoint = endpoint
        self.timeout = timeout
        self._api_key = api_key
        self._session = session or requests.Session()

    def forward(
        self,
        event: DetectionEvent,
        endpoint: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> DetectionEvent:
        """Envía el evento y retorna la copia confirmada por el servidor.

        Raises:
            RelayError
        """
        url = endpoint or self.endpoint
        headers = {
            "Content-Type": "application/json",
            "Idempotency-Key": event.dedup_key(),
        }
        if self._api_key:
            headers["X-API-Key"] = self._api_key

        try:
            response = self._session.post(
                url,
                data=encode(event),
                headers=headers,
                timeout=timeout if timeout is not None else self.timeout,
            )
        except requests.Timeout as e:
            # ConnectTimeout hereda de ConnectionError y Timeout: cuenta como timeout
            raise RelayError(RelayError.TIMEOUT, str(e))
        except _INVALID_REQUEST_ERRORS as e:
            raise RelayError(RelayError.INVALID_REQUEST, str(e))
        except requests.ConnectionError as e:
            raise RelayError(RelayError.UNREACHABLE, str(e))
        except requests.RequestException as e:
            raise RelayError(RelayError.UNREACHABLE, str(e))

        if not response.ok:
            raise RelayError(
                RelayError.REJECTED,
                response.text[:200],
                status_code=response.status_code,
            )

        try:
            acknowledged = decode_mapping(orjson.loads(response.content), AcknowledgedPayload)
        except (orjson.JSONDecodeError, DecodeError) as e:
            raise RelayError(RelayError.INVALID_RESPONSE, str(e), status_code=response.status_code)

        logger.debug(
            "[RELAY] Forwarded state=%s rounds=%d relay=%s -> id=%s",
            event.state,
            event.rounds,
            event.relay,
            acknowledged.id,
        )
        return acknowledged

    def close(self) -> None:
        self._session.close()
