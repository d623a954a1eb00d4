"""
Distribution API client (received-document distribution service).

Contract:
    One method per remote operation.  Every call goes through
    ``RetryService.execute`` under its own named circuit, so a flapping
    endpoint is retried with backoff and a dead one is short-circuited
    without affecting the others.

    HTTP errors surface as ``TransientExternalError`` (429 / 5xx) or
    ``PermanentExternalError`` (other 4xx); transport failures surface as
    the underlying ``httpx.TransportError``.  The retry layer decides what
    to retry from those types.

Authentication:
    OAuth2 client-credentials.  The token is cached until
    ``expires_in - 300`` seconds on the injected Clock; a 401 drops it so
    the next call re-authenticates.

Architecture: fiscal_ingestion/adapters. Network I/O only, no DB.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from typing import Any, TypeVar

import httpx

from fiscal_kernel.domain.clock import Clock, SystemClock
from fiscal_kernel.exceptions import PermanentExternalError, TransientExternalError
from fiscal_kernel.logging_config import get_logger
from fiscal_kernel.services.retry_service import RetryOptions, RetryService
from fiscal_ingestion.domain.types import RemoteDocument

logger = get_logger("ingestion.distribution_client")

T = TypeVar("T")

CIRCUIT_REQUEST = "distribution_request"
CIRCUIT_LIST = "distribution_list"
CIRCUIT_PAYLOAD = "distribution_payload"
CIRCUIT_ACKNOWLEDGMENT = "distribution_acknowledgment"

TOKEN_EXPIRY_MARGIN_SECONDS = 300
DEFAULT_PAGE_SIZE = 50


def _json_or_empty(response: httpx.Response) -> dict[str, Any]:
    return response.json() if response.content else {}


def _raise_for_status(response: httpx.Response, endpoint: str) -> None:
    status = response.status_code
    if status < 400:
        return
    message = response.text[:200] if response.text else response.reason_phrase
    if status == 429 or status >= 500:
        raise TransientExternalError(status, message, endpoint)
    raise PermanentExternalError(status, message, endpoint)


class DistributionApiClient:
    """
    Thin typed wrapper over the distribution REST API.

    ``http_client`` is injectable (tests pass an ``httpx.Client`` built on
    ``httpx.MockTransport``); when omitted the client owns one and
    ``close()`` releases it.
    """

    def __init__(
        self,
        base_url: str,
        token_url: str,
        client_id: str,
        client_secret: str,
        retry_service: RetryService,
        scope: str = "distribuicao-nfe",
        clock: Clock | None = None,
        http_client: httpx.Client | None = None,
        timeout_seconds: float = 30.0,
        retry_options: Mapping[str, RetryOptions] | None = None,
    ):
        self._token_url = token_url
        self._client_id = client_id
        self._client_secret = client_secret
        self._scope = scope
        self._retry = retry_service
        self._clock = clock or SystemClock()
        self._options = dict(retry_options or {})
        self._owns_client = http_client is None
        self._http = http_client or httpx.Client(
            base_url=base_url, timeout=httpx.Timeout(timeout_seconds),
        )
        if http_client is not None and not str(self._http.base_url):
            self._http.base_url = base_url

        self._token: str | None = None
        self._token_expires_at: datetime | None = None
        self._token_lock = threading.Lock()

    def close(self) -> None:
        if self._owns_client:
            self._http.close()

    def __enter__(self) -> DistributionApiClient:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def _access_token(self) -> str:
        with self._token_lock:
            now = self._clock.now()
            if self._token and self._token_expires_at and now < self._token_expires_at:
                return self._token

            response = self._http.post(
                self._token_url,
                data={
                    "grant_type": "client_credentials",
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "scope": self._scope,
                },
            )
            _raise_for_status(response, "token")
            body = response.json()
            expires_in = int(body.get("expires_in", 3600))
            self._token = body["access_token"]
            self._token_expires_at = now + timedelta(
                seconds=max(0, expires_in - TOKEN_EXPIRY_MARGIN_SECONDS)
            )
            logger.debug("distribution_token_refreshed", extra={"expires_in": expires_in})
            return self._token

    def invalidate_token(self) -> None:
        with self._token_lock:
            self._token = None
            self._token_expires_at = None

    def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        token = self._access_token()
        headers = {"Authorization": f"Bearer {token}"}
        response = self._http.request(method, path, headers=headers, **kwargs)
        if response.status_code == 401:
            self.invalidate_token()
        _raise_for_status(response, path)
        return response

    def _call(self, circuit_name: str, operation: Callable[[], T]) -> T:
        return self._retry.execute(
            operation,
            options=self._options.get(circuit_name),
            circuit_name=circuit_name,
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def request_distribution(self, tax_id: str) -> dict[str, Any]:
        """Ask the service to pull new documents for ``tax_id`` from the authority."""
        return self._call(
            CIRCUIT_REQUEST,
            lambda: _json_or_empty(
                self._send("POST", "/distribuicao/nfe", json={"cpf_cnpj": tax_id})
            ),
        )

    def list_documents(
        self,
        tax_id: str,
        offset: int = 0,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> list[RemoteDocument]:
        body = self._call(
            CIRCUIT_LIST,
            lambda: self._send(
                "GET",
                "/distribuicao/nfe/documentos",
                params={"cpf_cnpj": tax_id, "$offset": offset, "$limit": limit},
            ).json(),
        )
        return [RemoteDocument.from_api(item) for item in body.get("data") or []]

    def fetch_payload(self, external_id: str) -> str:
        return self._call(
            CIRCUIT_PAYLOAD,
            lambda: self._send(
                "GET", f"/distribuicao/nfe/documentos/{external_id}/xml",
            ).text,
        )

    def send_acknowledgment(
        self,
        tax_id: str,
        access_key: str,
        event_code: str,
        justification: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "cpf_cnpj": tax_id,
            "chave": access_key,
            "tipo_evento": event_code,
        }
        if justification:
            body["justificativa"] = justification

        def _post() -> dict[str, Any]:
            response = self._send("POST", "/distribuicao/nfe/manifestacoes", json=body)
            return _json_or_empty(response)

        return self._call(CIRCUIT_ACKNOWLEDGMENT, _post)

    def list_unacknowledged(
        self,
        tax_id: str,
        offset: int = 0,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> list[RemoteDocument]:
        body = self._call(
            CIRCUIT_LIST,
            lambda: self._send(
                "GET",
                "/distribuicao/nfe/sem-manifestacao",
                params={"cpf_cnpj": tax_id, "$offset": offset, "$limit": limit},
            ).json(),
        )
        return [RemoteDocument.from_api(item) for item in body.get("data") or []]
