"""
Pytest fixtures for the fiscal inbox test suite.

Provides:
- In-memory SQLite sessions with SAVEPOINT support
- A DeterministicClock and a per-test tenant id
- An NF-e XML builder
- A fake distribution API served through ``httpx.MockTransport``
"""

import json
import logging
import random
from datetime import datetime, timezone
from decimal import Decimal
from io import StringIO
from typing import Any
from uuid import uuid4

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from fiscal_kernel.db.base import Base
from fiscal_kernel.db.engine import enable_sqlite_savepoints
from fiscal_kernel.domain.clock import DeterministicClock
from fiscal_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from fiscal_kernel.services.retry_service import (
    CircuitBreakerRegistry,
    RetryService,
    reset_circuit_breakers,
)
from fiscal_services._orm_registry import import_all_orm_models
from fiscal_ingestion.adapters.distribution_client import DistributionApiClient

API_BASE_URL = "https://api.test"
TOKEN_URL = "https://auth.test/oauth/token"

RECIPIENT_TAX_ID = "11222333000181"
SUPPLIER_TAX_ID = "12345678000195"


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture(autouse=True)
def _reset_circuits():
    reset_circuit_breakers()
    yield
    reset_circuit_breakers()


@pytest.fixture
def captured_logs():
    """
    Capture fiscal_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs):
            ...
            assert any(r["message"] == "document_parsed" for r in captured_logs())
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("fiscal_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def engine():
    eng = create_engine("sqlite:///:memory:")
    enable_sqlite_savepoints(eng)
    import_all_orm_models()
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    s = session_factory()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def clock():
    return DeterministicClock(datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def tenant_id():
    return uuid4()


# =============================================================================
# NF-e payloads
# =============================================================================


def make_access_key(number: int, issuer_tax_id: str = SUPPLIER_TAX_ID, series: int = 1) -> str:
    """cUF(35) AAMM CNPJ mod(55) serie nNF tpEmis cNF cDV -- 44 digits."""
    return f"352603{issuer_tax_id}55{series:03d}{number:09d}1{number:08d}0"


def _det(index: int, item: dict[str, Any]) -> str:
    qty = Decimal(str(item.get("quantity", "1")))
    price = Decimal(str(item.get("unit_price", "10.00")))
    return (
        f'<det nItem="{index}"><prod>'
        f"<cProd>{item['code']}</cProd>"
        f"<cEAN>{item.get('ean') or 'SEM GTIN'}</cEAN>"
        f"<xProd>{item['description']}</xProd>"
        f"<NCM>{item.get('ncm', '73181500')}</NCM>"
        f"<CFOP>5102</CFOP><uCom>{item.get('unit', 'UN')}</uCom>"
        f"<qCom>{qty}</qCom><vUnCom>{price}</vUnCom><vProd>{qty * price}</vProd>"
        "</prod><imposto>"
        "<ICMS><ICMS00><orig>0</orig><CST>00</CST><vBC>10.00</vBC>"
        "<pICMS>18.00</pICMS><vICMS>1.80</vICMS></ICMS00></ICMS>"
        "<PIS><PISAliq><CST>01</CST><vBC>10.00</vBC><pPIS>1.65</pPIS>"
        "<vPIS>0.17</vPIS></PISAliq></PIS>"
        "</imposto></det>"
    )


def build_nfe_xml(
    access_key: str,
    items: list[dict[str, Any]] | None = None,
    issuer_tax_id: str = SUPPLIER_TAX_ID,
    issuer_name: str = "Fornecedor Exemplo Ltda",
    recipient_tax_id: str = RECIPIENT_TAX_ID,
    installments: int = 1,
) -> str:
    """A minimal authorized NF-e (nfeProc envelope, portalfiscal namespace)."""
    items = items or [{"code": "P-001", "description": "PARAFUSO SEXTAVADO 10MM"}]
    total = sum(
        Decimal(str(i.get("quantity", "1"))) * Decimal(str(i.get("unit_price", "10.00")))
        for i in items
    )
    dups = "".join(
        f"<dup><nDup>{n:03d}</nDup><dVenc>2026-04-0{n}</dVenc>"
        f"<vDup>{total / installments:.2f}</vDup></dup>"
        for n in range(1, installments + 1)
    )
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<nfeProc xmlns="http://www.portalfiscal.inf.br/nfe" versao="4.00"><NFe>'
        f'<infNFe Id="NFe{access_key}" versao="4.00">'
        f"<ide><natOp>VENDA DE MERCADORIA</natOp><serie>{int(access_key[22:25])}</serie>"
        f"<nNF>{int(access_key[25:34])}</nNF><dhEmi>2026-03-01T10:00:00-03:00</dhEmi>"
        "<tpNF>1</tpNF><finNFe>1</finNFe></ide>"
        f"<emit><CNPJ>{issuer_tax_id}</CNPJ><xNome>{issuer_name}</xNome>"
        "<xFant>Exemplo</xFant><enderEmit><UF>SP</UF></enderEmit>"
        "<IE>123456789012</IE><CRT>3</CRT></emit>"
        f"<dest><CNPJ>{recipient_tax_id}</CNPJ><xNome>Destinatario SA</xNome>"
        "<enderDest><UF>RJ</UF></enderDest></dest>"
        + "".join(_det(n, item) for n, item in enumerate(items, start=1))
        + "<total><ICMSTot>"
        f"<vBC>{total}</vBC><vICMS>1.80</vICMS><vBCST>0</vBCST><vST>0</vST>"
        f"<vProd>{total}</vProd><vFrete>0</vFrete><vSeg>0</vSeg><vDesc>0</vDesc>"
        f"<vIPI>0</vIPI><vPIS>0.17</vPIS><vCOFINS>0</vCOFINS><vOutro>0</vOutro>"
        f"<vNF>{total}</vNF></ICMSTot></total>"
        "<transp><modFrete>0</modFrete><transporta><CNPJ>99888777000166</CNPJ>"
        "<xNome>Transportes Rapidos</xNome></transporta>"
        "<vol><qVol>2</qVol><pesoL>10.500</pesoL><pesoB>11.000</pesoB></vol></transp>"
        + (f"<cobr>{dups}</cobr>" if installments else "")
        + "<infAdic><infCpl>Pedido 4521</infCpl></infAdic>"
        "</infNFe></NFe></nfeProc>"
    )


@pytest.fixture
def nfe_xml():
    """Builder: ``nfe_xml(access_key, items=[...], ...)`` -> XML string."""
    return build_nfe_xml


@pytest.fixture
def access_key():
    """Builder: ``access_key(number, issuer_tax_id=...)`` -> 44-digit key."""
    return make_access_key


# =============================================================================
# Distribution API
# =============================================================================


class FakeDistributionApi:
    """
    In-memory distribution service behind ``httpx.MockTransport``.

    ``fail(route, *statuses)`` queues error responses for a route; they are
    served before any normal response.
    """

    def __init__(self):
        self.documents: list[dict[str, Any]] = []
        self.payloads: dict[str, str] = {}
        self.failures: dict[str, list[int]] = {}
        self.requests: list[httpx.Request] = []
        self.acknowledgments: list[dict[str, Any]] = []
        self.token_requests = 0

    def add_document(
        self,
        key: str,
        payload: str | None = None,
        issuer_tax_id: str = SUPPLIER_TAX_ID,
        acknowledgment: str | None = None,
    ) -> dict[str, Any]:
        external_id = f"doc-{len(self.documents) + 1}"
        entry = {
            "id": external_id,
            "chave": key,
            "cnpj_emitente": issuer_tax_id,
            "nome_emitente": "Fornecedor Exemplo Ltda",
            "cnpj_destinatario": RECIPIENT_TAX_ID,
            "data_emissao": "2026-03-01T10:00:00-03:00",
            "valor_total": 10.0,
            "nsu": str(1000 + len(self.documents)),
            "xml_disponivel": payload is not None,
            "manifestacao": acknowledgment,
        }
        self.documents.append(entry)
        if payload is not None:
            self.payloads[external_id] = payload
        return entry

    def fail(self, route: str, *statuses: int) -> None:
        self.failures.setdefault(route, []).extend(statuses)

    def calls(self, route: str) -> list[httpx.Request]:
        return [r for r in self.requests if self._route(r) == route]

    @staticmethod
    def _route(request: httpx.Request) -> str:
        path = request.url.path
        if request.url.host == "auth.test":
            return "token"
        if path == "/distribuicao/nfe" and request.method == "POST":
            return "request"
        if path == "/distribuicao/nfe/documentos":
            return "list"
        if path.startswith("/distribuicao/nfe/documentos/") and path.endswith("/xml"):
            return "payload"
        if path == "/distribuicao/nfe/manifestacoes":
            return "acknowledge"
        if path == "/distribuicao/nfe/sem-manifestacao":
            return "unacknowledged"
        return "unknown"

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self._route(request)

        queued = self.failures.get(route)
        if queued:
            return httpx.Response(queued.pop(0), json={"error": "simulated"})

        if route == "token":
            self.token_requests += 1
            return httpx.Response(
                200,
                json={"access_token": f"token-{self.token_requests}", "expires_in": 3600},
            )
        if route == "request":
            return httpx.Response(202, json={"status": "processing"})
        if route == "list":
            offset = int(request.url.params.get("$offset", "0"))
            limit = int(request.url.params.get("$limit", "50"))
            return httpx.Response(200, json={"data": self.documents[offset:offset + limit]})
        if route == "payload":
            external_id = request.url.path.split("/")[-2]
            if external_id not in self.payloads:
                return httpx.Response(404, json={"error": "not found"})
            return httpx.Response(200, text=self.payloads[external_id])
        if route == "acknowledge":
            body = json.loads(request.content)
            self.acknowledgments.append(body)
            return httpx.Response(
                200, json={"protocolo": f"13526{len(self.acknowledgments):010d}"},
            )
        if route == "unacknowledged":
            pending = [d for d in self.documents if not d.get("manifestacao")]
            return httpx.Response(200, json={"data": pending})
        return httpx.Response(404, json={"error": "unknown route"})


@pytest.fixture
def fake_api():
    return FakeDistributionApi()


@pytest.fixture
def http_client(fake_api):
    client = httpx.Client(transport=httpx.MockTransport(fake_api.handler), base_url=API_BASE_URL)
    yield client
    client.close()


@pytest.fixture
def circuit_registry(clock):
    return CircuitBreakerRegistry(clock=clock)


@pytest.fixture
def sleeps():
    """Delays requested by the retry layer (nothing actually sleeps)."""
    return []


@pytest.fixture
def retry_service(circuit_registry, sleeps):
    return RetryService(registry=circuit_registry, sleep=sleeps.append, rng=random.Random(7))


@pytest.fixture
def api_client(http_client, retry_service, clock):
    return DistributionApiClient(
        base_url=API_BASE_URL,
        token_url=TOKEN_URL,
        client_id="inbox-tests",
        client_secret="s3cret",
        retry_service=retry_service,
        clock=clock,
        http_client=http_client,
    )
