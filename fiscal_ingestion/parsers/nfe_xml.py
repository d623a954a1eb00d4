"""
NF-e XML parser.

Contract:
    ``parse_nfe(payload)`` returns a ``ParsedInvoice``; ``parse_header(payload)``
    returns just enough (``InvoiceHeader``) to admit a manually imported
    document.  Both raise ``PayloadParseError`` for anything that is not a
    well-formed NF-e with a 44-digit access key.

Accepts both the bare ``<NFe>`` document and the authorized ``<nfeProc>``
envelope, with or without the portalfiscal namespace.  Missing numeric
tags read as zero; missing optional text tags read as None.

Architecture: fiscal_ingestion/parsers. Pure: string in, frozen DTOs out.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation
from xml.etree import ElementTree as ET

from fiscal_kernel.exceptions import PayloadParseError
from fiscal_ingestion.domain.types import (
    InvoiceHeader,
    ParsedInstallment,
    ParsedInvoice,
    ParsedLineItem,
    ParsedParty,
    ParsedTotals,
    ParsedTransport,
)

NFE_NAMESPACE = "http://www.portalfiscal.inf.br/nfe"
NO_IDENTIFIER = "SEM GTIN"

_PURPOSES = {"1": "normal", "2": "complementary", "3": "adjustment", "4": "return"}


def _strip_namespaces(root: ET.Element) -> ET.Element:
    for element in root.iter():
        if isinstance(element.tag, str) and "}" in element.tag:
            element.tag = element.tag.split("}", 1)[1]
    return root


def _load(payload: str | bytes) -> ET.Element:
    if not payload or not str(payload).strip():
        raise PayloadParseError("empty payload")
    try:
        root = ET.fromstring(payload)
    except ET.ParseError as exc:
        raise PayloadParseError(f"malformed XML: {exc}") from exc
    root = _strip_namespaces(root)

    inf_nfe = root if root.tag == "infNFe" else root.find(".//infNFe")
    if inf_nfe is None:
        raise PayloadParseError("infNFe element not found")
    return inf_nfe


def _access_key(inf_nfe: ET.Element) -> str:
    raw_id = inf_nfe.get("Id", "")
    key = raw_id[3:] if raw_id.startswith("NFe") else raw_id
    if len(key) != 44 or not key.isdigit():
        raise PayloadParseError(f"invalid access key in Id attribute: {raw_id!r}")
    return key


def _text(element: ET.Element | None, path: str) -> str:
    if element is None:
        return ""
    return (element.findtext(path) or "").strip()


def _opt(element: ET.Element | None, path: str) -> str | None:
    return _text(element, path) or None


def _dec(element: ET.Element | None, path: str) -> Decimal:
    value = _text(element, path)
    if not value:
        return Decimal("0")
    try:
        return Decimal(value)
    except InvalidOperation as exc:
        raise PayloadParseError(f"non-numeric value in <{path}>: {value!r}") from exc


def _opt_dec(element: ET.Element | None, path: str) -> Decimal | None:
    return _dec(element, path) if _text(element, path) else None


def _int(element: ET.Element | None, path: str, default: int | None = 0) -> int | None:
    value = _text(element, path)
    try:
        return int(value)
    except ValueError:
        return default


def _datetime(value: str) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _party(element: ET.Element | None, address_tag: str) -> ParsedParty:
    return ParsedParty(
        tax_id=_text(element, "CNPJ") or _text(element, "CPF"),
        name=_text(element, "xNome"),
        trade_name=_opt(element, "xFant"),
        state_registration=_opt(element, "IE"),
        state=_opt(element, f"{address_tag}/UF"),
        tax_regime=_int(element, "CRT", default=None),
    )


def _tax_group(group: ET.Element | None, fields: dict[str, str]) -> dict[str, str] | None:
    """Flatten one tax group (ICMS/IPI/PIS/COFINS) regardless of its CST variant."""
    if group is None:
        return None
    values = {}
    for name, tag in fields.items():
        value = _text(group, f".//{tag}")
        if value:
            values[name] = value
    return values or None


def _line_item(det: ET.Element) -> ParsedLineItem:
    prod = det.find("prod")
    imposto = det.find("imposto")
    if prod is None:
        raise PayloadParseError(f"det nItem={det.get('nItem')!r} has no prod")

    identifier = _text(prod, "cEAN") or _text(prod, "cEANTrib")
    if identifier.upper() == NO_IDENTIFIER:
        identifier = ""

    taxes = {}
    groups = {
        "icms": _tax_group(
            imposto.find("ICMS") if imposto is not None else None,
            {
                "origin": "orig", "cst": "CST", "csosn": "CSOSN",
                "base": "vBC", "rate": "pICMS", "value": "vICMS",
                "st_base": "vBCST", "st_rate": "pICMSST", "st_value": "vICMSST",
            },
        ),
        "ipi": _tax_group(
            imposto.find("IPI") if imposto is not None else None,
            {"cst": "CST", "base": "vBC", "rate": "pIPI", "value": "vIPI"},
        ),
        "pis": _tax_group(
            imposto.find("PIS") if imposto is not None else None,
            {"cst": "CST", "base": "vBC", "rate": "pPIS", "value": "vPIS"},
        ),
        "cofins": _tax_group(
            imposto.find("COFINS") if imposto is not None else None,
            {"cst": "CST", "base": "vBC", "rate": "pCOFINS", "value": "vCOFINS"},
        ),
    }
    for name, group in groups.items():
        if group:
            taxes[name] = group

    return ParsedLineItem(
        line_number=int(det.get("nItem", "0") or 0),
        supplier_code=_text(prod, "cProd"),
        description=_text(prod, "xProd"),
        classification_code=_text(prod, "NCM"),
        cest=_opt(prod, "CEST"),
        cfop=_text(prod, "CFOP"),
        unit=_text(prod, "uCom"),
        identifier=identifier or None,
        quantity=_dec(prod, "qCom"),
        unit_price=_dec(prod, "vUnCom"),
        total_value=_dec(prod, "vProd"),
        discount=_dec(prod, "vDesc"),
        freight=_dec(prod, "vFrete"),
        taxes=taxes,
    )


def _totals(inf_nfe: ET.Element) -> ParsedTotals:
    tot = inf_nfe.find("total/ICMSTot")
    return ParsedTotals(
        products=_dec(tot, "vProd"),
        freight=_dec(tot, "vFrete"),
        insurance=_dec(tot, "vSeg"),
        discount=_dec(tot, "vDesc"),
        other=_dec(tot, "vOutro"),
        total=_dec(tot, "vNF"),
        icms_base=_dec(tot, "vBC"),
        icms_value=_dec(tot, "vICMS"),
        icms_st_base=_dec(tot, "vBCST"),
        icms_st_value=_dec(tot, "vST"),
        ipi=_dec(tot, "vIPI"),
        pis=_dec(tot, "vPIS"),
        cofins=_dec(tot, "vCOFINS"),
        fcp=_dec(tot, "vFCPST") + _dec(tot, "vFCP"),
    )


def _transport(inf_nfe: ET.Element) -> ParsedTransport | None:
    transp = inf_nfe.find("transp")
    if transp is None:
        return None
    carrier = transp.find("transporta")
    vol = transp.find("vol")
    return ParsedTransport(
        freight_mode=_int(transp, "modFrete") or 0,
        carrier_tax_id=_opt(carrier, "CNPJ") or _opt(carrier, "CPF"),
        carrier_name=_opt(carrier, "xNome"),
        volumes=_int(vol, "qVol", default=None),
        net_weight=_opt_dec(vol, "pesoL"),
        gross_weight=_opt_dec(vol, "pesoB"),
    )


def _installments(inf_nfe: ET.Element) -> tuple[ParsedInstallment, ...]:
    return tuple(
        ParsedInstallment(
            number=_text(dup, "nDup"),
            due_date=_text(dup, "dVenc"),
            amount=_dec(dup, "vDup"),
        )
        for dup in inf_nfe.findall("cobr/dup")
    )


def parse_nfe(payload: str | bytes) -> ParsedInvoice:
    """Parse a full NF-e payload."""
    inf_nfe = _load(payload)
    ide = inf_nfe.find("ide")
    emit = inf_nfe.find("emit")
    dest = inf_nfe.find("dest")
    inf_adic = inf_nfe.find("infAdic")

    issued = _text(ide, "dhEmi") or _text(ide, "dEmi")

    return ParsedInvoice(
        access_key=_access_key(inf_nfe),
        number=_text(ide, "nNF"),
        series=_text(ide, "serie"),
        issue_date=_datetime(issued),
        nature_of_operation=_text(ide, "natOp"),
        operation_type="inbound" if _text(ide, "tpNF") == "0" else "outbound",
        purpose=_PURPOSES.get(_text(ide, "finNFe"), "normal"),
        issuer=_party(emit, "enderEmit"),
        recipient=_party(dest, "enderDest"),
        totals=_totals(inf_nfe),
        items=tuple(_line_item(det) for det in inf_nfe.findall("det")),
        transport=_transport(inf_nfe),
        installments=_installments(inf_nfe),
        additional_info=_opt(inf_adic, "infCpl"),
        fiscal_info=_opt(inf_adic, "infAdFisco"),
    )


def parse_header(payload: str | bytes) -> InvoiceHeader:
    """Parse only the identification needed to admit a document."""
    inf_nfe = _load(payload)
    ide = inf_nfe.find("ide")
    emit = inf_nfe.find("emit")
    dest = inf_nfe.find("dest")
    return InvoiceHeader(
        access_key=_access_key(inf_nfe),
        issuer_tax_id=_opt(emit, "CNPJ") or _opt(emit, "CPF"),
        issuer_name=_opt(emit, "xNome"),
        recipient_tax_id=_opt(dest, "CNPJ") or _opt(dest, "CPF"),
        issue_date=_datetime(_text(ide, "dhEmi") or _text(ide, "dEmi")),
        total_value=_dec(inf_nfe.find("total/ICMSTot"), "vNF"),
    )
