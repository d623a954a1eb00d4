"""
Validators and key decoders for inbound fiscal identifiers.

Inbound operations call these before any mutation so that malformed input
raises a typed ``ValidationError`` and nothing is written.

Architecture: fiscal_ingestion/domain. ZERO I/O. Imports only from
fiscal_kernel.
"""

from __future__ import annotations

import re

from fiscal_kernel.domain.types import AcknowledgmentKind
from fiscal_kernel.exceptions import (
    InvalidAccessKeyError,
    InvalidTaxIdError,
    JustificationRequiredError,
)

ACCESS_KEY_LENGTH = 44
MIN_JUSTIFICATION_LENGTH = 15

_DIGITS = re.compile(r"\D")

# IBGE state codes (first two digits of the access key)
STATE_BY_IBGE_CODE: dict[str, str] = {
    "11": "RO", "12": "AC", "13": "AM", "14": "RR", "15": "PA",
    "16": "AP", "17": "TO", "21": "MA", "22": "PI", "23": "CE",
    "24": "RN", "25": "PB", "26": "PE", "27": "AL", "28": "SE",
    "29": "BA", "31": "MG", "32": "ES", "33": "RJ", "35": "SP",
    "41": "PR", "42": "SC", "43": "RS", "50": "MS", "51": "MT",
    "52": "GO", "53": "DF",
}


def only_digits(value: str | None) -> str:
    return _DIGITS.sub("", value or "")


def validate_access_key(access_key: str | None) -> str:
    """Return the 44-digit key or raise ``InvalidAccessKeyError``."""
    key = (access_key or "").strip()
    if len(key) != ACCESS_KEY_LENGTH or not key.isdigit():
        raise InvalidAccessKeyError(access_key or "")
    return key


def validate_tax_id(tax_id: str | None) -> str:
    """Return the CPF (11) or CNPJ (14) digits or raise ``InvalidTaxIdError``."""
    digits = only_digits(tax_id)
    if len(digits) not in (11, 14):
        raise InvalidTaxIdError(tax_id or "")
    return digits


def validate_justification(
    kind: AcknowledgmentKind,
    justification: str | None,
    min_length: int = MIN_JUSTIFICATION_LENGTH,
) -> str | None:
    """
    Enforce the justification rule for rejecting acknowledgments.

    Returns the stripped justification when the kind requires one, None
    otherwise (a justification on awareness/confirmation is dropped).
    """
    if not kind.requires_justification:
        return None
    text = (justification or "").strip()
    if len(text) < min_length:
        raise JustificationRequiredError(kind.value, min_length)
    return text


# -----------------------------------------------------------------------------
# Access key decoding: cUF(2) AAMM(2+2) CNPJ(14) mod(2) serie(3) nNF(9) ...
# -----------------------------------------------------------------------------


def number_from_access_key(access_key: str) -> str:
    return str(int(access_key[25:34]))


def series_from_access_key(access_key: str) -> str:
    return str(int(access_key[22:25]))


def state_from_access_key(access_key: str) -> str | None:
    return STATE_BY_IBGE_CODE.get(access_key[0:2])
