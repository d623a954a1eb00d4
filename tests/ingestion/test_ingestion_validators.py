"""Tests for identifier validators and access key decoders."""

import pytest

from fiscal_kernel.domain.types import AcknowledgmentKind
from fiscal_kernel.exceptions import (
    InvalidAccessKeyError,
    InvalidTaxIdError,
    JustificationRequiredError,
)
from fiscal_ingestion.domain.types import RemoteDocument
from fiscal_ingestion.domain.validators import (
    number_from_access_key,
    series_from_access_key,
    state_from_access_key,
    validate_access_key,
    validate_justification,
    validate_tax_id,
)


class TestAccessKey:
    def test_valid_key_is_returned_stripped(self, access_key):
        key = access_key(1)
        assert validate_access_key(f" {key} ") == key

    @pytest.mark.parametrize("value", [None, "", "123", "a" * 44, "1" * 43, "1" * 45])
    def test_invalid_keys(self, value):
        with pytest.raises(InvalidAccessKeyError):
            validate_access_key(value)

    def test_decoders(self, access_key):
        key = access_key(4521, series=12)
        assert number_from_access_key(key) == "4521"
        assert series_from_access_key(key) == "12"
        assert state_from_access_key(key) == "SP"

    def test_unknown_state_code(self):
        assert state_from_access_key("99" + "0" * 42) is None


class TestTaxId:
    def test_cnpj_punctuation_removed(self):
        assert validate_tax_id("12.345.678/0001-95") == "12345678000195"

    def test_cpf(self):
        assert validate_tax_id("123.456.789-09") == "12345678909"

    @pytest.mark.parametrize("value", [None, "", "123", "1234567890123"])
    def test_invalid(self, value):
        with pytest.raises(InvalidTaxIdError):
            validate_tax_id(value)


class TestJustification:
    @pytest.mark.parametrize(
        "kind", [AcknowledgmentKind.NON_RECOGNITION, AcknowledgmentKind.NOT_PERFORMED],
    )
    def test_rejections_require_fifteen_chars(self, kind):
        with pytest.raises(JustificationRequiredError) as exc_info:
            validate_justification(kind, "too short")
        assert exc_info.value.min_length == 15

    def test_length_counted_after_strip(self):
        with pytest.raises(JustificationRequiredError):
            validate_justification(AcknowledgmentKind.NOT_PERFORMED, "   fourteen chars   ")

    def test_valid_justification_returned(self):
        text = validate_justification(
            AcknowledgmentKind.NON_RECOGNITION, "  Mercadoria nao solicitada  ",
        )
        assert text == "Mercadoria nao solicitada"

    def test_awareness_drops_justification(self):
        assert validate_justification(AcknowledgmentKind.AWARENESS, "anything") is None

    def test_custom_minimum(self):
        assert validate_justification(AcknowledgmentKind.NOT_PERFORMED, "abcde", 5) == "abcde"


class TestAcknowledgmentKind:
    @pytest.mark.parametrize(
        ("kind", "code"),
        [
            (AcknowledgmentKind.AWARENESS, "210200"),
            (AcknowledgmentKind.CONFIRMATION, "210210"),
            (AcknowledgmentKind.NON_RECOGNITION, "210220"),
            (AcknowledgmentKind.NOT_PERFORMED, "210240"),
        ],
    )
    def test_event_codes(self, kind, code):
        assert kind.event_code == code


class TestRemoteDocument:
    def test_from_api(self):
        remote = RemoteDocument.from_api({
            "id": 17,
            "chave": "3" * 44,
            "cnpj_emitente": "12345678000195",
            "valor_total": "150.75",
            "data_emissao": "2026-03-01T10:00:00Z",
            "nsu": 1002,
            "xml_disponivel": True,
            "manifestacao": "",
        })
        assert remote.external_id == "17"
        assert str(remote.total_value) == "150.75"
        assert remote.issue_date.tzinfo is not None
        assert remote.nsu == "1002"
        assert remote.payload_available
        assert remote.acknowledgment is None

    def test_missing_fields_default(self):
        remote = RemoteDocument.from_api({"id": "x", "chave": "k", "valor_total": "n/a"})
        assert not remote.payload_available
        assert remote.issue_date is None
        assert str(remote.total_value) == "0"
