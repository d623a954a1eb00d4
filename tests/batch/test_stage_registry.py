"""Tests for StageRegistry and the default stage wiring."""

from uuid import uuid4

import pytest

from fiscal_batch.domain.types import QueueStage
from fiscal_batch.orchestrator import default_stage_registry
from fiscal_batch.stages.base import StageHandler, StageRegistry, load_document
from fiscal_batch.stages.parse import ParseDocumentStage
from fiscal_batch.stages.propose import GenerateProposalStage
from fiscal_engines.matching import MatchResult
from fiscal_kernel.domain.types import MatchMethod
from fiscal_kernel.exceptions import DocumentNotFoundError, StageNotRegisteredError


class NoMatch:
    def match(self, tenant_id, item):
        return MatchResult(None, MatchMethod.MANUAL, 0)


class TestStageRegistry:
    def test_register_and_get(self):
        registry = StageRegistry()
        stage = ParseDocumentStage()
        registry.register(stage)

        assert registry.get(QueueStage.PARSE) is stage
        assert registry.get("parse_xml") is stage
        assert QueueStage.PARSE in registry
        assert len(registry) == 1

    def test_duplicate_rejected(self):
        registry = StageRegistry()
        registry.register(ParseDocumentStage())
        with pytest.raises(ValueError, match="already registered"):
            registry.register(ParseDocumentStage())

    def test_missing_stage_lists_available(self):
        registry = StageRegistry()
        registry.register(GenerateProposalStage())

        with pytest.raises(StageNotRegisteredError) as exc_info:
            registry.get(QueueStage.MATCH)
        assert exc_info.value.code == "STAGE_NOT_REGISTERED"
        assert "generate_proposal" in str(exc_info.value)

    def test_unknown_stage_name(self):
        registry = StageRegistry()
        with pytest.raises(StageNotRegisteredError):
            registry.get("book_document")
        assert "book_document" not in registry

    def test_default_registry_has_all_stages(self):
        registry = default_stage_registry(NoMatch())
        assert registry.list_stages() == ("generate_proposal", "match_products", "parse_xml")

    def test_handlers_satisfy_protocol(self):
        registry = default_stage_registry(NoMatch())
        for name in registry.list_stages():
            handler = registry.get(name)
            assert isinstance(handler, StageHandler)
            assert handler.description


class TestLoadDocument:
    def test_unknown_document(self, session, tenant_id):
        with pytest.raises(DocumentNotFoundError):
            load_document(session, tenant_id, uuid4())
