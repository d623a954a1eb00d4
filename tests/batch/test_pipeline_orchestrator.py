"""Tests for PipelineOrchestrator wiring."""

from uuid import uuid4

from fiscal_batch.domain.types import QueueStage
from fiscal_batch.orchestrator import PipelineOrchestrator
from fiscal_config.schema import MatchingDef, PipelineDef
from fiscal_engines.matching import MatchResult
from fiscal_kernel.domain.types import CaptureOrigin, MatchMethod, MatchStatus
from fiscal_kernel.models.supplier_mapping import Product
from fiscal_ingestion.services.intake_service import DocumentAdmission, IntakeService


class RecordingMatcher:
    def __init__(self):
        self.items = []

    def match(self, tenant_id, item):
        self.items.append(item)
        return MatchResult(None, MatchMethod.MANUAL, 0)


class TestFromSession:
    def test_defaults(self, session, clock):
        orchestrator = PipelineOrchestrator.from_session(session, clock=clock)

        assert orchestrator.session is session
        assert orchestrator.clock is clock
        assert orchestrator.batch_size == 50

    def test_pipeline_settings_applied(self, session, clock, tenant_id):
        pipeline = PipelineDef(
            batch_size=2, max_attempts=5, retry_backoff_seconds=10.0,
            retry_backoff_max_seconds=40.0, max_workers=2,
        )
        orchestrator = PipelineOrchestrator.from_session(session, clock=clock, pipeline=pipeline)
        queue = orchestrator.create_queue_service()

        unit = queue.enqueue(tenant_id, uuid4(), QueueStage.PARSE)
        assert unit.max_attempts == 5
        assert orchestrator.batch_size == 2
        assert orchestrator.create_runner(lambda: session).max_workers == 2

    def test_custom_matcher_used_by_match_stage(self, session, clock, tenant_id, access_key, nfe_xml):
        matcher = RecordingMatcher()
        orchestrator = PipelineOrchestrator.from_session(
            session, clock=clock, matcher_factory=lambda s: matcher,
        )
        IntakeService(session, clock=clock, queue_service=orchestrator.create_queue_service()).admit(
            tenant_id,
            DocumentAdmission(
                access_key=access_key(1),
                origin=CaptureOrigin.MANUAL_IMPORT,
                raw_payload=nfe_xml(access_key(1)),
            ),
        )
        processor = orchestrator.create_processor()

        processor.process_queue(tenant_id)
        processor.process_queue(tenant_id)

        assert [i.supplier_code for i in matcher.items] == ["P-001"]
        assert matcher.items[0].supplier_tax_id == "12345678000195"

    def test_matching_thresholds_reach_default_matcher(self, session, clock, tenant_id, access_key, nfe_xml):
        session.add(Product(tenant_id=tenant_id, name="PARAFUSO SEXTAVADO", classification_code="73181500"))
        session.flush()
        orchestrator = PipelineOrchestrator.from_session(
            session, clock=clock, matching=MatchingDef(fuzzy_threshold=100),
        )
        document = IntakeService(
            session, clock=clock, queue_service=orchestrator.create_queue_service(),
        ).admit(
            tenant_id,
            DocumentAdmission(
                access_key=access_key(1),
                origin=CaptureOrigin.MANUAL_IMPORT,
                raw_payload=nfe_xml(access_key(1)),
            ),
        )
        processor = orchestrator.create_processor()

        processor.process_queue(tenant_id)
        processor.process_queue(tenant_id)

        (line,) = document.items
        assert line.match_status == MatchStatus.SUGGESTION.value
        assert line.match_score < 100
