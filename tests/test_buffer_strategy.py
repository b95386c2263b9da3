"""
Tests for over-fetch sizing and the buffer guarantee phase.

The fetch size absorbs attrition (duplicates, missing contacts); the guarantee
phase promotes buffered leads when the ready buffer is short.
"""

import pytest
from lead_pipeline import (
    BufferedLead,
    BufferedSearchService,
    BufferStage,
    DecisionMaker,
    Lead,
    LeadStatus,
    RunContext,
    SearchChannel,
    SearchRequest,
    SearchService,
    classify_stage,
)
from tests.conftest import make_config


def make_service(**overrides) -> SearchService:
    return SearchService(make_config(**overrides), jobs=None, enrichment=None, interpreter=None)


def make_lead(i, email="", status=LeadStatus.SCRAPED, placeholder=False):
    return Lead(
        id=f"lead-{i}",
        source="maps",
        company_name=f"Company {i}",
        website=f"company{i}.com",
        decision_maker=DecisionMaker(email=email, email_is_placeholder=placeholder),
        status=status,
    )


def make_context(quota, buffers):
    request = SearchRequest(query="gyms", source=SearchChannel.MAPS, quota=quota)
    ctx = RunContext(run_id="run-1", request=request, config=make_config())
    for stage, leads in buffers.items():
        for lead in leads:
            ctx.buffers[stage].append(BufferedLead(lead, stage, 1, SearchChannel.MAPS))
    return ctx


@pytest.mark.unit
def test_fetch_multiplier_single_lead():
    amount, multiplier = make_service()._calculate_fetch_amount(1, 1, 0)
    assert multiplier == 10.0
    assert amount == 10


@pytest.mark.unit
def test_fetch_multiplier_small_request():
    amount, multiplier = make_service()._calculate_fetch_amount(2, 1, 0)
    assert multiplier == 8.0
    assert amount == 16


@pytest.mark.unit
def test_fetch_multiplier_medium_request():
    amount, multiplier = make_service()._calculate_fetch_amount(18, 1, 0)
    assert multiplier == 5.0
    assert amount == 90


@pytest.mark.unit
def test_fetch_multiplier_large_request():
    amount, multiplier = make_service()._calculate_fetch_amount(40, 1, 0)
    assert multiplier == 4.0
    assert amount == 160


@pytest.mark.unit
def test_later_attempts_widen_and_scan_deeper():
    amount, multiplier = make_service()._calculate_fetch_amount(2, 3, 30)
    assert multiplier == 10.0
    assert amount == 50


@pytest.mark.unit
def test_fetch_respects_max_cap():
    amount, _ = make_service(max_fetch_per_attempt=100)._calculate_fetch_amount(40, 1, 0)
    assert amount == 100


@pytest.mark.unit
class TestStageClassification:
    """Stage derives from email and lifecycle status."""

    def test_no_email_is_raw(self):
        assert classify_stage(make_lead(1)) == BufferStage.RAW

    def test_placeholder_email_is_raw(self):
        assert classify_stage(make_lead(1, "contact@company1.com", placeholder=True)) == BufferStage.RAW

    def test_example_email_is_raw(self):
        assert classify_stage(make_lead(1, "someone@example.com")) == BufferStage.RAW

    def test_real_email_is_discovered(self):
        assert classify_stage(make_lead(1, "boss@company1.com")) == BufferStage.DISCOVERED

    def test_enriched_status(self):
        assert classify_stage(make_lead(1, "boss@company1.com", LeadStatus.ENRICHED)) == BufferStage.ENRICHED

    def test_ready_status(self):
        assert classify_stage(make_lead(1, "boss@company1.com", LeadStatus.READY)) == BufferStage.READY


@pytest.mark.unit
class TestGuaranteePhase:
    """Promotion order and counts."""

    def test_promotes_enriched_then_discovered_then_raw(self):
        ctx = make_context(
            5,
            {
                BufferStage.READY: [make_lead(1, status=LeadStatus.READY)],
                BufferStage.ENRICHED: [make_lead(2, status=LeadStatus.ENRICHED)],
                BufferStage.DISCOVERED: [make_lead(3, "a@company3.com"), make_lead(4, "b@company4.com")],
                BufferStage.RAW: [make_lead(5), make_lead(6)],
            },
        )

        BufferedSearchService(make_config(), history_store=None)._guarantee_results(ctx)

        ready_ids = [item.lead.id for item in ctx.buffers[BufferStage.READY]]
        assert ready_ids == ["lead-1", "lead-2", "lead-4", "lead-3", "lead-6"]
        assert len(ctx.buffers[BufferStage.RAW]) == 1
        assert ctx.buffers[BufferStage.DISCOVERED] == []
        assert ctx.metrics.promoted == 4
        assert all(item.lead.status == LeadStatus.READY for item in ctx.buffers[BufferStage.READY])
        assert all(item.stage == BufferStage.READY for item in ctx.buffers[BufferStage.READY])

    def test_never_touches_lower_stage_when_higher_suffices(self):
        ctx = make_context(
            2,
            {
                BufferStage.ENRICHED: [make_lead(1, status=LeadStatus.ENRICHED), make_lead(2, status=LeadStatus.ENRICHED)],
                BufferStage.RAW: [make_lead(3)],
            },
        )

        BufferedSearchService(make_config(), history_store=None)._guarantee_results(ctx)

        assert len(ctx.buffers[BufferStage.READY]) == 2
        assert len(ctx.buffers[BufferStage.RAW]) == 1

    def test_final_yield_is_min_of_quota_and_collected(self):
        ctx = make_context(10, {BufferStage.RAW: [make_lead(1), make_lead(2)]})
        service = BufferedSearchService(make_config(), history_store=None)

        service._guarantee_results(ctx)
        leads = service._compile_final_results(ctx)

        assert len(leads) == 2
        assert all(isinstance(lead, Lead) for lead in leads)

    def test_no_promotion_when_quota_met(self):
        ctx = make_context(1, {BufferStage.READY: [make_lead(1, status=LeadStatus.READY)], BufferStage.RAW: [make_lead(2)]})

        BufferedSearchService(make_config(), history_store=None)._guarantee_results(ctx)

        assert ctx.metrics.promoted == 0
        assert len(ctx.buffers[BufferStage.RAW]) == 1
