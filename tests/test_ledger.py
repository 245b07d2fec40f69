"""Test usage ledger cost accounting and quotas."""

import asyncio
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from srs_testgen.ledger import DEFAULT_PRICING, UsageLedger, month_bounds
from srs_testgen.models import TokenUsage, UsageRecord
from srs_testgen.stores import InMemoryUsageStore

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def seeded_store(*costs, requester="alice", project="proj-1", when=NOW):
    store = InMemoryUsageStore()
    for cost in costs:
        store._records.append(UsageRecord(
            requester_id=requester, project_id=project, model="test-model",
            prompt_tokens=0, completion_tokens=0, cost=Decimal(cost), timestamp=when,
        ))
    return store


def make_ledger(store, pricing, **kwargs):
    return UsageLedger(store, pricing=pricing, clock=lambda: NOW, **kwargs)


class TestCost:
    """Cost is a pure function of model and token counts."""

    def test_cost(self, pricing):
        ledger = make_ledger(InMemoryUsageStore(), pricing)

        assert ledger.cost("test-model", 1000, 500) == Decimal("0.002")

    def test_cost_is_deterministic(self, pricing):
        ledger = make_ledger(InMemoryUsageStore(), pricing)

        assert ledger.cost("test-model", 12345, 678) == ledger.cost("test-model", 12345, 678)

    def test_unknown_model_costs_nothing(self, pricing):
        ledger = make_ledger(InMemoryUsageStore(), pricing)

        assert ledger.cost("mystery-model", 1000, 1000) == Decimal("0")

    def test_default_pricing(self):
        ledger = UsageLedger(InMemoryUsageStore())

        assert ledger.cost("gpt-4o-mini", 1_000_000, 1_000_000) == DEFAULT_PRICING["gpt-4o-mini"].input_per_million \
            + DEFAULT_PRICING["gpt-4o-mini"].output_per_million


class TestQuota:
    """Admission decisions at the monthly ceilings."""

    @pytest.mark.asyncio
    async def test_just_under_limit_is_admitted(self, pricing):
        ledger = make_ledger(seeded_store("49.99"), pricing)

        decision = await ledger.check("alice", estimated_cost=Decimal("0.01"))

        assert decision.allowed
        assert decision.cost_used == Decimal("49.99")

    @pytest.mark.asyncio
    async def test_at_limit_is_denied(self, pricing):
        ledger = make_ledger(seeded_store("30.00", "20.00"), pricing)

        decision = await ledger.check("alice", estimated_cost=Decimal("0.01"))

        assert not decision.allowed
        assert "Monthly cost limit" in decision.reason

    @pytest.mark.asyncio
    async def test_other_requesters_do_not_count(self, pricing):
        ledger = make_ledger(seeded_store("50.00", requester="bob"), pricing)

        assert await ledger.within_limits("alice", estimated_cost=Decimal("1.00"))

    @pytest.mark.asyncio
    async def test_previous_month_does_not_count(self, pricing):
        last_month = datetime(2026, 9, 30, 23, 59, tzinfo=timezone.utc)
        ledger = make_ledger(seeded_store("50.00", when=last_month), pricing)

        assert await ledger.within_limits("alice", estimated_cost=Decimal("1.00"))

    @pytest.mark.asyncio
    async def test_request_limit(self, pricing):
        ledger = make_ledger(seeded_store("0", "0", "0"), pricing, monthly_request_limit=3)

        decision = await ledger.check("alice")

        assert not decision.allowed
        assert decision.requests_used == 3
        assert "request limit" in decision.reason

    @pytest.mark.asyncio
    async def test_project_ceiling(self, pricing):
        store = seeded_store("9.00", requester="bob", project="proj-1")
        ledger = make_ledger(store, pricing, project_monthly_cost_limit=Decimal("10.00"))

        assert await ledger.within_limits("alice", project_id="proj-2", estimated_cost=Decimal("2.00"))
        decision = await ledger.check("alice", project_id="proj-1", estimated_cost=Decimal("2.00"))
        assert not decision.allowed
        assert "Project monthly cost limit" in decision.reason


class TestRecording:
    """Usage records are appended with computed cost."""

    @pytest.mark.asyncio
    async def test_record(self, pricing):
        store = InMemoryUsageStore()
        ledger = make_ledger(store, pricing)

        record = await ledger.record("alice", "test-model", TokenUsage(prompt_tokens=1000, completion_tokens=500),
                                     project_id="proj-1", job_id="job-1")

        assert record.cost == Decimal("0.002")
        assert record.timestamp == NOW
        assert store.records == [record]

    @pytest.mark.asyncio
    async def test_recorded_usage_counts_toward_quota(self, pricing):
        ledger = make_ledger(InMemoryUsageStore(), pricing, monthly_cost_limit=Decimal("0.003"))
        usage = TokenUsage(prompt_tokens=1000, completion_tokens=500)

        await ledger.record("alice", "test-model", usage)
        assert await ledger.within_limits("alice", estimated_cost=Decimal("0.001"))

        await ledger.record("alice", "test-model", usage)
        assert not await ledger.within_limits("alice", estimated_cost=Decimal("0.001"))

    @pytest.mark.asyncio
    async def test_concurrent_recording(self, pricing):
        store = InMemoryUsageStore()
        ledger = make_ledger(store, pricing)
        usage = TokenUsage(prompt_tokens=1000, completion_tokens=500)

        await asyncio.gather(*(ledger.record("alice", "test-model", usage) for _ in range(20)))

        assert len(store.records) == 20
        decision = await ledger.check("alice")
        assert decision.cost_used == Decimal("0.040")

    @pytest.mark.asyncio
    async def test_locks_from_past_months_are_dropped(self, pricing):
        moments = iter([datetime(2026, 9, 30, tzinfo=timezone.utc), NOW, NOW])
        ledger = UsageLedger(InMemoryUsageStore(), pricing=pricing, clock=lambda: next(moments))
        usage = TokenUsage(prompt_tokens=1000, completion_tokens=500)

        await ledger.record("alice", "test-model", usage)
        await ledger.record("alice", "test-model", usage)
        await ledger.record("bob", "test-model", usage)

        assert sorted(ledger._locks) == [("requester", "alice", "2026-10"), ("requester", "bob", "2026-10")]


class TestMonthBounds:
    def test_december_rolls_over(self):
        start, end = month_bounds(datetime(2026, 12, 15, tzinfo=timezone.utc))

        assert start == datetime(2026, 12, 1, tzinfo=timezone.utc)
        assert end == datetime(2027, 1, 1, tzinfo=timezone.utc)
