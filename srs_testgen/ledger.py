"""
Usage ledger - cost accounting and monthly quotas.

Enforces per-requester (and optionally per-project) monthly budgets:
    - Check quota before admitting a job -> reject if a ceiling would be crossed
    - Record actual usage after every billed provider call
    - Quotas are computed only from committed UsageRecord rows

Checks and recordings for the same requester-month are serialized with a
per-key asyncio lock so concurrently completing jobs cannot both slip past a
ceiling.
"""

from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, Optional, Tuple

from .models import TokenUsage, UsageRecord
from .stores import UsageStore

logger = logging.getLogger(__name__)

PER_MILLION = Decimal(1_000_000)


@dataclass(frozen=True)
class ModelPricing:
    """USD per million tokens."""
    input_per_million: Decimal
    output_per_million: Decimal

    @property
    def input_rate(self) -> Decimal:
        return self.input_per_million / PER_MILLION

    @property
    def output_rate(self) -> Decimal:
        return self.output_per_million / PER_MILLION


DEFAULT_PRICING: Dict[str, ModelPricing] = {
    "gpt-4o": ModelPricing(Decimal("2.50"), Decimal("10.00")),
    "gpt-4o-mini": ModelPricing(Decimal("0.15"), Decimal("0.60")),
    "gpt-4.1": ModelPricing(Decimal("2.00"), Decimal("8.00")),
    "gpt-4.1-mini": ModelPricing(Decimal("0.40"), Decimal("1.60")),
    "gpt-4-turbo": ModelPricing(Decimal("10.00"), Decimal("30.00")),
    "gpt-3.5-turbo": ModelPricing(Decimal("0.50"), Decimal("1.50")),
    "claude-3-5-sonnet-latest": ModelPricing(Decimal("3.00"), Decimal("15.00")),
    "claude-3-5-haiku-latest": ModelPricing(Decimal("0.80"), Decimal("4.00")),
    "claude-3-opus-latest": ModelPricing(Decimal("15.00"), Decimal("75.00")),
}


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    reason: Optional[str] = None
    cost_used: Decimal = Decimal("0")
    requests_used: int = 0


def month_bounds(moment: datetime) -> Tuple[datetime, datetime]:
    """Start (inclusive) and end (exclusive) of the calendar month containing ``moment``."""
    start = moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


class UsageLedger:
    """Computes call costs and enforces monthly quotas."""

    def __init__(
        self,
        store: UsageStore,
        monthly_cost_limit: Decimal = Decimal("50.00"),
        monthly_request_limit: int = 500,
        project_monthly_cost_limit: Optional[Decimal] = None,
        pricing: Optional[Dict[str, ModelPricing]] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.store = store
        self.monthly_cost_limit = monthly_cost_limit
        self.monthly_request_limit = monthly_request_limit
        self.project_monthly_cost_limit = project_monthly_cost_limit
        self.pricing = dict(DEFAULT_PRICING if pricing is None else pricing)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._locks: Dict[Tuple[str, str, str], asyncio.Lock] = {}

    def cost(self, model: str, prompt_tokens: int, completion_tokens: int) -> Decimal:
        """Pure function of the arguments and the pricing table."""
        rates = self.pricing.get(model)
        if rates is None:
            logger.warning(f"No pricing for model '{model}', recording zero cost")
            return Decimal("0")
        return prompt_tokens * rates.input_rate + completion_tokens * rates.output_rate

    def _lock(self, scope: str, key: str, moment: datetime) -> asyncio.Lock:
        month = moment.strftime("%Y-%m")
        lock_key = (scope, key, month)
        if lock_key not in self._locks:
            # earlier months are never locked again
            stale = [k for k, lock in self._locks.items() if k[2] != month and not lock.locked()]
            for k in stale:
                del self._locks[k]
            self._locks[lock_key] = asyncio.Lock()
        return self._locks[lock_key]

    async def check(
        self,
        requester_id: str,
        project_id: Optional[str] = None,
        estimated_cost: Decimal = Decimal("0")
    ) -> QuotaDecision:
        """Would a request costing ``estimated_cost`` stay within every ceiling?"""
        now = self._clock()
        async with self._lock("requester", requester_id, now):
            decision = await self._check_requester(requester_id, estimated_cost, now)
        if decision.allowed and project_id and self.project_monthly_cost_limit is not None:
            async with self._lock("project", project_id, now):
                project_used = await self._month_total(now, project_id=project_id)
            if project_used + estimated_cost > self.project_monthly_cost_limit:
                decision = QuotaDecision(
                    allowed=False,
                    reason=(f"Project monthly cost limit reached: ${project_used:.2f} used of "
                            f"${self.project_monthly_cost_limit:.2f}"),
                    cost_used=decision.cost_used,
                    requests_used=decision.requests_used,
                )
        if not decision.allowed:
            logger.info(f"Quota denied for {requester_id}: {decision.reason}")
        return decision

    async def within_limits(
        self,
        requester_id: str,
        project_id: Optional[str] = None,
        estimated_cost: Decimal = Decimal("0")
    ) -> bool:
        return (await self.check(requester_id, project_id, estimated_cost)).allowed

    async def _check_requester(self, requester_id: str, estimated_cost: Decimal, now: datetime) -> QuotaDecision:
        start, end = month_bounds(now)
        records = await self.store.records_for(requester_id=requester_id, since=start, until=end)
        cost_used = sum((r.cost for r in records), Decimal("0"))
        requests_used = len(records)

        if requests_used + 1 > self.monthly_request_limit:
            return QuotaDecision(
                allowed=False,
                reason=f"Monthly request limit reached: {requests_used}/{self.monthly_request_limit}",
                cost_used=cost_used,
                requests_used=requests_used,
            )
        if cost_used + estimated_cost > self.monthly_cost_limit:
            return QuotaDecision(
                allowed=False,
                reason=(f"Monthly cost limit reached: ${cost_used:.2f} used of "
                        f"${self.monthly_cost_limit:.2f}, request estimated at ${estimated_cost:.4f}"),
                cost_used=cost_used,
                requests_used=requests_used,
            )
        return QuotaDecision(allowed=True, cost_used=cost_used, requests_used=requests_used)

    async def _month_total(self, now: datetime, requester_id: Optional[str] = None,
                           project_id: Optional[str] = None) -> Decimal:
        start, end = month_bounds(now)
        records = await self.store.records_for(
            requester_id=requester_id, project_id=project_id, since=start, until=end
        )
        return sum((r.cost for r in records), Decimal("0"))

    async def record(
        self,
        requester_id: str,
        model: str,
        usage: TokenUsage,
        project_id: Optional[str] = None,
        job_id: Optional[str] = None
    ) -> UsageRecord:
        """Append one UsageRecord; returns it with the computed cost."""
        now = self._clock()
        record = UsageRecord(
            requester_id=requester_id,
            project_id=project_id,
            job_id=job_id,
            model=model,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            cost=self.cost(model, usage.prompt_tokens, usage.completion_tokens),
            timestamp=now,
        )
        async with self._lock("requester", requester_id, now):
            await self.store.append(record)
            month_total = await self._month_total(now, requester_id=requester_id)
        if month_total > self.monthly_cost_limit:
            logger.warning(f"Requester {requester_id} is over the monthly cost limit: "
                           f"${month_total:.2f} of ${self.monthly_cost_limit:.2f}")
        logger.info(f"Recorded usage for {requester_id}: {usage.prompt_tokens}+{usage.completion_tokens} "
                    f"tokens on {model}, ${record.cost:.6f}")
        return record
