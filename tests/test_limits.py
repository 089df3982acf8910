from datetime import datetime, timedelta, timezone

import pytest
from prometheus_client import CollectorRegistry

from creditmeter.limits import SpendingLimitEvaluator, rolling_window_start
from creditmeter.metrics import MetricsRecorder
from creditmeter.models import (
    AgentPolicy,
    FailedLimit,
    SpendingLimit,
    UsageStats,
    WorkspaceAccount,
)

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)
DOLLAR = 1_000_000_000


def _workspace(*limits: "SpendingLimit", currency: "str" = "usd") -> "WorkspaceAccount":
    return WorkspaceAccount(
        id="ws-1",
        currency=currency,
        credit_balance=1_000 * DOLLAR,
        spending_limits=limits,
    )


def _agent(*limits: "SpendingLimit") -> "AgentPolicy":
    return AgentPolicy(agent_id="agent-1", workspace_id="ws-1", spending_limits=limits)


class TestRollingWindowStart:
    def test_windows_are_relative_to_now(self) -> "None":
        assert rolling_window_start("daily", NOW) == NOW - timedelta(hours=24)
        assert rolling_window_start("weekly", NOW) == NOW - timedelta(days=7)
        assert rolling_window_start("monthly", NOW) == NOW - timedelta(days=30)

    def test_monthly_is_not_calendar_aligned(self) -> "None":
        start = rolling_window_start("monthly", NOW)
        assert start == datetime(2025, 5, 2, 12, 0, tzinfo=timezone.utc)

    def test_unknown_time_frame(self) -> "None":
        with pytest.raises(ValueError):
            rolling_window_start("yearly", NOW)  # type: ignore[arg-type]


class TestSpendInWindow:
    @pytest.mark.asyncio
    async def test_sums_base_reranking_and_eval_cost(self, aggregator) -> "None":
        aggregator.stats[("ws-1", None)] = UsageStats(
            cost_usd=10 * DOLLAR,
            cost_eur=9 * DOLLAR,
            reranking_cost_usd=2 * DOLLAR,
            eval_cost_usd=1 * DOLLAR,
        )
        evaluator = SpendingLimitEvaluator(aggregator)

        usd = await evaluator.spend_in_window(
            "ws-1", None, NOW - timedelta(days=1), NOW, "usd"
        )
        eur = await evaluator.spend_in_window(
            "ws-1", None, NOW - timedelta(days=1), NOW, "eur"
        )

        assert usd == 13 * DOLLAR
        assert eur == 12 * DOLLAR

    @pytest.mark.asyncio
    async def test_agent_query_carries_workspace_id(self, aggregator) -> "None":
        evaluator = SpendingLimitEvaluator(aggregator)
        await evaluator.spend_in_window(
            "ws-1", "agent-1", NOW - timedelta(days=1), NOW, "usd"
        )

        query = aggregator.queries[0]
        assert query.workspace_id == "ws-1"
        assert query.agent_id == "agent-1"
        assert query.end_date == NOW


class TestCheckLimits:
    @pytest.mark.asyncio
    async def test_workspace_passes_agent_fails(self, aggregator) -> "None":
        aggregator.stats[("ws-1", None)] = UsageStats(cost_usd=50 * DOLLAR)
        aggregator.stats[("ws-1", "agent-1")] = UsageStats(cost_usd=18 * DOLLAR)
        evaluator = SpendingLimitEvaluator(aggregator)

        result = await evaluator.check_limits(
            _workspace(SpendingLimit("daily", 100 * DOLLAR)),
            _agent(SpendingLimit("daily", 20 * DOLLAR)),
            estimated_cost=5 * DOLLAR,
            now=NOW,
        )

        assert result.passed is False
        assert result.failed_limits == [
            FailedLimit(
                scope="agent",
                time_frame="daily",
                limit=20_000_000_000,
                current=23_000_000_000,
            )
        ]

    @pytest.mark.asyncio
    async def test_equal_to_limit_passes(self, aggregator) -> "None":
        aggregator.stats[("ws-1", None)] = UsageStats(cost_usd=90 * DOLLAR)
        evaluator = SpendingLimitEvaluator(aggregator)
        account = _workspace(SpendingLimit("daily", 100 * DOLLAR))

        at_limit = await evaluator.check_limits(account, None, 10 * DOLLAR, NOW)
        over_limit = await evaluator.check_limits(account, None, 10 * DOLLAR + 1, NOW)

        assert at_limit.passed is True
        assert at_limit.failed_limits == []
        assert over_limit.passed is False
        assert over_limit.failed_limits[0].current == 100 * DOLLAR + 1

    @pytest.mark.asyncio
    async def test_both_scopes_fail_independently(self, aggregator) -> "None":
        aggregator.stats[("ws-1", None)] = UsageStats(cost_usd=99 * DOLLAR)
        aggregator.stats[("ws-1", "agent-1")] = UsageStats(cost_usd=19 * DOLLAR)
        evaluator = SpendingLimitEvaluator(aggregator)

        result = await evaluator.check_limits(
            _workspace(SpendingLimit("daily", 100 * DOLLAR)),
            _agent(SpendingLimit("daily", 20 * DOLLAR)),
            estimated_cost=2 * DOLLAR,
            now=NOW,
        )

        # the estimate is added to each scope in full, not split
        assert [(f.scope, f.limit, f.current) for f in result.failed_limits] == [
            ("workspace", 100 * DOLLAR, 101 * DOLLAR),
            ("agent", 20 * DOLLAR, 21 * DOLLAR),
        ]

    @pytest.mark.asyncio
    async def test_no_short_circuit(self, aggregator) -> "None":
        aggregator.stats[("ws-1", None)] = UsageStats(cost_usd=10 * DOLLAR)
        evaluator = SpendingLimitEvaluator(aggregator)

        result = await evaluator.check_limits(
            _workspace(
                SpendingLimit("daily", 5 * DOLLAR),
                SpendingLimit("weekly", 50 * DOLLAR),
                SpendingLimit("monthly", 8 * DOLLAR),
            ),
            estimated_cost=0,
            now=NOW,
        )

        assert [f.time_frame for f in result.failed_limits] == ["daily", "monthly"]
        assert len(aggregator.queries) == 3

    @pytest.mark.asyncio
    async def test_windows_use_each_time_frame(self, aggregator) -> "None":
        evaluator = SpendingLimitEvaluator(aggregator)
        await evaluator.check_limits(
            _workspace(
                SpendingLimit("daily", DOLLAR),
                SpendingLimit("weekly", DOLLAR),
            ),
            now=NOW,
        )

        starts = sorted(q.start_date for q in aggregator.queries)
        assert starts == [NOW - timedelta(days=7), NOW - timedelta(hours=24)]

    @pytest.mark.asyncio
    async def test_uses_billing_currency(self, aggregator) -> "None":
        aggregator.stats[("ws-1", None)] = UsageStats(
            cost_usd=100 * DOLLAR, cost_gbp=3 * DOLLAR
        )
        evaluator = SpendingLimitEvaluator(aggregator)

        result = await evaluator.check_limits(
            _workspace(SpendingLimit("daily", 5 * DOLLAR), currency="gbp"),
            estimated_cost=DOLLAR,
            now=NOW,
        )

        assert result.passed is True

    @pytest.mark.asyncio
    async def test_no_limits_passes_without_queries(self, aggregator) -> "None":
        evaluator = SpendingLimitEvaluator(aggregator)
        result = await evaluator.check_limits(_workspace(), _agent(), DOLLAR, NOW)

        assert result.passed is True
        assert aggregator.queries == []

    @pytest.mark.asyncio
    async def test_counts_checks(
        self,
        aggregator,
        registry: "CollectorRegistry",
    ) -> "None":
        aggregator.stats[("ws-1", "agent-1")] = UsageStats(cost_usd=30 * DOLLAR)
        evaluator = SpendingLimitEvaluator(
            aggregator, metrics=MetricsRecorder(registry=registry)
        )

        await evaluator.check_limits(
            _workspace(SpendingLimit("daily", 100 * DOLLAR)),
            _agent(SpendingLimit("daily", 20 * DOLLAR)),
            now=NOW,
        )

        assert registry.get_sample_value(
            "creditmeter_limit_checks_total",
            {"scope": "workspace", "result": "passed"},
        ) == 1.0
        assert registry.get_sample_value(
            "creditmeter_limit_checks_total",
            {"scope": "agent", "result": "failed"},
        ) == 1.0
