from datetime import datetime, timezone

import httpx
import pytest
import respx
from prometheus_client import CollectorRegistry

from creditmeter.aggregation import HttpUsageAggregator
from creditmeter.errors import CollaboratorTimeoutError
from creditmeter.metrics import MetricsRecorder
from creditmeter.models import UsageQuery

BASE_URL = "https://usage.internal"
START = datetime(2025, 5, 31, 12, 0, tzinfo=timezone.utc)
END = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


class TestHttpUsageAggregator:
    @pytest.mark.asyncio
    @respx.mock
    async def test_parses_stats(self, registry: "CollectorRegistry") -> "None":
        route = respx.get(f"{BASE_URL}/usage/stats").mock(
            return_value=httpx.Response(
                200,
                json={
                    "costUsd": 5_000_000_000,
                    "costEur": 4_600_000_000,
                    "costGbp": 3_900_000_000,
                    "rerankingCostUsd": 100,
                    "inputTokens": 1200,
                    "outputTokens": 300,
                },
            )
        )
        aggregator = HttpUsageAggregator(
            BASE_URL + "/", api_key="key-1", metrics=MetricsRecorder(registry=registry)
        )

        stats = await aggregator.query_usage_stats(
            UsageQuery(workspace_id="ws-1", agent_id="agent-1", start_date=START, end_date=END)
        )
        await aggregator.close()

        assert stats.cost_usd == 5_000_000_000
        assert stats.cost_eur == 4_600_000_000
        assert stats.cost_gbp == 3_900_000_000
        assert stats.reranking_cost_usd == 100
        # optional components default to zero
        assert stats.eval_cost_usd == 0
        assert stats.input_tokens == 1200

        request = route.calls.last.request
        assert request.headers["Authorization"] == "Bearer key-1"
        assert request.url.params["workspaceId"] == "ws-1"
        assert request.url.params["agentId"] == "agent-1"
        assert request.url.params["startDate"] == START.isoformat()
        assert request.url.params["endDate"] == END.isoformat()
        assert registry.get_sample_value(
            "creditmeter_collaborator_duration_seconds_count",
            {"collaborator": "usage_aggregation"},
        ) == 1.0

    @pytest.mark.asyncio
    @respx.mock
    async def test_workspace_query_omits_agent(self) -> "None":
        route = respx.get(f"{BASE_URL}/usage/stats").mock(
            return_value=httpx.Response(200, json={})
        )
        aggregator = HttpUsageAggregator(BASE_URL)

        stats = await aggregator.query_usage_stats(
            UsageQuery(workspace_id="ws-1", agent_id=None, start_date=START, end_date=END)
        )
        await aggregator.close()

        assert stats.cost_usd == 0
        assert "agentId" not in route.calls.last.request.url.params
        assert "Authorization" not in route.calls.last.request.headers

    @pytest.mark.asyncio
    @respx.mock
    async def test_timeout(self) -> "None":
        respx.get(f"{BASE_URL}/usage/stats").mock(
            side_effect=httpx.ReadTimeout("timed out")
        )
        aggregator = HttpUsageAggregator(BASE_URL, timeout=0.5)

        with pytest.raises(CollaboratorTimeoutError) as exc_info:
            await aggregator.query_usage_stats(
                UsageQuery(workspace_id="ws-1", agent_id=None, start_date=START, end_date=END)
            )
        await aggregator.close()

        assert exc_info.value.collaborator == "usage_aggregation"
        assert exc_info.value.timeout == 0.5

    @pytest.mark.asyncio
    @respx.mock
    async def test_http_error(self) -> "None":
        respx.get(f"{BASE_URL}/usage/stats").mock(
            return_value=httpx.Response(500)
        )
        aggregator = HttpUsageAggregator(BASE_URL)

        with pytest.raises(httpx.HTTPStatusError):
            await aggregator.query_usage_stats(
                UsageQuery(workspace_id="ws-1", agent_id=None, start_date=START, end_date=END)
            )
        await aggregator.close()
