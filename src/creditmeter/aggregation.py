import time
from typing import Protocol

import httpx
import structlog

from creditmeter.errors import CollaboratorTimeoutError
from creditmeter.metrics import MetricsRecorder
from creditmeter.models import UsageQuery, UsageStats

logger = structlog.get_logger()


class UsageAggregator(Protocol):
    """
    UsageAggregator is the collaborator that totals historical
    usage for a workspace or an agent over a time range.
    """

    async def query_usage_stats(self, query: "UsageQuery") -> "UsageStats": ...


class HttpUsageAggregator:
    """
    HttpUsageAggregator calls the usage aggregation service over
    HTTP. Every request is bounded by the client timeout.
    """

    name = "usage_aggregation"

    def __init__(
        self,
        base_url: "str",
        api_key: "str" = "",
        timeout: "float" = 10.0,
        metrics: "MetricsRecorder | None" = None,
    ) -> "None":
        headers: "dict[str, str]" = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._metrics = metrics
        self._client: "httpx.AsyncClient" = httpx.AsyncClient(
            timeout=timeout,
            headers=headers,
        )

    async def close(self) -> "None":
        """
        closes the underlying HTTP client.
        """
        await self._client.aclose()

    async def query_usage_stats(self, query: "UsageQuery") -> "UsageStats":
        params: "dict[str, str]" = {
            "startDate": query.start_date.isoformat(),
            "endDate": query.end_date.isoformat(),
        }
        if query.workspace_id:
            params["workspaceId"] = query.workspace_id
        if query.agent_id:
            params["agentId"] = query.agent_id

        url = f"{self._base_url}/usage/stats"
        logger.debug("usage_stats_query", url=url, **params)

        started = time.monotonic()
        try:
            resp = await self._client.get(url, params=params)
        except httpx.TimeoutException as exc:
            raise CollaboratorTimeoutError(self.name, self._timeout) from exc
        finally:
            if self._metrics is not None:
                self._metrics.observe_collaborator(
                    self.name, time.monotonic() - started
                )

        resp.raise_for_status()
        data = resp.json()

        return UsageStats(
            cost_usd=int(data.get("costUsd") or 0),
            cost_eur=int(data.get("costEur") or 0),
            cost_gbp=int(data.get("costGbp") or 0),
            reranking_cost_usd=int(data.get("rerankingCostUsd") or 0),
            eval_cost_usd=int(data.get("evalCostUsd") or 0),
            input_tokens=int(data.get("inputTokens") or 0),
            output_tokens=int(data.get("outputTokens") or 0),
        )
