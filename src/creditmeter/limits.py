import asyncio
from datetime import datetime, timedelta, timezone

import structlog

from creditmeter.aggregation import UsageAggregator
from creditmeter.metrics import MetricsRecorder
from creditmeter.models import (
    AgentPolicy,
    FailedLimit,
    LimitCheckResult,
    LimitScope,
    SpendingLimit,
    TimeFrame,
    UsageQuery,
    UsageWindow,
    WorkspaceAccount,
)

logger = structlog.get_logger()

WINDOW_DELTAS: "dict[str, timedelta]" = {
    "daily": timedelta(hours=24),
    "weekly": timedelta(days=7),
    "monthly": timedelta(days=30),
}


def rolling_window_start(time_frame: "TimeFrame", now: "datetime") -> "datetime":
    """
    returns the start of the rolling window ending at now. Windows
    are relative to the instant of the check, never aligned to the
    calendar.
    """
    try:
        return now - WINDOW_DELTAS[time_frame]
    except KeyError:
        raise ValueError(f"unknown time frame {time_frame!r}") from None


class SpendingLimitEvaluator:
    """
    SpendingLimitEvaluator: Checks workspace and agent spending
    limits against rolling-window spend.

    The check is advisory. Two concurrent requests may both pass
    the same limit; the credit reservation is the hard backstop.
    """

    def __init__(
        self,
        aggregator: "UsageAggregator",
        metrics: "MetricsRecorder | None" = None,
    ) -> "None":
        self._aggregator = aggregator
        self._metrics = metrics

    async def spend_in_window(
        self,
        workspace_id: "str",
        agent_id: "str | None",
        start: "datetime",
        end: "datetime",
        currency: "str",
    ) -> "int":
        """
        sums base, reranking and eval cost in the window. Agent
        spend is queried with the workspace id as well since agent
        ids are only unique inside a workspace.
        """
        stats = await self._aggregator.query_usage_stats(
            UsageQuery(
                workspace_id=workspace_id,
                agent_id=agent_id,
                start_date=start,
                end_date=end,
            )
        )
        return (
            stats.base_cost(currency)
            + stats.reranking_cost_usd
            + stats.eval_cost_usd
        )

    async def usage_windows(
        self,
        account: "WorkspaceAccount",
        agent: "AgentPolicy | None",
        estimated_cost: "int",
        now: "datetime | None" = None,
    ) -> "list[tuple[SpendingLimit, UsageWindow]]":
        now = now or datetime.now(timezone.utc)

        scoped: "list[tuple[LimitScope, str | None, SpendingLimit]]" = [
            ("workspace", None, limit) for limit in account.spending_limits
        ]
        if agent is not None:
            scoped.extend(
                ("agent", agent.agent_id, limit) for limit in agent.spending_limits
            )

        async def _window(
            scope: "LimitScope", agent_id: "str | None", limit: "SpendingLimit"
        ) -> "tuple[SpendingLimit, UsageWindow]":
            start = rolling_window_start(limit.time_frame, now)
            spend = await self.spend_in_window(
                account.id, agent_id, start, now, account.currency
            )
            return limit, UsageWindow(
                scope=scope,
                time_frame=limit.time_frame,
                start_date=start,
                end_date=now,
                current_spend=spend,
                estimated_cost=estimated_cost,
            )

        # gather keeps input order, so workspace windows stay first
        return list(
            await asyncio.gather(
                *(_window(scope, agent_id, limit) for scope, agent_id, limit in scoped)
            )
        )

    async def check_limits(
        self,
        account: "WorkspaceAccount",
        agent: "AgentPolicy | None" = None,
        estimated_cost: "int" = 0,
        now: "datetime | None" = None,
    ) -> "LimitCheckResult":
        windows = await self.usage_windows(account, agent, estimated_cost, now)

        failed: "list[FailedLimit]" = []
        for limit, window in windows:
            # equality passes
            passed = window.projected_spend <= limit.amount
            if self._metrics is not None:
                self._metrics.inc_limit_check(window.scope, passed)
            if not passed:
                failed.append(
                    FailedLimit(
                        scope=window.scope,
                        time_frame=window.time_frame,
                        limit=limit.amount,
                        current=window.projected_spend,
                    )
                )

        if failed:
            logger.info(
                "spending_limit_check_failed",
                workspace_id=account.id,
                agent_id=agent.agent_id if agent else None,
                failed=[limit.to_payload() for limit in failed],
            )
        return LimitCheckResult(passed=not failed, failed_limits=failed)
