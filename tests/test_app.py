import pytest
import structlog
from prometheus_client import CollectorRegistry

from creditmeter.app import build_credit_meter
from creditmeter.config import Config
from creditmeter.errors import InsufficientCreditsError
from creditmeter.logging import setup_logging
from creditmeter.models import (
    USERS,
    WORKSPACES,
    TokenUsage,
    WorkspaceAccount,
    user_key,
    workspace_key,
)
from creditmeter.pricing import BilledRequest

REQUEST = BilledRequest(messages=[{"role": "user", "content": "x" * 400}])


class TestBuildCreditMeter:
    def test_requires_usage_aggregation(
        self, registry: "CollectorRegistry", store
    ) -> "None":
        with pytest.raises(ValueError):
            build_credit_meter(
                Config(), registry=registry, store=store, configure_logging=False
            )

    def test_notifications_need_a_transport(
        self, registry: "CollectorRegistry", store, aggregator
    ) -> "None":
        app = build_credit_meter(
            Config(),
            registry=registry,
            store=store,
            aggregator=aggregator,
            configure_logging=False,
        )
        assert app.notifier is None
        assert app.transport is None

    def test_builds_http_collaborators_from_config(
        self, registry: "CollectorRegistry", store
    ) -> "None":
        config = Config(
            usage_api_url="https://usage.internal",
            email_api_url="https://mail.example.com/send",
        )
        app = build_credit_meter(
            config, registry=registry, store=store, configure_logging=False
        )
        assert type(app.aggregator).__name__ == "HttpUsageAggregator"
        assert type(app.transport).__name__ == "HttpEmailTransport"
        assert app.notifier is not None

    @pytest.mark.asyncio
    async def test_billed_call_end_to_end(
        self, registry: "CollectorRegistry", store, aggregator, transport
    ) -> "None":
        app = build_credit_meter(
            Config(base_url="https://app.example.com"),
            registry=registry,
            store=store,
            aggregator=aggregator,
            transport=transport,
            configure_logging=False,
        )
        account = WorkspaceAccount(
            id="ws-1",
            currency="usd",
            credit_balance=11_000_000,
            name="Acme",
            owner_user_ids=("u1",),
        )
        await store.put(WORKSPACES, workspace_key("ws-1"), account.to_record())
        await store.put(USERS, user_key("u1"), {"user_id": "u1", "email": "one@example.com"})

        async def _call() -> "str":
            return "answer"

        result = await app.meter.run_billed_operation(
            "ws-1",
            None,
            "openai",
            "gpt-4o",
            REQUEST,
            _call,
            lambda r: TokenUsage(prompt_tokens=100, completion_tokens=100),
        )

        # 100 * $2.50/M + 100 * $10/M
        workspace = await app.reservations.get_workspace("ws-1")
        assert result == "answer"
        assert workspace.credit_balance == 11_000_000 - 1_250_000

        # the 10_490_000 estimate no longer fits
        with pytest.raises(InsufficientCreditsError):
            await app.meter.run_billed_operation(
                "ws-1", None, "openai", "gpt-4o", REQUEST, _call, lambda r: None
            )
        assert [m.subject for m in transport.sent] == ["Insufficient Credits - Acme"]

        await app.close()


class TestSetupLogging:
    @pytest.mark.parametrize("fmt", ["console", "json"])
    def test_configures_structlog(self, fmt: "str") -> "None":
        try:
            setup_logging("debug", fmt)
            assert structlog.is_configured()
        finally:
            structlog.reset_defaults()
