from dataclasses import dataclass

import structlog
from prometheus_client import REGISTRY, CollectorRegistry

from creditmeter.aggregation import HttpUsageAggregator, UsageAggregator
from creditmeter.config import Config
from creditmeter.email import EmailTransport, HttpEmailTransport
from creditmeter.limits import SpendingLimitEvaluator
from creditmeter.logging import setup_logging
from creditmeter.metering import BillingMeter
from creditmeter.metrics import MetricsRecorder
from creditmeter.notifications import (
    ErrorNotifier,
    NotificationRateLimiter,
    StoreRecipientDirectory,
)
from creditmeter.pricing import CostModel, PriceTable
from creditmeter.reservations import ReservationManager
from creditmeter.store.base import RecordStore
from creditmeter.store.sqlite import SQLiteRecordStore
from creditmeter.validation import CreditValidator

logger = structlog.get_logger()


@dataclass
class CreditMeter:
    """
    CreditMeter bundles the wired components and owns the
    resources that need closing.
    """

    meter: "BillingMeter"
    reservations: "ReservationManager"
    notifier: "ErrorNotifier | None"
    store: "RecordStore"
    aggregator: "UsageAggregator"
    transport: "EmailTransport | None"

    async def close(self) -> "None":
        for resource in (self.aggregator, self.transport, self.store):
            close = getattr(resource, "close", None)
            if close is not None:
                await close()
        logger.info("creditmeter_closed")


def build_credit_meter(
    config: "Config",
    *,
    registry: "CollectorRegistry" = REGISTRY,
    store: "RecordStore | None" = None,
    aggregator: "UsageAggregator | None" = None,
    transport: "EmailTransport | None" = None,
    cost_model: "CostModel | None" = None,
    configure_logging: "bool" = True,
) -> "CreditMeter":
    """
    wires every component from config. Collaborators passed in
    explicitly take precedence over the ones config describes.
    """
    if configure_logging:
        setup_logging(config.log_level, config.log_format)

    metrics = MetricsRecorder(registry=registry)

    if store is None:
        store = SQLiteRecordStore(config.database_path)
    if aggregator is None:
        if not config.usage_api_url:
            raise ValueError(
                "No usage aggregation configured. Set CREDITMETER_USAGE_API_URL."
            )
        aggregator = HttpUsageAggregator(
            config.usage_api_url,
            api_key=config.usage_api_key,
            timeout=config.http_timeout,
            metrics=metrics,
        )
    if transport is None and config.email_enabled:
        transport = HttpEmailTransport(
            config.email_api_url,
            config.email_api_key,
            config.email_sender,
            timeout=config.http_timeout,
            metrics=metrics,
        )
    cost_model = cost_model or PriceTable()

    evaluator = SpendingLimitEvaluator(aggregator, metrics=metrics)
    reservations = ReservationManager(store, cost_model, metrics=metrics)
    validator = CreditValidator(
        store, reservations, evaluator, cost_model, config.flags, metrics=metrics
    )

    notifier: "ErrorNotifier | None" = None
    if transport is not None:
        notifier = ErrorNotifier(
            store,
            StoreRecipientDirectory(store),
            transport,
            NotificationRateLimiter(store),
            config.base_url,
            metrics=metrics,
        )
    else:
        logger.warning("error_notifications_disabled", reason="no_email_transport")

    meter = BillingMeter(
        validator,
        reservations,
        evaluator,
        config.flags,
        notifier=notifier,
        metrics=metrics,
    )
    logger.info(
        "creditmeter_ready",
        credit_validation=config.flags.credit_validation,
        credit_deduction=config.flags.credit_deduction,
        spending_limit_checks=config.flags.spending_limit_checks,
    )
    return CreditMeter(
        meter=meter,
        reservations=reservations,
        notifier=notifier,
        store=store,
        aggregator=aggregator,
        transport=transport,
    )
