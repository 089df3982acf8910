from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, TypeVar

import structlog

from creditmeter.besteffort import Completed, best_effort
from creditmeter.config import FeatureFlags
from creditmeter.errors import PaymentRequiredError
from creditmeter.limits import SpendingLimitEvaluator
from creditmeter.metrics import MetricsRecorder
from creditmeter.models import (
    BYOK_RESERVATION_ID,
    AgentPolicy,
    CreditReservation,
    LimitCheckResult,
    TokenUsage,
    WorkspaceAccount,
)
from creditmeter.notifications import ErrorNotifier
from creditmeter.pricing import BilledRequest
from creditmeter.reservations import ReservationManager
from creditmeter.validation import CreditValidator

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class AdjustmentOutcome:
    # "adjusted", "skipped" or "failed"
    status: "str"
    reason: "str | None" = None
    error: "Exception | None" = None
    workspace: "WorkspaceAccount | None" = None


class BillingMeter:
    """
    BillingMeter: Is the entry point for the billed-operation
    layer.

    A billed call goes through estimate, reserve, execute, measure
    and adjust. Only the two payment errors raised before the call
    reach the caller; everything after the call is best effort.
    """

    def __init__(
        self,
        validator: "CreditValidator",
        reservations: "ReservationManager",
        evaluator: "SpendingLimitEvaluator",
        flags: "FeatureFlags",
        notifier: "ErrorNotifier | None" = None,
        metrics: "MetricsRecorder | None" = None,
    ) -> "None":
        self._validator = validator
        self._reservations = reservations
        self._evaluator = evaluator
        self._flags = flags
        self._notifier = notifier
        self._metrics = metrics

    async def check_limits(
        self,
        account: "WorkspaceAccount",
        agent: "AgentPolicy | None" = None,
        estimated_cost: "int" = 0,
        now: "datetime | None" = None,
    ) -> "LimitCheckResult":
        return await self._evaluator.check_limits(account, agent, estimated_cost, now)

    async def reserve_credits(
        self,
        workspace_id: "str",
        agent_id: "str | None",
        provider: "str",
        model: "str",
        request: "BilledRequest",
        uses_byok: "bool" = False,
    ) -> "CreditReservation | None":
        return await self._validator.validate_credits_and_limits_and_reserve(
            workspace_id, agent_id, provider, model, request, uses_byok
        )

    async def adjust_reservation(
        self,
        reservation_id: "str | None",
        workspace_id: "str",
        agent_id: "str | None",
        provider: "str",
        model: "str",
        usage: "TokenUsage",
        uses_byok: "bool" = False,
    ) -> "AdjustmentOutcome":
        """
        settles the reservation against measured usage. Never
        raises: a failed adjustment is logged and reported as
        "failed", the response already sent to the user stands.
        """
        reason = self._skip_reason(reservation_id, usage, uses_byok)
        if reason is not None:
            logger.debug(
                "credit_adjustment_skipped",
                workspace_id=workspace_id,
                reservation_id=reservation_id,
                reason=reason,
            )
            return self._adjusted(AdjustmentOutcome("skipped", reason=reason))

        assert reservation_id is not None
        result = await best_effort(
            self._reservations.adjust_credit_reservation(
                reservation_id,
                workspace_id,
                provider,
                model,
                usage,
                uses_byok=uses_byok,
            ),
            "credit_adjustment_failed",
            workspace_id=workspace_id,
            agent_id=agent_id,
            reservation_id=reservation_id,
        )
        if isinstance(result, Completed):
            return self._adjusted(
                AdjustmentOutcome("adjusted", workspace=result.value)
            )
        return self._adjusted(AdjustmentOutcome("failed", error=result.error))

    async def release_reservation(
        self, reservation_id: "str | None", workspace_id: "str"
    ) -> "bool":
        """
        refunds a reservation whose operation failed.
        """
        if not reservation_id or reservation_id == BYOK_RESERVATION_ID:
            return False

        result = await best_effort(
            self._reservations.refund_reservation(reservation_id, workspace_id),
            "credit_refund_failed",
            workspace_id=workspace_id,
            reservation_id=reservation_id,
        )
        if isinstance(result, Completed):
            return result.value
        if self._metrics is not None:
            self._metrics.inc_refund("failed")
        return False

    async def keep_estimated_charge(
        self, reservation_id: "str | None", workspace_id: "str"
    ) -> "bool":
        """
        settles a reservation at its estimate. Used when the
        operation succeeded but its usage is zero or could not be
        measured, so the call is never billed below the estimate.
        """
        if not reservation_id or reservation_id == BYOK_RESERVATION_ID:
            return False

        result = await best_effort(
            self._reservations.consume_reservation(reservation_id),
            "credit_settlement_failed",
            workspace_id=workspace_id,
            reservation_id=reservation_id,
        )
        if isinstance(result, Completed):
            return result.value
        return False

    async def run_billed_operation(
        self,
        workspace_id: "str",
        agent_id: "str | None",
        provider: "str",
        model: "str",
        request: "BilledRequest",
        operation: "Callable[[], Awaitable[T]]",
        measure: "Callable[[T], TokenUsage]",
        uses_byok: "bool" = False,
    ) -> "T":
        """
        runs operation under a credit reservation and returns its
        result unchanged.

        Payment errors notify the workspace owners and are raised
        before operation is called. If operation raises, the
        reservation is released and the error re-raised. A call that
        succeeds without measurable usage keeps its estimated charge.
        """
        try:
            reservation = await self.reserve_credits(
                workspace_id, agent_id, provider, model, request, uses_byok
            )
        except PaymentRequiredError as exc:
            if self._notifier is not None:
                await self._notifier.notify_on_error(workspace_id, exc)
            raise

        reservation_id = reservation.reservation_id if reservation else None

        try:
            result = await operation()
        except Exception:
            await self.release_reservation(reservation_id, workspace_id)
            raise

        try:
            usage = measure(result)
        except Exception:
            logger.exception(
                "usage_measurement_failed",
                workspace_id=workspace_id,
                reservation_id=reservation_id,
            )
            await self.keep_estimated_charge(reservation_id, workspace_id)
            return result

        outcome = await self.adjust_reservation(
            reservation_id,
            workspace_id,
            agent_id,
            provider,
            model,
            usage,
            uses_byok,
        )
        if outcome.reason == "no_usage":
            await self.keep_estimated_charge(reservation_id, workspace_id)
        return result

    def _skip_reason(
        self,
        reservation_id: "str | None",
        usage: "TokenUsage",
        uses_byok: "bool",
    ) -> "str | None":
        if not self._flags.is_credit_deduction_enabled():
            return "deduction_disabled"
        if not reservation_id:
            return "no_reservation"
        if uses_byok or reservation_id == BYOK_RESERVATION_ID:
            return "byok"
        if usage.is_empty():
            return "no_usage"
        return None

    def _adjusted(self, outcome: "AdjustmentOutcome") -> "AdjustmentOutcome":
        if self._metrics is not None:
            self._metrics.inc_adjustment(outcome.status)
        return outcome
