from dataclasses import dataclass

import structlog

from creditmeter.config import FeatureFlags
from creditmeter.errors import (
    AgentNotFoundError,
    InsufficientCreditsError,
    PaymentRequiredError,
    SpendingLimitExceededError,
)
from creditmeter.limits import SpendingLimitEvaluator
from creditmeter.metrics import MetricsRecorder
from creditmeter.models import AGENTS, AgentPolicy, CreditReservation, agent_key
from creditmeter.pricing import BilledRequest, CostModel
from creditmeter.reservations import ReservationManager
from creditmeter.store.base import RecordStore

logger = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class Reserved:
    # None when no platform billing applies to the call
    reservation: "CreditReservation | None"


@dataclass(frozen=True, slots=True)
class Rejected:
    error: "PaymentRequiredError"


ReservationOutcome = Reserved | Rejected


class CreditValidator:
    """
    CreditValidator runs the pre-flight checks for a billed call
    and places the credit reservation.

    Checks run in a fixed order: balance, spending limits, then
    the reservation itself. Each is gated by its feature flag.
    """

    def __init__(
        self,
        store: "RecordStore",
        reservations: "ReservationManager",
        evaluator: "SpendingLimitEvaluator",
        cost_model: "CostModel",
        flags: "FeatureFlags",
        metrics: "MetricsRecorder | None" = None,
    ) -> "None":
        self._store = store
        self._reservations = reservations
        self._evaluator = evaluator
        self._cost_model = cost_model
        self._flags = flags
        self._metrics = metrics

    async def validate_credits_and_limits_and_reserve(
        self,
        workspace_id: "str",
        agent_id: "str | None",
        provider: "str",
        model: "str",
        request: "BilledRequest",
        uses_byok: "bool" = False,
    ) -> "CreditReservation | None":
        validation_enabled = self._flags.is_credit_validation_enabled()
        limits_enabled = self._flags.is_spending_limit_checks_enabled()
        if not validation_enabled and not limits_enabled:
            self._count("not_reserved")
            return None

        account = await self._reservations.get_workspace(workspace_id)
        agent = await self._load_agent(workspace_id, agent_id) if agent_id else None

        estimated_cost = max(
            self._cost_model.estimate_cost(provider, model, request), 0
        )

        if validation_enabled and not uses_byok:
            if account.credit_balance < estimated_cost:
                self._count("insufficient_credits")
                raise InsufficientCreditsError(
                    workspace_id,
                    required=estimated_cost,
                    available=account.credit_balance,
                    currency=account.currency,
                    agent_id=agent_id,
                )

        # BYOK calls are still subject to spending limits
        if limits_enabled:
            result = await self._evaluator.check_limits(account, agent, estimated_cost)
            if not result.passed:
                self._count("spending_limit_exceeded")
                raise SpendingLimitExceededError(
                    workspace_id, result.failed_limits, agent_id=agent_id
                )

        if uses_byok:
            self._count("byok")
            return None
        if not self._flags.is_credit_deduction_enabled():
            self._count("not_reserved")
            return None

        try:
            reservation = await self._reservations.reserve_credits(
                workspace_id,
                estimated_cost,
                agent_id=agent_id,
                provider=provider,
                model=model,
            )
        except InsufficientCreditsError:
            # balance moved between the check and the reservation
            self._count("insufficient_credits")
            raise

        if self._metrics is not None:
            self._metrics.inc_reservation("reserved", reservation.reserved_amount)
        return reservation

    async def try_reserve(
        self,
        workspace_id: "str",
        agent_id: "str | None",
        provider: "str",
        model: "str",
        request: "BilledRequest",
        uses_byok: "bool" = False,
    ) -> "ReservationOutcome":
        """
        same as validate_credits_and_limits_and_reserve, with the
        payment errors returned as Rejected instead of raised.
        """
        try:
            reservation = await self.validate_credits_and_limits_and_reserve(
                workspace_id, agent_id, provider, model, request, uses_byok
            )
        except PaymentRequiredError as exc:
            return Rejected(exc)
        return Reserved(reservation)

    async def _load_agent(self, workspace_id: "str", agent_id: "str") -> "AgentPolicy":
        record = await self._store.get(AGENTS, agent_key(workspace_id, agent_id))
        if record is None:
            raise AgentNotFoundError(workspace_id, agent_id)
        return AgentPolicy.from_record(record)

    def _count(self, outcome: "str") -> "None":
        if self._metrics is not None:
            self._metrics.inc_reservation(outcome)
