import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable

import structlog

from creditmeter.errors import (
    InsufficientCreditsError,
    ReservationConflictError,
    StoreConflictError,
    WorkspaceNotFoundError,
)
from creditmeter.metrics import MetricsRecorder
from creditmeter.models import (
    BYOK_RESERVATION_ID,
    RESERVATIONS,
    WORKSPACES,
    CreditReservation,
    TokenUsage,
    WorkspaceAccount,
    reservation_key,
    workspace_key,
)
from creditmeter.pricing import CostModel
from creditmeter.store.base import (
    Delete,
    Put,
    Record,
    RecordSpec,
    RecordStore,
    TransactCallback,
    WriteOp,
)

logger = structlog.get_logger()

# reservations that are never adjusted become eligible for cleanup after this
RESERVATION_TTL = timedelta(minutes=15)

DEFAULT_MAX_RETRIES = 3


def _utcnow() -> "datetime":
    return datetime.now(timezone.utc)


class ReservationManager:
    """
    ReservationManager: Owns the workspace balance and the
    reservation records.

    Every change to the balance goes through one store transaction
    that also creates or deletes the matching reservation record,
    so a balance is never debited without a reservation to adjust
    or refund later.
    """

    def __init__(
        self,
        store: "RecordStore",
        cost_model: "CostModel",
        metrics: "MetricsRecorder | None" = None,
        clock: "Callable[[], datetime]" = _utcnow,
    ) -> "None":
        self._store = store
        self._cost_model = cost_model
        self._metrics = metrics
        self._clock = clock

    async def get_workspace(self, workspace_id: "str") -> "WorkspaceAccount":
        record = await self._store.get(WORKSPACES, workspace_key(workspace_id))
        if record is None:
            raise WorkspaceNotFoundError(workspace_id)
        return WorkspaceAccount.from_record(record)

    async def reserve_credits(
        self,
        workspace_id: "str",
        estimated_cost: "int",
        *,
        agent_id: "str | None" = None,
        provider: "str" = "",
        model: "str" = "",
        max_retries: "int" = DEFAULT_MAX_RETRIES,
        uses_byok: "bool" = False,
    ) -> "CreditReservation":
        """
        debits estimated_cost from the workspace and records the
        hold. Raises InsufficientCreditsError when the balance
        cannot cover it.
        """
        if uses_byok:
            return CreditReservation(BYOK_RESERVATION_ID, 0, workspace_id)

        amount = max(estimated_cost, 0)
        reservation_id = uuid.uuid4().hex
        now = self._clock()
        expires = int((now + RESERVATION_TTL).timestamp())

        specs = {
            "workspace": RecordSpec(WORKSPACES, workspace_key(workspace_id)),
            "reservation": RecordSpec(RESERVATIONS, reservation_key(reservation_id)),
        }

        async def _reserve(records: "dict[str, Record | None]") -> "list[WriteOp]":
            workspace = records["workspace"]
            if workspace is None:
                raise WorkspaceNotFoundError(workspace_id)

            balance = int(workspace.get("credit_balance", 0))
            if balance < amount:
                raise InsufficientCreditsError(
                    workspace_id,
                    required=amount,
                    available=balance,
                    currency=workspace.get("currency", "usd"),
                    agent_id=agent_id,
                )

            workspace["credit_balance"] = balance - amount
            return [
                Put("workspace", workspace),
                Put(
                    "reservation",
                    {
                        "reservation_id": reservation_id,
                        "workspace_id": workspace_id,
                        "agent_id": agent_id,
                        "provider": provider,
                        "model": model,
                        "reserved_amount": amount,
                        "created_at": now.isoformat(),
                        "expires": expires,
                        "expires_hour": expires - expires % 3600,
                    },
                ),
            ]

        await self._transact("reserve credits", specs, _reserve, max_retries)

        logger.info(
            "credit_reservation_created",
            workspace_id=workspace_id,
            agent_id=agent_id,
            reservation_id=reservation_id,
            reserved_amount=amount,
        )
        return CreditReservation(reservation_id, amount, workspace_id)

    async def adjust_credit_reservation(
        self,
        reservation_id: "str",
        workspace_id: "str",
        provider: "str",
        model: "str",
        usage: "TokenUsage",
        max_retries: "int" = DEFAULT_MAX_RETRIES,
        uses_byok: "bool" = False,
    ) -> "WorkspaceAccount":
        """
        settles a reservation against the measured cost. The
        difference between actual and reserved is applied to the
        balance and the reservation is consumed.

        A reservation that no longer exists was already settled,
        so the workspace is returned unchanged.
        """
        if uses_byok or reservation_id == BYOK_RESERVATION_ID:
            return await self.get_workspace(workspace_id)

        actual_cost = max(self._cost_model.actual_cost(provider, model, usage), 0)

        specs = {
            "workspace": RecordSpec(WORKSPACES, workspace_key(workspace_id)),
            "reservation": RecordSpec(RESERVATIONS, reservation_key(reservation_id)),
        }
        settled: "dict[str, int]" = {}

        async def _adjust(records: "dict[str, Record | None]") -> "list[WriteOp]":
            settled.clear()
            reservation = records["reservation"]
            if reservation is None:
                return []
            workspace = records["workspace"]
            if workspace is None:
                raise WorkspaceNotFoundError(workspace_id)

            reserved = int(reservation.get("reserved_amount", 0))
            difference = actual_cost - reserved
            workspace["credit_balance"] = int(workspace.get("credit_balance", 0)) - difference
            settled.update(reserved=reserved, difference=difference)
            return [Put("workspace", workspace), Delete("reservation")]

        written = await self._transact(
            "adjust credit reservation", specs, _adjust, max_retries
        )

        if not written:
            logger.warning(
                "reservation_not_found",
                reservation_id=reservation_id,
                workspace_id=workspace_id,
            )
            return await self.get_workspace(workspace_id)

        logger.info(
            "credit_reservation_adjusted",
            reservation_id=reservation_id,
            workspace_id=workspace_id,
            actual_cost=actual_cost,
            **settled,
        )
        return WorkspaceAccount.from_record(written[0])

    async def refund_reservation(
        self,
        reservation_id: "str",
        workspace_id: "str | None" = None,
        max_retries: "int" = DEFAULT_MAX_RETRIES,
    ) -> "bool":
        """
        returns the reserved amount to the workspace and deletes the
        reservation. Returns False when there was nothing to refund.
        """
        if reservation_id == BYOK_RESERVATION_ID:
            return False

        if workspace_id is None:
            reservation = await self._store.get(
                RESERVATIONS, reservation_key(reservation_id)
            )
            if reservation is None:
                self._count_refund("noop")
                return False
            workspace_id = reservation["workspace_id"]

        specs = {
            "workspace": RecordSpec(WORKSPACES, workspace_key(workspace_id)),
            "reservation": RecordSpec(RESERVATIONS, reservation_key(reservation_id)),
        }

        async def _refund(records: "dict[str, Record | None]") -> "list[WriteOp]":
            reservation = records["reservation"]
            if reservation is None:
                return []
            workspace = records["workspace"]
            if workspace is None:
                raise WorkspaceNotFoundError(workspace_id)

            workspace["credit_balance"] = int(
                workspace.get("credit_balance", 0)
            ) + int(reservation.get("reserved_amount", 0))
            return [Put("workspace", workspace), Delete("reservation")]

        written = await self._transact(
            "refund reservation", specs, _refund, max_retries
        )
        if not written:
            self._count_refund("noop")
            return False

        self._count_refund("refunded")
        logger.info(
            "credit_reservation_refunded",
            reservation_id=reservation_id,
            workspace_id=workspace_id,
        )
        return True

    async def consume_reservation(
        self,
        reservation_id: "str",
        max_retries: "int" = DEFAULT_MAX_RETRIES,
    ) -> "bool":
        """
        deletes the reservation and leaves the balance as it is, so
        the reserved estimate becomes the final charge. Returns False
        when the reservation was already settled.
        """
        if reservation_id == BYOK_RESERVATION_ID:
            return False

        specs = {
            "reservation": RecordSpec(RESERVATIONS, reservation_key(reservation_id)),
        }

        # deletes write no records back, so the last attempt's read
        # tells whether there was anything to consume
        found: "list[bool]" = []

        async def _consume(records: "dict[str, Record | None]") -> "list[WriteOp]":
            found[:] = [records["reservation"] is not None]
            return [Delete("reservation")] if found[0] else []

        await self._transact("consume reservation", specs, _consume, max_retries)
        if not found[0]:
            logger.warning("reservation_not_found", reservation_id=reservation_id)
            return False

        logger.info("credit_reservation_consumed", reservation_id=reservation_id)
        return True

    async def credit_credits(
        self,
        workspace_id: "str",
        amount: "int",
        max_retries: "int" = DEFAULT_MAX_RETRIES,
    ) -> "WorkspaceAccount":
        """
        adds purchased or refunded credits to the workspace balance.
        """
        if amount < 0:
            raise ValueError("amount must be >= 0")

        specs = {"workspace": RecordSpec(WORKSPACES, workspace_key(workspace_id))}

        async def _credit(records: "dict[str, Record | None]") -> "list[WriteOp]":
            workspace = records["workspace"]
            if workspace is None:
                raise WorkspaceNotFoundError(workspace_id)
            workspace["credit_balance"] = int(workspace.get("credit_balance", 0)) + amount
            return [Put("workspace", workspace)]

        written = await self._transact("credit credits", specs, _credit, max_retries)
        logger.info("credits_added", workspace_id=workspace_id, amount=amount)
        return WorkspaceAccount.from_record(written[0])

    async def _transact(
        self,
        operation: "str",
        specs: "dict[str, RecordSpec]",
        callback: "TransactCallback",
        max_retries: "int",
    ) -> "list[Record]":
        try:
            return await self._store.transact(
                specs, callback, max_attempts=max_retries + 1
            )
        except StoreConflictError as exc:
            raise ReservationConflictError(operation, max_retries, exc) from exc

    def _count_refund(self, outcome: "str") -> "None":
        if self._metrics is not None:
            self._metrics.inc_refund(outcome)
