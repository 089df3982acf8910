from typing import Any

from creditmeter.ledger import format_currency
from creditmeter.models import FailedLimit


class CreditMeterError(Exception):
    """
    base class for all errors raised by creditmeter.
    """


class PaymentRequiredError(CreditMeterError):
    """
    PaymentRequiredError marks the pre-flight failures that
    must reach the caller before the billed operation runs.
    Both map to a 402 response.
    """

    status_code: "int" = 402
    code: "str" = "payment_required"

    def __init__(
        self,
        message: "str",
        workspace_id: "str",
        agent_id: "str | None" = None,
    ) -> "None":
        super().__init__(message)
        self.workspace_id = workspace_id
        self.agent_id = agent_id

    def to_payload(self) -> "dict[str, Any]":
        return {
            "error": self.code,
            "message": str(self),
            "workspaceId": self.workspace_id,
            "agentId": self.agent_id,
        }


class InsufficientCreditsError(PaymentRequiredError):
    code = "insufficient_credits"

    def __init__(
        self,
        workspace_id: "str",
        required: "int",
        available: "int",
        currency: "str",
        agent_id: "str | None" = None,
    ) -> "None":
        super().__init__(
            f"Insufficient credits in workspace {workspace_id}: "
            f"required {format_currency(required, currency)}, "
            f"available {format_currency(available, currency)}",
            workspace_id,
            agent_id,
        )
        self.required = required
        self.available = available
        self.currency = currency

    def to_payload(self) -> "dict[str, Any]":
        payload = super().to_payload()
        payload.update(
            required=self.required,
            available=self.available,
            currency=self.currency,
        )
        return payload


class SpendingLimitExceededError(PaymentRequiredError):
    code = "spending_limit_exceeded"

    def __init__(
        self,
        workspace_id: "str",
        failed_limits: "list[FailedLimit]",
        agent_id: "str | None" = None,
    ) -> "None":
        scopes = ", ".join(
            f"{limit.scope} {limit.time_frame}" for limit in failed_limits
        )
        super().__init__(
            f"Spending limit exceeded in workspace {workspace_id}: {scopes}",
            workspace_id,
            agent_id,
        )
        self.failed_limits = list(failed_limits)

    def to_payload(self) -> "dict[str, Any]":
        payload = super().to_payload()
        payload["failedLimits"] = [limit.to_payload() for limit in self.failed_limits]
        return payload


class WorkspaceNotFoundError(CreditMeterError):
    def __init__(self, workspace_id: "str") -> "None":
        super().__init__(f"Workspace {workspace_id} not found")
        self.workspace_id = workspace_id


class AgentNotFoundError(CreditMeterError):
    def __init__(self, workspace_id: "str", agent_id: "str") -> "None":
        super().__init__(f"Agent {agent_id} not found in workspace {workspace_id}")
        self.workspace_id = workspace_id
        self.agent_id = agent_id


class StoreConflictError(CreditMeterError):
    """
    raised by a record store when a conditional write keeps
    losing to concurrent writers.
    """


class ReservationConflictError(CreditMeterError):
    def __init__(self, operation: "str", max_retries: "int", cause: "Exception") -> "None":
        super().__init__(
            f"Failed to {operation} after {max_retries} retries: {cause}"
        )
        self.operation = operation
        self.max_retries = max_retries


class UnknownModelError(CreditMeterError):
    def __init__(self, provider: "str", model: "str") -> "None":
        super().__init__(f"No pricing for {provider}/{model}")
        self.provider = provider
        self.model = model


class EmailDeliveryError(CreditMeterError):
    pass


class CollaboratorTimeoutError(CreditMeterError):
    """
    raised when an outbound call to a collaborator does not
    answer within its timeout.
    """

    def __init__(self, collaborator: "str", timeout: "float") -> "None":
        super().__init__(f"{collaborator} did not respond within {timeout}s")
        self.collaborator = collaborator
        self.timeout = timeout
