from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

Currency = Literal["usd", "eur", "gbp"]
TimeFrame = Literal["daily", "weekly", "monthly"]
LimitScope = Literal["workspace", "agent"]
ErrorType = Literal["credit", "spending_limit"]

# reservation id used when the caller brings its own provider key
BYOK_RESERVATION_ID = "byok"

# store tables
WORKSPACES = "workspace"
AGENTS = "agent"
RESERVATIONS = "credit-reservations"
USERS = "user"


def workspace_key(workspace_id: "str") -> "str":
    return f"workspaces/{workspace_id}"


def agent_key(workspace_id: "str", agent_id: "str") -> "str":
    return f"agents/{workspace_id}/{agent_id}"


def reservation_key(reservation_id: "str") -> "str":
    return f"credit-reservations/{reservation_id}"


def user_key(user_id: "str") -> "str":
    return f"users/{user_id}"


@dataclass(frozen=True, slots=True)
class SpendingLimit:
    """
    SpendingLimit is a self-imposed cap on spend over a
    rolling time frame. Amount is in nano-dollars.
    """

    time_frame: "TimeFrame"
    amount: "int"

    @classmethod
    def from_record(cls, data: "dict[str, Any]") -> "SpendingLimit":
        return cls(time_frame=data["time_frame"], amount=int(data["amount"]))

    def to_record(self) -> "dict[str, Any]":
        return {"time_frame": self.time_frame, "amount": self.amount}


@dataclass(frozen=True, slots=True)
class WorkspaceAccount:
    """
    WorkspaceAccount holds the prepaid credit balance and the
    workspace-wide spending limits.
    """

    id: "str"
    currency: "Currency"
    # nano-dollars
    credit_balance: "int"
    name: "str" = ""
    spending_limits: "tuple[SpendingLimit, ...]" = ()
    owner_user_ids: "tuple[str, ...]" = ()

    @classmethod
    def from_record(cls, data: "dict[str, Any]") -> "WorkspaceAccount":
        return cls(
            id=data["id"],
            currency=data.get("currency", "usd"),
            credit_balance=int(data.get("credit_balance", 0)),
            name=data.get("name", ""),
            spending_limits=tuple(
                SpendingLimit.from_record(limit)
                for limit in data.get("spending_limits") or []
            ),
            owner_user_ids=tuple(data.get("owner_user_ids") or []),
        )

    def to_record(self) -> "dict[str, Any]":
        return {
            "id": self.id,
            "name": self.name,
            "currency": self.currency,
            "credit_balance": self.credit_balance,
            "spending_limits": [limit.to_record() for limit in self.spending_limits],
            "owner_user_ids": list(self.owner_user_ids),
        }


@dataclass(frozen=True, slots=True)
class AgentPolicy:
    """
    AgentPolicy carries agent-scoped limits. They apply in
    addition to the workspace limits, never instead of them.
    """

    agent_id: "str"
    workspace_id: "str"
    spending_limits: "tuple[SpendingLimit, ...]" = ()

    @classmethod
    def from_record(cls, data: "dict[str, Any]") -> "AgentPolicy":
        return cls(
            agent_id=data["agent_id"],
            workspace_id=data["workspace_id"],
            spending_limits=tuple(
                SpendingLimit.from_record(limit)
                for limit in data.get("spending_limits") or []
            ),
        )

    def to_record(self) -> "dict[str, Any]":
        return {
            "agent_id": self.agent_id,
            "workspace_id": self.workspace_id,
            "spending_limits": [limit.to_record() for limit in self.spending_limits],
        }


@dataclass(frozen=True, slots=True)
class UsageWindow:
    """
    UsageWindow is the spend observed for one limit at check
    time. Computed fresh on every check.
    """

    scope: "LimitScope"
    time_frame: "TimeFrame"
    start_date: "datetime"
    end_date: "datetime"
    current_spend: "int"
    estimated_cost: "int"

    @property
    def projected_spend(self) -> "int":
        return self.current_spend + self.estimated_cost


@dataclass(frozen=True, slots=True)
class FailedLimit:
    scope: "LimitScope"
    time_frame: "TimeFrame"
    limit: "int"
    # spend in window plus the estimated cost
    current: "int"

    def to_payload(self) -> "dict[str, Any]":
        return {
            "scope": self.scope,
            "timeFrame": self.time_frame,
            "limit": self.limit,
            "current": self.current,
        }


@dataclass(frozen=True, slots=True)
class LimitCheckResult:
    passed: "bool"
    failed_limits: "list[FailedLimit]" = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class UsageQuery:
    """
    UsageQuery is sent to the usage aggregation collaborator.
    Agent queries carry the workspace id too, since agent ids
    are only unique within a workspace.
    """

    workspace_id: "str | None"
    agent_id: "str | None"
    start_date: "datetime"
    end_date: "datetime"


@dataclass(frozen=True, slots=True)
class UsageStats:
    """
    UsageStats is the aggregation collaborator's answer. All
    costs are nano-dollars.
    """

    cost_usd: "int" = 0
    cost_eur: "int" = 0
    cost_gbp: "int" = 0
    reranking_cost_usd: "int" = 0
    eval_cost_usd: "int" = 0
    input_tokens: "int" = 0
    output_tokens: "int" = 0

    def base_cost(self, currency: "str") -> "int":
        return {
            "usd": self.cost_usd,
            "eur": self.cost_eur,
            "gbp": self.cost_gbp,
        }.get(currency, self.cost_usd)


@dataclass(frozen=True, slots=True)
class CreditReservation:
    """
    CreditReservation is a provisional hold created before a
    billed call and consumed once by the adjustment after it.
    """

    reservation_id: "str"
    reserved_amount: "int"
    workspace_id: "str"

    @property
    def is_byok(self) -> "bool":
        return self.reservation_id == BYOK_RESERVATION_ID


@dataclass(frozen=True, slots=True)
class TokenUsage:
    prompt_tokens: "int" = 0
    completion_tokens: "int" = 0
    reasoning_tokens: "int" = 0
    cached_prompt_tokens: "int" = 0

    def is_empty(self) -> "bool":
        return self.prompt_tokens == 0 and self.completion_tokens == 0


@dataclass(frozen=True, slots=True)
class NotificationRateLimitRecord:
    """
    NotificationRateLimitRecord is the per-user throttle
    state, one timestamp per error type.
    """

    user_id: "str"
    email: "str | None" = None
    last_credit_error_email_sent_at: "datetime | None" = None
    last_spending_limit_error_email_sent_at: "datetime | None" = None

    def last_sent_at(self, error_type: "ErrorType") -> "datetime | None":
        if error_type == "credit":
            return self.last_credit_error_email_sent_at
        return self.last_spending_limit_error_email_sent_at

    @classmethod
    def from_record(cls, data: "dict[str, Any]") -> "NotificationRateLimitRecord":
        return cls(
            user_id=data.get("user_id", ""),
            email=data.get("email"),
            last_credit_error_email_sent_at=parse_timestamp(
                data.get("last_credit_error_email_sent_at")
            ),
            last_spending_limit_error_email_sent_at=parse_timestamp(
                data.get("last_spending_limit_error_email_sent_at")
            ),
        )


@dataclass(frozen=True, slots=True)
class Recipient:
    user_id: "str"
    email: "str"


def parse_timestamp(value: "str | None") -> "datetime | None":
    """
    parses an ISO timestamp as stored in records. Empty values
    mean "never".
    """
    if not value:
        return None
    return datetime.fromisoformat(value)
