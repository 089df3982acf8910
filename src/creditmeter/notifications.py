import asyncio
import enum
import html
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol

import structlog

from creditmeter.besteffort import Failed, best_effort
from creditmeter.email import EmailMessage, EmailTransport
from creditmeter.errors import (
    InsufficientCreditsError,
    SpendingLimitExceededError,
    StoreConflictError,
    WorkspaceNotFoundError,
)
from creditmeter.ledger import format_currency
from creditmeter.metrics import MetricsRecorder
from creditmeter.models import (
    USERS,
    WORKSPACES,
    ErrorType,
    NotificationRateLimitRecord,
    Recipient,
    WorkspaceAccount,
    user_key,
    workspace_key,
)
from creditmeter.store.base import Record, RecordStore, UpdateStatus

logger = structlog.get_logger()

NOTIFICATION_WINDOW = timedelta(hours=1)

_SENT_AT_FIELDS: "dict[str, str]" = {
    "credit": "last_credit_error_email_sent_at",
    "spending_limit": "last_spending_limit_error_email_sent_at",
}


def _utcnow() -> "datetime":
    return datetime.now(timezone.utc)


class ThrottleDecision(enum.Enum):
    ACQUIRED = "acquired"
    MISSING_RECORD = "missing_record"
    RATE_LIMITED = "rate_limited"
    CONCURRENT_UPDATE = "concurrent_update"


@dataclass(frozen=True, slots=True)
class NotificationOutcome:
    user_id: "str"
    # "sent", "send_failed", "failed" or one of the skip reasons
    status: "str"

    @property
    def sent(self) -> "bool":
        return self.status == "sent"


class NotificationRateLimiter:
    """
    NotificationRateLimiter: Allows at most one email per user per
    error type per window.

    The check and the stamp are one conditional update on the
    user record. Of any number of concurrent callers only the one
    whose write lands may send.
    """

    def __init__(
        self,
        store: "RecordStore",
        window: "timedelta" = NOTIFICATION_WINDOW,
    ) -> "None":
        self._store = store
        self._window = window

    async def try_acquire(
        self,
        user_id: "str",
        error_type: "ErrorType",
        now: "datetime | None" = None,
    ) -> "ThrottleDecision":
        now = now or _utcnow()
        field_name = _SENT_AT_FIELDS[error_type]

        def _is_stale(record: "Record") -> "bool":
            state = NotificationRateLimitRecord.from_record(record)
            last_sent = state.last_sent_at(error_type)
            return last_sent is None or now - last_sent > self._window

        def _stamp(record: "Record") -> "Record":
            record[field_name] = now.isoformat()
            return record

        try:
            result = await self._store.conditional_update(
                USERS, user_key(user_id), _is_stale, _stamp
            )
        except StoreConflictError:
            return ThrottleDecision.CONCURRENT_UPDATE

        return {
            UpdateStatus.UPDATED: ThrottleDecision.ACQUIRED,
            UpdateStatus.NOT_FOUND: ThrottleDecision.MISSING_RECORD,
            UpdateStatus.PRECONDITION_FAILED: ThrottleDecision.RATE_LIMITED,
            UpdateStatus.CONFLICT: ThrottleDecision.CONCURRENT_UPDATE,
        }[result.status]


class RecipientDirectory(Protocol):
    async def owners(self, workspace: "WorkspaceAccount") -> "list[Recipient]": ...


class StoreRecipientDirectory:
    """
    resolves workspace owners to email addresses through their user
    records. Owners without a record or an email are left out.
    """

    def __init__(self, store: "RecordStore") -> "None":
        self._store = store

    async def owners(self, workspace: "WorkspaceAccount") -> "list[Recipient]":
        records = await asyncio.gather(
            *(self._store.get(USERS, user_key(uid)) for uid in workspace.owner_user_ids)
        )
        recipients: "list[Recipient]" = []
        for user_id, record in zip(workspace.owner_user_ids, records):
            email = record.get("email") if record else None
            if not email:
                logger.debug("owner_without_email", user_id=user_id)
                continue
            recipients.append(Recipient(user_id=user_id, email=email))
        return recipients


def build_credit_error_email(
    workspace: "WorkspaceAccount",
    error: "InsufficientCreditsError",
    base_url: "str",
    to: "str",
) -> "EmailMessage":
    link = f"{base_url}/workspaces/{workspace.id}/credits"
    required = format_currency(error.required, error.currency)
    available = format_currency(error.available, error.currency)
    name = workspace.name or workspace.id

    text = (
        f"Your workspace {name} does not have enough credits to complete a request.\n\n"
        f"Required: {required}\n"
        f"Available: {available}\n\n"
        f"Add credits here: {link}\n"
    )
    body = (
        f"<p>Your workspace <strong>{html.escape(name)}</strong> does not have "
        "enough credits to complete a request.</p>"
        "<ul>"
        f"<li>Required: {required}</li>"
        f"<li>Available: {available}</li>"
        "</ul>"
        f'<p><a href="{html.escape(link)}">Add credits</a></p>'
    )
    return EmailMessage(
        to=to,
        subject=f"Insufficient Credits - {name}",
        text=text,
        html=body,
    )


def build_spending_limit_email(
    workspace: "WorkspaceAccount",
    error: "SpendingLimitExceededError",
    base_url: "str",
    to: "str",
) -> "EmailMessage":
    link = f"{base_url}/workspaces/{workspace.id}/settings"
    name = workspace.name or workspace.id

    lines = [
        f"{limit.scope.capitalize()} {limit.time_frame} limit: "
        f"{format_currency(limit.limit, workspace.currency)} "
        f"(would reach {format_currency(limit.current, workspace.currency)})"
        for limit in error.failed_limits
    ]
    text = (
        f"A request in workspace {name} was blocked by a spending limit.\n\n"
        + "\n".join(lines)
        + f"\n\nReview your limits here: {link}\n"
    )
    body = (
        f"<p>A request in workspace <strong>{html.escape(name)}</strong> was "
        "blocked by a spending limit.</p>"
        "<ul>"
        + "".join(f"<li>{html.escape(line)}</li>" for line in lines)
        + "</ul>"
        f'<p><a href="{html.escape(link)}">Review limits</a></p>'
    )
    return EmailMessage(
        to=to,
        subject=f"Spending Limit Reached - {name}",
        text=text,
        html=body,
    )


def classify_error(error: "Exception") -> "ErrorType | None":
    if isinstance(error, InsufficientCreditsError):
        return "credit"
    if isinstance(error, SpendingLimitExceededError):
        return "spending_limit"
    return None


class ErrorNotifier:
    """
    ErrorNotifier emails workspace owners about credit and
    spending limit failures. It never raises: every failure is
    logged and the caller carries on.
    """

    def __init__(
        self,
        store: "RecordStore",
        directory: "RecipientDirectory",
        transport: "EmailTransport",
        rate_limiter: "NotificationRateLimiter",
        base_url: "str",
        metrics: "MetricsRecorder | None" = None,
        clock: "Callable[[], datetime]" = _utcnow,
    ) -> "None":
        self._store = store
        self._directory = directory
        self._transport = transport
        self._rate_limiter = rate_limiter
        self._base_url = base_url.rstrip("/")
        self._metrics = metrics
        self._clock = clock

    async def notify_on_error(
        self, workspace_id: "str", error: "Exception"
    ) -> "list[NotificationOutcome]":
        error_type = classify_error(error)
        if error_type is None:
            logger.debug(
                "error_not_notifiable",
                workspace_id=workspace_id,
                error=type(error).__name__,
            )
            return []

        try:
            record = await self._store.get(WORKSPACES, workspace_key(workspace_id))
            if record is None:
                raise WorkspaceNotFoundError(workspace_id)
            workspace = WorkspaceAccount.from_record(record)

            recipients = await self._directory.owners(workspace)
            if not recipients:
                logger.warning(
                    "no_notification_recipients",
                    workspace_id=workspace_id,
                    error_type=error_type,
                )
                return []

            now = self._clock()
            return list(
                await asyncio.gather(
                    *(
                        self._notify_recipient(workspace, recipient, error_type, error, now)
                        for recipient in recipients
                    )
                )
            )
        except Exception:
            logger.exception(
                "error_notification_failed",
                workspace_id=workspace_id,
                error_type=error_type,
            )
            return []

    async def _notify_recipient(
        self,
        workspace: "WorkspaceAccount",
        recipient: "Recipient",
        error_type: "ErrorType",
        error: "Exception",
        now: "datetime",
    ) -> "NotificationOutcome":
        # one owner's failure must not cost the others their outcome
        try:
            return await self._throttled_send(
                workspace, recipient, error_type, error, now
            )
        except Exception:
            logger.exception(
                "error_notification_recipient_failed",
                workspace_id=workspace.id,
                user_id=recipient.user_id,
                error_type=error_type,
            )
            return self._outcome(recipient, error_type, "failed")

    async def _throttled_send(
        self,
        workspace: "WorkspaceAccount",
        recipient: "Recipient",
        error_type: "ErrorType",
        error: "Exception",
        now: "datetime",
    ) -> "NotificationOutcome":
        decision = await self._rate_limiter.try_acquire(
            recipient.user_id, error_type, now
        )
        if decision is not ThrottleDecision.ACQUIRED:
            logger.info(
                "error_notification_skipped",
                workspace_id=workspace.id,
                user_id=recipient.user_id,
                error_type=error_type,
                reason=decision.value,
            )
            return self._outcome(recipient, error_type, decision.value)

        if error_type == "credit":
            message = build_credit_error_email(
                workspace, error, self._base_url, recipient.email
            )
        else:
            message = build_spending_limit_email(
                workspace, error, self._base_url, recipient.email
            )

        result = await best_effort(
            self._transport.send(message),
            "error_email_send_failed",
            workspace_id=workspace.id,
            user_id=recipient.user_id,
            error_type=error_type,
        )
        if isinstance(result, Failed):
            return self._outcome(recipient, error_type, "send_failed")

        logger.info(
            "error_notification_sent",
            workspace_id=workspace.id,
            user_id=recipient.user_id,
            error_type=error_type,
        )
        return self._outcome(recipient, error_type, "sent")

    def _outcome(
        self, recipient: "Recipient", error_type: "str", status: "str"
    ) -> "NotificationOutcome":
        if self._metrics is not None:
            self._metrics.inc_notification(error_type, status)
        return NotificationOutcome(user_id=recipient.user_id, status=status)
