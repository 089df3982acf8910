import time
from dataclasses import dataclass
from typing import Protocol

import httpx
import structlog

from creditmeter.errors import CollaboratorTimeoutError, EmailDeliveryError
from creditmeter.metrics import MetricsRecorder

logger = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class EmailMessage:
    to: "str"
    subject: "str"
    text: "str"
    html: "str"


class EmailTransport(Protocol):
    async def send(self, message: "EmailMessage") -> "None": ...


class HttpEmailTransport:
    """
    HttpEmailTransport posts messages as JSON to a transactional
    email API. Non-2xx answers raise EmailDeliveryError.
    """

    name = "email"

    def __init__(
        self,
        api_url: "str",
        api_key: "str",
        sender: "str",
        timeout: "float" = 10.0,
        metrics: "MetricsRecorder | None" = None,
    ) -> "None":
        self._api_url = api_url
        self._sender = sender
        self._timeout = timeout
        self._metrics = metrics
        self._client: "httpx.AsyncClient" = httpx.AsyncClient(
            timeout=timeout,
            headers={"Authorization": f"Bearer {api_key}"},
        )

    async def close(self) -> "None":
        await self._client.aclose()

    async def send(self, message: "EmailMessage") -> "None":
        payload = {
            "from": self._sender,
            "to": message.to,
            "subject": message.subject,
            "text": message.text,
            "html": message.html,
        }

        started = time.monotonic()
        try:
            resp = await self._client.post(self._api_url, json=payload)
        except httpx.TimeoutException as exc:
            raise CollaboratorTimeoutError(self.name, self._timeout) from exc
        finally:
            if self._metrics is not None:
                self._metrics.observe_collaborator(
                    self.name, time.monotonic() - started
                )

        if resp.is_error:
            raise EmailDeliveryError(
                f"email API answered {resp.status_code} for {message.to}"
            )

        logger.debug("email_sent", to=message.to, subject=message.subject)
