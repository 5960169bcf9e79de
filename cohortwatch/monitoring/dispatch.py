"""
Message Dispatch: the "send message" capability behind send_email actions.

Dispatchers never raise for delivery problems: they return a DispatchResult
the executor can inspect. send_with_retry() retries a failed send once before
giving up.

- SmtpMessageDispatcher: plain-text email via aiosmtplib (STARTTLS)
- HttpRelayDispatcher:   POST JSON to a mail relay via httpx
- LogOnlyDispatcher:     development fallback, records the send in the log
"""

import asyncio
import random
from email.mime.text import MIMEText
from enum import StrEnum
from typing import Callable, Optional, Protocol

import aiosmtplib
import httpx
import structlog
from pydantic import BaseModel

from cohortwatch.config import settings
from cohortwatch.exceptions import TransientDeliveryError

logger = structlog.get_logger(__name__)


class DispatchStatus(StrEnum):
    DELIVERED = "delivered"
    FAILED = "failed"


class DispatchResult(BaseModel):
    status: DispatchStatus
    detail: str = ""
    attempts: int = 1

    @property
    def delivered(self) -> bool:
        return self.status == DispatchStatus.DELIVERED


class MessageDispatcher(Protocol):
    """Protocol for message dispatchers."""

    async def send(self, to: str, subject: str, body: str) -> DispatchResult:
        ...


class SmtpMessageDispatcher:
    """Send plain-text email over SMTP."""

    def __init__(
        self,
        host: str,
        port: int = 587,
        username: str = "",
        password: str = "",
        sender: str = "",
        timeout: float = 10.0,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender or settings.mail_from
        self.timeout = timeout

    async def send(self, to: str, subject: str, body: str) -> DispatchResult:
        msg = MIMEText(body)
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = to

        try:
            await aiosmtplib.send(
                msg,
                hostname=self.host,
                port=self.port,
                username=self.username or None,
                password=self.password or None,
                start_tls=True,
                timeout=self.timeout,
            )
        except (aiosmtplib.SMTPException, OSError) as e:
            logger.warning("smtp_send_failed", to=to, error=str(e))
            return DispatchResult(status=DispatchStatus.FAILED, detail=str(e))

        logger.info("smtp_message_sent", to=to)
        return DispatchResult(status=DispatchStatus.DELIVERED, detail=f"Sent to {to}")


class HttpRelayDispatcher:
    """
    Send messages through an HTTP mail relay.

    Posts {"to", "from", "subject", "body"} as JSON; any 2xx counts as
    delivered.
    """

    def __init__(
        self,
        url: str,
        api_key: str = "",
        sender: str = "",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.api_key = api_key
        self.sender = sender or settings.mail_from
        self.timeout = timeout
        self._client = client

    async def send(self, to: str, subject: str, body: str) -> DispatchResult:
        payload = {"to": to, "from": self.sender, "subject": subject, "body": body}
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.warning("relay_send_error", to=to, url=self.url, error=str(e))
            return DispatchResult(status=DispatchStatus.FAILED, detail=str(e))

        if response.status_code < 400:
            logger.info("relay_message_sent", to=to, status=response.status_code)
            return DispatchResult(
                status=DispatchStatus.DELIVERED, detail=f"HTTP {response.status_code}"
            )

        logger.warning("relay_send_failed", to=to, status=response.status_code)
        return DispatchResult(
            status=DispatchStatus.FAILED, detail=f"HTTP {response.status_code}"
        )


class LogOnlyDispatcher:
    """Used when no transport is configured."""

    async def send(self, to: str, subject: str, body: str) -> DispatchResult:
        logger.info("message_logged_only", to=to, subject=subject)
        return DispatchResult(status=DispatchStatus.DELIVERED, detail="logged")


def build_dispatcher() -> MessageDispatcher:
    """Pick a dispatcher from settings: relay, then SMTP, then log-only."""
    if settings.mail_relay_url:
        return HttpRelayDispatcher(settings.mail_relay_url, api_key=settings.mail_relay_api_key)
    if settings.smtp_host:
        return SmtpMessageDispatcher(
            settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_user,
            password=settings.smtp_password,
        )
    logger.warning("no_mail_transport_configured")
    return LogOnlyDispatcher()


async def send_with_retry(
    dispatcher: MessageDispatcher,
    to: str,
    subject: str,
    body: str,
    max_retries: int = 1,
    base_delay: Optional[float] = None,
    jitter: float = 0.0,
    sleep: Callable = asyncio.sleep,
) -> DispatchResult:
    """
    Send with retry and backoff; never raises.

    Strategy: base_delay * 2^attempt + random(0, jitter). A failed result or
    an exception from the dispatcher both count as a TransientDeliveryError.
    """
    delay_base = settings.dispatch_retry_delay_seconds if base_delay is None else base_delay
    last_detail = ""

    for attempt in range(max_retries + 1):
        try:
            try:
                result = await dispatcher.send(to, subject, body)
            except TransientDeliveryError:
                raise
            except Exception as e:
                raise TransientDeliveryError(str(e), details={"to": to}) from e
            if not result.delivered:
                raise TransientDeliveryError(result.detail or "delivery failed", details={"to": to})
            result.attempts = attempt + 1
            return result
        except TransientDeliveryError as exc:
            last_detail = exc.message
            if attempt == max_retries:
                logger.error(
                    "dispatch_retry_exhausted",
                    to=to,
                    attempts=attempt + 1,
                    error=exc.message,
                )
                break
            delay = delay_base * (2 ** attempt) + random.uniform(0, jitter)
            logger.warning(
                "dispatch_retry_attempt",
                to=to,
                attempt=attempt + 1,
                max_retries=max_retries,
                delay=round(delay, 2),
                error=exc.message,
            )
            await sleep(delay)

    return DispatchResult(
        status=DispatchStatus.FAILED, detail=last_detail, attempts=max_retries + 1
    )
