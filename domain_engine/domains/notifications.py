"""
Outbound notifications about domain lifecycle events.

Notifications are fire-and-forget: a failing sink is logged and never undoes
the state change that triggered it.
"""

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

import aiohttp

from .models import Domain

logger = logging.getLogger("domain_engine.domains.notifications")


class NotificationEvent(str, Enum):
    VERIFICATION_SUCCEEDED = "VerificationSucceeded"
    VERIFICATION_FAILED = "VerificationFailed"
    SSL_RENEWED = "SslRenewed"
    SSL_RENEWAL_FAILED = "SslRenewalFailed"
    RECONFIRMATION_FAILED = "ReconfirmationFailed"


FAILURE_EVENTS = {
    NotificationEvent.VERIFICATION_FAILED,
    NotificationEvent.SSL_RENEWAL_FAILED,
    NotificationEvent.RECONFIRMATION_FAILED,
}


class NotificationSink:
    """Receives lifecycle events to relay to the tenant."""

    async def notify(self, event: NotificationEvent, domain: Domain) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class LoggingNotifier(NotificationSink):
    """Writes an audit log line per event."""

    def __init__(self, logger_name: str = "domain_engine.audit"):
        self._audit = logging.getLogger(logger_name)

    async def notify(self, event: NotificationEvent, domain: Domain) -> None:
        level = logging.WARNING if event in FAILURE_EVENTS else logging.INFO
        self._audit.log(
            level,
            f"{event.value}: {domain.hostname} owner={domain.owner} "
            f"status={domain.status.value} ssl={domain.ssl_status.value}",
        )


class WebhookNotifier(NotificationSink):
    """POSTs events as JSON to a webhook (email relay, audit service)."""

    def __init__(self, url: str, timeout: float = 10.0):
        self.url = url
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def notify(self, event: NotificationEvent, domain: Domain) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()

        payload = {
            "event": event.value,
            "at": datetime.now(timezone.utc).isoformat(),
            "domain": domain.to_api_response(),
        }
        async with self._session.post(
            self.url,
            json=payload,
            timeout=aiohttp.ClientTimeout(total=self.timeout),
        ) as resp:
            if resp.status >= 400:
                raise RuntimeError(f"Webhook returned {resp.status}")

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None


class MultiNotifier(NotificationSink):
    """Fans an event out to several sinks; one failing sink does not stop the rest."""

    def __init__(self, sinks: List[NotificationSink]):
        self.sinks = list(sinks)

    async def notify(self, event: NotificationEvent, domain: Domain) -> None:
        results = await asyncio.gather(
            *(sink.notify(event, domain) for sink in self.sinks),
            return_exceptions=True,
        )
        for sink, result in zip(self.sinks, results):
            if isinstance(result, Exception):
                logger.error(f"{type(sink).__name__} failed for {event.value} on {domain.hostname}: {result}")

    async def close(self) -> None:
        for sink in self.sinks:
            await sink.close()


async def safe_notify(sink: NotificationSink, event: NotificationEvent, domain: Domain) -> None:
    """Deliver a notification, logging instead of raising on failure."""
    try:
        await sink.notify(event, domain)
    except Exception as e:
        logger.error(f"Notification {event.value} for {domain.hostname} failed: {e}")
