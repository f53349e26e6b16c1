"""
Explicit state machines for domain verification and certificate lifecycle.

Each table maps (current state, event) to (next state, side effect). Engines
never assign ``status`` / ``ssl_status`` directly; they fire events here so the
retry and polling policies stay in one place.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Optional, Tuple

from .errors import InvalidTransitionError
from .models import Domain, LifecycleStatus, ProviderHandle, SslStatus

logger = logging.getLogger("domain_engine.domains.transitions")

MAX_ATTEMPTS_MESSAGE = "max attempts reached, hourly retry for 24h"
SLOW_ISSUANCE_MESSAGE = "SSL provisioning taking longer than expected"


class Event(str, Enum):
    CHECK_PASSED = "CHECK_PASSED"
    CHECK_FAILED = "CHECK_FAILED"
    RECONFIRM_PASSED = "RECONFIRM_PASSED"
    RECONFIRM_FAILED = "RECONFIRM_FAILED"
    REINITIATE = "REINITIATE"
    SUSPEND = "SUSPEND"


class SslEvent(str, Enum):
    REQUESTED = "REQUESTED"
    RENEWAL_REQUESTED = "RENEWAL_REQUESTED"
    POLL_PENDING = "POLL_PENDING"
    ISSUED = "ISSUED"
    FAILED = "FAILED"
    RENEWED = "RENEWED"
    RENEWAL_FAILED = "RENEWAL_FAILED"
    LAPSED = "LAPSED"


@dataclass(frozen=True)
class RetryPolicy:
    """
    Verification retry schedule.

    Failures before the ceiling back off exponentially from ``base_delay``
    (1, 2, 4, 8 minutes with the defaults). Once ``max_attempts`` failures have
    accumulated, checks repeat every ``ceiling_interval``. The ceiling check
    wins over the formula, so the 5th failure goes straight to hourly.
    """

    base_delay: timedelta = timedelta(minutes=1)
    max_attempts: int = 5
    ceiling_interval: timedelta = timedelta(hours=1)

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts

    def next_delay(self, attempts: int) -> timedelta:
        if self.exhausted(attempts):
            return self.ceiling_interval
        return self.base_delay * (2 ** max(0, attempts - 1))


@dataclass(frozen=True)
class PollPolicy:
    """Certificate issuance polling: fixed interval, bounded budget per round."""

    interval: timedelta = timedelta(seconds=10)
    max_polls: int = 12
    pending_recheck: timedelta = timedelta(minutes=30)
    validity: timedelta = timedelta(days=90)


class DomainLifecycle:
    """Verification state machine (``Domain.status``)."""

    TRANSITIONS: Dict[Tuple[LifecycleStatus, Event], Tuple[LifecycleStatus, str]] = {
        (LifecycleStatus.RESERVED, Event.CHECK_PASSED): (LifecycleStatus.VERIFIED, "_on_verified"),
        (LifecycleStatus.PENDING, Event.CHECK_PASSED): (LifecycleStatus.VERIFIED, "_on_verified"),
        (LifecycleStatus.RESERVED, Event.CHECK_FAILED): (LifecycleStatus.PENDING, "_on_check_failed"),
        (LifecycleStatus.PENDING, Event.CHECK_FAILED): (LifecycleStatus.PENDING, "_on_check_failed"),
        (LifecycleStatus.VERIFIED, Event.RECONFIRM_PASSED): (LifecycleStatus.VERIFIED, "_on_reconfirmed"),
        (LifecycleStatus.VERIFIED, Event.RECONFIRM_FAILED): (LifecycleStatus.ERROR, "_on_reconfirm_failed"),
        (LifecycleStatus.ERROR, Event.REINITIATE): (LifecycleStatus.PENDING, "_on_reinitiate"),
        (LifecycleStatus.PENDING, Event.REINITIATE): (LifecycleStatus.PENDING, "_on_reinitiate"),
        (LifecycleStatus.RESERVED, Event.SUSPEND): (LifecycleStatus.SUSPENDED, "_on_suspend"),
        (LifecycleStatus.PENDING, Event.SUSPEND): (LifecycleStatus.SUSPENDED, "_on_suspend"),
        (LifecycleStatus.VERIFIED, Event.SUSPEND): (LifecycleStatus.SUSPENDED, "_on_suspend"),
        (LifecycleStatus.ERROR, Event.SUSPEND): (LifecycleStatus.SUSPENDED, "_on_suspend"),
    }

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        reconfirmation_interval: timedelta = timedelta(days=365),
    ):
        self.policy = policy or RetryPolicy()
        self.reconfirmation_interval = reconfirmation_interval

    def can_apply(self, domain: Domain, event: Event) -> bool:
        return not domain.is_blacklisted and (domain.status, event) in self.TRANSITIONS

    def apply(
        self,
        domain: Domain,
        event: Event,
        now: datetime,
        message: Optional[str] = None,
    ) -> LifecycleStatus:
        """Fire ``event`` on ``domain`` in place and return the new status."""
        if domain.is_blacklisted:
            raise InvalidTransitionError(f"{domain.hostname} is blacklisted")
        try:
            next_status, handler_name = self.TRANSITIONS[(domain.status, event)]
        except KeyError:
            raise InvalidTransitionError(
                f"No transition for {domain.status.value} on {event.value}"
            )

        previous = domain.status
        domain.status = next_status
        getattr(self, handler_name)(domain, now, message)
        domain.touch(now)

        if previous != next_status:
            logger.info(
                f"{domain.hostname}: {previous.value} -> {next_status.value} ({event.value})"
            )
        return next_status

    # ── Side effects ─────────────────────────────────────────────────

    def _on_verified(self, domain: Domain, now: datetime, message: Optional[str]) -> None:
        domain.reserved_until = None
        domain.verification_error = None
        domain.last_verification_attempt = now
        domain.next_check_at = None
        domain.verified_at = now
        domain.next_reconfirmation_due = now + self.reconfirmation_interval
        if domain.ssl_status == SslStatus.PENDING and domain.provider_handle is None:
            # the SSL sweep provisions it if the hand-off never runs
            domain.next_ssl_poll_at = now

    def _on_check_failed(self, domain: Domain, now: datetime, message: Optional[str]) -> None:
        domain.reserved_until = None
        domain.verification_attempts += 1
        domain.last_verification_attempt = now
        domain.next_check_at = now + self.policy.next_delay(domain.verification_attempts)
        if self.policy.exhausted(domain.verification_attempts):
            domain.verification_error = MAX_ATTEMPTS_MESSAGE
        else:
            domain.verification_error = message

    def _on_reconfirmed(self, domain: Domain, now: datetime, message: Optional[str]) -> None:
        domain.last_reconfirmation = now
        domain.next_reconfirmation_due = now + self.reconfirmation_interval

    def _on_reconfirm_failed(self, domain: Domain, now: datetime, message: Optional[str]) -> None:
        domain.last_reconfirmation = now
        domain.next_reconfirmation_due = None
        domain.next_check_at = None
        domain.verification_error = f"annual reconfirmation failed: {message or 'DNS no longer points at the platform'}"

    def _on_reinitiate(self, domain: Domain, now: datetime, message: Optional[str]) -> None:
        domain.verification_attempts = 0
        domain.verification_error = None
        domain.next_check_at = now

    def _on_suspend(self, domain: Domain, now: datetime, message: Optional[str]) -> None:
        domain.reserved_until = None
        domain.next_check_at = None
        domain.next_reconfirmation_due = None
        domain.verification_error = message


class CertificateLifecycle:
    """Certificate state machine (``Domain.ssl_status``)."""

    TRANSITIONS: Dict[Tuple[SslStatus, SslEvent], Tuple[SslStatus, str]] = {
        (SslStatus.PENDING, SslEvent.REQUESTED): (SslStatus.PENDING, "_on_requested"),
        (SslStatus.ERROR, SslEvent.REQUESTED): (SslStatus.PENDING, "_on_requested"),
        (SslStatus.EXPIRED, SslEvent.REQUESTED): (SslStatus.PENDING, "_on_requested"),
        (SslStatus.PENDING, SslEvent.POLL_PENDING): (SslStatus.PENDING, "_on_poll_pending"),
        (SslStatus.PENDING, SslEvent.ISSUED): (SslStatus.ACTIVE, "_on_issued"),
        (SslStatus.PENDING, SslEvent.FAILED): (SslStatus.ERROR, "_on_failed"),
        (SslStatus.ERROR, SslEvent.FAILED): (SslStatus.ERROR, "_on_failed"),
        (SslStatus.EXPIRED, SslEvent.FAILED): (SslStatus.ERROR, "_on_failed"),
        (SslStatus.ACTIVE, SslEvent.RENEWAL_REQUESTED): (SslStatus.ACTIVE, "_on_renewal_requested"),
        (SslStatus.ACTIVE, SslEvent.POLL_PENDING): (SslStatus.ACTIVE, "_on_poll_pending"),
        (SslStatus.ACTIVE, SslEvent.RENEWED): (SslStatus.ACTIVE, "_on_issued"),
        (SslStatus.ACTIVE, SslEvent.RENEWAL_FAILED): (SslStatus.ACTIVE, "_on_renewal_failed"),
        (SslStatus.ACTIVE, SslEvent.LAPSED): (SslStatus.EXPIRED, "_on_lapsed"),
    }

    def __init__(self, policy: Optional[PollPolicy] = None):
        self.policy = policy or PollPolicy()

    def apply(
        self,
        domain: Domain,
        event: SslEvent,
        now: datetime,
        message: Optional[str] = None,
        handle: Optional[ProviderHandle] = None,
    ) -> SslStatus:
        """Fire ``event`` on ``domain`` in place and return the new SSL status."""
        if domain.is_blacklisted:
            raise InvalidTransitionError(f"{domain.hostname} is blacklisted")
        try:
            next_status, handler_name = self.TRANSITIONS[(domain.ssl_status, event)]
        except KeyError:
            raise InvalidTransitionError(
                f"No SSL transition for {domain.ssl_status.value} on {event.value}"
            )

        previous = domain.ssl_status
        domain.ssl_status = next_status
        getattr(self, handler_name)(domain, now, message, handle)
        domain.touch(now)

        if previous != next_status:
            logger.info(
                f"{domain.hostname}: SSL {previous.value} -> {next_status.value} ({event.value})"
            )
        return next_status

    def _on_requested(self, domain, now, message, handle) -> None:
        domain.provider_handle = handle
        domain.ssl_provider = handle.provider if handle else None
        domain.ssl_error = None
        domain.ssl_renewing = False
        domain.ssl_poll_attempts = 0
        domain.next_ssl_poll_at = now + self.policy.interval

    def _on_renewal_requested(self, domain, now, message, handle) -> None:
        domain.provider_handle = handle or domain.provider_handle
        domain.ssl_renewing = True
        domain.ssl_poll_attempts = 0
        domain.next_ssl_poll_at = now + self.policy.interval

    def _on_poll_pending(self, domain, now, message, handle) -> None:
        domain.ssl_poll_attempts += 1
        if domain.ssl_poll_attempts >= self.policy.max_polls:
            # Budget spent: not a failure, hand back to a later sweep.
            domain.ssl_poll_attempts = 0
            domain.ssl_error = SLOW_ISSUANCE_MESSAGE
            domain.next_ssl_poll_at = now + self.policy.pending_recheck
        else:
            domain.next_ssl_poll_at = now + self.policy.interval

    def _on_issued(self, domain, now, message, handle) -> None:
        domain.ssl_issued_at = now
        domain.ssl_expires_at = now + self.policy.validity
        domain.ssl_error = None
        domain.ssl_renewing = False
        domain.ssl_poll_attempts = 0
        domain.next_ssl_poll_at = None

    def _on_failed(self, domain, now, message, handle) -> None:
        domain.ssl_error = message or "Failed to provision SSL certificate"
        domain.ssl_renewing = False
        domain.ssl_poll_attempts = 0
        domain.next_ssl_poll_at = None

    def _on_renewal_failed(self, domain, now, message, handle) -> None:
        domain.ssl_error = message or "SSL renewal failed"
        domain.ssl_renewing = False
        domain.ssl_poll_attempts = 0
        domain.next_ssl_poll_at = None

    def _on_lapsed(self, domain, now, message, handle) -> None:
        domain.ssl_error = message or "certificate expired before renewal succeeded"
        domain.ssl_renewing = False
        domain.ssl_poll_attempts = 0
        domain.next_ssl_poll_at = None
