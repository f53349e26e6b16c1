"""
DNS verification for custom domains.
"""

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from .dns import DnsResolver
from .errors import ConcurrentModificationError, DomainNotFoundError, ResolverError
from .models import Domain, LifecycleStatus, normalize_hostname, utcnow
from .notifications import NotificationEvent, NotificationSink, safe_notify
from .store import DomainStore
from .transitions import DomainLifecycle, Event

logger = logging.getLogger("domain_engine.domains.verification")


@dataclass
class CheckResult:
    ok: bool
    message: str
    transient: bool = False


class DomainVerifier:
    """Verifies domain ownership via the CNAME record."""

    def __init__(self, resolver: DnsResolver):
        self.resolver = resolver

    async def check(self, domain: Domain) -> CheckResult:
        """
        Check that ``domain.hostname`` has a CNAME pointing at its target.

        Resolver failures come back as a failed, transient result: the state
        machine treats them like a missing record, only the logs differ.
        """
        expected = normalize_hostname(domain.cname_target)

        try:
            target = await self.resolver.resolve_cname(domain.hostname)
        except ResolverError as e:
            logger.warning(f"DNS lookup failed for {domain.hostname}: {e}")
            return CheckResult(False, "DNS lookup failed, will retry", transient=True)

        if target is None:
            return CheckResult(False, f"No CNAME record found for {domain.hostname}")
        target = normalize_hostname(target)
        if target == expected:
            return CheckResult(True, f"CNAME verified: {domain.hostname} -> {target}")
        return CheckResult(False, f"CNAME points to {target}, expected {expected}")

    def get_verification_instructions(self, domain: Domain) -> dict:
        """Return human-readable DNS instructions for domain verification."""
        return {
            "method": "cname",
            "instructions": (
                f"Add a CNAME record for {domain.hostname} pointing to "
                f"{domain.cname_target}"
            ),
            "record_type": "CNAME",
            "record_name": domain.hostname,
            "record_value": domain.cname_target,
        }


class VerificationEngine:
    """
    Drives domains from RESERVED/PENDING to VERIFIED.

    Each call handles one domain: load the latest version, check DNS, fire
    the matching lifecycle event, save. On success the certificate engine is
    handed the domain through ``on_verified`` without waiting for it.
    """

    CHECKABLE = (LifecycleStatus.RESERVED, LifecycleStatus.PENDING)

    def __init__(
        self,
        store: DomainStore,
        verifier: DomainVerifier,
        notifier: NotificationSink,
        lifecycle: Optional[DomainLifecycle] = None,
        on_verified: Optional[Callable[[str], None]] = None,
    ):
        self.store = store
        self.verifier = verifier
        self.notifier = notifier
        self.lifecycle = lifecycle or DomainLifecycle()
        self.on_verified = on_verified

    async def due(self, now=None) -> List[Domain]:
        return await self.store.find_due(self.CHECKABLE, now or utcnow())

    async def verify(self, domain_id: str, now=None) -> Optional[Domain]:
        """Run one verification check. A no-op for domains that are not checkable."""
        now = now or utcnow()
        domain = await self.store.get_by_id(domain_id)
        if domain is None:
            return None
        if domain.status not in self.CHECKABLE or domain.is_blacklisted:
            logger.debug(f"Skipping verification of {domain.hostname} ({domain.status.value})")
            return domain

        result = await self.verifier.check(domain)
        policy = self.lifecycle.policy
        was_exhausted = policy.exhausted(domain.verification_attempts)

        self.lifecycle.apply(
            domain,
            Event.CHECK_PASSED if result.ok else Event.CHECK_FAILED,
            now,
            message=result.message,
        )

        try:
            await self.store.save(domain)
        except (ConcurrentModificationError, DomainNotFoundError) as e:
            logger.info(f"Verification of {domain.hostname} aborted: {e}")
            return None

        if result.ok:
            logger.info(f"Domain verified: {domain.hostname}")
            await safe_notify(self.notifier, NotificationEvent.VERIFICATION_SUCCEEDED, domain)
            self._hand_off(domain)
            return domain

        logger.warning(
            f"Domain verification failed for {domain.hostname} "
            f"(attempt {domain.verification_attempts}, next check {domain.next_check_at.isoformat()}): "
            f"{result.message}"
        )
        if not was_exhausted and policy.exhausted(domain.verification_attempts):
            await safe_notify(self.notifier, NotificationEvent.VERIFICATION_FAILED, domain)
        return domain

    def _hand_off(self, domain: Domain) -> None:
        if self.on_verified is None:
            return
        try:
            self.on_verified(domain.id)
        except Exception as e:
            logger.error(f"Certificate hand-off failed for {domain.hostname}: {e}")

    async def reinitiate(self, domain_id: str, now=None) -> Domain:
        """
        Tenant-initiated restart of verification.

        Moves an ERROR domain (e.g. after failed reconfirmation) back into the
        retry loop with a fresh attempt counter and an immediate check.
        """
        now = now or utcnow()
        domain = await self.store.get_by_id(domain_id)
        if domain is None:
            raise DomainNotFoundError(f"Domain {domain_id} not found")

        if self.lifecycle.can_apply(domain, Event.REINITIATE):
            self.lifecycle.apply(domain, Event.REINITIATE, now)
            await self.store.save(domain)
            logger.info(f"Verification restarted for {domain.hostname}")
        return domain

    async def sweep(self, now=None) -> int:
        """Check every due domain in turn. Returns how many were checked."""
        now = now or utcnow()
        checked = 0
        for domain in await self.due(now):
            try:
                await self.verify(domain.id, now)
                checked += 1
            except Exception as e:
                logger.error(f"Error verifying {domain.hostname}: {e}", exc_info=True)
        return checked
