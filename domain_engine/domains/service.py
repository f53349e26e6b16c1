"""
Tenant- and operator-facing operations on custom domains.
"""

import logging
from typing import List

from .certificates import CertificateEngine
from .errors import (
    DomainLimitError,
    DomainNotFoundError,
    InvalidTransitionError,
    OwnershipError,
)
from .models import Domain, LifecycleStatus, OwnerRef, SslStatus, utcnow
from .reservations import ReservationManager
from .store import DomainStore
from .transitions import Event
from .verification import DomainVerifier, VerificationEngine

logger = logging.getLogger("domain_engine.domains.service")


class DomainService:
    """Ties the engines together for the HTTP surface."""

    def __init__(
        self,
        store: DomainStore,
        reservations: ReservationManager,
        verification: VerificationEngine,
        certificates: CertificateEngine,
    ):
        self.store = store
        self.reservations = reservations
        self.verification = verification
        self.certificates = certificates

    @property
    def verifier(self) -> DomainVerifier:
        return self.verification.verifier

    async def reserve(self, hostname: str, owner: OwnerRef, now=None) -> Domain:
        return await self.reservations.reserve(hostname, owner, now)

    async def list(self, owner: OwnerRef) -> List[Domain]:
        return await self.store.list_by_owner(owner)

    async def get_owned(self, domain_id: str, owner: OwnerRef) -> Domain:
        domain = await self.store.get_by_id(domain_id)
        if domain is None:
            raise DomainNotFoundError("Domain not found")
        if domain.owner != owner:
            raise OwnershipError("Not your domain")
        return domain

    async def _reload(self, domain: Domain) -> Domain:
        latest = await self.store.get_by_id(domain.id)
        if latest is None:
            raise DomainNotFoundError("Domain not found")
        return latest

    async def status(self, domain_id: str, owner: OwnerRef, now=None) -> Domain:
        """Current state; a certificate whose next poll is due gets polled now."""
        now = now or utcnow()
        domain = await self.get_owned(domain_id, owner)
        if (
            domain.status == LifecycleStatus.VERIFIED
            and domain.ssl_status == SslStatus.PENDING
            and domain.provider_handle is not None
            and domain.next_ssl_poll_at is not None
            and domain.next_ssl_poll_at <= now
        ):
            await self.certificates.poll(domain.id, now)
            domain = await self._reload(domain)
        return domain

    async def request_verification(self, domain_id: str, owner: OwnerRef, now=None) -> Domain:
        """
        Tenant-triggered check.

        ERROR domains restart verification first. A verified domain whose
        certificate failed, expired or was never requested gets a fresh
        provisioning attempt.
        """
        now = now or utcnow()
        domain = await self.get_owned(domain_id, owner)
        if domain.is_blacklisted:
            raise InvalidTransitionError("Domain is blacklisted")
        if domain.status == LifecycleStatus.SUSPENDED:
            raise InvalidTransitionError("Domain is suspended")

        if domain.status == LifecycleStatus.ERROR:
            domain = await self.verification.reinitiate(domain.id, now)

        if domain.status in VerificationEngine.CHECKABLE:
            await self.verification.verify(domain.id, now)
        elif domain.ssl_status in (SslStatus.ERROR, SslStatus.EXPIRED) or (
            domain.ssl_status == SslStatus.PENDING and domain.provider_handle is None
        ):
            await self.certificates.provision(domain.id, now)

        return await self._reload(domain)

    async def transfer(
        self,
        domain_id: str,
        owner: OwnerRef,
        new_owner: OwnerRef,
        reason: str = "transfer",
        now=None,
    ) -> Domain:
        domain = await self.get_owned(domain_id, owner)
        if domain.is_blacklisted:
            raise InvalidTransitionError("Domain is blacklisted")
        if new_owner == owner:
            return domain

        limit = self.reservations.max_domains_per_owner
        if limit and len(await self.store.list_by_owner(new_owner)) >= limit:
            raise DomainLimitError(f"Domain limit reached ({limit})")

        domain.transfer_to(new_owner, reason, now)
        await self.store.save(domain)
        logger.info(f"Transferred {domain.hostname} from {owner} to {new_owner}: {reason}")
        return domain

    async def blacklist(self, domain_id: str, reason: str, now=None) -> Domain:
        """Suspend a domain and block its hostname from future reservations."""
        now = now or utcnow()
        domain = await self.store.get_by_id(domain_id)
        if domain is None:
            raise DomainNotFoundError("Domain not found")

        lifecycle = self.verification.lifecycle
        if lifecycle.can_apply(domain, Event.SUSPEND):
            lifecycle.apply(domain, Event.SUSPEND, now, message=f"blacklisted: {reason}")
        domain.is_blacklisted = True
        domain.blacklist_reason = reason
        domain.next_ssl_poll_at = None
        domain.touch(now)

        await self.store.save(domain)
        await self.store.blacklist_hostname(domain.hostname, reason)
        return domain

    async def remove(self, domain_id: str, owner: OwnerRef) -> bool:
        """Release the certificate binding, then delete the record."""
        domain = await self.get_owned(domain_id, owner)
        if not await self.certificates.deprovision(domain):
            logger.warning(f"Certificate for {domain.hostname} not released, deleting record anyway")
        return await self.store.delete(domain)
