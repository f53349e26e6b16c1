"""
SSL certificate lifecycle for verified custom domains.

Issuance and renewal are resumable: every step does at most one provider call,
writes its polling state onto the domain and returns. The SSL sweep picks the
domain up again once ``next_ssl_poll_at`` has passed.
"""

import logging
from datetime import timedelta
from typing import Iterable, List, Optional

from .errors import ConcurrentModificationError, DomainNotFoundError, ProviderError
from .models import Domain, LifecycleStatus, ProviderHandle, SslStatus, utcnow
from .notifications import NotificationEvent, NotificationSink, safe_notify
from .providers import CertificateProvider, CertificateState, CreateResult, ProviderChain
from .store import DomainStore
from .transitions import CertificateLifecycle, SslEvent

logger = logging.getLogger("domain_engine.domains.certificates")


class CertificateEngine:
    """Provisions, polls, renews and expires certificates through a ProviderChain."""

    def __init__(
        self,
        store: DomainStore,
        chain: ProviderChain,
        notifier: NotificationSink,
        lifecycle: Optional[CertificateLifecycle] = None,
        renewal_window: timedelta = timedelta(days=30),
    ):
        self.store = store
        self.chain = chain
        self.notifier = notifier
        self.lifecycle = lifecycle or CertificateLifecycle()
        self.renewal_window = renewal_window

    async def _save(self, domain: Domain, action: str) -> bool:
        try:
            await self.store.save(domain)
            return True
        except (ConcurrentModificationError, DomainNotFoundError) as e:
            logger.info(f"SSL {action} for {domain.hostname} aborted: {e}")
            return False

    async def _create(self, provider: CertificateProvider, hostname: str) -> CreateResult:
        try:
            return await provider.create_hostname(hostname)
        except ProviderError as e:
            logger.warning(f"{provider.kind.value} unavailable for {hostname}: {e}")
            return CreateResult(accepted=False, message=str(e))

    async def _renew(self, provider: CertificateProvider, handle: str, hostname: str) -> CreateResult:
        try:
            return await provider.renew_hostname(handle, hostname)
        except ProviderError as e:
            logger.warning(f"{provider.kind.value} unavailable to renew {hostname}: {e}")
            return CreateResult(accepted=False, message=str(e))

    async def _request(
        self, domain: Domain, providers: Iterable[CertificateProvider], now
    ) -> bool:
        """
        Ask each provider in turn to create the hostname binding.

        The first acceptance moves the certificate to PENDING with polling
        scheduled. When nobody accepts, the certificate goes to ERROR.
        """
        errors: List[str] = []
        for provider in providers:
            result = await self._create(provider, domain.hostname)
            if result.accepted and result.handle:
                self.lifecycle.apply(
                    domain,
                    SslEvent.REQUESTED,
                    now,
                    handle=ProviderHandle(provider.kind, result.handle),
                )
                logger.info(f"SSL requested for {domain.hostname} via {provider.kind.value}")
                return True
            errors.append(f"{provider.kind.value}: {result.message or 'rejected'}")

        self.lifecycle.apply(
            domain,
            SslEvent.FAILED,
            now,
            message=f"Failed to provision SSL certificate ({'; '.join(errors) or 'no providers'})",
        )
        logger.error(f"SSL provisioning failed for {domain.hostname}: {domain.ssl_error}")
        return False

    async def _release(self, handle: ProviderHandle) -> bool:
        provider = self.chain.get(handle.provider)
        if provider is None:
            logger.warning(f"No {handle.provider.value} provider configured to release {handle.value}")
            return False
        try:
            return await provider.delete_hostname(handle.value)
        except ProviderError as e:
            logger.warning(f"Could not release {handle.value} at {handle.provider.value}: {e}")
            return False

    # ── Issuance ─────────────────────────────────────────────────────

    async def provision(self, domain_id: str, now=None) -> Optional[Domain]:
        """Start issuance for a freshly verified domain."""
        now = now or utcnow()
        domain = await self.store.get_by_id(domain_id)
        if domain is None:
            return None
        if domain.status != LifecycleStatus.VERIFIED or domain.is_blacklisted:
            logger.debug(f"Not provisioning SSL for {domain.hostname} ({domain.status.value})")
            return domain
        if domain.ssl_status == SslStatus.ACTIVE:
            return domain
        if domain.ssl_status == SslStatus.PENDING and domain.provider_handle is not None:
            # already issuing, the poll loop owns it
            return domain

        await self._request(domain, self.chain, now)
        await self._save(domain, "provisioning")
        return domain

    async def _provision_unclaimed(self, domain: Domain, now) -> Optional[Domain]:
        """A due poll with no provider handle: the verify hand-off never ran."""
        if domain.status == LifecycleStatus.VERIFIED and domain.ssl_status == SslStatus.PENDING:
            logger.info(f"SSL for {domain.hostname} was never requested, provisioning now")
            await self._request(domain, self.chain, now)
        else:
            domain.next_ssl_poll_at = None
        if not await self._save(domain, "provisioning"):
            return None
        return domain

    async def poll(self, domain_id: str, now=None) -> Optional[Domain]:
        """Query the issuing provider once and advance the certificate state."""
        now = now or utcnow()
        domain = await self.store.get_by_id(domain_id)
        if domain is None:
            return None
        handle = domain.provider_handle
        if domain.is_blacklisted or domain.next_ssl_poll_at is None:
            return domain
        if handle is None:
            return await self._provision_unclaimed(domain, now)
        renewing = domain.ssl_status == SslStatus.ACTIVE and domain.ssl_renewing
        if domain.ssl_status != SslStatus.PENDING and not renewing:
            return domain

        provider = self.chain.get(handle.provider)
        if provider is None:
            state = CertificateState.ERROR
        else:
            try:
                state = await provider.query_status(handle.value)
            except ProviderError as e:
                logger.warning(f"SSL status query failed for {domain.hostname}: {e}")
                state = CertificateState.PENDING

        event = None
        if state == CertificateState.ACTIVE:
            event = SslEvent.RENEWED if renewing else SslEvent.ISSUED
            self.lifecycle.apply(domain, event, now)
            logger.info(f"SSL active for {domain.hostname} until {domain.ssl_expires_at.isoformat()}")
        elif state == CertificateState.ERROR and renewing:
            event = SslEvent.RENEWAL_FAILED
            self.lifecycle.apply(
                domain, event, now, message=f"SSL renewal failed at {handle.provider.value}"
            )
            logger.warning(f"SSL renewal failed for {domain.hostname}, keeping current certificate")
        elif state == CertificateState.ERROR:
            logger.warning(f"{handle.provider.value} reported SSL failure for {domain.hostname}")
            await self._release(handle)
            await self._request(domain, self.chain.after(handle.provider), now)
        else:
            self.lifecycle.apply(domain, SslEvent.POLL_PENDING, now)
            if domain.ssl_poll_attempts == 0:
                logger.warning(f"SSL for {domain.hostname} still pending, rechecking later")

        if not await self._save(domain, "poll"):
            return None

        if event == SslEvent.RENEWED:
            await safe_notify(self.notifier, NotificationEvent.SSL_RENEWED, domain)
        elif event == SslEvent.RENEWAL_FAILED:
            await safe_notify(self.notifier, NotificationEvent.SSL_RENEWAL_FAILED, domain)
        return domain

    # ── Renewal and expiry ───────────────────────────────────────────

    async def renew(self, domain_id: str, now=None) -> Optional[Domain]:
        """
        Re-request an ACTIVE certificate that expires within the renewal window.

        The current certificate stays ACTIVE throughout; a refused renewal only
        records ``ssl_error``.
        """
        now = now or utcnow()
        domain = await self.store.get_by_id(domain_id)
        if domain is None:
            return None
        if (
            domain.is_blacklisted
            or domain.status != LifecycleStatus.VERIFIED
            or domain.ssl_status != SslStatus.ACTIVE
            or domain.ssl_renewing
            or domain.ssl_expires_at is None
            or domain.ssl_expires_at <= now
            or domain.ssl_expires_at >= now + self.renewal_window
        ):
            return domain

        provider = self.chain.get(domain.ssl_provider)
        if provider is not None and domain.provider_handle is not None:
            result = await self._renew(provider, domain.provider_handle.value, domain.hostname)
        else:
            provider = self.chain.first()
            result = await self._create(provider, domain.hostname)

        if result.accepted:
            handle = ProviderHandle(provider.kind, result.handle) if result.handle else None
            self.lifecycle.apply(domain, SslEvent.RENEWAL_REQUESTED, now, handle=handle)
            logger.info(f"SSL renewal requested for {domain.hostname} via {provider.kind.value}")
            await self._save(domain, "renewal")
            return domain

        self.lifecycle.apply(
            domain,
            SslEvent.RENEWAL_FAILED,
            now,
            message=f"SSL renewal failed: {result.message or 'rejected'}",
        )
        logger.warning(f"SSL renewal refused for {domain.hostname}: {result.message}")
        if await self._save(domain, "renewal"):
            await safe_notify(self.notifier, NotificationEvent.SSL_RENEWAL_FAILED, domain)
        return domain

    async def expire_lapsed(self, now=None) -> int:
        """Mark ACTIVE certificates past their expiry as EXPIRED. Returns the count."""
        now = now or utcnow()
        expired = 0
        for domain in await self.store.find_expiring_ssl(now + self.renewal_window):
            if domain.is_blacklisted or domain.ssl_expires_at > now:
                continue
            self.lifecycle.apply(domain, SslEvent.LAPSED, now)
            if await self._save(domain, "expiry"):
                logger.warning(f"SSL certificate for {domain.hostname} expired")
                expired += 1
        return expired

    async def deprovision(self, domain: Domain) -> bool:
        """Remove the provider-side binding. True when nothing is left behind."""
        if domain.provider_handle is None:
            return True
        released = await self._release(domain.provider_handle)
        if released:
            logger.info(f"SSL binding removed for {domain.hostname}")
        return released

    # ── Sweeps ───────────────────────────────────────────────────────

    async def due_polls(self, now=None) -> List[Domain]:
        return await self.store.find_due_ssl_polls(now or utcnow())

    async def due_renewals(self, now=None) -> List[Domain]:
        now = now or utcnow()
        return [
            d
            for d in await self.store.find_expiring_ssl(now + self.renewal_window)
            if d.ssl_expires_at > now
            and d.status == LifecycleStatus.VERIFIED
            and not d.ssl_renewing
            and not d.is_blacklisted
        ]

    async def sweep(self, now=None) -> None:
        """Run one SSL pass in-line: due polls, lapsed certificates, renewals."""
        now = now or utcnow()
        for domain in await self.due_polls(now):
            try:
                await self.poll(domain.id, now)
            except Exception as e:
                logger.error(f"Error polling SSL for {domain.hostname}: {e}", exc_info=True)
        await self.expire_lapsed(now)
        for domain in await self.due_renewals(now):
            try:
                await self.renew(domain.id, now)
            except Exception as e:
                logger.error(f"Error renewing SSL for {domain.hostname}: {e}", exc_info=True)
