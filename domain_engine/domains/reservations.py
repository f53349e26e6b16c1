"""
Hostname reservations.

A reservation holds a hostname for a short window while the tenant adds the
CNAME record. Reservations that never get a first failed check recorded
before the window closes are reaped.
"""

import logging
import re
from datetime import timedelta

from .errors import (
    BlacklistedHostnameError,
    ConcurrentModificationError,
    DomainLimitError,
    InvalidHostnameError,
)
from .models import Domain, LifecycleStatus, OwnerRef, normalize_hostname, utcnow
from .store import DomainStore

logger = logging.getLogger("domain_engine.domains.reservations")

# Valid hostname pattern: allows subdomains of any depth
_HOSTNAME_RE = re.compile(
    r"^(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+"
    r"[a-z]{2,}$"
)

_LOOPBACK_NAMES = ("localhost", "localdomain", "local")


class ReservationManager:
    """Creates reservations and reaps the ones that lapsed."""

    def __init__(
        self,
        store: DomainStore,
        cname_target: str,
        platform_domain: str = "",
        ttl: timedelta = timedelta(minutes=15),
        max_domains_per_owner: int = 10,
    ):
        self.store = store
        self.cname_target = normalize_hostname(cname_target)
        self.platform_domain = normalize_hostname(platform_domain) if platform_domain else ""
        self.ttl = ttl
        self.max_domains_per_owner = max_domains_per_owner

    def validate_hostname(self, hostname: str) -> str:
        """Return the normalized hostname or raise InvalidHostnameError."""
        hostname = normalize_hostname(hostname or "")

        if len(hostname) > 253 or not _HOSTNAME_RE.match(hostname):
            raise InvalidHostnameError("Invalid domain format")

        if hostname.rsplit(".", 1)[-1] in _LOOPBACK_NAMES:
            raise InvalidHostnameError("Cannot register local hostnames")

        for reserved in (self.platform_domain, self.cname_target):
            if reserved and (hostname == reserved or hostname.endswith(f".{reserved}")):
                raise InvalidHostnameError(f"Cannot register subdomains of {reserved}")

        return hostname

    async def reserve(self, hostname: str, owner: OwnerRef, now=None) -> Domain:
        """
        Reserve ``hostname`` for ``owner``.

        The first DNS check is due immediately. Raises InvalidHostnameError,
        BlacklistedHostnameError, DomainLimitError or DuplicateHostnameError.
        """
        now = now or utcnow()
        hostname = self.validate_hostname(hostname)

        if await self.store.is_hostname_blacklisted(hostname):
            raise BlacklistedHostnameError(f"Domain {hostname} cannot be registered")

        if self.max_domains_per_owner:
            held = await self.store.list_by_owner(owner)
            if len(held) >= self.max_domains_per_owner:
                raise DomainLimitError(
                    f"Domain limit reached ({self.max_domains_per_owner})"
                )

        domain = Domain(
            hostname=hostname,
            owner=owner,
            cname_target=self.cname_target,
            status=LifecycleStatus.RESERVED,
            reserved_until=now + self.ttl,
            next_check_at=now,
            created_at=now,
            updated_at=now,
        )
        await self.store.create(domain)
        logger.info(f"Reserved {hostname} for {owner} until {domain.reserved_until.isoformat()}")
        return domain

    async def reap_expired(self, now=None) -> int:
        """Delete RESERVED domains whose window has closed. Returns the count."""
        now = now or utcnow()
        removed = 0

        for domain in await self.store.find_expired_reservations(now):
            if not domain.is_reservation_expired(now):
                continue
            try:
                if await self.store.delete(domain, expected_version=domain.version):
                    removed += 1
            except ConcurrentModificationError:
                logger.debug(f"Reservation {domain.hostname} changed, not reaping")

        if removed:
            logger.info(f"Cleaned up {removed} expired reservations")
        return removed
