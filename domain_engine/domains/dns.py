"""
DNS resolver adapter for custom domain verification.
"""

import logging
from typing import List, Optional

import dns.asyncresolver
import dns.exception
import dns.resolver

from .errors import ResolverError
from .models import normalize_hostname

logger = logging.getLogger("domain_engine.domains.dns")


class DnsResolver:
    """Looks up CNAME targets. No side effects, explicit timeouts."""

    def __init__(
        self,
        timeout: float = 5.0,
        lifetime: float = 10.0,
        nameservers: Optional[List[str]] = None,
    ):
        self.timeout = timeout
        self.lifetime = lifetime
        self.nameservers = nameservers or []

    def _get_resolver(self) -> dns.asyncresolver.Resolver:
        resolver = dns.asyncresolver.Resolver()
        resolver.timeout = self.timeout
        resolver.lifetime = self.lifetime
        if self.nameservers:
            resolver.nameservers = self.nameservers
        return resolver

    async def resolve_cname(self, hostname: str) -> Optional[str]:
        """
        Return the CNAME target of ``hostname`` (normalized), or None if the
        name has no CNAME record.

        Raises ResolverError for timeouts and resolver failures, so callers
        can tell "not configured yet" from "could not ask".
        """
        hostname = normalize_hostname(hostname)
        resolver = self._get_resolver()

        try:
            answers = await resolver.resolve(hostname, "CNAME")
        except (dns.resolver.NoAnswer, dns.resolver.NXDOMAIN):
            return None
        except dns.exception.Timeout as e:
            raise ResolverError(f"CNAME lookup for {hostname} timed out") from e
        except dns.exception.DNSException as e:
            raise ResolverError(f"CNAME lookup for {hostname} failed: {e}") from e

        for rdata in answers:
            return normalize_hostname(str(rdata.target))
        return None
