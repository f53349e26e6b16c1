"""
Tests for hostname reservations.
"""

import asyncio
from datetime import timedelta

import pytest

from conftest import CNAME_TARGET, T0
from domain_engine.domains.errors import (
    BlacklistedHostnameError,
    DomainLimitError,
    DuplicateHostnameError,
    InvalidHostnameError,
)
from domain_engine.domains.models import LifecycleStatus, OwnerKind, OwnerRef


class TestHostnameValidation:
    @pytest.mark.parametrize(
        "hostname",
        [
            "not a domain",
            "nodot",
            "-bad.example.com",
            "example.123",
            "",
            "localhost",
            "app.localhost",
            "printer.local",
            "short.link",
            "tenant.short.link",
            "proxy.short.link",
            "127.0.0.1",
        ],
    )
    def test_rejected(self, reservations, hostname):
        with pytest.raises(InvalidHostnameError):
            reservations.validate_hostname(hostname)

    def test_normalized(self, reservations):
        assert reservations.validate_hostname(" Links.TheirCompany.com. ") == "links.theircompany.com"


class TestReservationManager:
    @pytest.mark.asyncio
    async def test_reserve(self, reservations, owner):
        domain = await reservations.reserve("Links.Example.com", owner, now=T0)

        assert domain.hostname == "links.example.com"
        assert domain.status == LifecycleStatus.RESERVED
        assert domain.reserved_until == T0 + timedelta(minutes=15)
        assert domain.next_check_at == T0
        assert domain.cname_target == CNAME_TARGET
        assert domain.owner == owner
        assert domain.ownership_history[0].reason == "reserved"

    @pytest.mark.asyncio
    async def test_duplicate(self, reservations, owner, other_owner):
        await reservations.reserve("links.example.com", owner, now=T0)
        with pytest.raises(DuplicateHostnameError):
            await reservations.reserve("LINKS.example.com.", other_owner, now=T0)

    @pytest.mark.asyncio
    async def test_concurrent_reserves_single_winner(self, reservations):
        owners = [OwnerRef(OwnerKind.USER, f"user-{i}") for i in range(8)]
        results = await asyncio.gather(
            *(reservations.reserve("race.example.com", o, now=T0) for o in owners),
            return_exceptions=True,
        )
        winners = [r for r in results if not isinstance(r, Exception)]
        assert len(winners) == 1
        assert all(
            isinstance(r, DuplicateHostnameError) for r in results if isinstance(r, Exception)
        )

    @pytest.mark.asyncio
    async def test_blacklisted(self, reservations, store, owner):
        await store.blacklist_hostname("evil.example.com", "phishing")
        with pytest.raises(BlacklistedHostnameError):
            await reservations.reserve("evil.example.com", owner, now=T0)

    @pytest.mark.asyncio
    async def test_domain_limit(self, reservations, owner, other_owner):
        for i in range(5):
            await reservations.reserve(f"d{i}.example.com", owner, now=T0)
        with pytest.raises(DomainLimitError):
            await reservations.reserve("d5.example.com", owner, now=T0)
        await reservations.reserve("d5.example.com", other_owner, now=T0)


class TestReaper:
    @pytest.mark.asyncio
    async def test_reaps_only_lapsed_reservations(self, reservations, store, owner):
        lapsed = await reservations.reserve("lapsed.example.com", owner, now=T0)
        fresh = await reservations.reserve("fresh.example.com", owner, now=T0 + timedelta(minutes=10))

        removed = await reservations.reap_expired(now=T0 + timedelta(minutes=16))

        assert removed == 1
        assert await store.get_by_id(lapsed.id) is None
        assert await store.get_by_id(fresh.id) is not None
        # hostname is free again
        await reservations.reserve("lapsed.example.com", owner, now=T0 + timedelta(minutes=17))

    @pytest.mark.asyncio
    async def test_boundary_not_reaped(self, reservations, owner):
        await reservations.reserve("edge.example.com", owner, now=T0)
        assert await reservations.reap_expired(now=T0 + timedelta(minutes=15)) == 0

    @pytest.mark.asyncio
    async def test_pending_never_reaped(self, reservations, store, verification, owner):
        domain = await reservations.reserve("pending.example.com", owner, now=T0)
        await verification.verify(domain.id, now=T0)

        assert await reservations.reap_expired(now=T0 + timedelta(days=3)) == 0
        assert (await store.get_by_id(domain.id)).status == LifecycleStatus.PENDING
