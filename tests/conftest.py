"""
Pytest configuration for custom domain engine tests.
"""

import os
import sys
from datetime import datetime, timezone

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Set test environment variables
os.environ["DOMAIN_ENGINE_DEBUG"] = "true"
os.environ["DOMAIN_ENGINE_REDIS_URL"] = ""
os.environ["DOMAIN_ENGINE_SCHEDULER_ENABLED"] = "false"
os.environ["DOMAIN_ENGINE_CNAME_TARGET"] = "proxy.short.link"
os.environ["DOMAIN_ENGINE_PLATFORM_DOMAIN"] = "short.link"

from domain_engine.domains.certificates import CertificateEngine  # noqa: E402
from domain_engine.domains.models import OwnerKind, OwnerRef, SslProvider  # noqa: E402
from domain_engine.domains.notifications import NotificationSink  # noqa: E402
from domain_engine.domains.providers import (  # noqa: E402
    CertificateProvider,
    CertificateState,
    CreateResult,
    ProviderChain,
)
from domain_engine.domains.reconfirmation import ReconfirmationEngine  # noqa: E402
from domain_engine.domains.reservations import ReservationManager  # noqa: E402
from domain_engine.domains.store import DomainStore  # noqa: E402
from domain_engine.domains.verification import DomainVerifier, VerificationEngine  # noqa: E402

CNAME_TARGET = "proxy.short.link"
T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeResolver:
    """CNAME answers keyed by hostname; a ResolverError value is raised."""

    def __init__(self, answers=None):
        self.answers = dict(answers or {})
        self.lookups = []

    async def resolve_cname(self, hostname):
        self.lookups.append(hostname)
        answer = self.answers.get(hostname)
        if isinstance(answer, Exception):
            raise answer
        return answer


class FakeProvider(CertificateProvider):
    """Scripted certificate provider."""

    def __init__(self, kind, accept=True, states=None, handle_prefix="h"):
        self.kind = kind
        self.accept = accept
        self.states = list(states or [])
        self.handle_prefix = handle_prefix
        self.created = []
        self.queried = []
        self.renewed = []
        self.deleted = []

    async def create_hostname(self, hostname):
        self.created.append(hostname)
        if isinstance(self.accept, Exception):
            raise self.accept
        if not self.accept:
            return CreateResult(accepted=False, message="rejected by provider")
        return CreateResult(accepted=True, handle=f"{self.handle_prefix}-{hostname}")

    async def renew_hostname(self, handle, hostname):
        self.renewed.append(handle)
        if isinstance(self.accept, Exception):
            raise self.accept
        if not self.accept:
            return CreateResult(accepted=False, message="renewal rejected by provider")
        return CreateResult(accepted=True, handle=handle)

    async def query_status(self, handle):
        self.queried.append(handle)
        state = self.states.pop(0) if self.states else CertificateState.PENDING
        if isinstance(state, Exception):
            raise state
        return state

    async def delete_hostname(self, handle):
        self.deleted.append(handle)
        return True


class RecordingNotifier(NotificationSink):
    def __init__(self):
        self.events = []

    async def notify(self, event, domain):
        self.events.append((event, domain.hostname))

    def of(self, event):
        return [hostname for e, hostname in self.events if e == event]


@pytest.fixture
def owner():
    return OwnerRef(OwnerKind.USER, "user-1")


@pytest.fixture
def other_owner():
    return OwnerRef(OwnerKind.TEAM, "team-9")


@pytest.fixture
def store():
    """In-memory domain store (no Redis)."""
    return DomainStore(redis_url="")


@pytest.fixture
def resolver():
    return FakeResolver()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def primary():
    return FakeProvider(SslProvider.PRIMARY_SAAS, handle_prefix="cf")


@pytest.fixture
def fallback():
    return FakeProvider(SslProvider.FALLBACK_ACME, states=[CertificateState.ACTIVE], handle_prefix="le")


@pytest.fixture
def chain(primary, fallback):
    return ProviderChain([primary, fallback])


@pytest.fixture
def verifier(resolver):
    return DomainVerifier(resolver)


@pytest.fixture
def reservations(store):
    return ReservationManager(
        store,
        cname_target=CNAME_TARGET,
        platform_domain="short.link",
        max_domains_per_owner=5,
    )


@pytest.fixture
def verification(store, verifier, notifier):
    return VerificationEngine(store, verifier, notifier)


@pytest.fixture
def certificates(store, chain, notifier):
    return CertificateEngine(store, chain, notifier)


@pytest.fixture
def reconfirmation(store, verifier, notifier):
    return ReconfirmationEngine(store, verifier, notifier)

