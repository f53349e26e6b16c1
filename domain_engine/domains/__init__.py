"""Custom domain onboarding: reservation, verification, certificates."""

from .certificates import CertificateEngine
from .dns import DnsResolver
from .models import Domain, LifecycleStatus, OwnerKind, OwnerRef, SslProvider, SslStatus
from .notifications import LoggingNotifier, MultiNotifier, NotificationEvent, WebhookNotifier
from .providers import CertbotProvider, CloudflareSaasProvider, ProviderChain
from .reconfirmation import ReconfirmationEngine
from .reservations import ReservationManager
from .scheduler import DomainScheduler, WorkerPool
from .service import DomainService
from .store import DomainStore
from .verification import DomainVerifier, VerificationEngine

__all__ = [
    "CertbotProvider",
    "CertificateEngine",
    "CloudflareSaasProvider",
    "DnsResolver",
    "Domain",
    "DomainScheduler",
    "DomainService",
    "DomainStore",
    "DomainVerifier",
    "LifecycleStatus",
    "LoggingNotifier",
    "MultiNotifier",
    "NotificationEvent",
    "OwnerKind",
    "OwnerRef",
    "ProviderChain",
    "ReconfirmationEngine",
    "ReservationManager",
    "SslProvider",
    "SslStatus",
    "VerificationEngine",
    "WebhookNotifier",
    "WorkerPool",
]
