"""
Custom domain engine server.
"""

import logging
from datetime import timedelta
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.domains import router as domains_router
from .config import Settings, get_settings
from .domains.certificates import CertificateEngine
from .domains.dns import DnsResolver
from .domains.notifications import LoggingNotifier, MultiNotifier, NotificationSink, WebhookNotifier
from .domains.providers import CertbotProvider, CloudflareSaasProvider, ProviderChain
from .domains.reconfirmation import ReconfirmationEngine
from .domains.reservations import ReservationManager
from .domains.scheduler import DomainScheduler, WorkerPool
from .domains.service import DomainService
from .domains.store import DomainStore
from .domains.transitions import CertificateLifecycle, DomainLifecycle, PollPolicy, RetryPolicy
from .domains.verification import DomainVerifier, VerificationEngine

logger = logging.getLogger("domain_engine.main")


def build_providers(settings: Settings) -> ProviderChain:
    """Primary SaaS provider first (when configured), certbot as fallback."""
    providers = []
    if settings.cloudflare_api_token and settings.cloudflare_zone_id:
        providers.append(
            CloudflareSaasProvider(
                api_token=settings.cloudflare_api_token,
                zone_id=settings.cloudflare_zone_id,
                api_base=settings.cloudflare_api_base,
                timeout=settings.cloudflare_timeout,
            )
        )
    providers.append(
        CertbotProvider(
            webroot=settings.acme_webroot,
            certbot_bin=settings.certbot_bin,
            email=settings.acme_email or None,
            live_dir=settings.certbot_live_dir,
            dry_run=settings.certbot_dry_run,
            timeout=settings.certbot_timeout,
        )
    )
    return ProviderChain(providers)


def build_notifier(settings: Settings) -> NotificationSink:
    sinks = [LoggingNotifier()]
    if settings.notification_webhook_url:
        sinks.append(
            WebhookNotifier(settings.notification_webhook_url, timeout=settings.notification_timeout)
        )
    return MultiNotifier(sinks)


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[DomainStore] = None,
    resolver: Optional[DnsResolver] = None,
    providers: Optional[ProviderChain] = None,
    notifier: Optional[NotificationSink] = None,
) -> FastAPI:
    """Build the application and wire the domain components onto ``app.state``."""
    settings = settings or get_settings()

    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))

    app = FastAPI(
        title="Custom Domain Engine",
        description="Custom domain reservation, verification and SSL lifecycle",
        version="0.1.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    store = store or DomainStore(redis_url=settings.redis_url, key_prefix=settings.key_prefix)
    resolver = resolver or DnsResolver(
        timeout=settings.dns_timeout,
        lifetime=settings.dns_lifetime,
        nameservers=settings.dns_nameservers,
    )
    providers = providers or build_providers(settings)
    notifier = notifier or build_notifier(settings)

    lifecycle = DomainLifecycle(
        RetryPolicy(
            base_delay=timedelta(seconds=settings.verification_base_delay_seconds),
            max_attempts=settings.verification_max_attempts,
            ceiling_interval=timedelta(seconds=settings.verification_ceiling_interval_seconds),
        ),
        reconfirmation_interval=timedelta(days=settings.reconfirmation_interval_days),
    )
    ssl_lifecycle = CertificateLifecycle(
        PollPolicy(
            interval=timedelta(seconds=settings.ssl_poll_interval_seconds),
            max_polls=settings.ssl_max_polls,
            pending_recheck=timedelta(seconds=settings.ssl_pending_recheck_seconds),
            validity=timedelta(days=settings.ssl_validity_days),
        )
    )

    verifier = DomainVerifier(resolver)
    reservations = ReservationManager(
        store,
        cname_target=settings.cname_target,
        platform_domain=settings.platform_domain,
        ttl=timedelta(minutes=settings.reservation_ttl_minutes),
        max_domains_per_owner=settings.max_domains_per_owner,
    )
    verification = VerificationEngine(store, verifier, notifier, lifecycle)
    certificates = CertificateEngine(
        store,
        providers,
        notifier,
        ssl_lifecycle,
        renewal_window=timedelta(days=settings.ssl_renewal_window_days),
    )
    reconfirmation = ReconfirmationEngine(store, verifier, notifier, lifecycle)
    scheduler = DomainScheduler(
        reservations,
        verification,
        certificates,
        reconfirmation,
        WorkerPool(store, max_workers=settings.max_workers, lease_ttl=settings.lease_ttl),
        reap_interval=settings.reservation_sweep_interval,
        verification_interval=settings.verification_sweep_interval,
        reconfirmation_interval=settings.reconfirmation_sweep_interval,
        ssl_interval=settings.ssl_sweep_interval,
    )
    verification.on_verified = scheduler.enqueue_provision

    app.state.settings = settings
    app.state.domain_store = store
    app.state.domain_scheduler = scheduler
    app.state.domain_service = DomainService(store, reservations, verification, certificates)

    app.include_router(domains_router)

    @app.on_event("startup")
    async def startup_event():
        if settings.scheduler_enabled:
            scheduler.start()
        logger.info(f"Custom domain engine started (CNAME target {settings.cname_target})")

    @app.on_event("shutdown")
    async def shutdown_event():
        await scheduler.stop()
        await providers.close()
        await notifier.close()
        await store.close()
        logger.info("Custom domain engine stopped")

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {"status": "ok", "scheduler": scheduler.is_running}

    return app


app = create_app()
