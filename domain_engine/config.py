"""
Configuration management for the custom domain engine.
"""

from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Network
    host: str = "0.0.0.0"
    port: int = 8000

    # Redis (empty string = in-memory store)
    redis_url: str = "redis://localhost:6379"
    key_prefix: str = "domain_engine:"

    # Logging
    log_level: str = "INFO"

    # Debug mode
    debug: bool = False

    # Platform
    cname_target: str = "proxy.short.link"
    platform_domain: str = "short.link"

    # Reservations
    reservation_ttl_minutes: int = 15
    max_domains_per_owner: int = 10

    # Verification retry policy
    verification_base_delay_seconds: int = 60
    verification_max_attempts: int = 5
    verification_ceiling_interval_seconds: int = 3600  # 1 hour
    reconfirmation_interval_days: int = 365

    # DNS
    dns_timeout: float = 5.0  # seconds per nameserver
    dns_lifetime: float = 10.0  # seconds per lookup
    dns_nameservers: List[str] = []

    # SSL
    ssl_poll_interval_seconds: int = 10
    ssl_max_polls: int = 12
    ssl_pending_recheck_seconds: int = 1800  # 30 minutes
    ssl_validity_days: int = 90
    ssl_renewal_window_days: int = 30

    # Cloudflare for SaaS (primary provider)
    cloudflare_api_token: str = ""
    cloudflare_zone_id: str = ""
    cloudflare_api_base: str = "https://api.cloudflare.com/client/v4"
    cloudflare_timeout: float = 15.0

    # Certbot (fallback provider)
    certbot_bin: str = "certbot"
    acme_webroot: str = "/var/www/acme"
    acme_email: str = ""
    certbot_live_dir: str = "/etc/letsencrypt/live"
    certbot_timeout: int = 120
    certbot_dry_run: bool = False

    # Notifications
    notification_webhook_url: str = ""
    notification_timeout: float = 10.0

    # Scheduler
    scheduler_enabled: bool = True
    reservation_sweep_interval: int = 60
    verification_sweep_interval: int = 30
    reconfirmation_sweep_interval: int = 86400  # 24 hours
    ssl_sweep_interval: int = 60
    max_workers: int = 10
    lease_ttl: int = 300

    model_config = {
        "env_prefix": "DOMAIN_ENGINE_",
        "env_file": ".env",
        "extra": "ignore"
    }

    def validate_required(self) -> bool:
        """Validate that required settings are configured."""
        if not self.cname_target:
            raise ValueError("DOMAIN_ENGINE_CNAME_TARGET is required.")
        if not (self.cloudflare_api_token and self.cloudflare_zone_id):
            raise ValueError(
                "DOMAIN_ENGINE_CLOUDFLARE_API_TOKEN and DOMAIN_ENGINE_CLOUDFLARE_ZONE_ID "
                "are not set; certificates will only be issued through certbot."
            )
        return True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    settings = Settings()
    # In production, validate required fields
    if not settings.debug:
        try:
            settings.validate_required()
        except ValueError as e:
            import logging
            logging.warning(f"Configuration warning: {e}")
    return settings
