"""
Tests for certificate provider adapters and notification sinks.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conftest import CNAME_TARGET, RecordingNotifier
from domain_engine.domains.errors import ProviderError
from domain_engine.domains.models import Domain, OwnerKind, OwnerRef, SslProvider
from domain_engine.domains.notifications import (
    LoggingNotifier,
    MultiNotifier,
    NotificationEvent,
    NotificationSink,
    safe_notify,
)
from domain_engine.domains.providers import (
    CertbotProvider,
    CertificateState,
    CloudflareSaasProvider,
    ProviderChain,
)


@pytest.fixture
def cloudflare():
    return CloudflareSaasProvider(api_token="token", zone_id="zone")


class TestCloudflareSaasProvider:
    @pytest.mark.parametrize(
        "status,expected",
        [
            ("active", CertificateState.ACTIVE),
            ("pending_validation", CertificateState.PENDING),
            ("initializing", CertificateState.PENDING),
            (None, CertificateState.PENDING),
            ("validation_timed_out", CertificateState.ERROR),
            ("expired", CertificateState.ERROR),
            ("deleted", CertificateState.ERROR),
        ],
    )
    def test_map_status(self, status, expected):
        assert CloudflareSaasProvider.map_status(status) == expected

    @pytest.mark.asyncio
    async def test_create(self, cloudflare):
        body = {"success": True, "result": {"id": "cf-123", "status": "pending"}}
        with patch.object(cloudflare, "_request", AsyncMock(return_value=(200, body))) as request:
            result = await cloudflare.create_hostname("Links.Example.com.")

        assert result.accepted
        assert result.handle == "cf-123"
        method, path, payload = request.await_args.args
        assert method == "POST"
        assert payload["hostname"] == "links.example.com"
        assert payload["ssl"]["method"] == "http"

    @pytest.mark.asyncio
    async def test_create_rejected(self, cloudflare):
        body = {"success": False, "errors": [{"message": "Duplicate custom hostname"}]}
        with patch.object(cloudflare, "_request", AsyncMock(return_value=(409, body))):
            result = await cloudflare.create_hostname("links.example.com")

        assert not result.accepted
        assert result.message == "Duplicate custom hostname"

    @pytest.mark.asyncio
    async def test_not_configured(self):
        provider = CloudflareSaasProvider(api_token="", zone_id="")
        result = await provider.create_hostname("links.example.com")
        assert not result.accepted

    @pytest.mark.asyncio
    async def test_query_status(self, cloudflare):
        body = {"success": True, "result": {"ssl": {"status": "active"}}}
        with patch.object(cloudflare, "_request", AsyncMock(return_value=(200, body))):
            assert await cloudflare.query_status("cf-123") == CertificateState.ACTIVE

        with patch.object(cloudflare, "_request", AsyncMock(return_value=(404, {}))):
            assert await cloudflare.query_status("cf-123") == CertificateState.ERROR

        with patch.object(cloudflare, "_request", AsyncMock(return_value=(400, {"success": False}))):
            with pytest.raises(ProviderError):
                await cloudflare.query_status("cf-123")

    @pytest.mark.asyncio
    async def test_renew_revalidates_existing_hostname(self, cloudflare):
        duplicate = (409, {"success": False, "errors": [{"message": "Duplicate custom hostname found."}]})
        patched = {"success": True, "result": {"id": "cf-123", "status": "pending"}}

        async def respond(method, path, payload=None):
            return duplicate if method == "POST" else (200, patched)

        with patch.object(cloudflare, "_request", AsyncMock(side_effect=respond)) as request:
            result = await cloudflare.renew_hostname("cf-123", "links.example.com")

        assert result.accepted
        assert result.handle == "cf-123"
        method, path, payload = request.await_args.args
        assert (method, path) == ("PATCH", "/cf-123")
        assert payload["ssl"]["type"] == "dv"

    @pytest.mark.asyncio
    async def test_renew_missing_hostname(self, cloudflare):
        with patch.object(cloudflare, "_request", AsyncMock(return_value=(404, {}))):
            result = await cloudflare.renew_hostname("cf-123", "links.example.com")
        assert not result.accepted

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, cloudflare):
        with patch.object(cloudflare, "_request", AsyncMock(return_value=(404, {}))):
            assert await cloudflare.delete_hostname("cf-123")
        with patch.object(cloudflare, "_request", AsyncMock(return_value=(200, {"success": True}))):
            assert await cloudflare.delete_hostname("cf-123")


class TestCertbotProvider:
    @pytest.mark.asyncio
    async def test_create_runs_webroot_challenge(self, tmp_path):
        provider = CertbotProvider(webroot="/var/www/acme", email="ops@example.com", live_dir=str(tmp_path))
        with patch.object(provider, "_run", AsyncMock(return_value=(0, "ok"))) as run:
            result = await provider.create_hostname("links.example.com")

        assert result.accepted
        assert result.handle == "links.example.com"
        cmd = run.await_args.args[0]
        assert cmd[:3] == ["certbot", "certonly", "--webroot"]
        assert "--email" in cmd and "ops@example.com" in cmd
        assert "--dry-run" not in cmd

    @pytest.mark.asyncio
    async def test_create_failure(self, tmp_path):
        provider = CertbotProvider(live_dir=str(tmp_path))
        with patch.object(provider, "_run", AsyncMock(return_value=(1, "rate limited"))):
            result = await provider.create_hostname("links.example.com")
        assert not result.accepted
        assert "rate limited" in result.message

    @pytest.mark.asyncio
    async def test_renew_reruns_certonly(self, tmp_path):
        provider = CertbotProvider(live_dir=str(tmp_path))
        with patch.object(provider, "_run", AsyncMock(return_value=(0, "ok"))) as run:
            result = await provider.renew_hostname("links.example.com", "links.example.com")

        assert result.accepted
        assert result.handle == "links.example.com"
        assert run.await_args.args[0][:2] == ["certbot", "certonly"]

    @pytest.mark.asyncio
    async def test_missing_binary(self, tmp_path):
        provider = CertbotProvider(certbot_bin="/nonexistent/certbot", live_dir=str(tmp_path))
        with pytest.raises(ProviderError):
            await provider.create_hostname("links.example.com")

    @pytest.mark.asyncio
    async def test_query_status_checks_live_cert(self, tmp_path):
        provider = CertbotProvider(live_dir=str(tmp_path))
        assert await provider.query_status("links.example.com") == CertificateState.ERROR

        cert_dir = tmp_path / "links.example.com"
        cert_dir.mkdir()
        (cert_dir / "fullchain.pem").write_text("cert")
        assert await provider.query_status("links.example.com") == CertificateState.ACTIVE

    @pytest.mark.asyncio
    async def test_delete_absent_is_noop(self, tmp_path):
        provider = CertbotProvider(live_dir=str(tmp_path))
        with patch.object(provider, "_run", AsyncMock()) as run:
            assert await provider.delete_hostname("links.example.com")
        run.assert_not_awaited()


class TestProviderChain:
    def test_ordering(self, cloudflare):
        certbot = CertbotProvider()
        chain = ProviderChain([cloudflare, certbot])

        assert chain.first() is cloudflare
        assert chain.get(SslProvider.FALLBACK_ACME) is certbot
        assert chain.after(SslProvider.PRIMARY_SAAS) == [certbot]
        assert chain.after(SslProvider.FALLBACK_ACME) == []
        assert list(chain) == [cloudflare, certbot]

    def test_empty_chain_rejected(self):
        with pytest.raises(ValueError):
            ProviderChain([])


class TestNotifications:
    def make_domain(self):
        return Domain(
            hostname="links.example.com",
            owner=OwnerRef(OwnerKind.USER, "user-1"),
            cname_target=CNAME_TARGET,
        )

    @pytest.mark.asyncio
    async def test_logging_notifier(self, caplog):
        with caplog.at_level("INFO", logger="domain_engine.audit"):
            await LoggingNotifier().notify(NotificationEvent.SSL_RENEWED, self.make_domain())
        assert "SslRenewed: links.example.com" in caplog.text

    @pytest.mark.asyncio
    async def test_multi_notifier_isolates_failures(self):
        broken = MagicMock(spec=NotificationSink)
        broken.notify = AsyncMock(side_effect=RuntimeError("smtp down"))
        recording = RecordingNotifier()

        await MultiNotifier([broken, recording]).notify(
            NotificationEvent.VERIFICATION_FAILED, self.make_domain()
        )
        assert recording.of(NotificationEvent.VERIFICATION_FAILED) == ["links.example.com"]

    @pytest.mark.asyncio
    async def test_safe_notify_swallows_sink_errors(self):
        broken = MagicMock(spec=NotificationSink)
        broken.notify = AsyncMock(side_effect=asyncio.TimeoutError())
        await safe_notify(broken, NotificationEvent.SSL_RENEWAL_FAILED, self.make_domain())
        broken.notify.assert_awaited_once()
