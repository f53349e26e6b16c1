"""
Tests for the custom domain engine server.
"""

import pytest
from fastapi.testclient import TestClient

from conftest import CNAME_TARGET, FakeProvider, FakeResolver, RecordingNotifier
from domain_engine.config import Settings
from domain_engine.domains.models import SslProvider
from domain_engine.domains.providers import CertificateState, ProviderChain
from domain_engine.domains.store import DomainStore
from domain_engine.main import build_providers, create_app

USER = {"X-Owner-Type": "user", "X-Owner-Id": "user-1"}
OTHER = {"X-Owner-Type": "team", "X-Owner-Id": "team-9"}


class TestConfig:
    """Test configuration module."""

    def test_settings_loads(self):
        settings = Settings()
        assert settings.host == "0.0.0.0"
        assert settings.port == 8000
        assert settings.cname_target == "proxy.short.link"
        assert settings.verification_max_attempts == 5
        assert settings.ssl_max_polls == 12

    def test_settings_env_prefix(self, monkeypatch):
        monkeypatch.setenv("DOMAIN_ENGINE_LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("DOMAIN_ENGINE_MAX_DOMAINS_PER_OWNER", "3")
        settings = Settings()
        assert settings.log_level == "DEBUG"
        assert settings.max_domains_per_owner == 3

    def test_validate_required(self):
        with pytest.raises(ValueError):
            Settings(cloudflare_api_token="").validate_required()
        assert Settings(cloudflare_api_token="t", cloudflare_zone_id="z").validate_required()

    def test_build_providers(self):
        certbot_only = build_providers(Settings(cloudflare_api_token=""))
        assert [p.kind for p in certbot_only] == [SslProvider.FALLBACK_ACME]

        both = build_providers(Settings(cloudflare_api_token="t", cloudflare_zone_id="z"))
        assert [p.kind for p in both] == [SslProvider.PRIMARY_SAAS, SslProvider.FALLBACK_ACME]


@pytest.fixture
def api_resolver():
    return FakeResolver()


@pytest.fixture
def api_primary():
    return FakeProvider(SslProvider.PRIMARY_SAAS, states=[CertificateState.ACTIVE], handle_prefix="cf")


@pytest.fixture
def client(api_resolver, api_primary):
    settings = Settings(
        redis_url="",
        scheduler_enabled=False,
        cname_target=CNAME_TARGET,
        platform_domain="short.link",
        max_domains_per_owner=2,
    )
    app = create_app(
        settings,
        store=DomainStore(redis_url=""),
        resolver=api_resolver,
        providers=ProviderChain([api_primary]),
        notifier=RecordingNotifier(),
    )
    with TestClient(app) as client:
        yield client


def reserve(client, hostname="links.example.com", headers=USER):
    return client.post("/api/domains", json={"hostname": hostname}, headers=headers)


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "scheduler": False}


class TestDomainRoutes:
    def test_reserve(self, client):
        response = reserve(client, "Links.Example.com")
        assert response.status_code == 200

        data = response.json()
        assert data["hostname"] == "links.example.com"
        assert data["status"] == "RESERVED"
        assert data["owner"] == {"kind": "USER", "id": "user-1"}
        assert data["verification_token"]
        assert data["instructions"]["record_type"] == "CNAME"
        assert data["instructions"]["record_value"] == CNAME_TARGET

    def test_reserve_requires_owner(self, client):
        response = client.post("/api/domains", json={"hostname": "links.example.com"})
        assert response.status_code == 401

    def test_reserve_bad_owner_type(self, client):
        response = reserve(client, headers={"X-Owner-Type": "robot", "X-Owner-Id": "r2"})
        assert response.status_code == 400

    @pytest.mark.parametrize("hostname", ["not a host", "localhost", "foo.short.link", "proxy.short.link"])
    def test_reserve_invalid(self, client, hostname):
        assert reserve(client, hostname).status_code == 400

    def test_reserve_duplicate(self, client):
        assert reserve(client).status_code == 200
        response = reserve(client, headers=OTHER)
        assert response.status_code == 409

    def test_reserve_limit(self, client):
        assert reserve(client, "one.example.com").status_code == 200
        assert reserve(client, "two.example.com").status_code == 200
        assert reserve(client, "three.example.com").status_code == 409

    def test_list(self, client):
        reserve(client, "one.example.com")
        reserve(client, "two.example.com")
        reserve(client, "theirs.example.com", headers=OTHER)

        data = client.get("/api/domains", headers=USER).json()
        assert data["count"] == 2
        assert sorted(d["hostname"] for d in data["domains"]) == ["one.example.com", "two.example.com"]

    def test_get(self, client):
        domain_id = reserve(client).json()["id"]

        assert client.get(f"/api/domains/{domain_id}", headers=USER).json()["id"] == domain_id
        assert client.get(f"/api/domains/{domain_id}", headers=OTHER).status_code == 403
        assert client.get("/api/domains/missing", headers=USER).status_code == 404

    def test_verify_pending(self, client):
        domain_id = reserve(client).json()["id"]

        response = client.post(f"/api/domains/{domain_id}/verify", headers=USER)
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "PENDING"
        assert data["verification_attempts"] == 1
        assert "No CNAME record found" in data["message"]

    def test_verify_success_hides_token(self, client, api_resolver):
        domain_id = reserve(client).json()["id"]
        api_resolver.answers["links.example.com"] = CNAME_TARGET

        data = client.post(f"/api/domains/{domain_id}/verify", headers=USER).json()
        assert data["status"] == "VERIFIED"
        assert data["message"] == "Domain is verified"
        assert "verification_token" not in data

    def test_verify_other_owner(self, client):
        domain_id = reserve(client).json()["id"]
        assert client.post(f"/api/domains/{domain_id}/verify", headers=OTHER).status_code == 403

    def test_transfer(self, client):
        domain_id = reserve(client).json()["id"]

        response = client.post(
            f"/api/domains/{domain_id}/transfer",
            json={"owner_type": "team", "owner_id": "team-9", "reason": "handover"},
            headers=USER,
        )
        assert response.status_code == 200
        assert response.json()["owner"] == {"kind": "TEAM", "id": "team-9"}
        assert client.get(f"/api/domains/{domain_id}", headers=USER).status_code == 403
        assert client.get(f"/api/domains/{domain_id}", headers=OTHER).status_code == 200

    def test_transfer_missing_target(self, client):
        domain_id = reserve(client).json()["id"]
        response = client.post(
            f"/api/domains/{domain_id}/transfer",
            json={"owner_type": "team", "owner_id": " "},
            headers=USER,
        )
        assert response.status_code == 400

    def test_delete(self, client):
        domain_id = reserve(client).json()["id"]

        assert client.delete(f"/api/domains/{domain_id}", headers=OTHER).status_code == 403
        response = client.delete(f"/api/domains/{domain_id}", headers=USER)
        assert response.status_code == 200
        assert response.json() == {"deleted": True, "id": domain_id}
        assert client.get(f"/api/domains/{domain_id}", headers=USER).status_code == 404

        # hostname is free again
        assert reserve(client, headers=OTHER).status_code == 200
