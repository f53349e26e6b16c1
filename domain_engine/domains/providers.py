"""
Certificate provider adapters.

Each provider creates, queries and deletes a hostname + certificate binding
and hands back an opaque handle. Providers are tried in order through a
ProviderChain: the SaaS custom-hostname API first, direct ACME via certbot
as fallback.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, List, Optional, Tuple

import aiohttp

from .errors import ProviderError
from .models import SslProvider, normalize_hostname

logger = logging.getLogger("domain_engine.domains.providers")


class CertificateState(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    ERROR = "error"


@dataclass
class CreateResult:
    accepted: bool
    handle: Optional[str] = None
    message: str = ""


class CertificateProvider:
    """Interface every certificate provider implements."""

    kind: SslProvider

    async def create_hostname(self, hostname: str) -> CreateResult:
        raise NotImplementedError

    async def query_status(self, handle: str) -> CertificateState:
        raise NotImplementedError

    async def renew_hostname(self, handle: str, hostname: str) -> CreateResult:
        """Ask for a fresh certificate on an existing binding. Defaults to re-creating it."""
        return await self.create_hostname(hostname)

    async def delete_hostname(self, handle: str) -> bool:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class CloudflareSaasProvider(CertificateProvider):
    """Cloudflare for SaaS custom hostnames with automatic DV certificates."""

    kind = SslProvider.PRIMARY_SAAS

    ERROR_STATES = {
        "expired",
        "deleted",
        "inactive",
        "deactivating",
        "initializing_timed_out",
        "validation_timed_out",
        "issuance_timed_out",
        "deployment_timed_out",
        "deletion_timed_out",
    }

    SSL_SETTINGS = {
        "method": "http",
        "type": "dv",
        "wildcard": False,
        "settings": {
            "http2": "on",
            "min_tls_version": "1.2",
            "tls_1_3": "on",
        },
    }

    def __init__(
        self,
        api_token: str,
        zone_id: str,
        api_base: str = "https://api.cloudflare.com/client/v4",
        timeout: float = 15.0,
    ):
        self.api_token = api_token
        self.zone_id = zone_id
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def configured(self) -> bool:
        return bool(self.api_token and self.zone_id)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={
                    "Authorization": f"Bearer {self.api_token}",
                    "Content-Type": "application/json",
                }
            )
        return self._session

    async def _request(
        self, method: str, path: str, payload: Optional[dict] = None
    ) -> Tuple[int, dict]:
        """Call the custom hostnames API. Raises ProviderError on transport failures and 5xx."""
        session = await self._get_session()
        url = f"{self.api_base}/zones/{self.zone_id}/custom_hostnames{path}"
        try:
            async with session.request(
                method,
                url,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                try:
                    body = await resp.json(content_type=None)
                except ValueError:
                    body = None
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ProviderError(f"Cloudflare {method} {path or '/'} failed: {e}") from e

        if status >= 500:
            raise ProviderError(f"Cloudflare {method} {path or '/'} returned {status}")
        return status, body or {}

    @staticmethod
    def _first_error(body: dict) -> str:
        errors = body.get("errors") or []
        if errors:
            return errors[0].get("message", "unknown error")
        return "unknown error"

    @classmethod
    def map_status(cls, status: Optional[str]) -> CertificateState:
        if status == "active":
            return CertificateState.ACTIVE
        if status in cls.ERROR_STATES:
            return CertificateState.ERROR
        return CertificateState.PENDING

    async def create_hostname(self, hostname: str) -> CreateResult:
        hostname = normalize_hostname(hostname)
        if not self.configured:
            return CreateResult(accepted=False, message="Cloudflare is not configured")

        payload = {"hostname": hostname, "ssl": self.SSL_SETTINGS}
        status, body = await self._request("POST", "", payload)

        if body.get("success"):
            result = body.get("result") or {}
            logger.info(f"Custom hostname created for {hostname}: {result.get('id')}")
            return CreateResult(accepted=True, handle=result.get("id"), message=result.get("status", ""))

        message = self._first_error(body)
        logger.error(f"Cloudflare rejected {hostname} ({status}): {message}")
        return CreateResult(accepted=False, message=message)

    async def query_status(self, handle: str) -> CertificateState:
        status, body = await self._request("GET", f"/{handle}")
        if status == 404:
            return CertificateState.ERROR
        if not body.get("success"):
            raise ProviderError(f"Cloudflare status query failed: {self._first_error(body)}")

        ssl = (body.get("result") or {}).get("ssl") or {}
        state = self.map_status(ssl.get("status"))
        logger.debug(f"Custom hostname {handle} SSL status: {ssl.get('status')}")
        return state

    async def renew_hostname(self, handle: str, hostname: str) -> CreateResult:
        """
        Re-validate the existing custom hostname.

        Cloudflare renews managed DV certificates on the same custom hostname;
        PATCHing the ssl settings restarts validation there instead of
        creating a duplicate hostname.
        """
        if not self.configured:
            return CreateResult(accepted=False, message="Cloudflare is not configured")

        status, body = await self._request("PATCH", f"/{handle}", {"ssl": self.SSL_SETTINGS})
        if status == 404:
            return CreateResult(accepted=False, message=f"Custom hostname {handle} no longer exists")
        if body.get("success"):
            result = body.get("result") or {}
            logger.info(f"Custom hostname {handle} re-validation started for {hostname}")
            return CreateResult(accepted=True, handle=handle, message=result.get("status", ""))

        message = self._first_error(body)
        logger.error(f"Cloudflare refused renewal of {hostname} ({status}): {message}")
        return CreateResult(accepted=False, message=message)

    async def delete_hostname(self, handle: str) -> bool:
        status, body = await self._request("DELETE", f"/{handle}")
        if status == 404:
            logger.info(f"Custom hostname {handle} already absent")
            return True
        if body.get("success"):
            logger.info(f"Custom hostname {handle} deleted")
            return True
        logger.warning(f"Cloudflare delete failed for {handle}: {self._first_error(body)}")
        return False

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None


class CertbotProvider(CertificateProvider):
    """Provisions and manages certificates directly via certbot HTTP-01."""

    kind = SslProvider.FALLBACK_ACME

    def __init__(
        self,
        webroot: str = "/var/www/acme",
        certbot_bin: str = "certbot",
        email: Optional[str] = None,
        live_dir: str = "/etc/letsencrypt/live",
        dry_run: bool = False,
        timeout: int = 120,
    ):
        self.webroot = webroot
        self.certbot_bin = certbot_bin
        self.email = email
        self.live_dir = live_dir
        self.dry_run = dry_run
        self.timeout = timeout

    async def _run(self, cmd: List[str]) -> Tuple[int, str]:
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise ProviderError(f"Certbot not found at {self.certbot_bin}") from e

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            process.kill()
            raise ProviderError(f"Certbot timed out after {self.timeout}s") from e

        output = stderr.decode().strip() or stdout.decode().strip()
        return process.returncode, output

    def cert_exists(self, name: str) -> bool:
        """Check if a live certificate exists for the name."""
        return os.path.exists(os.path.join(self.live_dir, name, "fullchain.pem"))

    async def create_hostname(self, hostname: str) -> CreateResult:
        hostname = normalize_hostname(hostname)
        cmd = [
            self.certbot_bin,
            "certonly",
            "--webroot",
            "-w", self.webroot,
            "-d", hostname,
            "--cert-name", hostname,
            "--keep-until-expiring",
            "--non-interactive",
            "--agree-tos",
        ]

        if self.email:
            cmd.extend(["--email", self.email])
        else:
            cmd.append("--register-unsafely-without-email")

        if self.dry_run:
            cmd.append("--dry-run")

        logger.info(f"Requesting certificate for {hostname} via certbot")
        returncode, output = await self._run(cmd)

        if returncode == 0:
            logger.info(f"Certbot issued certificate for {hostname}")
            return CreateResult(accepted=True, handle=hostname, message="issued")

        logger.error(f"Certbot failed for {hostname}: {output}")
        return CreateResult(accepted=False, message=f"Certbot failed: {output}")

    async def query_status(self, handle: str) -> CertificateState:
        # certbot finishes issuance before create_hostname returns
        if self.dry_run or self.cert_exists(handle):
            return CertificateState.ACTIVE
        return CertificateState.ERROR

    async def delete_hostname(self, handle: str) -> bool:
        if not self.cert_exists(handle):
            return True

        returncode, output = await self._run(
            [self.certbot_bin, "delete", "--cert-name", handle, "--non-interactive"]
        )
        if returncode == 0:
            logger.info(f"Certificate deleted for {handle}")
            return True

        logger.warning(f"Certbot delete failed for {handle}: {output}")
        return False


class ProviderChain:
    """Certificate providers in priority order."""

    def __init__(self, providers: List[CertificateProvider]):
        if not providers:
            raise ValueError("At least one certificate provider is required")
        self.providers = list(providers)

    def __iter__(self) -> Iterator[CertificateProvider]:
        return iter(self.providers)

    def first(self) -> CertificateProvider:
        return self.providers[0]

    def get(self, kind: Optional[SslProvider]) -> Optional[CertificateProvider]:
        for provider in self.providers:
            if provider.kind == kind:
                return provider
        return None

    def after(self, kind: Optional[SslProvider]) -> List[CertificateProvider]:
        """Providers ranked below ``kind``."""
        for index, provider in enumerate(self.providers):
            if provider.kind == kind:
                return self.providers[index + 1:]
        return []

    async def close(self) -> None:
        for provider in self.providers:
            await provider.close()
