"""
Custom domain data model for the domain engine.
"""

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


class OwnerKind(str, Enum):
    USER = "USER"
    TEAM = "TEAM"


class LifecycleStatus(str, Enum):
    RESERVED = "RESERVED"
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    ERROR = "ERROR"
    SUSPENDED = "SUSPENDED"


class SslStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    ERROR = "ERROR"
    EXPIRED = "EXPIRED"


class SslProvider(str, Enum):
    PRIMARY_SAAS = "PRIMARY_SAAS"
    FALLBACK_ACME = "FALLBACK_ACME"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_hostname(hostname: str) -> str:
    """Lower-case a hostname and strip surrounding whitespace and trailing dots."""
    return hostname.strip().lower().rstrip(".")


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class OwnerRef:
    """Current owner of a domain: a user or a team."""

    kind: OwnerKind
    id: str

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "id": self.id}

    @classmethod
    def from_dict(cls, data: dict) -> "OwnerRef":
        return cls(kind=OwnerKind(data["kind"]), id=data["id"])

    def __str__(self) -> str:
        return f"{self.kind.value}/{self.id}"


@dataclass(frozen=True)
class OwnershipEntry:
    owner: OwnerRef
    at: datetime
    reason: str

    def to_dict(self) -> dict:
        return {"owner": self.owner.to_dict(), "at": self.at.isoformat(), "reason": self.reason}

    @classmethod
    def from_dict(cls, data: dict) -> "OwnershipEntry":
        return cls(
            owner=OwnerRef.from_dict(data["owner"]),
            at=datetime.fromisoformat(data["at"]),
            reason=data.get("reason", ""),
        )


@dataclass(frozen=True)
class ProviderHandle:
    """Opaque certificate-provider identifier, tagged with its provider."""

    provider: SslProvider
    value: str

    def to_dict(self) -> dict:
        return {"provider": self.provider.value, "value": self.value}

    @classmethod
    def from_dict(cls, data: dict) -> "ProviderHandle":
        return cls(provider=SslProvider(data["provider"]), value=data["value"])


@dataclass
class Domain:
    """A tenant's custom hostname and its verification / certificate state."""

    hostname: str
    owner: OwnerRef
    cname_target: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    verification_token: str = field(default_factory=lambda: secrets.token_urlsafe(32))
    ownership_history: List[OwnershipEntry] = field(default_factory=list)

    status: LifecycleStatus = LifecycleStatus.RESERVED
    reserved_until: Optional[datetime] = None
    verification_attempts: int = 0
    last_verification_attempt: Optional[datetime] = None
    next_check_at: Optional[datetime] = None
    verification_error: Optional[str] = None
    verified_at: Optional[datetime] = None
    last_reconfirmation: Optional[datetime] = None
    next_reconfirmation_due: Optional[datetime] = None

    ssl_status: SslStatus = SslStatus.PENDING
    ssl_provider: Optional[SslProvider] = None
    ssl_issued_at: Optional[datetime] = None
    ssl_expires_at: Optional[datetime] = None
    ssl_error: Optional[str] = None
    provider_handle: Optional[ProviderHandle] = None
    ssl_poll_attempts: int = 0
    next_ssl_poll_at: Optional[datetime] = None
    ssl_renewing: bool = False

    is_blacklisted: bool = False
    blacklist_reason: Optional[str] = None

    total_redirects: int = 0
    last_used: Optional[datetime] = None

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    version: int = 0

    def __post_init__(self):
        self.hostname = normalize_hostname(self.hostname)
        if not self.ownership_history:
            self.ownership_history.append(
                OwnershipEntry(owner=self.owner, at=self.created_at, reason="reserved")
            )

    # ── State helpers ────────────────────────────────────────────────

    @property
    def is_verified(self) -> bool:
        return self.status == LifecycleStatus.VERIFIED

    def is_reservation_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return (
            self.status == LifecycleStatus.RESERVED
            and self.reserved_until is not None
            and self.reserved_until < now
        )

    def is_ssl_active(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return (
            self.ssl_status == SslStatus.ACTIVE
            and self.ssl_expires_at is not None
            and self.ssl_expires_at > now
        )

    def needs_reconfirmation(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return (
            self.status == LifecycleStatus.VERIFIED
            and self.next_reconfirmation_due is not None
            and self.next_reconfirmation_due <= now
        )

    def transfer_to(self, new_owner: OwnerRef, reason: str, now: Optional[datetime] = None) -> None:
        """Change owner, appending the new owner to the history."""
        now = now or utcnow()
        self.owner = new_owner
        self.ownership_history.append(OwnershipEntry(owner=new_owner, at=now, reason=reason))
        self.updated_at = now

    def touch(self, now: Optional[datetime] = None) -> None:
        self.updated_at = now or utcnow()

    # ── Serialization ────────────────────────────────────────────────

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "hostname": self.hostname,
            "owner": self.owner.to_dict(),
            "cname_target": self.cname_target,
            "verification_token": self.verification_token,
            "ownership_history": [e.to_dict() for e in self.ownership_history],
            "status": self.status.value,
            "reserved_until": _iso(self.reserved_until),
            "verification_attempts": self.verification_attempts,
            "last_verification_attempt": _iso(self.last_verification_attempt),
            "next_check_at": _iso(self.next_check_at),
            "verification_error": self.verification_error,
            "verified_at": _iso(self.verified_at),
            "last_reconfirmation": _iso(self.last_reconfirmation),
            "next_reconfirmation_due": _iso(self.next_reconfirmation_due),
            "ssl_status": self.ssl_status.value,
            "ssl_provider": self.ssl_provider.value if self.ssl_provider else None,
            "ssl_issued_at": _iso(self.ssl_issued_at),
            "ssl_expires_at": _iso(self.ssl_expires_at),
            "ssl_error": self.ssl_error,
            "provider_handle": self.provider_handle.to_dict() if self.provider_handle else None,
            "ssl_poll_attempts": self.ssl_poll_attempts,
            "next_ssl_poll_at": _iso(self.next_ssl_poll_at),
            "ssl_renewing": self.ssl_renewing,
            "is_blacklisted": self.is_blacklisted,
            "blacklist_reason": self.blacklist_reason,
            "total_redirects": self.total_redirects,
            "last_used": _iso(self.last_used),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Domain":
        """Create from dictionary."""
        handle = data.get("provider_handle")
        return cls(
            id=data["id"],
            hostname=data["hostname"],
            owner=OwnerRef.from_dict(data["owner"]),
            cname_target=data["cname_target"],
            verification_token=data["verification_token"],
            ownership_history=[
                OwnershipEntry.from_dict(e) for e in data.get("ownership_history", [])
            ],
            status=LifecycleStatus(data.get("status", "RESERVED")),
            reserved_until=_dt(data.get("reserved_until")),
            verification_attempts=data.get("verification_attempts", 0),
            last_verification_attempt=_dt(data.get("last_verification_attempt")),
            next_check_at=_dt(data.get("next_check_at")),
            verification_error=data.get("verification_error"),
            verified_at=_dt(data.get("verified_at")),
            last_reconfirmation=_dt(data.get("last_reconfirmation")),
            next_reconfirmation_due=_dt(data.get("next_reconfirmation_due")),
            ssl_status=SslStatus(data.get("ssl_status", "PENDING")),
            ssl_provider=SslProvider(data["ssl_provider"]) if data.get("ssl_provider") else None,
            ssl_issued_at=_dt(data.get("ssl_issued_at")),
            ssl_expires_at=_dt(data.get("ssl_expires_at")),
            ssl_error=data.get("ssl_error"),
            provider_handle=ProviderHandle.from_dict(handle) if handle else None,
            ssl_poll_attempts=data.get("ssl_poll_attempts", 0),
            next_ssl_poll_at=_dt(data.get("next_ssl_poll_at")),
            ssl_renewing=data.get("ssl_renewing", False),
            is_blacklisted=data.get("is_blacklisted", False),
            blacklist_reason=data.get("blacklist_reason"),
            total_redirects=data.get("total_redirects", 0),
            last_used=_dt(data.get("last_used")),
            created_at=_dt(data.get("created_at")) or utcnow(),
            updated_at=_dt(data.get("updated_at")) or utcnow(),
            version=data.get("version", 0),
        )

    def to_api_response(self) -> dict:
        """Convert to API response, hiding token when verified."""
        resp = {
            "id": self.id,
            "hostname": self.hostname,
            "owner": self.owner.to_dict(),
            "status": self.status.value,
            "cname_target": self.cname_target,
            "reserved_until": _iso(self.reserved_until),
            "verification_attempts": self.verification_attempts,
            "next_check_at": _iso(self.next_check_at),
            "verification_error": self.verification_error,
            "verified_at": _iso(self.verified_at),
            "next_reconfirmation_due": _iso(self.next_reconfirmation_due),
            "ssl_status": self.ssl_status.value,
            "ssl_issued_at": _iso(self.ssl_issued_at),
            "ssl_expires_at": _iso(self.ssl_expires_at),
            "ssl_error": self.ssl_error,
            "is_blacklisted": self.is_blacklisted,
            "created_at": self.created_at.isoformat(),
        }
        if self.status in (LifecycleStatus.RESERVED, LifecycleStatus.PENDING):
            resp["verification_token"] = self.verification_token
        return resp
