"""
Domain record store.

Persists Domain documents in Redis with secondary keys for the unique
hostname and verification token, sorted-set indexes for the sweep queries,
and short-lived per-domain leases. Falls back to an in-memory store when
Redis is disabled or unreachable.
"""

import asyncio
import json
import logging
import secrets
import time
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import WatchError

from .errors import ConcurrentModificationError, DomainNotFoundError, DuplicateHostnameError
from .models import Domain, LifecycleStatus, OwnerRef, SslStatus, normalize_hostname

logger = logging.getLogger("domain_engine.domains.store")

INDEXES = ("check", "reservation", "reconfirm", "ssl_expiry", "ssl_poll")


def _ts(value: Optional[datetime]) -> Optional[float]:
    return value.timestamp() if value else None


def index_scores(domain: Domain) -> Dict[str, Optional[float]]:
    """Sort keys for each sweep index; None means "not in this index"."""
    checkable = (
        domain.status in (LifecycleStatus.RESERVED, LifecycleStatus.PENDING)
        and not domain.is_blacklisted
    )
    return {
        "check": _ts(domain.next_check_at) if checkable else None,
        "reservation": (
            _ts(domain.reserved_until) if domain.status == LifecycleStatus.RESERVED else None
        ),
        "reconfirm": (
            _ts(domain.next_reconfirmation_due)
            if domain.status == LifecycleStatus.VERIFIED and not domain.is_blacklisted
            else None
        ),
        "ssl_expiry": (
            _ts(domain.ssl_expires_at) if domain.ssl_status == SslStatus.ACTIVE else None
        ),
        "ssl_poll": _ts(domain.next_ssl_poll_at) if not domain.is_blacklisted else None,
    }


class DomainStore:
    """
    Store for Domain records.

    Uses Redis for persistence with in-memory fallback, mirroring the
    registry patterns used elsewhere. Every ``save`` is a compare-and-set on
    ``Domain.version`` so overlapping sweeps cannot lose updates.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        key_prefix: str = "domain_engine:",
    ):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self._redis: Optional[redis.Redis] = None
        self._use_redis = bool(redis_url)
        # In-memory fallback
        self._memory_store: Dict[str, dict] = {}
        self._hostname_index: Dict[str, str] = {}
        self._token_index: Dict[str, str] = {}
        self._owner_index: Dict[str, set] = {}
        self._blacklist: Dict[str, str] = {}
        self._leases: Dict[str, Tuple[str, float]] = {}
        self._lock = asyncio.Lock()

    async def _get_redis(self) -> Optional[redis.Redis]:
        """Get Redis connection."""
        if not self._use_redis:
            return None

        if self._redis is None:
            try:
                self._redis = redis.from_url(
                    self.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                )
                await self._redis.ping()
                logger.info("Domain store connected to Redis")
            except Exception as e:
                logger.warning(f"Redis unavailable for domain store, using in-memory: {e}")
                self._redis = None
                self._use_redis = False
                return None

        return self._redis

    # ── Keys ─────────────────────────────────────────────────────────

    def _domain_key(self, domain_id: str) -> str:
        return f"{self.key_prefix}domain:{domain_id}"

    def _hostname_key(self, hostname: str) -> str:
        return f"{self.key_prefix}hostname:{hostname}"

    def _token_key(self, token: str) -> str:
        return f"{self.key_prefix}token:{token}"

    def _owner_key(self, owner: OwnerRef) -> str:
        return f"{self.key_prefix}owner:{owner.kind.value}:{owner.id}"

    def _index_key(self, name: str) -> str:
        return f"{self.key_prefix}idx:{name}"

    def _blacklist_key(self, hostname: str) -> str:
        return f"{self.key_prefix}blacklist:{hostname}"

    def _lease_key(self, domain_id: str) -> str:
        return f"{self.key_prefix}lease:{domain_id}"

    # ── Writes ───────────────────────────────────────────────────────

    async def create(self, domain: Domain) -> Domain:
        """
        Insert a new domain.

        The hostname claim is an atomic set-if-absent, so concurrent creates
        for the same hostname have exactly one winner. Raises
        DuplicateHostnameError for the losers.
        """
        r = await self._get_redis()
        if r:
            claimed = await r.set(self._hostname_key(domain.hostname), domain.id, nx=True)
            if not claimed:
                raise DuplicateHostnameError(f"Domain {domain.hostname} is already registered")
            while not await r.set(self._token_key(domain.verification_token), domain.id, nx=True):
                domain.verification_token = secrets.token_urlsafe(32)

            domain.version = 1
            pipe = r.pipeline(transaction=True)
            pipe.set(self._domain_key(domain.id), json.dumps(domain.to_dict()))
            pipe.sadd(self._owner_key(domain.owner), domain.id)
            self._queue_index_updates(pipe, domain)
            try:
                await pipe.execute()
            except Exception:
                # no record was written, give the hostname back
                await r.delete(
                    self._hostname_key(domain.hostname),
                    self._token_key(domain.verification_token),
                )
                raise
        else:
            async with self._lock:
                if domain.hostname in self._hostname_index:
                    raise DuplicateHostnameError(f"Domain {domain.hostname} is already registered")
                while domain.verification_token in self._token_index:
                    domain.verification_token = secrets.token_urlsafe(32)
                domain.version = 1
                self._memory_store[domain.id] = domain.to_dict()
                self._hostname_index[domain.hostname] = domain.id
                self._token_index[domain.verification_token] = domain.id
                self._owner_index.setdefault(self._owner_key(domain.owner), set()).add(domain.id)

        logger.info(f"Created domain: {domain.hostname} ({domain.id}) for {domain.owner}")
        return domain

    async def save(self, domain: Domain) -> Domain:
        """
        Persist ``domain`` if nobody else wrote it since it was read.

        Raises ConcurrentModificationError on a stale version and
        DomainNotFoundError if the record was deleted in the meantime.
        """
        new_version = domain.version + 1
        data = domain.to_dict()
        data["version"] = new_version

        r = await self._get_redis()
        if r:
            key = self._domain_key(domain.id)
            async with r.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        raise DomainNotFoundError(f"Domain {domain.hostname} no longer exists")
                    current = json.loads(raw)
                    self._check_version(domain, current)

                    pipe.multi()
                    pipe.set(key, json.dumps(data))
                    previous_owner = OwnerRef.from_dict(current["owner"])
                    if previous_owner != domain.owner:
                        pipe.srem(self._owner_key(previous_owner), domain.id)
                        pipe.sadd(self._owner_key(domain.owner), domain.id)
                    self._queue_index_updates(pipe, domain)
                    await pipe.execute()
                except WatchError:
                    raise ConcurrentModificationError(
                        f"Domain {domain.hostname} changed during save"
                    )
        else:
            async with self._lock:
                current = self._memory_store.get(domain.id)
                if current is None:
                    raise DomainNotFoundError(f"Domain {domain.hostname} no longer exists")
                self._check_version(domain, current)
                previous_owner = OwnerRef.from_dict(current["owner"])
                if previous_owner != domain.owner:
                    self._owner_index.get(self._owner_key(previous_owner), set()).discard(domain.id)
                    self._owner_index.setdefault(self._owner_key(domain.owner), set()).add(domain.id)
                self._memory_store[domain.id] = data

        domain.version = new_version
        logger.debug(f"Saved domain: {domain.hostname} v{new_version}")
        return domain

    def _check_version(self, domain: Domain, current: dict) -> None:
        if current.get("version") != domain.version:
            raise ConcurrentModificationError(
                f"Domain {domain.hostname} is at version {current.get('version')}, "
                f"write was based on {domain.version}"
            )

    def _queue_index_updates(self, pipe, domain: Domain) -> None:
        for name, score in index_scores(domain).items():
            if score is None:
                pipe.zrem(self._index_key(name), domain.id)
            else:
                pipe.zadd(self._index_key(name), {domain.id: score})

    async def delete(self, domain: Domain, expected_version: Optional[int] = None) -> bool:
        """
        Delete a domain record and its secondary keys.

        With ``expected_version`` the delete only happens if the stored record
        is still at that version (ConcurrentModificationError otherwise).
        """
        r = await self._get_redis()
        if r:
            key = self._domain_key(domain.id)
            async with r.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        return False
                    current = json.loads(raw)
                    if expected_version is not None and current.get("version") != expected_version:
                        raise ConcurrentModificationError(
                            f"Domain {domain.hostname} changed before delete"
                        )
                    pipe.multi()
                    pipe.delete(key)
                    pipe.delete(self._hostname_key(current["hostname"]))
                    pipe.delete(self._token_key(current["verification_token"]))
                    pipe.srem(self._owner_key(OwnerRef.from_dict(current["owner"])), domain.id)
                    for name in INDEXES:
                        pipe.zrem(self._index_key(name), domain.id)
                    await pipe.execute()
                except WatchError:
                    raise ConcurrentModificationError(
                        f"Domain {domain.hostname} changed before delete"
                    )
        else:
            async with self._lock:
                current = self._memory_store.get(domain.id)
                if current is None:
                    return False
                if expected_version is not None and current.get("version") != expected_version:
                    raise ConcurrentModificationError(
                        f"Domain {domain.hostname} changed before delete"
                    )
                del self._memory_store[domain.id]
                self._hostname_index.pop(current["hostname"], None)
                self._token_index.pop(current["verification_token"], None)
                owner_key = self._owner_key(OwnerRef.from_dict(current["owner"]))
                self._owner_index.get(owner_key, set()).discard(domain.id)

        logger.info(f"Deleted domain: {domain.hostname}")
        return True

    # ── Reads ────────────────────────────────────────────────────────

    async def get_by_id(self, domain_id: str) -> Optional[Domain]:
        r = await self._get_redis()
        if r:
            data = await r.get(self._domain_key(domain_id))
            if not data:
                return None
            info = json.loads(data)
        else:
            info = self._memory_store.get(domain_id)
            if not info:
                return None
        return Domain.from_dict(info)

    async def get(self, hostname: str) -> Optional[Domain]:
        """Get domain by hostname."""
        hostname = normalize_hostname(hostname)
        r = await self._get_redis()
        if r:
            domain_id = await r.get(self._hostname_key(hostname))
        else:
            domain_id = self._hostname_index.get(hostname)
        return await self.get_by_id(domain_id) if domain_id else None

    async def get_by_token(self, token: str) -> Optional[Domain]:
        r = await self._get_redis()
        if r:
            domain_id = await r.get(self._token_key(token))
        else:
            domain_id = self._token_index.get(token)
        return await self.get_by_id(domain_id) if domain_id else None

    async def list_by_owner(self, owner: OwnerRef) -> List[Domain]:
        """List all domains held by an owner."""
        r = await self._get_redis()
        if r:
            members = await r.smembers(self._owner_key(owner))
        else:
            members = set(self._owner_index.get(self._owner_key(owner), set()))
        return await self._load_many(sorted(members))

    async def _load_many(self, ids: Iterable[str]) -> List[Domain]:
        domains: List[Domain] = []
        for domain_id in ids:
            entry = await self.get_by_id(domain_id)
            if entry:
                domains.append(entry)
        return domains

    async def _find(self, index: str, bound: datetime, inclusive: bool = True) -> List[Domain]:
        score = bound.timestamp()
        r = await self._get_redis()
        if r:
            max_score = score if inclusive else f"({score}"
            ids = await r.zrangebyscore(self._index_key(index), "-inf", max_score)
            return await self._load_many(ids)

        matches = []
        for info in list(self._memory_store.values()):
            domain = Domain.from_dict(info)
            value = index_scores(domain)[index]
            if value is None:
                continue
            if value < score or (inclusive and value == score):
                matches.append((value, domain))
        matches.sort(key=lambda m: m[0])
        return [domain for _, domain in matches]

    async def find_due(
        self, statuses: Iterable[LifecycleStatus], before: datetime
    ) -> List[Domain]:
        """Domains in ``statuses`` whose next verification check is due by ``before``."""
        wanted = set(statuses)
        return [d for d in await self._find("check", before) if d.status in wanted]

    async def find_expired_reservations(self, now: datetime) -> List[Domain]:
        return await self._find("reservation", now, inclusive=False)

    async def find_due_reconfirmation(self, now: datetime) -> List[Domain]:
        return await self._find("reconfirm", now)

    async def find_expiring_ssl(self, threshold: datetime) -> List[Domain]:
        return await self._find("ssl_expiry", threshold, inclusive=False)

    async def find_due_ssl_polls(self, now: datetime) -> List[Domain]:
        return await self._find("ssl_poll", now)

    # ── Blacklist ────────────────────────────────────────────────────

    async def blacklist_hostname(self, hostname: str, reason: str) -> None:
        hostname = normalize_hostname(hostname)
        r = await self._get_redis()
        if r:
            await r.set(self._blacklist_key(hostname), reason)
        else:
            self._blacklist[hostname] = reason
        logger.warning(f"Blacklisted hostname {hostname}: {reason}")

    async def is_hostname_blacklisted(self, hostname: str) -> bool:
        hostname = normalize_hostname(hostname)
        r = await self._get_redis()
        if r:
            return await r.exists(self._blacklist_key(hostname)) > 0
        return hostname in self._blacklist

    # ── Leases ───────────────────────────────────────────────────────

    async def acquire_lease(self, domain_id: str, holder: str, ttl: int) -> bool:
        """Claim exclusive work on a domain for ``ttl`` seconds."""
        r = await self._get_redis()
        if r:
            return bool(await r.set(self._lease_key(domain_id), holder, nx=True, ex=ttl))

        async with self._lock:
            current = self._leases.get(domain_id)
            if current and current[1] > time.monotonic():
                return False
            self._leases[domain_id] = (holder, time.monotonic() + ttl)
            return True

    async def release_lease(self, domain_id: str, holder: str) -> None:
        r = await self._get_redis()
        if r:
            key = self._lease_key(domain_id)
            if await r.get(key) == holder:
                await r.delete(key)
            return

        async with self._lock:
            current = self._leases.get(domain_id)
            if current and current[0] == holder:
                del self._leases[domain_id]

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis:
            await self._redis.close()
            self._redis = None
            logger.info("Domain store Redis connection closed")
