"""
Annual reconfirmation of verified domains.
"""

import logging
from typing import List, Optional

from .errors import ConcurrentModificationError, DomainNotFoundError
from .models import Domain, LifecycleStatus, utcnow
from .notifications import NotificationEvent, NotificationSink, safe_notify
from .store import DomainStore
from .transitions import DomainLifecycle, Event
from .verification import DomainVerifier

logger = logging.getLogger("domain_engine.domains.reconfirmation")


class ReconfirmationEngine:
    """
    Re-checks the CNAME of VERIFIED domains once their reconfirmation is due.

    A failed reconfirmation moves the domain to ERROR and stays there until
    the tenant restarts verification.
    """

    def __init__(
        self,
        store: DomainStore,
        verifier: DomainVerifier,
        notifier: NotificationSink,
        lifecycle: Optional[DomainLifecycle] = None,
    ):
        self.store = store
        self.verifier = verifier
        self.notifier = notifier
        self.lifecycle = lifecycle or DomainLifecycle()

    async def due(self, now=None) -> List[Domain]:
        return await self.store.find_due_reconfirmation(now or utcnow())

    async def reconfirm(self, domain_id: str, now=None) -> Optional[Domain]:
        now = now or utcnow()
        domain = await self.store.get_by_id(domain_id)
        if domain is None:
            return None
        if (
            domain.status != LifecycleStatus.VERIFIED
            or domain.is_blacklisted
            or not domain.needs_reconfirmation(now)
        ):
            return domain

        result = await self.verifier.check(domain)
        if result.ok:
            self.lifecycle.apply(domain, Event.RECONFIRM_PASSED, now)
        else:
            self.lifecycle.apply(domain, Event.RECONFIRM_FAILED, now, message=result.message)

        try:
            await self.store.save(domain)
        except (ConcurrentModificationError, DomainNotFoundError) as e:
            logger.info(f"Reconfirmation of {domain.hostname} aborted: {e}")
            return None

        if result.ok:
            logger.info(
                f"Domain reconfirmed: {domain.hostname}, next due "
                f"{domain.next_reconfirmation_due.isoformat()}"
            )
        else:
            logger.warning(f"Reconfirmation failed for {domain.hostname}: {result.message}")
            await safe_notify(self.notifier, NotificationEvent.RECONFIRMATION_FAILED, domain)
        return domain

    async def sweep(self, now=None) -> int:
        now = now or utcnow()
        checked = 0
        for domain in await self.due(now):
            try:
                await self.reconfirm(domain.id, now)
                checked += 1
            except Exception as e:
                logger.error(f"Error reconfirming {domain.hostname}: {e}", exc_info=True)
        return checked
