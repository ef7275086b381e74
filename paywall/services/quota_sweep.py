import logging
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from paywall.config import settings
from paywall.services.quota_store import quota_store
from paywall.services.subscription_store import subscription_store

logger = logging.getLogger(__name__)


class QuotaSweep:
    """
    Monthly quota maintenance.

    - reset_if_due(): single account, same check the access gate runs lazily
    - reset_all_due_accounts(): bulk monthly reset for non-paying accounts
    - downgrade_lapsed_past_due(): applies the PAST_DUE grace window on a
      schedule, so a subscription that stops receiving events still drops
      back to the free limit
    """

    async def reset_if_due(self, db: AsyncSession, user_id: UUID, now: Optional[datetime] = None) -> bool:
        now = now or datetime.utcnow()
        did_reset = await quota_store.reset_if_due(db, user_id, now)
        await db.commit()
        return did_reset

    async def reset_all_due_accounts(self, db: AsyncSession, now: Optional[datetime] = None) -> int:
        now = now or datetime.utcnow()
        count = await quota_store.reset_all_due(db, now)
        await db.commit()
        logger.info(f"🔄 [Sweep] monthly reset applied to {count} accounts")
        return count

    async def downgrade_lapsed_past_due(self, db: AsyncSession, now: Optional[datetime] = None) -> int:
        now = now or datetime.utcnow()
        cutoff = now - timedelta(days=settings.past_due_grace_days)
        lapsed = await subscription_store.list_past_due_before(db, cutoff)

        downgraded = 0
        for sub in lapsed:
            account = await quota_store.get_account(db, sub.user_id)
            if account is None or account.monthly_article_limit == settings.free_article_limit:
                continue
            await quota_store.set_limit(db, sub.user_id, settings.free_article_limit)
            downgraded += 1
            logger.info(f"⚠️ [Sweep] {sub.external_subscription_id} past due since {sub.past_due_since.isoformat()}, free limit restored")

        await db.commit()
        return downgraded

    async def run(self, db: AsyncSession, now: Optional[datetime] = None) -> dict:
        """Scheduled entry point: past-due downgrade first, then monthly resets."""
        now = now or datetime.utcnow()
        past_due = await self.downgrade_lapsed_past_due(db, now)
        reset = await self.reset_all_due_accounts(db, now)
        return {"users_updated": reset, "past_due_downgraded": past_due}


quota_sweep = QuotaSweep()
