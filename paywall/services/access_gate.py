import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from paywall.config import settings
from paywall.errors import ArticleLimitReachedError, QuotaWriteError
from paywall.services.quota_store import quota_store
from paywall.services.subscription_store import grace_expired, has_paid_access, subscription_store

logger = logging.getLogger(__name__)


class AccessDecision(BaseModel):
    can_access: bool
    paid: bool = False
    charged: bool = False
    articles_read_this_month: Optional[int] = None
    monthly_article_limit: Optional[int] = None


class AccessGate:
    """
    Per-request decision on whether a user may read a post.

    Rules, in order:
    - no user -> deny
    - paid access (ACTIVE, or CANCELED inside the paid period) -> allow, no quota effects
    - first check of a new month -> reset counter, allow
    - post already in the user's ledger -> allow, no charge
    - otherwise allow while articles_read_this_month < monthly_article_limit

    decide() only writes the lazy monthly reset (and lapsed-limit restore);
    the quota charge happens in record_access(), called by the render path.
    """

    async def decide(
        self,
        db: AsyncSession,
        user_id: Optional[UUID],
        post_id: str,
        now: Optional[datetime] = None,
    ) -> AccessDecision:
        if user_id is None:
            return AccessDecision(can_access=False)

        now = now or datetime.utcnow()

        sub = await subscription_store.get_by_user(db, user_id)
        if has_paid_access(sub, now):
            return AccessDecision(can_access=True, paid=True)

        account = await quota_store.ensure_account(db, user_id)
        changed = False

        # Cancelled and past the paid period: fall back to the free limit
        if grace_expired(sub, now) and account.monthly_article_limit != settings.free_article_limit:
            await quota_store.set_limit(db, user_id, settings.free_article_limit)
            logger.info(f"[Access] grace period over, free limit restored user={user_id}")
            changed = True

        if await quota_store.reset_if_due(db, user_id, now):
            await db.commit()
            account = await quota_store.get_account(db, user_id)
            return AccessDecision(
                can_access=True,
                articles_read_this_month=account.articles_read_this_month,
                monthly_article_limit=account.monthly_article_limit,
            )

        if changed:
            await db.commit()
        account = await quota_store.get_account(db, user_id)

        if await quota_store.has_entry(db, user_id, post_id):
            return AccessDecision(
                can_access=True,
                articles_read_this_month=account.articles_read_this_month,
                monthly_article_limit=account.monthly_article_limit,
            )

        allowed = account.articles_read_this_month < account.monthly_article_limit
        if not allowed:
            logger.info(
                f"🔒 [Access] limit reached user={user_id} post={post_id} "
                f"({account.articles_read_this_month}/{account.monthly_article_limit})"
            )
        return AccessDecision(
            can_access=allowed,
            articles_read_this_month=account.articles_read_this_month,
            monthly_article_limit=account.monthly_article_limit,
        )

    async def can_access(
        self,
        db: AsyncSession,
        user_id: Optional[UUID],
        post_id: str,
        now: Optional[datetime] = None,
    ) -> bool:
        decision = await self.decide(db, user_id, post_id, now)
        return decision.can_access

    async def record_access(
        self,
        db: AsyncSession,
        user_id: UUID,
        post_id: str,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Commit the quota charge for a view that was allowed.

        Ledger insert and counter increment commit together or not at all.
        Returns True if a quota unit was consumed. Raises
        ArticleLimitReachedError if the quota ran out after the check.
        """
        now = now or datetime.utcnow()
        try:
            await quota_store.ensure_account(db, user_id)
            charged = await quota_store.record(db, user_id, post_id, now)
            await db.commit()
        except ArticleLimitReachedError:
            await db.rollback()
            logger.info(f"🔒 [Access] limit reached while recording user={user_id} post={post_id}")
            raise
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error(f"❌ [Access] failed to record user={user_id} post={post_id}: {e}")
            raise QuotaWriteError()

        if charged:
            logger.info(f"📖 [Access] charged user={user_id} post={post_id}")
        return charged

    async def check_and_record(
        self,
        db: AsyncSession,
        user_id: Optional[UUID],
        post_id: str,
        author_id: Optional[UUID] = None,
        now: Optional[datetime] = None,
    ) -> AccessDecision:
        """
        Render path: decide, then charge unless the reader is paid or the author.

        A failed charge denies access rather than serving an unrecorded view.
        """
        now = now or datetime.utcnow()
        if user_id is not None and author_id is not None and user_id == author_id:
            return AccessDecision(can_access=True)

        decision = await self.decide(db, user_id, post_id, now)
        if not decision.can_access or decision.paid:
            return decision

        try:
            decision.charged = await self.record_access(db, user_id, post_id, now)
        except ArticleLimitReachedError:
            decision.can_access = False
        account = await quota_store.get_account(db, user_id)
        decision.articles_read_this_month = account.articles_read_this_month
        decision.monthly_article_limit = account.monthly_article_limit
        return decision

    async def get_usage(self, db: AsyncSession, user_id: UUID) -> tuple[int, int]:
        """(articles_read_this_month, monthly_article_limit); defaults for unknown users."""
        account = await quota_store.get_account(db, user_id)
        if account is None:
            return 0, settings.free_article_limit
        return account.articles_read_this_month, account.monthly_article_limit


access_gate = AccessGate()
