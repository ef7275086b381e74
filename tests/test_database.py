"""
Tests for the request-scoped session dependency
"""
from uuid import uuid4

import pytest

from paywall import database
from paywall.models import UserAccount


async def test_get_db_rolls_back_when_handler_raises(session_factory, monkeypatch):
    monkeypatch.setattr(database, "async_session", session_factory)
    user_id = uuid4()

    gen = database.get_db()
    session = await gen.__anext__()

    rollbacks = []
    original_rollback = session.rollback

    async def tracking_rollback():
        rollbacks.append(True)
        await original_rollback()

    session.rollback = tracking_rollback

    session.add(UserAccount(id=user_id, articles_read_this_month=0, monthly_article_limit=5))
    await session.flush()

    with pytest.raises(RuntimeError):
        await gen.athrow(RuntimeError("handler failed"))

    assert rollbacks == [True]
    async with session_factory() as check:
        assert await check.get(UserAccount, user_id) is None


async def test_get_db_keeps_committed_work(session_factory, monkeypatch):
    monkeypatch.setattr(database, "async_session", session_factory)
    user_id = uuid4()

    gen = database.get_db()
    session = await gen.__anext__()
    session.add(UserAccount(id=user_id, articles_read_this_month=2, monthly_article_limit=5))
    await session.commit()
    await gen.aclose()

    async with session_factory() as check:
        account = await check.get(UserAccount, user_id)
        assert account.articles_read_this_month == 2
