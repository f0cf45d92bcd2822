"""
Subscription Tracker Tests

Period extension, concurrent extensions and cancellation.
"""

import asyncio
from datetime import datetime, timezone, timedelta

import pytest

from credit_ledger.subscriptions import SubscriptionTracker


NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


class TestExtend:

    @pytest.mark.asyncio
    async def test_first_payment_starts_period(self, db):
        db.seed_account("u1")

        end = await SubscriptionTracker(db).extend("u1", now=NOW)

        user = db.users.docs[0]
        assert end == (NOW + timedelta(days=30)).isoformat()
        assert user["subscription_end_date"] == end
        assert user["subscription_start_date"] == NOW.isoformat()
        assert user["subscription_status"] == "active"

    @pytest.mark.asyncio
    async def test_cancelled_but_unexpired_period_is_reactivated(self, db):
        db.seed_account(
            "u1",
            subscription_status="cancelled",
            subscription_end_date=(NOW + timedelta(days=5)).isoformat()
        )

        end = await SubscriptionTracker(db).extend("u1", now=NOW)

        assert end == (NOW + timedelta(days=35)).isoformat()
        assert db.users.docs[0]["subscription_status"] == "active"
        assert db.users.docs[0]["subscription_start_date"] == NOW.isoformat()

    @pytest.mark.asyncio
    async def test_concurrent_extensions_both_count(self, db):
        """Two payments landing together extend by two periods, not one."""
        db.seed_account("u1")
        tracker = SubscriptionTracker(db)

        await asyncio.gather(tracker.extend("u1", now=NOW), tracker.extend("u1", now=NOW))

        assert db.users.docs[0]["subscription_end_date"] == (NOW + timedelta(days=60)).isoformat()

    @pytest.mark.asyncio
    async def test_unknown_user(self, db):
        db.seed_account("op1", account_type="operator")

        assert await SubscriptionTracker(db).extend("op1", now=NOW) is None
        assert "subscription_status" not in db.operators.docs[0]


class TestCancel:

    @pytest.mark.asyncio
    async def test_cancel(self, db):
        db.seed_account("u1", razorpay_subscription_id="sub_1", subscription_status="active")

        assert await SubscriptionTracker(db).cancel("sub_1") is True
        assert db.users.docs[0]["subscription_status"] == "cancelled"

    @pytest.mark.asyncio
    async def test_cancel_unknown(self, db):
        db.seed_account("u1", razorpay_subscription_id="sub_1")

        assert await SubscriptionTracker(db).cancel("sub_2") is False
        assert await SubscriptionTracker(db).cancel(None) is False
        assert "subscription_status" not in db.users.docs[0]

    @pytest.mark.asyncio
    async def test_find_account(self, db):
        db.seed_account("u1", razorpay_subscription_id="sub_1")

        account_type, account = await SubscriptionTracker(db).find_account("sub_1")

        assert account_type == "user"
        assert account["id"] == "u1"
        assert await SubscriptionTracker(db).find_account("sub_2") is None
