"""
Subscription Tracking

A user's subscription runs until subscription_end_date. Each paid order
extends it by SUBSCRIPTION_PERIOD_DAYS, counted from the later of now and
the current end date. Razorpay's subscription.cancelled marks it cancelled.

Operators carry no subscription fields.
"""

import logging
from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, Any, Tuple

from .config import (
    ACCOUNT_COLLECTIONS,
    SUBSCRIPTION_PERIOD_DAYS,
    SUBSCRIPTION_STATUS_ACTIVE,
    SUBSCRIPTION_STATUS_CANCELLED,
)

logger = logging.getLogger(__name__)

# Concurrent extensions of one account re-read the end date and try again
MAX_EXTEND_ATTEMPTS = 3


def _as_datetime(value) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class SubscriptionTracker:
    """Keeps subscription_status and the subscription dates on user accounts."""

    def __init__(self, db):
        self.db = db
        self.users = db[ACCOUNT_COLLECTIONS["user"]]

    async def find_account(self, subscription_id: str) -> Optional[Tuple[str, Dict[str, Any]]]:
        """(account_type, account) holding a Razorpay subscription id, or None."""
        if not subscription_id:
            return None

        for account_type, collection_name in ACCOUNT_COLLECTIONS.items():
            account = await self.db[collection_name].find_one(
                {"razorpay_subscription_id": subscription_id},
                {"_id": 0, "password": 0}
            )
            if account:
                return account_type, account

        return None

    async def extend(self, account_id: str, now: Optional[datetime] = None) -> Optional[str]:
        """
        Activate a user's subscription and push its end date out one period.

        Returns:
            The new end date (ISO string), or None if there is no such user
            or the extension kept losing to concurrent extensions.
        """
        now = now or datetime.now(timezone.utc)

        for _ in range(MAX_EXTEND_ATTEMPTS):
            account = await self.users.find_one(
                {"id": account_id},
                {"_id": 0, "id": 1, "subscription_status": 1, "subscription_end_date": 1}
            )
            if not account:
                logger.info(f"No user {account_id}, subscription not extended")
                return None

            current_end = account.get("subscription_end_date")
            current_end_at = _as_datetime(current_end)
            renewing = current_end_at is not None and current_end_at > now
            new_end = ((current_end_at if renewing else now) + timedelta(days=SUBSCRIPTION_PERIOD_DAYS)).isoformat()

            updates = {
                "subscription_status": SUBSCRIPTION_STATUS_ACTIVE,
                "subscription_end_date": new_end,
                "updated_at": now.isoformat()
            }
            if not renewing or account.get("subscription_status") != SUBSCRIPTION_STATUS_ACTIVE:
                updates["subscription_start_date"] = now.isoformat()

            # Guarded on the end date read above so two extensions never collapse into one
            result = await self.users.update_one(
                {"id": account_id, "subscription_end_date": current_end},
                {"$set": updates}
            )
            if result.matched_count:
                logger.info(f"Subscription for {account_id} active until {new_end}")
                return new_end

        logger.error(f"Subscription extension for {account_id} gave up after {MAX_EXTEND_ATTEMPTS} attempts")
        return None

    async def cancel(self, subscription_id: str) -> bool:
        """Mark the subscription cancelled. The paid period is left as is."""
        if not subscription_id:
            return False

        now = datetime.now(timezone.utc).isoformat()
        result = await self.users.update_one(
            {"razorpay_subscription_id": subscription_id},
            {"$set": {
                "subscription_status": SUBSCRIPTION_STATUS_CANCELLED,
                "subscription_cancelled_at": now,
                "updated_at": now
            }}
        )

        if not result.matched_count:
            logger.error(f"subscription.cancelled for unknown subscription {subscription_id}")
            return False

        logger.info(f"Subscription {subscription_id} cancelled")
        return True
