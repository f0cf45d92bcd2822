"""
Payment Order Manager

Creates Razorpay orders for credit packs.

Flow:
1. Validate the plan and the account
2. Reuse an unpaid order for the same account+plan younger than 15 minutes
3. Otherwise create the provider order, then persist the local 'created' row

The local row is written only after Razorpay returns an order id, so a
provider timeout never leaves an orphaned PaymentOrder behind.
"""

import logging
import time
import uuid
from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, Any

from .config import (
    ORDER_REUSE_WINDOW_MINUTES,
    ORDER_STATUS_CREATED,
    ORDER_STATUS_FAILED,
)
from .exceptions import OrderNotFound
from .ledger_store import LedgerStore
from .models import CreateOrderResponse, PaymentOrder
from .plan_catalog import require_plan
from .razorpay_service import RazorpayService

logger = logging.getLogger(__name__)


class PaymentOrderManager:
    """Creates and tracks payment orders for credit top-ups."""

    def __init__(
        self,
        db,
        provider: Optional[RazorpayService] = None,
        ledger: Optional[LedgerStore] = None,
        reuse_window: timedelta = timedelta(minutes=ORDER_REUSE_WINDOW_MINUTES)
    ):
        self.db = db
        self.provider = provider or RazorpayService()
        self.ledger = ledger or LedgerStore(db)
        self.reuse_window = reuse_window

    async def create_order(self, account_id: str, plan_id: str) -> CreateOrderResponse:
        """
        Create or reuse a provider order for plan_id.

        Raises:
            InvalidPlan: plan_id is not in the catalog
            AccountNotFound: unknown account
            ProviderUnavailable: Razorpay could not create the order
        """
        plan = require_plan(plan_id)
        account_type, _ = await self.ledger.resolve_account(account_id)

        recent = await self._find_reusable_order(account_id, plan.plan_id)
        if recent:
            logger.info(
                f"Reusing order {recent['provider_order_id']} for {account_id} ({plan.plan_id})"
            )
            return CreateOrderResponse(
                provider_order_id=recent["provider_order_id"],
                amount=recent["amount_minor_units"],
                currency=recent["currency"],
                plan_id=plan.plan_id,
                credits=plan.credits,
                plan_name=plan.name,
                key_id=self.provider.key_id or None,
                reused=True
            )

        receipt = _build_receipt(account_id)
        provider_order = await self.provider.create_order(
            amount=plan.price_minor_units,
            currency=plan.currency,
            receipt=receipt,
            notes={
                "account_id": account_id,
                "plan_id": plan.plan_id,
                "credits": str(plan.credits),
                "account_type": account_type
            }
        )

        now = datetime.now(timezone.utc).isoformat()
        order = PaymentOrder(
            id=str(uuid.uuid4()),
            account_id=account_id,
            account_type=account_type,
            plan_id=plan.plan_id,
            credits=plan.credits,
            provider_order_id=provider_order["id"],
            amount_minor_units=provider_order.get("amount", plan.price_minor_units),
            currency=provider_order.get("currency", plan.currency),
            status=ORDER_STATUS_CREATED,
            receipt=receipt,
            created_at=now,
            updated_at=now
        )

        await self.db.payment_orders.insert_one(order.model_dump())

        logger.info(
            f"Created order {order.provider_order_id} for {account_id}: "
            f"{plan.plan_id} ({order.amount_minor_units} {order.currency})"
        )

        return CreateOrderResponse(
            provider_order_id=order.provider_order_id,
            amount=order.amount_minor_units,
            currency=order.currency,
            plan_id=plan.plan_id,
            credits=plan.credits,
            plan_name=plan.name,
            key_id=self.provider.key_id or None,
            reused=False
        )

    async def _find_reusable_order(self, account_id: str, plan_id: str) -> Optional[Dict[str, Any]]:
        cutoff = (datetime.now(timezone.utc) - self.reuse_window).isoformat()

        return await self.db.payment_orders.find_one(
            {
                "account_id": account_id,
                "plan_id": plan_id,
                "status": ORDER_STATUS_CREATED,
                "created_at": {"$gte": cutoff},
                "provider_order_id": {"$ne": None}
            },
            {"_id": 0},
            sort=[("created_at", -1)]
        )

    async def get_order(self, provider_order_id: str, account_id: Optional[str] = None) -> Dict[str, Any]:
        """Fetch an order by provider order id, optionally scoped to its owner."""
        query = {"provider_order_id": provider_order_id}
        if account_id:
            query["account_id"] = account_id

        order = await self.db.payment_orders.find_one(query, {"_id": 0})
        if not order:
            raise OrderNotFound(provider_order_id)
        return order

    async def mark_failed(self, provider_order_id: str, reason: Optional[str] = None) -> bool:
        """
        Transition created -> failed.

        Returns False when the order was not in 'created' (already paid or failed).
        """
        now = datetime.now(timezone.utc).isoformat()

        result = await self.db.payment_orders.update_one(
            {"provider_order_id": provider_order_id, "status": ORDER_STATUS_CREATED},
            {
                "$set": {
                    "status": ORDER_STATUS_FAILED,
                    "failure_reason": reason,
                    "updated_at": now
                }
            }
        )

        if result.modified_count == 0:
            logger.info(f"Order {provider_order_id} not marked failed: not in 'created'")
            return False

        logger.info(f"Order {provider_order_id} marked failed: {reason}")
        return True

    async def record_payment_failure(
        self,
        provider_order_id: str,
        provider_payment_id: Optional[str],
        reason: str
    ) -> bool:
        """
        Note a failed payment attempt on an open order.

        The order stays 'created': the payer may retry on the same order, and a
        later capture must still be creditable.
        """
        result = await self.db.payment_orders.update_one(
            {"provider_order_id": provider_order_id, "status": ORDER_STATUS_CREATED},
            {
                "$set": {
                    "failure_reason": reason,
                    "last_failed_payment_id": provider_payment_id,
                    "updated_at": datetime.now(timezone.utc).isoformat()
                }
            }
        )

        logger.info(f"Payment {provider_payment_id} failed on order {provider_order_id}: {reason}")
        return result.modified_count > 0


def _build_receipt(account_id: str) -> str:
    """ord_<last 8 of account id>_<last 10 of epoch ms>"""
    account_suffix = str(account_id)[-8:]
    time_suffix = str(int(time.time() * 1000))[-10:]
    return f"ord_{account_suffix}_{time_suffix}"
