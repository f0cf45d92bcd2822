"""
Payment Confirmation Reconciler

Credits an account exactly once per paid order, whichever confirmation
arrives first:
- confirm_by_client: the checkout handler posts order id, payment id, signature
- confirm_by_webhook: Razorpay pushes payment.captured / order.paid / subscription.charged

Both paths end in _reconcile(), which claims the order with a compare-and-swap
on status (created -> paid). Only the caller whose CAS matched credits the
ledger; every other caller sees 'paid' and returns the recorded result.

Webhook redelivery of the same event id is stopped earlier by the
WebhookDeduplicator.

The winning confirmation also extends a user's subscription period;
subscription.cancelled marks it cancelled.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from .config import (
    ORDER_STATUS_CREATED,
    ORDER_STATUS_FAILED,
    ORDER_STATUS_PAID,
    RAZORPAY_CREDIT_EVENTS,
    RAZORPAY_FAILURE_EVENT,
    RAZORPAY_SUBSCRIPTION_CANCELLED_EVENT,
    RAZORPAY_SUBSCRIPTION_CHARGED_EVENT,
    TOPUP_FEATURE,
)
from .exceptions import (
    AlreadyRecorded,
    InvalidPlan,
    OrderNotFound,
    OrderNotPayable,
    SignatureInvalid,
)
from .ledger_store import LedgerStore
from .models import ConfirmationResult
from .order_manager import PaymentOrderManager
from .plan_catalog import require_plan
from .razorpay_service import RazorpayService
from .subscriptions import SubscriptionTracker
from .webhook_dedup import WebhookDeduplicator

logger = logging.getLogger(__name__)


class PaymentReconciler:
    """Single reconciliation routine behind both confirmation paths."""

    def __init__(
        self,
        db,
        provider: Optional[RazorpayService] = None,
        ledger: Optional[LedgerStore] = None,
        deduplicator: Optional[WebhookDeduplicator] = None,
        order_manager: Optional[PaymentOrderManager] = None,
        subscriptions: Optional[SubscriptionTracker] = None
    ):
        self.db = db
        self.provider = provider or RazorpayService()
        self.ledger = ledger or LedgerStore(db)
        self.deduplicator = deduplicator or WebhookDeduplicator(db)
        self.order_manager = order_manager or PaymentOrderManager(db, provider=self.provider, ledger=self.ledger)
        self.subscriptions = subscriptions or SubscriptionTracker(db)

    # ==================== CLIENT PATH ====================

    async def confirm_by_client(
        self,
        account_id: str,
        provider_order_id: str,
        provider_payment_id: str,
        signature: str,
        plan_id: Optional[str] = None
    ) -> ConfirmationResult:
        """
        Confirm a payment reported by the checkout handler.

        Raises:
            SignatureInvalid: signature does not match order_id|payment_id
            OrderNotFound: no such order for this account
            InvalidPlan: plan_id is unknown or is not the order's plan
            OrderNotPayable: the order already failed
        """
        if not self.provider.verify_payment_signature(provider_order_id, provider_payment_id, signature):
            logger.warning(f"Client payment signature rejected for order {provider_order_id}")
            raise SignatureInvalid()

        order = await self.db.payment_orders.find_one(
            {"provider_order_id": provider_order_id},
            {"_id": 0}
        )
        if not order or order.get("account_id") != account_id:
            raise OrderNotFound(provider_order_id)

        if plan_id:
            plan = require_plan(plan_id)
            if plan.plan_id != order.get("plan_id"):
                logger.warning(
                    f"Plan mismatch on order {provider_order_id}: "
                    f"client sent {plan_id}, order is {order.get('plan_id')}"
                )
                raise InvalidPlan(plan_id)

        return await self._reconcile(order, provider_payment_id, signature, source="client")

    # ==================== WEBHOOK PATH ====================

    async def confirm_by_webhook(
        self,
        raw_body: bytes,
        signature_header: Optional[str],
        event_id_header: Optional[str] = None
    ) -> Dict[str, str]:
        """
        Handle a Razorpay webhook delivery.

        Always returns the acknowledgement. Failures are logged, never surfaced,
        so the provider does not retry-storm on errors it cannot fix.
        """
        try:
            outcome = await self._process_webhook(raw_body, signature_header, event_id_header)
            logger.info(f"Razorpay webhook handled: {outcome}")
        except Exception as e:
            logger.error(f"Webhook processing error: {e}")

        return {"status": "ok"}

    async def _process_webhook(
        self,
        raw_body: bytes,
        signature_header: Optional[str],
        event_id_header: Optional[str]
    ) -> str:
        if not self.provider.verify_webhook_signature(raw_body, signature_header):
            logger.warning("Razorpay webhook rejected: missing or invalid signature")
            return "signature_invalid"

        try:
            data = json.loads(raw_body)
        except ValueError:
            logger.warning("Razorpay webhook rejected: body is not JSON")
            return "malformed"

        event_type = data.get("event")
        event_id = data.get("id") or event_id_header
        logger.info(f"Razorpay webhook received: {event_type} (event_id={event_id})")

        if event_id:
            try:
                await self.deduplicator.record(event_id, event_type)
            except AlreadyRecorded:
                return "duplicate"
        else:
            logger.warning(f"Webhook {event_type} has no event id, relying on order status fence")

        payload = data.get("payload") or {}
        payment = _entity(payload, "payment")
        order_entity = _entity(payload, "order")
        subscription = _entity(payload, "subscription")

        if event_type == RAZORPAY_FAILURE_EVENT:
            order_id = payment.get("order_id")
            if order_id:
                await self.order_manager.record_payment_failure(
                    order_id,
                    payment.get("id"),
                    payment.get("error_description") or RAZORPAY_FAILURE_EVENT
                )
            return "payment_failed"

        if event_type == RAZORPAY_SUBSCRIPTION_CANCELLED_EVENT:
            cancelled = await self.subscriptions.cancel(subscription.get("id"))
            return "subscription_cancelled" if cancelled else "account_not_found"

        if event_type not in RAZORPAY_CREDIT_EVENTS:
            logger.info(f"Unhandled webhook event: {event_type}")
            return "ignored"

        order = await self._locate_order(payment, order_entity, subscription)
        if order is None:
            if event_type == RAZORPAY_SUBSCRIPTION_CHARGED_EVENT and event_id:
                # Recurring charge with no open order: the period still renews, no credits
                found = await self.subscriptions.find_account(subscription.get("id"))
                if found and found[0] == "user":
                    await self.subscriptions.extend(found[1]["id"])
                    return "subscription_extended"
            logger.error(f"Webhook {event_type} ({event_id}): no matching payment order")
            return "order_not_found"

        if payment and not _amount_matches(order, payment):
            logger.warning(
                f"Webhook amount mismatch on order {order['provider_order_id']}: "
                f"got {payment.get('amount')} {payment.get('currency')}, "
                f"expected {order['amount_minor_units']} {order['currency']}"
            )
            return "amount_mismatch"

        payment_id = payment.get("id") or order.get("provider_payment_id")
        result = await self._reconcile(order, payment_id, signature_header, source="webhook")
        return "credited" if result.credited else "already_processed"

    async def _locate_order(
        self,
        payment: Dict[str, Any],
        order_entity: Dict[str, Any],
        subscription: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        """
        Find the PaymentOrder a notification refers to.

        Order id from the payment or order entity first; recurring charges that
        carry only a subscription reference resolve the payer's newest open order.
        """
        provider_order_id = payment.get("order_id") or order_entity.get("id")
        if provider_order_id:
            return await self.db.payment_orders.find_one(
                {"provider_order_id": provider_order_id},
                {"_id": 0}
            )

        found = await self.subscriptions.find_account(subscription.get("id"))
        if found is None:
            return None

        _, account = found
        return await self.db.payment_orders.find_one(
            {"account_id": account["id"], "status": ORDER_STATUS_CREATED},
            {"_id": 0},
            sort=[("created_at", -1)]
        )

    # ==================== SHARED FENCE ====================

    async def _reconcile(
        self,
        order: Dict[str, Any],
        provider_payment_id: Optional[str],
        signature: Optional[str],
        source: str
    ) -> ConfirmationResult:
        provider_order_id = order["provider_order_id"]

        if order.get("status") == ORDER_STATUS_PAID:
            logger.info(f"Order {provider_order_id} already paid, skipping credit ({source})")
            return await self._settled_result(order)

        if order.get("status") == ORDER_STATUS_FAILED:
            logger.error(
                f"Payment {provider_payment_id} confirmed for failed order {provider_order_id} ({source}); "
                f"not credited, needs manual review"
            )
            raise OrderNotPayable(provider_order_id, ORDER_STATUS_FAILED)

        try:
            async with self.ledger.unit_of_work() as session:
                claimed = await self._claim(order, provider_payment_id, signature, source, session)
                entry = None
                if claimed is not None:
                    entry = await self._credit_claimed(claimed, session)
        except PyMongoError as e:
            if not e.has_error_label("TransientTransactionError"):
                raise
            # Write conflict: settled only if a concurrent transaction claimed the order
            current = await self.order_manager.get_order(provider_order_id)
            if current.get("status") != ORDER_STATUS_PAID:
                raise
            return await self._settled_result(current)

        if claimed is None:
            current = await self.order_manager.get_order(provider_order_id)
            if current.get("status") != ORDER_STATUS_PAID:
                raise OrderNotPayable(provider_order_id, current.get("status"))
            logger.info(f"Order {provider_order_id} claimed by a concurrent confirmation ({source})")
            return await self._settled_result(current)

        logger.info(
            f"Order {provider_order_id} paid via {source}: credited {claimed['credits']} "
            f"to {claimed['account_id']} (balance {entry['new_balance']})"
        )

        if claimed.get("account_type", "user") == "user":
            try:
                await self.subscriptions.extend(claimed["account_id"])
            except PyMongoError as e:
                # Credits already landed and stay landed
                logger.error(f"Subscription update failed for {claimed['account_id']} after order {provider_order_id}: {e}")

        return ConfirmationResult(
            credited=True,
            credits_added=claimed["credits"],
            balance=entry["new_balance"],
            already_processed=False,
            provider_order_id=provider_order_id,
            provider_payment_id=provider_payment_id
        )

    async def _claim(
        self,
        order: Dict[str, Any],
        provider_payment_id: Optional[str],
        signature: Optional[str],
        source: str,
        session
    ) -> Optional[Dict[str, Any]]:
        """Compare-and-swap created -> paid. Returns the order if this caller won."""
        now = datetime.now(timezone.utc).isoformat()

        return await self.db.payment_orders.find_one_and_update(
            {"provider_order_id": order["provider_order_id"], "status": ORDER_STATUS_CREATED},
            {
                "$set": {
                    "status": ORDER_STATUS_PAID,
                    "provider_payment_id": provider_payment_id,
                    "signature": signature,
                    "confirmed_via": source,
                    "paid_at": now,
                    "updated_at": now
                }
            },
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
            session=session
        )

    async def _credit_claimed(self, claimed: Dict[str, Any], session) -> Dict[str, Any]:
        """Credit the account for an order this caller just claimed."""
        provider_order_id = claimed["provider_order_id"]

        try:
            entry = await self.ledger.credit(
                claimed["account_id"],
                claimed["credits"],
                TOPUP_FEATURE,
                action="add",
                purchase=True,
                metadata={
                    "plan_id": claimed["plan_id"],
                    "provider_order_id": provider_order_id,
                    "provider_payment_id": claimed.get("provider_payment_id"),
                    "confirmed_via": claimed.get("confirmed_via")
                },
                session=session
            )
        except Exception:
            if session is None:
                await self._release_claim(claimed)
            raise

        await self.db.payment_orders.update_one(
            {"provider_order_id": provider_order_id},
            {"$set": {"credit_transaction_id": entry["transaction_id"]}},
            session=session
        )
        return entry

    async def _release_claim(self, claimed: Dict[str, Any]):
        """Undo a claim whose credit never landed so a later confirmation can retry."""
        provider_order_id = claimed["provider_order_id"]
        logger.error(f"Crediting order {provider_order_id} failed, releasing claim")

        await self.db.payment_orders.update_one(
            {
                "provider_order_id": provider_order_id,
                "status": ORDER_STATUS_PAID,
                "provider_payment_id": claimed.get("provider_payment_id"),
                "credit_transaction_id": None
            },
            {
                "$set": {
                    "status": ORDER_STATUS_CREATED,
                    "provider_payment_id": None,
                    "signature": None,
                    "confirmed_via": None,
                    "paid_at": None,
                    "updated_at": datetime.now(timezone.utc).isoformat()
                }
            }
        )

    async def _settled_result(self, order: Dict[str, Any]) -> ConfirmationResult:
        """Result for an order someone else already credited."""
        balance = await self.ledger.get_balance(order["account_id"])
        return ConfirmationResult(
            credited=False,
            credits_added=order.get("credits", 0),
            balance=balance,
            already_processed=True,
            provider_order_id=order["provider_order_id"],
            provider_payment_id=order.get("provider_payment_id")
        )


def _entity(payload: Dict[str, Any], name: str) -> Dict[str, Any]:
    """payload.<name>.entity, or {} when absent."""
    section = payload.get(name) or {}
    return section.get("entity") or {}


def _amount_matches(order: Dict[str, Any], payment: Dict[str, Any]) -> bool:
    amount = payment.get("amount")
    currency = payment.get("currency")
    if amount is not None and int(amount) != int(order["amount_minor_units"]):
        return False
    if currency and currency != order.get("currency"):
        return False
    return True
