"""
Credit Ledger API Routes

Endpoints:
- GET  /api/credits - Credit balance and top-up info
- GET  /api/credits/ledger - Transaction history
- GET  /api/credits/plans - Credit packs
- GET  /api/credits/costs - Feature credit costs
- POST /api/credits/estimate - Estimate feature cost
- POST /api/credits/admin/credit - Manual grant (operators)
- POST /api/subscriptions/create-order - Create Razorpay order
- POST /api/subscriptions/verify-payment - Client payment confirmation
- GET  /api/subscriptions/status - Credit status
- GET  /api/subscriptions/orders/{provider_order_id} - Order state
- POST /api/subscriptions/orders/{provider_order_id}/cancel - Abandon an unpaid order
- POST /api/webhooks/razorpay - Razorpay webhook handler
"""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Query
from pydantic import BaseModel, Field

from database import get_db
from utils.auth import get_current_account, get_operator_account
from credit_ledger.config import (
    FEATURE_CREDIT_COSTS,
    RAZORPAY_EVENT_ID_HEADER,
    RAZORPAY_SIGNATURE_HEADER,
)
from credit_ledger.exceptions import CreditLedgerError
from credit_ledger.guard import CreditGuard
from credit_ledger.ledger_store import LedgerStore
from credit_ledger.models import (
    CreateOrderRequest,
    CreateOrderResponse,
    CreditEstimateRequest,
    CreditEstimateResponse,
    SubscriptionStatusResponse,
    VerifyPaymentRequest,
)
from credit_ledger.order_manager import PaymentOrderManager
from credit_ledger.plan_catalog import list_plans
from credit_ledger.razorpay_service import RazorpayService
from credit_ledger.reconciler import PaymentReconciler

logger = logging.getLogger(__name__)

credits_router = APIRouter(prefix="/credits", tags=["Credits"])
subscriptions_router = APIRouter(prefix="/subscriptions", tags=["Subscriptions"])
webhooks_router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


# ==================== DEPENDENCIES ====================

def get_provider() -> RazorpayService:
    return RazorpayService()


def get_webhook_db():
    """Database for the webhook route. Never raises, so the route can always acknowledge."""
    try:
        return get_db()
    except ValueError as e:
        logger.error(f"Webhook database unavailable: {e}")
        return None


def get_ledger(db) -> LedgerStore:
    return LedgerStore(db, client=getattr(db, "client", None))


def http_error(e: CreditLedgerError) -> HTTPException:
    """Translate a ledger error into the HTTP response the client sees."""
    return HTTPException(status_code=e.http_status, detail=e.to_dict())


# ==================== CREDIT ENDPOINTS ====================

@credits_router.get("")
async def get_credits(account: dict = Depends(get_current_account), db=Depends(get_db)):
    """
    Get current account's credit balance.

    Returns:
        Balance, total purchased, last top-up time
    """
    try:
        return await get_ledger(db).get_account(account["id"])
    except CreditLedgerError as e:
        raise http_error(e)


@credits_router.get("/ledger")
async def get_credit_ledger(
    limit: int = Query(50, ge=1, le=200),
    since: Optional[str] = Query(None, description="ISO timestamp, inclusive"),
    until: Optional[str] = Query(None, description="ISO timestamp, inclusive"),
    account: dict = Depends(get_current_account),
    db=Depends(get_db)
):
    """
    Get credit transaction history.

    Shows deductions, top-ups and refunds, newest first.
    """
    entries = await get_ledger(db).get_transactions(account["id"], limit, since=since, until=until)

    return {
        "entries": entries,
        "count": len(entries)
    }


@credits_router.get("/plans")
async def get_credit_plans():
    """Get available credit packs with pricing in paise."""
    return {
        "plans": [plan.model_dump() for plan in list_plans()],
        "currency": "INR"
    }


@credits_router.get("/costs")
async def get_feature_costs():
    """Credit cost of each paid feature."""
    return {"features": FEATURE_CREDIT_COSTS}


@credits_router.post("/estimate", response_model=CreditEstimateResponse)
async def estimate_credits(
    request: CreditEstimateRequest,
    account: dict = Depends(get_current_account),
    db=Depends(get_db)
):
    """
    Estimate credit cost for a feature.

    Does NOT deduct any credits.
    """
    guard = CreditGuard(db, ledger=get_ledger(db))
    try:
        return await guard.estimate(account["id"], request.feature)
    except CreditLedgerError as e:
        raise http_error(e)


class AdminCreditBody(BaseModel):
    account_id: str
    credits: int = Field(..., ge=1)
    reason: str = "admin_grant"


@credits_router.post("/admin/credit")
async def admin_credit(
    body: AdminCreditBody,
    operator: dict = Depends(get_operator_account),
    db=Depends(get_db)
):
    """Manually credit an account (operators only)."""
    try:
        entry = await get_ledger(db).credit(
            body.account_id,
            body.credits,
            "admin_grant",
            action="add",
            metadata={"reason": body.reason, "operator_id": operator["id"], "request_id": str(uuid.uuid4())}
        )
    except CreditLedgerError as e:
        raise http_error(e)

    return {
        "success": True,
        "message": f"Credited {body.credits} credits to account {body.account_id}",
        "credit_balance": entry["new_balance"]
    }


# ==================== ORDER ENDPOINTS ====================

@subscriptions_router.post("/create-order", response_model=CreateOrderResponse)
async def create_order(
    body: CreateOrderRequest,
    account: dict = Depends(get_current_account),
    db=Depends(get_db),
    provider: RazorpayService = Depends(get_provider)
):
    """
    Create a Razorpay order for a credit top-up.

    An unpaid order for the same plan created in the last 15 minutes is
    returned instead of a new one.
    """
    manager = PaymentOrderManager(db, provider=provider, ledger=get_ledger(db))
    try:
        return await manager.create_order(account["id"], body.plan_id)
    except CreditLedgerError as e:
        if e.http_status >= 500:
            logger.error(f"Order creation failed for {account['id']}: {e}")
        raise http_error(e)


@subscriptions_router.post("/verify-payment")
async def verify_payment(
    body: VerifyPaymentRequest,
    account: dict = Depends(get_current_account),
    db=Depends(get_db),
    provider: RazorpayService = Depends(get_provider)
):
    """
    Verify the checkout signature and apply credits.

    Safe to call repeatedly: an order already paid (by this call or by the
    webhook) returns the recorded result without crediting again.
    """
    reconciler = PaymentReconciler(db, provider=provider, ledger=get_ledger(db))
    try:
        result = await reconciler.confirm_by_client(
            account["id"],
            body.razorpay_order_id,
            body.razorpay_payment_id,
            body.razorpay_signature,
            plan_id=body.plan_id
        )
    except CreditLedgerError as e:
        raise http_error(e)

    return {
        "success": True,
        "message": "Payment already verified" if result.already_processed else "Payment verified and credits added",
        **result.model_dump()
    }


@subscriptions_router.get("/status", response_model=SubscriptionStatusResponse)
async def get_subscription_status(account: dict = Depends(get_current_account), db=Depends(get_db)):
    """Credit and subscription status for the current account."""
    try:
        fresh = await get_ledger(db).get_account(account["id"])
    except CreditLedgerError as e:
        raise http_error(e)

    is_user = fresh["account_type"] == "user"
    return SubscriptionStatusResponse(
        credit_balance=fresh["credit_balance"],
        total_credits_purchased=fresh["total_credits_purchased"],
        last_topup_at=fresh["last_topup_at"],
        account_type=fresh["account_type"],
        plan=fresh.get("plan") if is_user else None,
        subscription_status=fresh.get("subscription_status") if is_user else None,
        subscription_start_date=fresh.get("subscription_start_date") if is_user else None,
        subscription_end_date=fresh.get("subscription_end_date") if is_user else None
    )


@subscriptions_router.get("/orders/{provider_order_id}")
async def get_order_status(
    provider_order_id: str,
    account: dict = Depends(get_current_account),
    db=Depends(get_db)
):
    """Get the state of one of the caller's orders."""
    manager = PaymentOrderManager(db, ledger=get_ledger(db))
    try:
        order = await manager.get_order(provider_order_id, account_id=account["id"])
    except CreditLedgerError as e:
        raise http_error(e)

    order.pop("signature", None)
    return order


@subscriptions_router.post("/orders/{provider_order_id}/cancel")
async def cancel_order(
    provider_order_id: str,
    account: dict = Depends(get_current_account),
    db=Depends(get_db)
):
    """Abandon an unpaid order. Paid orders are left untouched."""
    manager = PaymentOrderManager(db, ledger=get_ledger(db))
    try:
        await manager.get_order(provider_order_id, account_id=account["id"])
    except CreditLedgerError as e:
        raise http_error(e)

    cancelled = await manager.mark_failed(provider_order_id, reason="cancelled_by_account")
    return {"success": cancelled, "provider_order_id": provider_order_id}


# ==================== RAZORPAY WEBHOOK ====================

@webhooks_router.post("/razorpay")
async def razorpay_webhook(
    request: Request,
    db=Depends(get_webhook_db),
    provider: RazorpayService = Depends(get_provider)
):
    """
    Handle Razorpay webhook notifications.

    Always returns 200 {"status": "ok"}: signature failures, duplicates and
    processing errors are logged, never reported back to Razorpay.
    """
    body = await request.body()

    if db is None:
        logger.error("Razorpay webhook acknowledged without processing: no database")
        return {"status": "ok"}

    reconciler = PaymentReconciler(db, provider=provider, ledger=get_ledger(db))
    return await reconciler.confirm_by_webhook(
        body,
        request.headers.get(RAZORPAY_SIGNATURE_HEADER),
        event_id_header=request.headers.get(RAZORPAY_EVENT_ID_HEADER)
    )
