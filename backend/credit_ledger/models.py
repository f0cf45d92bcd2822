"""
Credit Ledger Data Models

Pydantic models for credit ledger operations.
These define the structure of documents stored in MongoDB collections
and the request/response bodies of the API.
"""

from pydantic import AliasChoices, BaseModel, Field
from typing import Optional, List, Literal, Dict, Any


# ==================== ACCOUNT MODELS ====================

class AccountCredits(BaseModel):
    """Credit fields carried by every account document (users and operators)"""
    id: str
    account_type: Literal["user", "operator"] = "user"
    credit_balance: int = Field(0, ge=0)
    total_credits_purchased: int = Field(0, ge=0)
    last_topup_at: Optional[str] = None  # ISO datetime string


# ==================== LEDGER MODELS ====================

class CreditTransaction(BaseModel):
    """Immutable ledger entry, one per balance mutation"""
    transaction_id: str
    account_id: str
    account_type: Literal["user", "operator"] = "user"
    amount: int = Field(..., ge=0)
    action: Literal["deduct", "add", "refund"]
    feature: str
    previous_balance: int = Field(..., ge=0)
    new_balance: int = Field(..., ge=0)
    status: Literal["success", "failed", "pending"] = "success"
    metadata: Dict[str, Any] = Field(default_factory=dict)
    notes: Optional[str] = None
    created_at: str  # ISO datetime string


class LedgerResponse(BaseModel):
    entries: List[CreditTransaction]
    count: int


# ==================== PLAN MODELS ====================

class CreditPlan(BaseModel):
    """Static credit pack definition"""
    plan_id: str
    name: str
    credits: int = Field(..., gt=0)
    price_minor_units: int = Field(..., gt=0)
    currency: str = "INR"
    description: Optional[str] = None


# ==================== ORDER MODELS ====================

class PaymentOrder(BaseModel):
    """One attempt to purchase one credit plan"""
    id: str
    account_id: str
    account_type: Literal["user", "operator"] = "user"
    plan_id: str
    credits: int
    provider_order_id: Optional[str] = None
    provider_payment_id: Optional[str] = None
    amount_minor_units: int
    currency: str = "INR"
    status: Literal["created", "paid", "failed"] = "created"
    signature: Optional[str] = None
    receipt: Optional[str] = None
    confirmed_via: Optional[Literal["client", "webhook"]] = None
    credit_transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    last_failed_payment_id: Optional[str] = None
    created_at: str
    paid_at: Optional[str] = None
    updated_at: Optional[str] = None


class CreateOrderRequest(BaseModel):
    """Request to create a credit top-up order"""
    plan_id: str = Field(
        ...,
        validation_alias=AliasChoices("plan_id", "creditPlanId", "planId"),
        description="Credit plan ID: credits_70 or credits_150"
    )


class CreateOrderResponse(BaseModel):
    """Order details handed to the checkout UI"""
    provider_order_id: str
    amount: int
    currency: str
    plan_id: str
    credits: int
    plan_name: str
    key_id: Optional[str] = None
    reused: bool = False


class VerifyPaymentRequest(BaseModel):
    """Body posted by the checkout handler after payment"""
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str
    plan_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("plan_id", "creditPlanId", "planId")
    )


class ConfirmationResult(BaseModel):
    """Outcome of a payment confirmation from either path"""
    credited: bool
    credits_added: int
    balance: int
    already_processed: bool = False
    provider_order_id: str
    provider_payment_id: Optional[str] = None


# ==================== WEBHOOK MODELS ====================

class WebhookEventRecord(BaseModel):
    """Dedup marker, written once per distinct provider notification"""
    provider_event_id: str
    event_type: Optional[str] = None
    received_at: str


# ==================== GUARD MODELS ====================

class ConsumeResult(BaseModel):
    """Result of a successful credit consumption or refund"""
    ok: bool = True
    account_id: str
    feature: str
    amount: int
    new_balance: int
    transaction_id: Optional[str] = None


class CreditEstimateRequest(BaseModel):
    feature: str = Field(..., description="Feature: seo_title, meta_description, blog_content, ...")


class CreditEstimateResponse(BaseModel):
    feature: str
    estimated_credits: int
    current_balance: int
    sufficient_credits: bool


# ==================== STATUS MODELS ====================

class SubscriptionStatusResponse(BaseModel):
    credit_balance: int
    total_credits_purchased: int
    last_topup_at: Optional[str] = None
    account_type: str
    plan: Optional[str] = None
    subscription_status: Optional[str] = None
    subscription_start_date: Optional[str] = None  # ISO datetime string
    subscription_end_date: Optional[str] = None
