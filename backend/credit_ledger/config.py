"""
Credit Ledger Configuration and Constants

Credit packs, feature costs and provider settings are defined here.
Prices are in minor currency units (paise).
"""

# ==================== CREDIT PACKS (INR, paise) ====================
CREDIT_PLANS = {
    "credits_70": {
        "name": "Starter Pack",
        "credits": 70,
        "price_minor_units": 49900,
        "currency": "INR",
        "description": "70 AI generation credits"
    },
    "credits_150": {
        "name": "Pro Pack",
        "credits": 150,
        "price_minor_units": 99900,
        "currency": "INR",
        "description": "150 AI generation credits"
    }
}

# ==================== FEATURE CREDIT COSTS ====================
# Credits charged per successful feature call
FEATURE_CREDIT_COSTS = {
    "seo_title": 1,
    "meta_description": 1,
    "blog_content": 2,
    "content_gap_analysis": 3,
    "serp_analysis": 0  # Free
}

# ==================== ACCOUNTS ====================
# account_type -> collection. Lookup order matters: users first.
ACCOUNT_COLLECTIONS = {
    "user": "users",
    "operator": "operators"
}

# ==================== ORDERS ====================
# Unpaid orders younger than this are handed back instead of creating a new one
ORDER_REUSE_WINDOW_MINUTES = 15

ORDER_STATUS_CREATED = "created"
ORDER_STATUS_PAID = "paid"
ORDER_STATUS_FAILED = "failed"

TOPUP_FEATURE = "top_up"

# ==================== SUBSCRIPTIONS ====================
# Each paid order extends a user's subscription by this many days
SUBSCRIPTION_PERIOD_DAYS = 30

SUBSCRIPTION_STATUS_ACTIVE = "active"
SUBSCRIPTION_STATUS_CANCELLED = "cancelled"

# ==================== ERROR CODES ====================
ERROR_CODES = {
    "INSUFFICIENT_CREDITS": "Insufficient credits",
    "INVALID_PLAN": "Invalid credit plan selected",
    "ACCOUNT_NOT_FOUND": "Account not found",
    "ORDER_NOT_FOUND": "Payment order not found",
    "ORDER_NOT_PAYABLE": "Payment order can no longer be paid",
    "SIGNATURE_INVALID": "Payment verification failed. Invalid signature.",
    "PROVIDER_UNAVAILABLE": "Payment provider is unavailable. Please try again.",
    "LEDGER_WRITE_FAILED": "Credit ledger update failed. Please try again.",
    "UNKNOWN_FEATURE": "Unknown feature",
    "FEATURE_FAILED": "Feature execution failed. Credits have been refunded.",
    "ALREADY_RECORDED": "Webhook event already recorded"
}

# ==================== RAZORPAY CONFIGURATION ====================
RAZORPAY_CONFIG = {
    "api_base": "https://api.razorpay.com/v1",
    "default_timeout_seconds": 10.0
}

# Webhook events that confirm a payment for an order
RAZORPAY_CREDIT_EVENTS = {"payment.captured", "order.paid", "subscription.charged"}
RAZORPAY_FAILURE_EVENT = "payment.failed"
RAZORPAY_SUBSCRIPTION_CHARGED_EVENT = "subscription.charged"
RAZORPAY_SUBSCRIPTION_CANCELLED_EVENT = "subscription.cancelled"

RAZORPAY_SIGNATURE_HEADER = "x-razorpay-signature"
RAZORPAY_EVENT_ID_HEADER = "x-razorpay-event-id"
