"""
Credit Ledger Module
Prepaid credit balances and payment reconciliation for the blogging platform

This module provides:
- Credit balance management for users and operators
- Append-only credit transaction log
- Razorpay order creation for credit packs
- Exactly-once crediting from client verification and webhooks
- Concurrency-safe atomic deductions and refunds

Collections used:
- users / operators: credit_balance, total_credits_purchased, last_topup_at
- credit_transactions: Immutable transaction log
- payment_orders: One document per provider order (created -> paid | failed)
- webhook_events: Webhook idempotency store (unique provider_event_id)
"""

__version__ = "1.0.0"
