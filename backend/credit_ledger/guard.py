"""
Credit Guard - Pre-execution credit check and atomic debit

Enforces:
- Balance check and debit as one atomic conditional update
- Fresh balance from the store on every call (no stale reads)
- Audit rows for rejected attempts
- Compensating refunds when the billed feature fails

IMPORTANT: This guard is the ONLY place where paid features are billed.
All feature call sites must go through it (usually via FeatureExecutionService).
"""

import logging
import os
from typing import Optional, Dict

from .exceptions import InsufficientCredits
from .ledger_store import LedgerStore
from .models import ConsumeResult, CreditEstimateResponse
from .plan_catalog import feature_cost

logger = logging.getLogger(__name__)


class CreditGuard:
    """
    Credit consumption guard.

    Usage:
        guard = CreditGuard(db)
        result = await guard.try_consume(account_id, 1, "seo_title")

        try:
            output = await generate(...)
        except Exception:
            await guard.refund(account_id, result.amount, "seo_title",
                               original_transaction_id=result.transaction_id)
            raise
    """

    def __init__(self, db, ledger: Optional[LedgerStore] = None, log_failed_attempts: Optional[bool] = None):
        self.db = db
        self.ledger = ledger or LedgerStore(db)
        if log_failed_attempts is None:
            log_failed_attempts = os.environ.get("LOG_FAILED_CONSUME", "true").lower() in ("1", "true", "yes")
        self.log_failed_attempts = log_failed_attempts

    async def try_consume(
        self,
        account_id: str,
        amount: int,
        feature: str,
        metadata: Optional[Dict] = None
    ) -> ConsumeResult:
        """
        Debit amount credits for feature.

        Raises:
            InsufficientCredits: with required/available; balance untouched
            AccountNotFound: unknown account
        """
        try:
            entry = await self.ledger.debit(account_id, amount, feature, metadata=metadata)
        except InsufficientCredits as e:
            logger.info(
                f"Insufficient credits for {account_id} on {feature}: "
                f"required={e.required}, available={e.available}"
            )
            if self.log_failed_attempts:
                await self.ledger.record_failed_attempt(
                    account_id, amount, feature, e.available, metadata=metadata
                )
            raise

        logger.info(
            f"Credits deducted for {feature}: {amount} "
            f"({entry['previous_balance']} -> {entry['new_balance']}) account={account_id}"
        )

        return ConsumeResult(
            account_id=account_id,
            feature=feature,
            amount=amount,
            new_balance=entry["new_balance"],
            transaction_id=entry["transaction_id"]
        )

    async def refund(
        self,
        account_id: str,
        amount: int,
        feature: str,
        original_transaction_id: Optional[str] = None,
        reason: str = "feature_failed"
    ) -> ConsumeResult:
        """
        Compensate an earlier deduction whose feature operation failed.

        Restores exactly amount credits and appends a 'refund' entry.
        """
        entry = await self.ledger.credit(
            account_id,
            amount,
            feature,
            action="refund",
            metadata={
                "original_transaction_id": original_transaction_id,
                "reason": reason
            }
        )

        logger.info(f"Refunded {amount} credits to {account_id} for {feature}: {reason}")

        return ConsumeResult(
            account_id=account_id,
            feature=feature,
            amount=amount,
            new_balance=entry["new_balance"],
            transaction_id=entry["transaction_id"]
        )

    async def estimate(self, account_id: str, feature: str) -> CreditEstimateResponse:
        """Cost of a feature against the current balance. Does not mutate anything."""
        estimated = feature_cost(feature)
        current_balance = await self.ledger.get_balance(account_id)

        return CreditEstimateResponse(
            feature=feature,
            estimated_credits=estimated,
            current_balance=current_balance,
            sufficient_credits=current_balance >= estimated
        )
