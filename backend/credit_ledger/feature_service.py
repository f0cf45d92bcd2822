"""
Feature Execution Service - Billed execution of paid features

Every paid feature call goes through execute():
1. Debit the feature cost (atomic)
2. Run the feature operation
3. On failure, refund the debit and raise FeatureExecutionError

The feature operation is opaque here: any zero-argument coroutine factory.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from .exceptions import FeatureExecutionError
from .guard import CreditGuard
from .plan_catalog import feature_cost

logger = logging.getLogger(__name__)


class FeatureExecutionService:
    """Runs feature operations behind the credit guard."""

    def __init__(self, db, guard: Optional[CreditGuard] = None):
        self.db = db
        self.guard = guard or CreditGuard(db)

    async def execute(
        self,
        account_id: str,
        feature: str,
        operation: Callable[[], Awaitable[Any]],
        metadata: Optional[Dict] = None
    ) -> Dict[str, Any]:
        """
        Bill and run a feature.

        Returns:
            Dict with result, credits_used, credit_balance and transaction_id

        Raises:
            InsufficientCredits: before the operation runs
            FeatureExecutionError: the operation raised; credits were refunded
        """
        cost = feature_cost(feature)

        if cost == 0:
            result = await operation()
            return {
                "result": result,
                "credits_used": 0,
                "credit_balance": await self.guard.ledger.get_balance(account_id),
                "transaction_id": None
            }

        consumed = await self.guard.try_consume(account_id, cost, feature, metadata=metadata)

        try:
            result = await operation()
        except Exception as e:
            logger.error(f"Feature {feature} failed for {account_id}: {e}")
            try:
                await self.guard.refund(
                    account_id,
                    consumed.amount,
                    feature,
                    original_transaction_id=consumed.transaction_id,
                    reason=f"{feature} execution error"
                )
            except Exception as refund_error:
                logger.error(
                    f"Refund of {consumed.amount} credits failed for {account_id} "
                    f"(transaction {consumed.transaction_id}): {refund_error}"
                )
                raise FeatureExecutionError(feature, refunded=False) from e
            raise FeatureExecutionError(feature) from e

        return {
            "result": result,
            "credits_used": cost,
            "credit_balance": consumed.new_balance,
            "transaction_id": consumed.transaction_id
        }
