"""
Credit Ledger Store

Core balance operations including:
- Account resolution across users and operators
- Credit deductions (atomic, concurrency-safe)
- Credits for purchases and refunds
- Append-only transaction log

CRITICAL: Every balance mutation is a single MongoDB conditional update.
The decision "is there enough balance" and the decrement happen in the same
operation, so negative balances are impossible under any concurrency scenario.
The transaction log is written alongside each mutation and is never read to
make a balance decision.
"""

import logging
import os
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional, Tuple, Dict, Any, List

from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from .config import ACCOUNT_COLLECTIONS
from .exceptions import AccountNotFound, InsufficientCredits, LedgerWriteError
from .models import CreditTransaction

logger = logging.getLogger(__name__)


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes")


class LedgerStore:
    """Durable account balances plus the credit transaction log."""

    def __init__(self, db, client=None, use_transactions: Optional[bool] = None):
        self.db = db
        self.client = client
        if use_transactions is None:
            use_transactions = _env_flag("LEDGER_USE_TRANSACTIONS", "false")
        self.use_transactions = bool(use_transactions and client is not None)

    @asynccontextmanager
    async def unit_of_work(self):
        """
        Yield a session when multi-document transactions are enabled, else None.

        Without transactions, callers compensate their own writes on failure.
        """
        if not self.use_transactions:
            yield None
            return

        async with await self.client.start_session() as session:
            async with session.start_transaction():
                yield session

    # ==================== ACCOUNTS ====================

    async def resolve_account(self, account_id: str, session=None) -> Tuple[str, Dict[str, Any]]:
        """
        Find the account document and its type.

        Checks users first, then operators. The returned balance is informational
        only and must not be used for a spending decision.
        """
        for account_type, collection_name in ACCOUNT_COLLECTIONS.items():
            account = await self.db[collection_name].find_one(
                {"id": account_id},
                {"_id": 0, "password": 0},
                session=session
            )
            if account:
                return account_type, account

        raise AccountNotFound(account_id)

    async def get_account(self, account_id: str) -> Dict[str, Any]:
        """Fresh account credit fields."""
        account_type, account = await self.resolve_account(account_id)
        return {
            "id": account_id,
            "account_type": account_type,
            "credit_balance": account.get("credit_balance", 0),
            "total_credits_purchased": account.get("total_credits_purchased", 0),
            "last_topup_at": account.get("last_topup_at"),
            "plan": account.get("plan"),
            "subscription_status": account.get("subscription_status"),
            "subscription_start_date": account.get("subscription_start_date"),
            "subscription_end_date": account.get("subscription_end_date")
        }

    async def get_balance(self, account_id: str) -> int:
        _, account = await self.resolve_account(account_id)
        return account.get("credit_balance", 0)

    def _collection(self, account_type: str):
        return self.db[ACCOUNT_COLLECTIONS[account_type]]

    # ==================== MUTATIONS ====================

    async def debit(
        self,
        account_id: str,
        amount: int,
        feature: str,
        metadata: Optional[Dict] = None,
        session=None
    ) -> Dict[str, Any]:
        """
        Atomically subtract amount where credit_balance >= amount.

        Raises:
            InsufficientCredits: balance was below amount; nothing was changed
            AccountNotFound: no such account
            LedgerWriteError: the log entry could not be written; the debit was undone
        """
        _validate_amount(amount)
        account_type, _ = await self.resolve_account(account_id, session=session)
        collection = self._collection(account_type)
        now = _now()

        updated = await collection.find_one_and_update(
            {"id": account_id, "credit_balance": {"$gte": amount}},
            {
                "$inc": {"credit_balance": -amount},
                "$set": {"updated_at": now}
            },
            projection={"_id": 0, "credit_balance": 1},
            return_document=ReturnDocument.AFTER,
            session=session
        )

        if updated is None:
            current = await collection.find_one(
                {"id": account_id},
                {"_id": 0, "credit_balance": 1},
                session=session
            )
            if current is None:
                raise AccountNotFound(account_id)
            raise InsufficientCredits(required=amount, available=current.get("credit_balance", 0))

        new_balance = updated["credit_balance"]
        return await self._append_or_compensate(
            collection,
            account_id,
            inverse={"credit_balance": amount},
            entry=self._build_entry(
                account_id=account_id,
                account_type=account_type,
                amount=amount,
                action="deduct",
                feature=feature,
                previous_balance=new_balance + amount,
                new_balance=new_balance,
                metadata=metadata
            ),
            session=session
        )

    async def credit(
        self,
        account_id: str,
        amount: int,
        feature: str,
        action: str = "add",
        purchase: bool = False,
        metadata: Optional[Dict] = None,
        notes: Optional[str] = None,
        session=None
    ) -> Dict[str, Any]:
        """
        Atomically add amount to the balance.

        Args:
            action: 'add' for top-ups and grants, 'refund' for reversed deductions
            purchase: also bump total_credits_purchased and last_topup_at
        """
        _validate_amount(amount)
        account_type, _ = await self.resolve_account(account_id, session=session)
        collection = self._collection(account_type)
        now = _now()

        inc = {"credit_balance": amount}
        update_set = {"updated_at": now}
        if purchase:
            inc["total_credits_purchased"] = amount
            update_set["last_topup_at"] = now

        updated = await collection.find_one_and_update(
            {"id": account_id},
            {"$inc": inc, "$set": update_set},
            projection={"_id": 0, "credit_balance": 1},
            return_document=ReturnDocument.AFTER,
            session=session
        )
        if updated is None:
            raise AccountNotFound(account_id)

        new_balance = updated["credit_balance"]
        inverse = {key: -value for key, value in inc.items()}

        entry = await self._append_or_compensate(
            collection,
            account_id,
            inverse=inverse,
            entry=self._build_entry(
                account_id=account_id,
                account_type=account_type,
                amount=amount,
                action=action,
                feature=feature,
                previous_balance=new_balance - amount,
                new_balance=new_balance,
                metadata=metadata,
                notes=notes
            ),
            session=session
        )

        logger.info(f"Credited {amount} credits to {account_type} {account_id} ({action}/{feature})")
        return entry

    async def record_failed_attempt(
        self,
        account_id: str,
        amount: int,
        feature: str,
        available: int,
        metadata: Optional[Dict] = None
    ) -> Optional[Dict[str, Any]]:
        """Audit row for a rejected deduction. Never touches the balance."""
        try:
            account_type, _ = await self.resolve_account(account_id)
            entry = self._build_entry(
                account_id=account_id,
                account_type=account_type,
                amount=amount,
                action="deduct",
                feature=feature,
                previous_balance=available,
                new_balance=available,
                status="failed",
                metadata=metadata,
                notes="insufficient_credits"
            )
            await self.db.credit_transactions.insert_one(dict(entry))
            return entry
        except PyMongoError as e:
            # Audit-only row; the rejection itself already stands
            logger.warning(f"Could not log failed deduction for {account_id}: {e}")
            return None

    async def _append_or_compensate(
        self,
        collection,
        account_id: str,
        inverse: Dict[str, int],
        entry: Dict[str, Any],
        session=None
    ) -> Dict[str, Any]:
        """
        Insert the log entry for a mutation that was just applied.

        Inside a transaction a failure aborts both writes. Outside one, the
        balance mutation is reverted with the inverse $inc before raising.
        """
        try:
            await self.db.credit_transactions.insert_one(dict(entry), session=session)
        except PyMongoError as e:
            if session is None:
                logger.error(
                    f"Ledger insert failed for {account_id}, reverting balance change {inverse}: {e}"
                )
                await collection.update_one(
                    {"id": account_id},
                    {"$inc": inverse, "$set": {"updated_at": _now()}}
                )
            raise LedgerWriteError(details=str(e)) from e

        return entry

    def _build_entry(
        self,
        account_id: str,
        account_type: str,
        amount: int,
        action: str,
        feature: str,
        previous_balance: int,
        new_balance: int,
        status: str = "success",
        metadata: Optional[Dict] = None,
        notes: Optional[str] = None
    ) -> Dict[str, Any]:
        return CreditTransaction(
            transaction_id=str(uuid.uuid4()),
            account_id=account_id,
            account_type=account_type,
            amount=amount,
            action=action,
            feature=feature,
            previous_balance=previous_balance,
            new_balance=new_balance,
            status=status,
            metadata=metadata or {},
            notes=notes,
            created_at=_now()
        ).model_dump()

    # ==================== QUERIES ====================

    async def get_transactions(
        self,
        account_id: str,
        limit: int = 50,
        since: Optional[str] = None,
        until: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Ledger entries for an account, newest first, optionally bounded by created_at."""
        query: Dict[str, Any] = {"account_id": account_id}
        created_range = {}
        if since:
            created_range["$gte"] = since
        if until:
            created_range["$lte"] = until
        if created_range:
            query["created_at"] = created_range

        cursor = self.db.credit_transactions.find(
            query,
            {"_id": 0}
        ).sort("created_at", -1).limit(limit)

        return await cursor.to_list(length=limit)


def _validate_amount(amount: int):
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValueError(f"Credit amount must be a positive integer, got {amount!r}")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
