"""
Credit Ledger Store Tests

Tests for:
- Atomic conditional debit (never below zero)
- Credits for purchases and refunds
- Balance + log consistency when the log insert fails
- Account resolution across users and operators
- Transaction history queries
"""

import pytest

from credit_ledger.exceptions import AccountNotFound, InsufficientCredits, LedgerWriteError
from credit_ledger.ledger_store import LedgerStore


class TestDebit:

    @pytest.fixture
    def store(self, db):
        return LedgerStore(db)

    @pytest.mark.asyncio
    async def test_debit_decrements_and_logs(self, store, db):
        """A debit lowers the balance and appends one deduct entry."""
        db.seed_account("u1", balance=10)

        entry = await store.debit("u1", 3, "seo_title", metadata={"request": "r1"})

        assert db.balance("u1") == 7
        assert entry["action"] == "deduct"
        assert entry["previous_balance"] == 10
        assert entry["new_balance"] == 7
        assert entry["status"] == "success"

        rows = db.transactions("u1")
        assert len(rows) == 1
        assert rows[0]["transaction_id"] == entry["transaction_id"]
        assert rows[0]["metadata"] == {"request": "r1"}

    @pytest.mark.asyncio
    async def test_debit_exact_balance_reaches_zero(self, store, db):
        db.seed_account("u1", balance=2)

        await store.debit("u1", 2, "blog_content")

        assert db.balance("u1") == 0

    @pytest.mark.asyncio
    async def test_insufficient_balance_is_untouched(self, store, db):
        """Debit above the balance raises with required/available and changes nothing."""
        db.seed_account("u1", balance=1)

        with pytest.raises(InsufficientCredits) as exc_info:
            await store.debit("u1", 2, "blog_content")

        assert exc_info.value.required == 2
        assert exc_info.value.available == 1
        assert db.balance("u1") == 1
        assert db.transactions("u1") == []

    @pytest.mark.asyncio
    async def test_unknown_account(self, store):
        with pytest.raises(AccountNotFound):
            await store.debit("ghost", 1, "seo_title")

    @pytest.mark.asyncio
    async def test_operator_accounts_hold_credits(self, store, db):
        """Operators are resolved from their own collection."""
        db.seed_account("op1", balance=5, account_type="operator")

        entry = await store.debit("op1", 1, "meta_description")

        assert entry["account_type"] == "operator"
        assert db.balance("op1") == 4

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -1, True, 1.5])
    async def test_rejects_non_positive_or_non_integer_amounts(self, store, db, amount):
        db.seed_account("u1", balance=10)

        with pytest.raises(ValueError):
            await store.debit("u1", amount, "seo_title")

        assert db.balance("u1") == 10

    @pytest.mark.asyncio
    async def test_log_failure_reverts_debit(self, store, db):
        """If the log entry cannot be written, no balance change survives."""
        db.seed_account("u1", balance=10)
        db.credit_transactions.fail_inserts = 1

        with pytest.raises(LedgerWriteError):
            await store.debit("u1", 4, "content_gap_analysis")

        assert db.balance("u1") == 10
        assert db.transactions("u1") == []


class TestCredit:

    @pytest.fixture
    def store(self, db):
        return LedgerStore(db)

    @pytest.mark.asyncio
    async def test_purchase_credit_updates_totals(self, store, db):
        db.seed_account("u1", balance=3)

        entry = await store.credit("u1", 70, "top_up", purchase=True, metadata={"plan_id": "credits_70"})

        account = await store.get_account("u1")
        assert account["credit_balance"] == 73
        assert account["total_credits_purchased"] == 70
        assert account["last_topup_at"] is not None
        assert entry["action"] == "add"
        assert entry["previous_balance"] == 3
        assert entry["new_balance"] == 73

    @pytest.mark.asyncio
    async def test_refund_does_not_count_as_purchase(self, store, db):
        db.seed_account("u1", balance=0)

        entry = await store.credit("u1", 2, "blog_content", action="refund")

        account = await store.get_account("u1")
        assert entry["action"] == "refund"
        assert account["credit_balance"] == 2
        assert account["total_credits_purchased"] == 0
        assert account["last_topup_at"] is None

    @pytest.mark.asyncio
    async def test_log_failure_reverts_purchase(self, store, db):
        db.seed_account("u1", balance=5)
        db.credit_transactions.fail_inserts = 1

        with pytest.raises(LedgerWriteError):
            await store.credit("u1", 150, "top_up", purchase=True)

        doc = db.users.docs[0]
        assert doc["credit_balance"] == 5
        assert doc["total_credits_purchased"] == 0

    @pytest.mark.asyncio
    async def test_unknown_account(self, store):
        with pytest.raises(AccountNotFound):
            await store.credit("ghost", 5, "top_up")


class TestFailedAttempts:

    @pytest.mark.asyncio
    async def test_failed_attempt_row_keeps_balance(self, db):
        db.seed_account("u1", balance=1)
        store = LedgerStore(db)

        entry = await store.record_failed_attempt("u1", 2, "blog_content", available=1)

        assert entry["status"] == "failed"
        assert entry["previous_balance"] == entry["new_balance"] == 1
        assert db.balance("u1") == 1

    @pytest.mark.asyncio
    async def test_failed_attempt_storage_error_is_swallowed(self, db):
        """Audit rows are best effort; the rejection stands either way."""
        db.seed_account("u1", balance=1)
        db.credit_transactions.fail_inserts = 1

        assert await LedgerStore(db).record_failed_attempt("u1", 2, "blog_content", available=1) is None


class TestTransactions:

    @pytest.mark.asyncio
    async def test_newest_first_with_range(self, db):
        db.seed_account("u1", balance=0)
        for day in ("2026-01-01", "2026-01-02", "2026-01-03", "2026-01-04"):
            db.credit_transactions.docs.append({
                "transaction_id": f"t-{day}",
                "account_id": "u1",
                "amount": 1,
                "action": "deduct",
                "feature": "seo_title",
                "created_at": f"{day}T10:00:00+00:00"
            })
        db.credit_transactions.docs.append({
            "transaction_id": "other",
            "account_id": "u2",
            "amount": 1,
            "action": "deduct",
            "feature": "seo_title",
            "created_at": "2026-01-02T11:00:00+00:00"
        })

        store = LedgerStore(db)
        everything = await store.get_transactions("u1")
        bounded = await store.get_transactions(
            "u1", since="2026-01-02T00:00:00+00:00", until="2026-01-03T23:59:59+00:00"
        )
        limited = await store.get_transactions("u1", limit=1)

        assert [e["transaction_id"] for e in everything] == [
            "t-2026-01-04", "t-2026-01-03", "t-2026-01-02", "t-2026-01-01"
        ]
        assert [e["transaction_id"] for e in bounded] == ["t-2026-01-03", "t-2026-01-02"]
        assert [e["transaction_id"] for e in limited] == ["t-2026-01-04"]
        assert all("_id" not in e for e in everything)
