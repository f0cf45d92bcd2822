"""
Shared fixtures for credit ledger tests.

FakeDatabase is an in-memory stand-in for the Motor database handle. Each
operation is applied atomically and yields to the event loop first, so
asyncio.gather() interleaves concurrent callers between operations the way
concurrent requests interleave against MongoDB.
"""

import asyncio
import copy
import json
import sys
from datetime import datetime, timezone, timedelta
from pathlib import Path
from types import SimpleNamespace

import httpx
import pytest
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, OperationFailure

sys.path.insert(0, str(Path(__file__).parent.parent))

from credit_ledger.razorpay_service import RazorpayService, compute_payment_signature

KEY_ID = "rzp_test_key"
KEY_SECRET = "test_key_secret"
WEBHOOK_SECRET = "test_webhook_secret"

UNIQUE_FIELDS = {
    "users": ["id"],
    "operators": ["id"],
    "payment_orders": ["id", "provider_order_id", "provider_payment_id"],
    "webhook_events": ["provider_event_id"],
}


def _matches(doc, query):
    for key, condition in query.items():
        value = doc.get(key)
        if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
            for op, operand in condition.items():
                if op == "$gte" and not (value is not None and value >= operand):
                    return False
                if op == "$lte" and not (value is not None and value <= operand):
                    return False
                if op == "$ne" and value == operand:
                    return False
        elif value != condition:
            return False
    return True


def _project(doc, projection):
    doc = copy.deepcopy(doc)
    if not projection:
        return doc
    included = [k for k, v in projection.items() if v and k != "_id"]
    if included:
        return {k: doc[k] for k in included if k in doc}
    for key, keep in projection.items():
        if not keep:
            doc.pop(key, None)
    return doc


def _apply_update(doc, update, inserting=False):
    for key, value in update.get("$set", {}).items():
        doc[key] = copy.deepcopy(value)
    for key, value in update.get("$inc", {}).items():
        doc[key] = doc.get(key, 0) + value
    if inserting:
        for key, value in update.get("$setOnInsert", {}).items():
            doc[key] = copy.deepcopy(value)


class FakeCursor:

    def __init__(self, docs):
        self._docs = docs

    def sort(self, field, direction=1):
        self._docs = sorted(self._docs, key=lambda d: d.get(field) or "", reverse=direction < 0)
        return self

    def limit(self, n):
        self._docs = self._docs[:n]
        return self

    async def to_list(self, length=None):
        await asyncio.sleep(0)
        return self._docs[:length] if length else list(self._docs)


class FakeCollection:

    def __init__(self, name):
        self.name = name
        self.docs = []
        self.indexes = {}
        self.fail_inserts = 0
        self._next_id = 1

    def _find(self, query, sort=None):
        found = [d for d in self.docs if _matches(d, query)]
        for field, direction in reversed(sort or []):
            found.sort(key=lambda d: d.get(field) or "", reverse=direction < 0)
        return found

    def _check_unique(self, doc, ignore=None):
        for field in UNIQUE_FIELDS.get(self.name, []):
            value = doc.get(field)
            if value is None:
                continue
            for other in self.docs:
                if other is not ignore and other.get(field) == value:
                    raise DuplicateKeyError(
                        f"E11000 duplicate key error collection: {self.name} key: {field}={value}", 11000
                    )

    async def find_one(self, query, projection=None, sort=None, session=None):
        await asyncio.sleep(0)
        found = self._find(query, sort)
        return _project(found[0], projection) if found else None

    def find(self, query=None, projection=None):
        return FakeCursor([_project(d, projection) for d in self._find(query or {})])

    async def insert_one(self, doc, session=None):
        await asyncio.sleep(0)
        if self.fail_inserts:
            self.fail_inserts -= 1
            raise OperationFailure("simulated write failure")
        self._check_unique(doc)
        stored = copy.deepcopy(doc)
        stored.setdefault("_id", f"{self.name}-{self._next_id}")
        self._next_id += 1
        self.docs.append(stored)
        return SimpleNamespace(inserted_id=stored["_id"])

    async def update_one(self, query, update, upsert=False, session=None):
        await asyncio.sleep(0)
        found = self._find(query)
        if found:
            _apply_update(found[0], update)
            return SimpleNamespace(matched_count=1, modified_count=1, upserted_id=None)
        if upsert:
            doc = {k: v for k, v in query.items() if not isinstance(v, dict)}
            _apply_update(doc, update, inserting=True)
            self.docs.append(doc)
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=doc.get("_id"))
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

    async def find_one_and_update(
        self,
        query,
        update,
        projection=None,
        return_document=ReturnDocument.BEFORE,
        upsert=False,
        session=None
    ):
        await asyncio.sleep(0)
        found = self._find(query)
        if not found:
            return None
        doc = found[0]
        before = copy.deepcopy(doc)
        _apply_update(doc, update)
        return _project(doc if return_document == ReturnDocument.AFTER else before, projection)

    async def create_index(self, keys, **options):
        await asyncio.sleep(0)
        self.indexes[options.get("name", str(keys))] = {"key": keys, **options}
        return options.get("name")

    async def index_information(self):
        await asyncio.sleep(0)
        return dict(self.indexes)


class FakeDatabase:
    """Motor-like database handle backed by FakeCollections."""

    client = None

    def __init__(self):
        self._collections = {}
        self.created = []

    def __getitem__(self, name):
        if name not in self._collections:
            self._collections[name] = FakeCollection(name)
        return self._collections[name]

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]

    async def list_collection_names(self):
        await asyncio.sleep(0)
        return list(self.created)

    async def create_collection(self, name):
        await asyncio.sleep(0)
        self.created.append(name)
        return self[name]

    # ==================== SEED HELPERS ====================

    def seed_account(self, account_id, balance=0, account_type="user", **fields):
        collection = "users" if account_type == "user" else "operators"
        doc = {
            "id": account_id,
            "email": f"{account_id}@example.com",
            "credit_balance": balance,
            "total_credits_purchased": 0,
            "last_topup_at": None,
        }
        doc.update(fields)
        self[collection].docs.append(doc)
        return doc

    def seed_order(self, account_id, provider_order_id, plan_id="credits_70", credits=70,
                   amount=49900, status="created", age_minutes=0, **fields):
        created_at = (datetime.now(timezone.utc) - timedelta(minutes=age_minutes)).isoformat()
        doc = {
            "id": f"local-{provider_order_id}",
            "account_id": account_id,
            "account_type": "user",
            "plan_id": plan_id,
            "credits": credits,
            "provider_order_id": provider_order_id,
            "provider_payment_id": None,
            "amount_minor_units": amount,
            "currency": "INR",
            "status": status,
            "signature": None,
            "confirmed_via": None,
            "credit_transaction_id": None,
            "created_at": created_at,
            "updated_at": created_at,
        }
        doc.update(fields)
        self.payment_orders.docs.append(doc)
        return doc

    def balance(self, account_id):
        for collection in ("users", "operators"):
            for doc in self[collection].docs:
                if doc["id"] == account_id:
                    return doc["credit_balance"]
        raise KeyError(account_id)

    def transactions(self, account_id, **query):
        return [d for d in self.credit_transactions.docs if d["account_id"] == account_id and _matches(d, query)]


@pytest.fixture
def db():
    return FakeDatabase()


@pytest.fixture
def razorpay_env(monkeypatch):
    monkeypatch.setenv("RAZORPAY_KEY_ID", KEY_ID)
    monkeypatch.setenv("RAZORPAY_KEY_SECRET", KEY_SECRET)
    monkeypatch.setenv("RAZORPAY_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setenv("LEDGER_USE_TRANSACTIONS", "false")


class FakeRazorpayApi:
    """httpx transport handler mimicking POST /orders."""

    def __init__(self):
        self.requests = []
        self.fail_with = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            if isinstance(self.fail_with, type) and issubclass(self.fail_with, Exception):
                raise self.fail_with("simulated provider failure", request=request)
            return httpx.Response(self.fail_with, json={"error": {"description": "provider error"}})

        order = json.loads(request.content)
        return httpx.Response(200, json={
            "id": f"order_test{len(self.requests):04d}",
            "entity": "order",
            "amount": order["amount"],
            "currency": order["currency"],
            "receipt": order["receipt"],
            "status": "created",
        })


@pytest.fixture
def razorpay_api():
    return FakeRazorpayApi()


@pytest.fixture
def provider(razorpay_env, razorpay_api):
    return RazorpayService(transport=httpx.MockTransport(razorpay_api))


def payment_signature(order_id, payment_id):
    return compute_payment_signature(KEY_SECRET, order_id, payment_id)
