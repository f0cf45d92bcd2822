"""
Authentication utilities

Both end-users and operators hold credit balances, so either kind of
account can authenticate against the credit and payment endpoints.
"""
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt
from datetime import datetime, timezone, timedelta
import os

from database import get_db
from credit_ledger.config import ACCOUNT_COLLECTIONS

security = HTTPBearer()
JWT_SECRET = os.environ.get('JWT_SECRET', 'blog-platform-secret-key-change-in-production')
JWT_ALGORITHM = "HS256"


def create_token(account_id: str, email: str, account_type: str = "user") -> str:
    payload = {
        "sub": account_id,
        "email": email,
        "account_type": account_type,
        "exp": datetime.now(timezone.utc) + timedelta(days=7)
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


async def get_current_account(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db=Depends(get_db)
):
    """Verify JWT token and return the current account with its account_type"""
    try:
        payload = jwt.decode(credentials.credentials, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    account_id = payload.get("sub")
    account_type = payload.get("account_type", "user")
    if not account_id or account_type not in ACCOUNT_COLLECTIONS:
        raise HTTPException(status_code=401, detail="Invalid token")

    account = await db[ACCOUNT_COLLECTIONS[account_type]].find_one(
        {"id": account_id},
        {"_id": 0, "password": 0}
    )
    if not account:
        raise HTTPException(status_code=401, detail="Account not found")

    account["account_type"] = account_type
    return account


async def get_operator_account(account: dict = Depends(get_current_account)):
    """Check if account is an operator"""
    if account.get("account_type") != "operator":
        raise HTTPException(status_code=403, detail="Operator access required")
    return account
