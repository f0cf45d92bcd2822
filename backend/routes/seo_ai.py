"""
SEO AI Routes - Credit-billed content features for the blog editor
"""
import logging
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, HTTPException

from database import get_db
from utils.auth import get_current_account
from credit_ledger.exceptions import CreditLedgerError
from credit_ledger.feature_service import FeatureExecutionService
from credit_ledger.routes import get_ledger, http_error
from credit_ledger.guard import CreditGuard
from services.content_generator import ContentGenerator, build_prompt, PROMPT_BUILDERS

logger = logging.getLogger(__name__)

seo_ai_router = APIRouter(prefix="/seo-ai", tags=["SEO AI"])


def get_content_generator() -> ContentGenerator:
    return ContentGenerator()


@seo_ai_router.post("/{feature}")
async def run_feature(
    feature: str,
    payload: Dict[str, Any] = Body(...),
    account: dict = Depends(get_current_account),
    db=Depends(get_db),
    generator: ContentGenerator = Depends(get_content_generator)
):
    """
    Run a paid SEO feature.

    Credits are taken before generation and refunded if generation fails.
    Insufficient credits return 403 with the required and available amounts.
    """
    if feature not in PROMPT_BUILDERS:
        raise HTTPException(status_code=404, detail=f"Unknown feature: {feature}")

    try:
        build_prompt(feature, payload)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    service = FeatureExecutionService(db, guard=CreditGuard(db, ledger=get_ledger(db)))
    try:
        outcome = await service.execute(
            account["id"],
            feature,
            lambda: generator.generate(feature, payload),
            metadata={"model": generator.model}
        )
    except CreditLedgerError as e:
        raise http_error(e)

    return {
        "success": True,
        "feature": feature,
        "data": outcome["result"],
        "credits_used": outcome["credits_used"],
        "credit_balance": outcome["credit_balance"]
    }
