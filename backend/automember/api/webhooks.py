"""WooCommerce order webhook: stages membership line items."""
from __future__ import annotations

import base64
import hashlib
import hmac
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from automember.api.deps import get_staging_session_factory
from automember.config import settings
from automember.errors import ValidationError
from automember.ingestion import stage_order
from automember.metrics import ORDERS_RECEIVED_TOTAL

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-wc-webhook-signature"


def expected_signature(raw: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def signature_ok(raw: bytes, signature: str, secret: str) -> bool:
    if not secret or not signature:
        return False
    return hmac.compare_digest(expected_signature(raw, secret), signature.strip())


@router.post("/woocommerce")
async def woocommerce_order(
    request: Request,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_staging_session_factory),
) -> dict:
    raw = await request.body()
    if not settings.WC_SKIP_SIGNATURE:
        signature = request.headers.get(SIGNATURE_HEADER, "")
        if not signature_ok(raw, signature, settings.WC_WEBHOOK_SECRET):
            ORDERS_RECEIVED_TOTAL.labels(outcome="bad_signature").inc()
            raise HTTPException(status_code=401, detail="Bad signature")

    try:
        async with session_factory() as session:
            staged = await stage_order(session, raw)
    except ValidationError as exc:
        ORDERS_RECEIVED_TOTAL.labels(outcome="invalid").inc()
        logger.warning("Rejected order webhook: %s", exc.message)
        raise HTTPException(status_code=exc.http_status, detail=exc.to_dict())
    except Exception:
        ORDERS_RECEIVED_TOTAL.labels(outcome="error").inc()
        logger.exception("Webhook processing failed")
        raise HTTPException(status_code=500, detail="Server error")

    ORDERS_RECEIVED_TOTAL.labels(outcome="staged" if staged else "ignored").inc()
    if not staged:
        return {"ok": True, "staged": 0, "msg": "No membership line items"}
    return {"ok": True, "staged": len(staged), "stagingIds": [r.staging_id for r in staged]}
