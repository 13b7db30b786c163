"""Inbound webhook receiver for ServiceNow business rules and Jira webhooks."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from itsm_sync.config import settings
from itsm_sync.core.rate_limit import limiter
from itsm_sync.core.security import verify_webhook_signature
from itsm_sync.database import get_db
from itsm_sync.services.connection_registry import PLATFORMS
from itsm_sync.services.webhook_service import process_webhook

logger = logging.getLogger(__name__)

router = APIRouter()

SIGNATURE_HEADER = "X-Hub-Signature-256"


@router.post("/{platform}")
@limiter.limit(settings.WEBHOOK_RATE_LIMIT)
async def receive_webhook(
    platform: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    organization_id: str | None = Query(None, max_length=100),
    ack: bool | None = Query(None),
):
    if platform not in PLATFORMS:
        raise HTTPException(404, f"Unknown platform: {platform}")
    body = await request.body()
    if not verify_webhook_signature(body, request.headers.get(SIGNATURE_HEADER), settings.WEBHOOK_SECRET):
        logger.warning("Rejected %s webhook with a bad signature", platform, extra={"platform": platform})
        raise HTTPException(401, "Invalid webhook signature")

    try:
        result = await process_webhook(
            db,
            organization_id=organization_id or settings.DEFAULT_ORGANIZATION_ID,
            platform=platform,
            body=body,
            acknowledge=ack,
        )
    except Exception:
        await db.rollback()
        raise
    if not result.success:
        return JSONResponse(status_code=400, content=result.to_dict())
    await db.commit()
    return result.to_dict()
