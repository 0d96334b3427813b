"""Billing webhook route."""
from __future__ import annotations

import asyncio

from fastapi import APIRouter, Request

from .. import billing

router = APIRouter(prefix="/webhooks", tags=["billing"])


@router.post("/billing")
async def billing_webhook(request: Request) -> dict:
    payload = await request.body()
    event = billing.verify_event(payload, request.headers.get(billing.SIGNATURE_HEADER))
    return await asyncio.to_thread(billing.handle_event, event)
