"""Payment provider webhooks."""

import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from medbook.api.dependencies import get_service
from medbook.payments import WebhookSignatureError
from medbook.scheduling import SchedulingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks")


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="stripe-signature"),
    service: SchedulingService = Depends(get_service),
) -> dict:
    """Apply a signed payment event. Always 200 once the signature checks out."""
    if not stripe_signature:
        raise HTTPException(status_code=400, detail="Missing stripe-signature header")
    payload = await request.body()
    try:
        event = service.payments.parse_webhook(payload, stripe_signature)
    except WebhookSignatureError as e:
        logger.warning(f"Rejected webhook: {e}")
        raise HTTPException(status_code=400, detail="Invalid webhook signature")

    result = await service.handle_payment_event(event)
    logger.info(f"Webhook {event.id} ({event.type}) -> {result}")
    return {"received": True, "result": result}
