# coding: utf-8
"""
Payment provider webhooks

Push path of the payment state machine. Both handlers verify the provider
signature over the raw body and hand the observed status to the same
PaymentEventProcessor the monitoring poll uses.

NOWPayments IPN statuses:
- waiting → confirming → confirmed → sending → finished ✅
- partially_paid ⚠️, failed ❌, expired ❌, refunded ❌
"""
import json
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from loguru import logger

from paycycle.core.enums import PaymentProvider
from paycycle.core.exceptions import InvalidSignatureError
from paycycle.orchestrator import Orchestrator, get_orchestrator

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/nowpayments")
async def nowpayments_ipn_callback(
    request: Request,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    x_nowpayments_sig: Optional[str] = Header(None),
):
    """
    IPN callback from NOWPayments

    Security: HMAC-SHA512 over the raw body (x-nowpayments-sig header)

    Returns:
        {"status": "ok"} when applied or already known,
        {"status": "ignored"} for payments this system did not create
    """
    body = await request.body()

    if not x_nowpayments_sig:
        logger.error("❌ Missing x-nowpayments-sig header")
        raise HTTPException(status_code=403, detail="Missing signature header")

    if not orchestrator.nowpayments.verify_ipn_signature(body, x_nowpayments_sig):
        raise HTTPException(status_code=403, detail="Invalid signature")

    try:
        ipn_data = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Body is not valid JSON")

    payment_id = ipn_data.get("payment_id")
    status = ipn_data.get("payment_status")
    if payment_id is None or not status:
        raise HTTPException(status_code=400, detail="payment_id and payment_status are required")

    logger.info(f"📨 NOWPayments IPN: payment_id={payment_id}, status={status}")

    outcome = await orchestrator.events.handle_status(
        PaymentProvider.NOWPAYMENTS.value,
        str(payment_id),
        status,
        provider_data=ipn_data,
        source="ipn",
    )
    if not outcome.found:
        return {"status": "ignored", "reason": "unknown_payment"}

    return {
        "status": "ok",
        "applied": outcome.transition.applied,
        "payment_status": outcome.status.value,
    }


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    stripe_signature: Optional[str] = Header(None),
):
    """
    Stripe webhook (PaymentIntent and refund events)

    Security: Stripe-Signature header verified with the endpoint secret
    """
    body = await request.body()

    try:
        event = orchestrator.stripe.parse_webhook(body, stripe_signature or "")
    except InvalidSignatureError as e:
        logger.error(f"❌ Stripe webhook rejected: {e}")
        raise HTTPException(status_code=400, detail="Invalid signature")

    if event is None:
        return {"status": "ignored"}

    logger.info(
        f"📨 Stripe event {event.event_id}: {event.event_type} for {event.provider_payment_id}"
    )

    outcome = await orchestrator.events.handle_status(
        PaymentProvider.STRIPE.value,
        event.provider_payment_id,
        event.status,
        provider_data={"stripe_event_id": event.event_id, "stripe_event_type": event.event_type},
        source="stripe_webhook",
    )
    if not outcome.found:
        return {"status": "ignored", "reason": "unknown_payment"}

    return {
        "status": "ok",
        "applied": outcome.transition.applied,
        "payment_status": outcome.status.value,
    }
