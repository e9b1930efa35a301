# coding: utf-8
"""
Stripe Service

Card-network processor used for off-session subscription renewal charges.

Implements:
- Idempotent PaymentIntent creation (one key per subscription period)
- Cancellation of unsettled renewal charges once a subscription expires
- Exponential backoff for transient Stripe errors
- Webhook signature verification and status mapping onto PaymentStatus
"""
import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import stripe
from loguru import logger
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config.config import STRIPE_API_VERSION, STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET
from paycycle.core.enums import PaymentProvider, PaymentStatus
from paycycle.core.exceptions import (
    ChargeDeclinedError,
    ChargeError,
    InvalidSignatureError,
    ProviderError,
    ProviderNotConfiguredError,
    ProviderUnavailableError,
)
from paycycle.services.nowpayments_service import ProviderStatus

_retry_logger = logging.getLogger(__name__)

INTENT_STATUS_MAP = {
    "succeeded": PaymentStatus.FINISHED,
    "processing": PaymentStatus.CONFIRMING,
    "requires_action": PaymentStatus.WAITING,
    "requires_confirmation": PaymentStatus.WAITING,
    "requires_capture": PaymentStatus.CONFIRMED,
    "requires_payment_method": PaymentStatus.FAILED,
    "canceled": PaymentStatus.FAILED,
}

WEBHOOK_EVENT_MAP = {
    "payment_intent.succeeded": PaymentStatus.FINISHED,
    "payment_intent.processing": PaymentStatus.CONFIRMING,
    "payment_intent.requires_action": PaymentStatus.WAITING,
    "payment_intent.payment_failed": PaymentStatus.FAILED,
    "payment_intent.canceled": PaymentStatus.FAILED,
    "charge.refunded": PaymentStatus.REFUNDED,
}

TRANSIENT_STRIPE_ERRORS = (
    stripe.APIConnectionError,
    stripe.RateLimitError,
)


def map_intent_status(status: Optional[str]) -> PaymentStatus:
    return INTENT_STATUS_MAP.get(status or "", PaymentStatus.PENDING)


def _intent_summary(intent: Any) -> Dict[str, Any]:
    """The PaymentIntent fields kept in Payment.provider_data"""
    return {
        "id": intent["id"],
        "status": intent["status"],
        "amount": intent["amount"],
        "currency": intent["currency"],
    }


@dataclass
class ChargeResult:
    """A created PaymentIntent"""
    provider_payment_id: str
    status: PaymentStatus
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StripeWebhookEvent:
    """A webhook event reduced to what the state machine needs"""
    event_id: str
    event_type: str
    provider_payment_id: str
    status: PaymentStatus
    raw: Dict[str, Any] = field(default_factory=dict)


class StripeService:
    """
    Thin async wrapper around the blocking stripe SDK
    """

    def __init__(
        self,
        api_key: str = STRIPE_SECRET_KEY,
        webhook_secret: str = STRIPE_WEBHOOK_SECRET,
        api_version: str = STRIPE_API_VERSION,
    ):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.api_version = api_version
        self.enabled = bool(api_key)

        if not self.enabled:
            logger.warning("⚠️ STRIPE_SECRET_KEY is not configured")

    def _require_enabled(self) -> None:
        if not self.enabled:
            raise ProviderNotConfiguredError(
                "Stripe secret key is not configured", provider=PaymentProvider.STRIPE.value
            )

    @retry(
        retry=retry_if_exception_type(ProviderUnavailableError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        before_sleep=before_sleep_log(_retry_logger, logging.WARNING),
        reraise=True,
    )
    async def create_charge(
        self,
        amount_cents: int,
        currency: str,
        customer_id: str,
        payment_method_id: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
    ) -> ChargeResult:
        """
        Create and confirm an off-session PaymentIntent

        The idempotency key makes retries (ours and tenacity's) return the
        same PaymentIntent instead of charging twice.

        Raises:
            ChargeDeclinedError: card declined or authentication required
            ChargeError: any other non-transient Stripe error
            ProviderUnavailableError: network or rate limit after retries
        """
        self._require_enabled()
        params = {
            "amount": int(amount_cents),
            "currency": currency.lower(),
            "customer": customer_id,
            "payment_method": payment_method_id,
            "off_session": True,
            "confirm": True,
            "description": description or "",
            "metadata": {k: str(v) for k, v in (metadata or {}).items() if v is not None},
        }

        def _create() -> Any:
            return stripe.PaymentIntent.create(
                api_key=self.api_key,
                stripe_version=self.api_version,
                idempotency_key=idempotency_key,
                **params,
            )

        try:
            intent = await asyncio.to_thread(_create)
        except stripe.CardError as e:
            intent_id = None
            error = getattr(e, "error", None)
            if error is not None and getattr(error, "payment_intent", None):
                intent_id = error.payment_intent.get("id")
            logger.warning(f"💳 Stripe charge declined ({e.code}): {e.user_message or e}")
            raise ChargeDeclinedError(str(e), code=e.code, provider_payment_id=intent_id) from e
        except TRANSIENT_STRIPE_ERRORS as e:
            raise ProviderUnavailableError(
                f"Stripe transient error: {e}", provider=PaymentProvider.STRIPE.value
            ) from e
        except stripe.StripeError as e:
            raise ChargeError(f"Stripe error: {e}", code=getattr(e, "code", None)) from e

        status = map_intent_status(intent["status"])
        logger.info(
            f"💳 Stripe PaymentIntent {intent['id']} created: {intent['status']} "
            f"({amount_cents} {currency.lower()})"
        )
        return ChargeResult(provider_payment_id=intent["id"], status=status, raw=_intent_summary(intent))

    async def retrieve_status(self, payment_intent_id: str) -> ProviderStatus:
        """Current PaymentIntent status mapped onto PaymentStatus values"""
        self._require_enabled()

        def _retrieve() -> Any:
            return stripe.PaymentIntent.retrieve(
                payment_intent_id, api_key=self.api_key, stripe_version=self.api_version
            )

        try:
            intent = await asyncio.to_thread(_retrieve)
        except TRANSIENT_STRIPE_ERRORS as e:
            raise ProviderUnavailableError(
                f"Stripe transient error: {e}", provider=PaymentProvider.STRIPE.value
            ) from e
        except stripe.StripeError as e:
            raise ProviderError(f"Stripe error: {e}", provider=PaymentProvider.STRIPE.value) from e

        return ProviderStatus(status=map_intent_status(intent["status"]).value, raw=_intent_summary(intent))

    @retry(
        retry=retry_if_exception_type(ProviderUnavailableError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        before_sleep=before_sleep_log(_retry_logger, logging.WARNING),
        reraise=True,
    )
    async def cancel_charge(self, payment_intent_id: str) -> ProviderStatus:
        """
        Cancel a PaymentIntent that has not settled yet

        Raises:
            ChargeError: Stripe refused (e.g. the intent already succeeded)
            ProviderUnavailableError: network or rate limit after retries
        """
        self._require_enabled()

        def _cancel() -> Any:
            return stripe.PaymentIntent.cancel(
                payment_intent_id,
                cancellation_reason="abandoned",
                api_key=self.api_key,
                stripe_version=self.api_version,
            )

        try:
            intent = await asyncio.to_thread(_cancel)
        except TRANSIENT_STRIPE_ERRORS as e:
            raise ProviderUnavailableError(
                f"Stripe transient error: {e}", provider=PaymentProvider.STRIPE.value
            ) from e
        except stripe.StripeError as e:
            raise ChargeError(
                f"Stripe refused cancel: {e}",
                code=getattr(e, "code", None),
                provider_payment_id=payment_intent_id,
            ) from e

        logger.info(f"💳 Stripe PaymentIntent {payment_intent_id} cancelled")
        return ProviderStatus(status=map_intent_status(intent["status"]).value, raw=_intent_summary(intent))

    def parse_webhook(self, payload: bytes, signature: str) -> Optional[StripeWebhookEvent]:
        """
        Verify and reduce a webhook delivery

        Returns:
            StripeWebhookEvent, or None for event types we do not track

        Raises:
            InvalidSignatureError: signature missing or wrong
        """
        if not self.webhook_secret:
            raise InvalidSignatureError("STRIPE_WEBHOOK_SECRET is not configured")
        try:
            stripe.WebhookSignature.verify_header(payload, signature, self.webhook_secret)
            event = json.loads(payload)
        except (stripe.SignatureVerificationError, ValueError) as e:
            raise InvalidSignatureError(f"Invalid Stripe webhook: {e}") from e

        event_type = event["type"]
        status = WEBHOOK_EVENT_MAP.get(event_type)
        if status is None:
            logger.debug(f"Ignoring Stripe event {event_type}")
            return None

        obj = event["data"]["object"]
        intent_id = obj.get("payment_intent") if event_type.startswith("charge.") else obj.get("id")
        if not intent_id:
            logger.warning(f"Stripe event {event['id']} ({event_type}) has no PaymentIntent id")
            return None

        return StripeWebhookEvent(
            event_id=event["id"],
            event_type=event_type,
            provider_payment_id=str(intent_id),
            status=status,
            raw=dict(obj),
        )


_stripe_service: Optional[StripeService] = None


def get_stripe_service() -> StripeService:
    """Get the Stripe service instance (singleton)"""
    global _stripe_service
    if _stripe_service is None:
        _stripe_service = StripeService()
    return _stripe_service
