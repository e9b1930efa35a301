# coding: utf-8
"""
NOWPayments Service

Crypto settlement provider client:
- Payment creation for credit top-ups (pushed straight into the pending queue)
- Status polling for the monitoring loop
- IPN (webhook) signature verification

Payment statuses:
waiting → confirming → confirmed → sending → finished ✅
partially_paid ⚠️, failed ❌, expired ❌, refunded ❌

API Documentation: https://documenter.getpostman.com/view/7907941/S1a32n38
"""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, UTC
from decimal import Decimal
from typing import Any, Dict, Optional

import aiohttp
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config.config import (
    NOWPAYMENTS_API_KEY,
    NOWPAYMENTS_IPN_CALLBACK_URL,
    NOWPAYMENTS_IPN_SECRET,
    NOWPAYMENTS_SANDBOX,
)
from paycycle.core.enums import (
    CreditTransactionType,
    MonitoringStatus,
    PaymentProvider,
    PaymentPurpose,
    PaymentStatus,
)
from paycycle.core.exceptions import (
    ProviderError,
    ProviderNotConfiguredError,
    ProviderUnavailableError,
)
from paycycle.database.models import CreditTransaction, Payment
from paycycle.services.credit_service import to_money

# tenacity logs through stdlib logging
_retry_logger = logging.getLogger(__name__)


@dataclass
class ProviderStatus:
    """Status snapshot returned by the settlement provider"""
    status: str
    amount_received: Optional[Decimal] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class NOWPaymentsService:
    """
    NOWPayments API client

    Transient failures (network, timeouts, 429, 5xx) raise
    ProviderUnavailableError after a short in-call retry; the monitoring loop
    then applies its own backoff across ticks.
    """

    API_BASE_URL = "https://api.nowpayments.io/v1"
    SANDBOX_API_URL = "https://api-sandbox.nowpayments.io/v1"
    REQUEST_TIMEOUT_SEC = 15

    def __init__(
        self,
        api_key: str = NOWPAYMENTS_API_KEY,
        ipn_secret: str = NOWPAYMENTS_IPN_SECRET,
        sandbox: bool = NOWPAYMENTS_SANDBOX,
        ipn_callback_url: str = NOWPAYMENTS_IPN_CALLBACK_URL,
    ):
        self.api_key = api_key
        self.ipn_secret = ipn_secret
        self.is_sandbox = sandbox
        self.ipn_callback_url = ipn_callback_url
        self.base_url = self.SANDBOX_API_URL if sandbox else self.API_BASE_URL
        self.enabled = bool(api_key)

        if not self.enabled:
            logger.warning("⚠️ NOWPAYMENTS_API_KEY is not configured")
        else:
            network = "Sandbox" if sandbox else "Production"
            logger.info(f"✅ NOWPaymentsService initialized ({network})")

    def _get_headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "Content-Type": "application/json",
        }

    @retry(
        retry=retry_if_exception_type(ProviderUnavailableError),
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=1, min=1, max=4),
        before_sleep=before_sleep_log(_retry_logger, logging.WARNING),
        reraise=True,
    )
    async def _request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if not self.enabled:
            raise ProviderNotConfiguredError(
                "NOWPayments API key is not configured", provider=PaymentProvider.NOWPAYMENTS.value
            )

        url = f"{self.base_url}{path}"
        timeout = aiohttp.ClientTimeout(total=self.REQUEST_TIMEOUT_SEC)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(
                    method, url, headers=self._get_headers(), json=payload
                ) as response:
                    if response.status == 429 or response.status >= 500:
                        body = await response.text()
                        raise ProviderUnavailableError(
                            f"NOWPayments {method} {path} returned {response.status}: {body[:200]}",
                            provider=PaymentProvider.NOWPAYMENTS.value,
                            status_code=response.status,
                        )
                    if response.status >= 400:
                        body = await response.text()
                        raise ProviderError(
                            f"NOWPayments {method} {path} returned {response.status}: {body[:200]}",
                            provider=PaymentProvider.NOWPAYMENTS.value,
                            status_code=response.status,
                        )
                    return await response.json()
        except (aiohttp.ClientError, TimeoutError) as e:
            raise ProviderUnavailableError(
                f"NOWPayments {method} {path} failed: {e}",
                provider=PaymentProvider.NOWPAYMENTS.value,
            ) from e

    async def get_api_status(self) -> bool:
        """Health check against GET /status"""
        try:
            data = await self._request("GET", "/status")
        except ProviderError as e:
            logger.error(f"❌ NOWPayments API status check failed: {e}")
            return False
        return str(data.get("message", "")).upper() == "OK"

    async def get_payment_status(self, provider_payment_id: str) -> ProviderStatus:
        """
        Current status of a payment (GET /payment/{id})

        Raises:
            ProviderUnavailableError: transient failure
            ProviderError: any other provider failure
        """
        data = await self._request("GET", f"/payment/{provider_payment_id}")
        status = data.get("payment_status")
        if not status:
            raise ProviderError(
                f"NOWPayments response for {provider_payment_id} has no payment_status",
                provider=PaymentProvider.NOWPAYMENTS.value,
            )

        actually_paid = data.get("actually_paid")
        logger.debug(f"NOWPayments status: payment_id={provider_payment_id}, status={status}")
        return ProviderStatus(
            status=str(status),
            amount_received=Decimal(str(actually_paid)) if actually_paid is not None else None,
            raw=data,
        )

    async def create_credit_topup(
        self,
        session: AsyncSession,
        user_id: int,
        amount_usd: Any,
        pay_currency: str,
        queue=None,
        description: Optional[str] = None,
    ) -> Payment:
        """
        Create a crypto payment for a credit top-up

        Writes the Payment and its unsettled ledger intent row in one commit,
        then pushes the payment into the pending queue so the monitoring loop
        sees it without waiting for a rehydration.

        Args:
            session: Database session
            user_id: Paying user
            amount_usd: Requested amount in USD
            pay_currency: Crypto ticker, e.g. "btc"
            queue: PendingPaymentQueue to push into (optional)
            description: Order description shown by the provider
        """
        amount = to_money(amount_usd)
        order_id = f"paycycle_{user_id}_{int(datetime.now(UTC).timestamp())}"
        payload: Dict[str, Any] = {
            "price_amount": float(amount),
            "price_currency": "usd",
            "pay_currency": pay_currency.lower(),
            "order_id": order_id,
            "order_description": description or f"Credit top-up ${amount}",
        }
        if self.ipn_callback_url:
            payload["ipn_callback_url"] = self.ipn_callback_url

        data = await self._request("POST", "/payment", payload)
        provider_payment_id = str(data["payment_id"])

        payment = Payment(
            user_id=user_id,
            provider=PaymentProvider.NOWPAYMENTS.value,
            provider_payment_id=provider_payment_id,
            status=PaymentStatus.PENDING.value,
            purpose=PaymentPurpose.CREDIT_TOPUP.value,
            amount=amount,
            currency="usd",
            provider_data=data,
            extra_data={"order_id": order_id},
        )
        intent = CreditTransaction(
            user_id=user_id,
            type=CreditTransactionType.DEPOSIT.value,
            amount=Decimal("0.00"),
            description=payload["order_description"],
            payment_id=provider_payment_id,
            payment_provider=PaymentProvider.NOWPAYMENTS.value,
            payment_status=PaymentStatus.PENDING.value,
            payment_currency=pay_currency.lower(),
            payment_amount=Decimal(str(data["pay_amount"])) if data.get("pay_amount") is not None else None,
            monitoring_status=MonitoringStatus.PENDING.value,
            retry_count=0,
            extra_data={"requestedUsd": str(amount), "orderId": order_id},
        )
        session.add_all([payment, intent])
        await session.commit()

        if queue is not None:
            await queue.push(provider_payment_id)

        logger.info(
            f"✅ NOWPayments payment created: user={user_id}, amount=${amount}, "
            f"payment_id={provider_payment_id}, pay_currency={pay_currency}"
        )
        return payment

    def verify_ipn_signature(self, request_body: bytes, signature: str) -> bool:
        """
        Verify the x-nowpayments-sig header (HMAC-SHA512)

        NOWPayments signs the JSON body with keys sorted; the raw body is
        accepted as well for senders that already sort.
        """
        if not self.ipn_secret:
            logger.warning("⚠️ NOWPAYMENTS_IPN_SECRET is not configured")
            return False
        if not signature:
            return False

        candidates = [request_body]
        try:
            parsed = json.loads(request_body)
            candidates.append(
                json.dumps(parsed, sort_keys=True, separators=(",", ":")).encode()
            )
        except (ValueError, TypeError):
            pass

        for body in candidates:
            expected = hmac.new(self.ipn_secret.encode(), body, hashlib.sha512).hexdigest()
            if hmac.compare_digest(signature.lower(), expected):
                return True

        logger.warning("❌ Invalid IPN signature")
        return False


_nowpayments_service: Optional[NOWPaymentsService] = None


def get_nowpayments_service() -> NOWPaymentsService:
    """Get the NOWPayments service instance (singleton)"""
    global _nowpayments_service
    if _nowpayments_service is None:
        _nowpayments_service = NOWPaymentsService()
    return _nowpayments_service
