"""
Tests for the NOWPayments client (HTTP layer stubbed)
"""

import hashlib
import hmac
import json

import pytest
from decimal import Decimal

from paycycle.core.enums import MonitoringStatus, PaymentStatus
from paycycle.core.exceptions import ProviderError, ProviderNotConfiguredError
from paycycle.services.nowpayments_service import NOWPaymentsService
from paycycle.services.payment_state import get_ledger_row
from paycycle.services.pending_payment_queue import PendingPaymentQueue


@pytest.fixture
def service():
    return NOWPaymentsService(api_key="test-key", ipn_secret="secret", ipn_callback_url="https://example.com/ipn")


def stub_request(monkeypatch, service, response):
    calls = []

    async def fake_request(method, path, payload=None):
        calls.append((method, path, payload))
        return response

    monkeypatch.setattr(service, "_request", fake_request)
    return calls


def test_verify_ipn_signature(service):
    body = json.dumps({"payment_status": "finished", "payment_id": 1}).encode()
    sorted_body = json.dumps(
        {"payment_id": 1, "payment_status": "finished"}, sort_keys=True, separators=(",", ":")
    ).encode()
    signature = hmac.new(b"secret", sorted_body, hashlib.sha512).hexdigest()

    assert service.verify_ipn_signature(body, signature)
    assert service.verify_ipn_signature(body, signature.upper())
    assert not service.verify_ipn_signature(body, "deadbeef")
    assert not service.verify_ipn_signature(body, "")


def test_verify_without_secret_rejects():
    service = NOWPaymentsService(api_key="test-key", ipn_secret="")
    assert not service.verify_ipn_signature(b"{}", "anything")


@pytest.mark.asyncio
async def test_get_payment_status(monkeypatch, service):
    calls = stub_request(monkeypatch, service, {
        "payment_id": 42,
        "payment_status": "confirming",
        "actually_paid": 0.0015,
    })

    status = await service.get_payment_status("42")

    assert calls == [("GET", "/payment/42", None)]
    assert status.status == "confirming"
    assert status.amount_received == Decimal("0.0015")


@pytest.mark.asyncio
async def test_get_payment_status_without_status(monkeypatch, service):
    stub_request(monkeypatch, service, {"payment_id": 42})
    with pytest.raises(ProviderError):
        await service.get_payment_status("42")


@pytest.mark.asyncio
async def test_unconfigured_service_raises():
    service = NOWPaymentsService(api_key="")
    assert service.enabled is False
    with pytest.raises(ProviderNotConfiguredError):
        await service.get_payment_status("42")


@pytest.mark.asyncio
async def test_create_credit_topup(monkeypatch, service, session_maker, fake_redis, make_user):
    """Payment and ledger intent row are written together and queued"""
    user = await make_user()
    queue = PendingPaymentQueue(fake_redis)
    calls = stub_request(monkeypatch, service, {
        "payment_id": 5077125051,
        "payment_status": "waiting",
        "pay_amount": 0.00031,
        "pay_currency": "btc",
    })

    async with session_maker() as session:
        payment = await service.create_credit_topup(session, user.id, "25", "BTC", queue=queue)

    method, path, payload = calls[0]
    assert (method, path) == ("POST", "/payment")
    assert payload["price_amount"] == 25.0
    assert payload["pay_currency"] == "btc"
    assert payload["ipn_callback_url"] == "https://example.com/ipn"

    assert payment.provider_payment_id == "5077125051"
    assert payment.status == PaymentStatus.PENDING.value
    assert await queue.contains("5077125051")

    async with session_maker() as session:
        row = await get_ledger_row(session, "5077125051")
        assert row.amount == Decimal("0.00")
        assert row.balance_after is None
        assert row.monitoring_status == MonitoringStatus.PENDING.value
        assert row.payment_amount == Decimal("0.00031")
        assert row.extra_data["requestedUsd"] == "25.00"
