import asyncio
import json
import sys
from datetime import datetime
from decimal import Decimal
from pathlib import Path

import httpx
import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from conftest import fetch_all, seed
from server.db.base import EmailLog, Merchant, PaymentLink, Transaction
from server.services import notification_service


@pytest.fixture
def outbound(monkeypatch):
    requests = []

    def handler(request):
        requests.append(request)
        if request.url.host == "api.sendgrid.com":
            return httpx.Response(202)
        return httpx.Response(200, json={"ok": True})

    monkeypatch.setattr(notification_service, "_transport", httpx.MockTransport(handler))
    return requests


@pytest.fixture
def telegram(monkeypatch):
    sent = []

    async def fake_send(chat_id, text):
        sent.append((chat_id, text))
        return True

    monkeypatch.setattr(notification_service, "send_telegram_message", fake_send)
    return sent


def make_transaction(**fields):
    values = dict(
        id="tx-1",
        order_id="o1",
        status="confirmed",
        amount=Decimal("25"),
        currency="USD",
        amount_received=Decimal("0.0005"),
        currency_received="BTC",
        tx_hash="0xabc",
        updated_at=datetime(2026, 1, 1, 12, 0),
    )
    values.update(fields)
    return Transaction(**values)


def test_broadcast_skipped_without_url(outbound):
    assert asyncio.run(notification_service.broadcast_payment_update(make_transaction())) is False
    assert outbound == []


def test_broadcast_posts_payment_channel(outbound, monkeypatch):
    monkeypatch.setenv("REALTIME_BROADCAST_URL", "https://realtime.test/api/broadcast")
    monkeypatch.setenv("REALTIME_API_KEY", "anon")

    assert asyncio.run(notification_service.broadcast_payment_update(make_transaction())) is True

    request = outbound[0]
    assert request.headers["apikey"] == "anon"
    message = json.loads(request.content)["messages"][0]
    assert message["topic"] == "payment-tx-1"
    assert message["event"] == "payment_status"
    assert message["payload"]["status"] == "confirmed"
    assert message["payload"]["amount_received"] == "0.0005"


def test_broadcast_raises_on_error_status(monkeypatch):
    monkeypatch.setenv("REALTIME_BROADCAST_URL", "https://realtime.test/api/broadcast")
    monkeypatch.setattr(
        notification_service, "_transport", httpx.MockTransport(lambda request: httpx.Response(500))
    )
    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(notification_service.broadcast_payment_update(make_transaction()))


def test_send_email_queued_when_unconfigured(outbound):
    assert asyncio.run(notification_service.send_email("a@b.c", "Hi", "text")) == ("queued", None)
    assert outbound == []


def test_send_email_failure_status(monkeypatch):
    monkeypatch.setenv("SENDGRID_API_KEY", "sg-key")
    monkeypatch.setenv("NOTIFICATIONS_FROM_EMAIL", "noreply@example.com")
    monkeypatch.setattr(
        notification_service,
        "_transport",
        httpx.MockTransport(lambda request: httpx.Response(401, text="unauthorized")),
    )

    status, error = asyncio.run(notification_service.send_email("a@b.c", "Hi", "text"))
    assert status == "failed"
    assert "401" in error


def test_customer_receipt_is_logged(session_factory, outbound, monkeypatch):
    monkeypatch.setenv("SENDGRID_API_KEY", "sg-key")
    monkeypatch.setenv("NOTIFICATIONS_FROM_EMAIL", "noreply@example.com")
    monkeypatch.setenv("APP_URL", "https://pay.example.com/")
    link = PaymentLink(id="link-1", title="Coffee")

    status = asyncio.run(
        notification_service.send_customer_receipt(make_transaction(), link, "buyer@example.com")
    )

    assert status == "sent"
    body = json.loads(outbound[0].content)
    assert body["personalizations"][0]["subject"] == "Payment Receipt - Coffee"
    text = body["content"][0]["value"]
    assert "Amount paid: 0.0005 BTC" in text
    assert "https://pay.example.com/payment/success/tx-1" in text

    [log] = fetch_all(session_factory, EmailLog)
    assert (log.email, log.type, log.status) == ("buyer@example.com", "customer_receipt", "sent")
    assert log.details == {"payment_id": "tx-1", "payment_link_id": "link-1"}


def test_notify_merchant_emails_and_messages_telegram(session_factory, outbound, telegram, monkeypatch):
    monkeypatch.setenv("SENDGRID_API_KEY", "sg-key")
    monkeypatch.setenv("NOTIFICATIONS_FROM_EMAIL", "noreply@example.com")
    merchant = Merchant(id="m1", business_name="Beans Ltd", email="owner@beans.test", telegram_chat_id=42)
    link = PaymentLink(id="link-1", title="Coffee", merchant_id="m1", source="pos")
    seed(session_factory, merchant, link)
    seed(session_factory, make_transaction(payment_link_id="link-1"))

    asyncio.run(notification_service.notify_merchant("tx-1"))

    [log] = fetch_all(session_factory, EmailLog)
    assert (log.email, log.type, log.status) == ("owner@beans.test", "merchant_notification", "sent")
    assert log.details["payment_type"] == "POS Sale"
    assert telegram[0][0] == 42
    assert "Hello Beans Ltd" in telegram[0][1]


def test_notify_merchant_without_email_logs_failure(session_factory, outbound, telegram):
    seed(session_factory, Merchant(id="m1", business_name="Beans Ltd"))
    seed(session_factory, make_transaction(merchant_id="m1"))

    asyncio.run(notification_service.notify_merchant("tx-1"))

    [log] = fetch_all(session_factory, EmailLog)
    assert log.email == "no-email@merchant.local"
    assert log.status == "failed"
    assert log.error_message == "Merchant email not configured"
    assert telegram == []
    assert outbound == []


def test_scheduled_notification_failure_is_logged(monkeypatch, caplog):
    async def broken(transaction_id):
        raise RuntimeError("smtp down")

    monkeypatch.setattr(notification_service, "notify_merchant", broken)

    async def run():
        task = notification_service.schedule_merchant_notification("tx-1")
        await asyncio.gather(task, return_exceptions=True)
        await asyncio.sleep(0)

    asyncio.run(run())
    assert "Merchant notification failed" in caplog.text
    assert notification_service._background_tasks == set()
