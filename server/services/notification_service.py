"""Outbound notifications about payment status changes.

Everything here is best-effort from the webhook's point of view: callers
catch and log whatever these functions raise.
"""

import asyncio
import logging
import os
from typing import Any, Dict, Optional, Set, Tuple

import httpx
from dotenv import load_dotenv
from sqlalchemy import select
from sqlalchemy.orm import selectinload

from server.db.base import EmailLog, PaymentLink, Transaction
from server.db.session import SessionLocal
from telegram_bot.notify import send_telegram_message

load_dotenv()

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"
NOTIFY_TIMEOUT = 10.0

# Подменяется в тестах на httpx.MockTransport
_transport: Optional[httpx.AsyncBaseTransport] = None

_background_tasks: Set[asyncio.Task] = set()


def _http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=NOTIFY_TIMEOUT, transport=_transport)


def _amount(value) -> Optional[str]:
    return None if value is None else str(value)


def payment_snapshot(transaction: Transaction) -> Dict[str, Any]:
    return {
        "id": transaction.id,
        "status": transaction.status,
        "tx_hash": transaction.tx_hash,
        "payin_hash": transaction.payin_hash,
        "payout_hash": transaction.payout_hash,
        "amount_received": _amount(transaction.amount_received),
        "currency_received": transaction.currency_received,
        "merchant_receives": _amount(transaction.merchant_receives),
        "payout_currency": transaction.payout_currency,
        "updated_at": transaction.updated_at.isoformat() if transaction.updated_at else None,
    }


async def broadcast_payment_update(transaction: Transaction) -> bool:
    """Push the new state to the ``payment-<id>`` realtime channel."""
    url = os.getenv("REALTIME_BROADCAST_URL")
    if not url:
        logging.debug("REALTIME_BROADCAST_URL not set, broadcast skipped for %s", transaction.id)
        return False

    headers = {}
    api_key = os.getenv("REALTIME_API_KEY")
    if api_key:
        headers = {"apikey": api_key, "Authorization": f"Bearer {api_key}"}

    body = {
        "messages": [
            {
                "topic": f"payment-{transaction.id}",
                "event": "payment_status",
                "payload": payment_snapshot(transaction),
            }
        ]
    }
    async with _http_client() as client:
        response = await client.post(url, json=body, headers=headers)
        response.raise_for_status()
    logging.info("Realtime broadcast sent for payment %s", transaction.id)
    return True


async def send_email(to: str, subject: str, text: str) -> Tuple[str, Optional[str]]:
    """Send a plain-text mail via SendGrid; returns ``(status, error)``."""
    api_key = os.getenv("SENDGRID_API_KEY")
    from_email = os.getenv("NOTIFICATIONS_FROM_EMAIL")
    if not api_key or not from_email:
        logging.warning("Email service not configured, message to %s queued only", to)
        return "queued", None

    body = {
        "personalizations": [{"to": [{"email": to}], "subject": subject}],
        "from": {"email": from_email, "name": "Cryptrac"},
        "content": [{"type": "text/plain", "value": text}],
    }
    try:
        async with _http_client() as client:
            response = await client.post(
                SENDGRID_URL, json=body, headers={"Authorization": f"Bearer {api_key}"}
            )
    except httpx.HTTPError as e:
        logging.warning("SendGrid request to %s failed: %s", to, e)
        return "failed", str(e)

    if response.is_error:
        error = f"SendGrid error: {response.status_code} {response.text}"
        logging.error(error)
        return "failed", error
    return "sent", None


async def _log_email(email: str, kind: str, status: str, error: Optional[str], details: Dict[str, Any]):
    async with SessionLocal() as db:
        db.add(EmailLog(email=email, type=kind, status=status, error_message=error, details=details))
        await db.commit()


async def send_customer_receipt(transaction: Transaction, link: PaymentLink, email: str) -> str:
    title = link.title or "Payment"
    amount = transaction.amount_received if transaction.amount_received is not None else transaction.amount
    currency = transaction.currency_received or transaction.currency or ""
    lines = [
        f"Thank you for your payment for {title}.",
        "",
        f"Amount paid: {amount} {currency}".rstrip(),
        f"Order ID: {transaction.order_id}",
    ]
    if transaction.tx_hash:
        lines.append(f"Transaction hash: {transaction.tx_hash}")
    app_url = os.getenv("APP_URL")
    if app_url:
        lines += ["", f"View your receipt: {app_url.rstrip('/')}/payment/success/{transaction.id}"]

    status, error = await send_email(email, f"Payment Receipt - {title}", "\n".join(lines))
    await _log_email(
        email,
        "customer_receipt",
        status,
        error,
        {"payment_id": transaction.id, "payment_link_id": link.id},
    )
    logging.info("Customer receipt for %s: %s", transaction.id, status)
    return status


def _merchant_message(transaction: Transaction, business_name: str, payment_type: str) -> str:
    amount = f"{transaction.amount} {transaction.currency or ''}".strip()
    lines = [
        f"Hello {business_name},",
        "",
        "You've received a new payment.",
        "",
        f"Amount: {amount}",
        f"Type: {payment_type}",
        f"Payment ID: {transaction.id}",
    ]
    if transaction.amount_received is not None and transaction.currency_received:
        lines.append(f"Received: {transaction.amount_received} {transaction.currency_received}")
    if transaction.tx_hash:
        lines.append(f"Transaction Hash: {transaction.tx_hash}")
    return "\n".join(lines)


async def notify_merchant(transaction_id: str) -> None:
    async with SessionLocal() as db:
        result = await db.execute(
            select(Transaction)
            .options(
                selectinload(Transaction.merchant),
                selectinload(Transaction.payment_link).selectinload(PaymentLink.merchant),
            )
            .filter_by(id=transaction_id)
        )
        transaction = result.scalars().first()

    if transaction is None:
        logging.warning("Merchant notification: transaction %s not found", transaction_id)
        return

    link = transaction.payment_link
    merchant = transaction.merchant or (link.merchant if link else None)
    if merchant is None:
        logging.warning("Merchant notification: no merchant for transaction %s", transaction_id)
        return

    payment_type = {"subscription": "Subscription", "pos": "POS Sale"}.get(
        link.source if link else "", "Payment Link"
    )
    text = _merchant_message(transaction, merchant.business_name, payment_type)
    details = {"merchant_id": merchant.id, "payment_id": transaction.id, "payment_type": payment_type}

    if merchant.email:
        status, error = await send_email(merchant.email, "Payment Received", text)
        await _log_email(merchant.email, "merchant_notification", status, error, details)
    else:
        logging.warning("Merchant %s has no email address for notifications", merchant.id)
        await _log_email(
            "no-email@merchant.local",
            "merchant_notification",
            "failed",
            "Merchant email not configured",
            details,
        )

    if merchant.telegram_chat_id:
        await send_telegram_message(chat_id=merchant.telegram_chat_id, text=text)


def _task_done(task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if not task.cancelled() and task.exception() is not None:
        logging.error("Merchant notification failed", exc_info=task.exception())


def schedule_merchant_notification(transaction_id: str) -> asyncio.Task:
    """Fire-and-forget :func:`notify_merchant`; the task is kept alive until it ends."""
    task = asyncio.create_task(notify_merchant(transaction_id))
    _background_tasks.add(task)
    task.add_done_callback(_task_done)
    return task
