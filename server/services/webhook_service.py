"""NOWPayments IPN processing: authenticate, reconcile, persist, notify."""

import asyncio
import hashlib
import hmac
import json
import logging
import os
import re
import time
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from dotenv import load_dotenv
from sqlalchemy import select, update
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from server.db.base import PaymentLink, Transaction, WebhookLog
from server.db.session import SessionLocal
from server.services import notification_service, subscription_service
from server.services.hash_capture import CapturedHashes, capture_hashes
from server.services.nowpayments_client import NOWPaymentsAPIError, NOWPaymentsClient
from server.services.rate_limiter import SlidingWindowRateLimiter

load_dotenv()

PROVIDER = "nowpayments"

STATUS_MAP = {
    "finished": "confirmed",
    "confirmed": "confirmed",
    "confirming": "confirming",
    "sending": "confirming",
    "waiting": "pending",
    "partially_paid": "confirming",
    "failed": "failed",
    "refunded": "refunded",
    "expired": "expired",
}

REQUIRED_FIELDS = ("payment_id", "order_id", "payment_status")
NUMERIC_FIELDS = ("pay_amount", "price_amount", "actually_paid", "payout_amount", "outcome_amount")
STATUS_TOKEN = re.compile(r"^[a-z_]+$")
# Ширина колонок transactions.status и raw_gateway_status
STATUS_MAX_LENGTH = 64
CURRENCY_FIELDS = ("pay_currency", "price_currency", "payout_currency", "outcome_currency")

rate_limiter = SlidingWindowRateLimiter(
    limit=int(os.getenv("WEBHOOK_RATE_LIMIT", "100")),
    window=float(os.getenv("WEBHOOK_RATE_WINDOW_SECONDS", "60")),
)


# Подменяется в тестах, чтобы проверить паузы между попытками
_sleep = asyncio.sleep


class WebhookError(Exception):
    def __init__(self, status_code: int, message: str, errors: Optional[List[str]] = None):
        self.status_code = status_code
        self.message = message
        self.errors = errors
        super().__init__(message)

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": False, "message": self.message}
        if self.errors:
            body["errors"] = self.errors
        return body


class StaleTransactionError(Exception):
    """The row changed between read and write."""


def map_status(gateway_status: str) -> str:
    status = STATUS_MAP.get(gateway_status)
    if status is None:
        logging.warning("Unknown payment status from NOWPayments: %s", gateway_status)
        return gateway_status
    return status


def verify_ipn_signature(raw_body: bytes, signature: str, secret: str) -> bool:
    """HMAC-SHA512 of the raw body, hex encoded, compared in constant time."""
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()
    try:
        return hmac.compare_digest(expected, signature.strip().lower())
    except TypeError:
        # не-ASCII подпись
        return False


def _unsigned_allowed() -> bool:
    return os.getenv("NOWPAYMENTS_ALLOW_UNSIGNED_WEBHOOKS", "").strip().lower() in ("1", "true", "yes")


def check_signature(raw_body: bytes, signature: Optional[str]) -> bool:
    """Raise :class:`WebhookError` unless the delivery is authentic.

    Returns whether a signature was actually verified.
    """
    secret = os.getenv("NOWPAYMENTS_IPN_SECRET")
    if not secret:
        logging.error("NOWPAYMENTS_IPN_SECRET not configured")
        raise WebhookError(500, "Webhook secret not configured")

    if not signature:
        if _unsigned_allowed():
            logging.warning("Webhook received without signature, accepted by configuration")
            return False
        logging.warning("Webhook received without signature, rejected")
        raise WebhookError(401, "Missing signature")

    if not verify_ipn_signature(raw_body, signature, secret):
        logging.error("Invalid webhook signature")
        raise WebhookError(401, "Invalid signature")
    return True


def parse_payload(raw_body: bytes) -> Dict[str, Any]:
    try:
        payload = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        logging.error("Invalid JSON in webhook payload")
        raise WebhookError(400, "Invalid JSON payload")
    if not isinstance(payload, dict):
        raise WebhookError(400, "Invalid JSON payload")
    return payload


def to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not number.is_finite():
        return None
    return number


def validate_payload(payload: Dict[str, Any]) -> List[str]:
    errors = []
    for name in REQUIRED_FIELDS:
        if payload.get(name) in (None, ""):
            errors.append(f"Missing {name}")

    status = payload.get("payment_status")
    if status not in (None, "") and (
        not isinstance(status, str) or len(status) > STATUS_MAX_LENGTH or not STATUS_TOKEN.match(status)
    ):
        errors.append(f"Invalid payment_status: {status}")

    for name in NUMERIC_FIELDS:
        value = payload.get(name)
        if value is None or value == "":
            continue
        number = to_decimal(value)
        if number is None or number < 0:
            errors.append(f"Invalid {name}")

    for name in CURRENCY_FIELDS:
        value = payload.get(name)
        if value is not None and not isinstance(value, str):
            errors.append(f"Invalid {name}")
    return errors


async def find_transaction(payload: Dict[str, Any]) -> Tuple[Transaction, str]:
    """Look the payment up by gateway id, then parent gateway id, then order id."""
    lookups = [("payment_id", Transaction.nowpayments_payment_id, payload.get("payment_id"))]
    if payload.get("parent_payment_id"):
        lookups.append(
            ("parent_payment_id", Transaction.nowpayments_payment_id, payload.get("parent_payment_id"))
        )
    lookups.append(("order_id", Transaction.order_id, payload.get("order_id")))

    async with SessionLocal() as db:
        for tier, column, value in lookups:
            result = await db.execute(select(Transaction).where(column == str(value)))
            transaction = result.scalars().first()
            if transaction is not None:
                logging.info("Payment %s matched by %s=%s", transaction.id, tier, value)
                return transaction, tier

    logging.error(
        "Payment not found for webhook: payment_id=%s parent_payment_id=%s order_id=%s",
        payload.get("payment_id"),
        payload.get("parent_payment_id"),
        payload.get("order_id"),
    )
    raise WebhookError(404, "Payment not found")


def build_update(
    transaction: Transaction, payload: Dict[str, Any], gateway_status: str, new_status: str
) -> Tuple[Dict[str, Any], CapturedHashes]:
    """Column values implied by ``payload``. Fields absent from it are left alone."""
    now = datetime.utcnow()

    payment_data = dict(transaction.payment_data or {})
    payment_data["now_webhook_payment_id"] = str(payload["payment_id"])
    if payload.get("parent_payment_id"):
        payment_data["now_parent_payment_id"] = str(payload["parent_payment_id"])
    if payload.get("purchase_id"):
        payment_data["now_purchase_id"] = str(payload["purchase_id"])

    values: Dict[str, Any] = {
        "status": new_status,
        "raw_gateway_status": gateway_status,
        "updated_at": now,
        "payment_data": payment_data,
    }

    captured = capture_hashes(payload, gateway_status, new_status)
    values.update(captured.as_update())

    actually_paid = to_decimal(payload.get("actually_paid"))
    price_amount = to_decimal(payload.get("price_amount"))
    payout_amount = to_decimal(payload.get("payout_amount"))
    pay_currency = payload.get("pay_currency") or ""
    price_currency = payload.get("price_currency") or ""
    payout_currency = payload.get("payout_currency") or ""

    if new_status == "confirmed" and actually_paid:
        values["amount_received"] = actually_paid
        values["currency_received"] = pay_currency.upper() or None

    if payout_amount and payout_currency:
        values["merchant_receives"] = payout_amount
        values["payout_currency"] = payout_currency.upper()

    if price_amount and actually_paid and pay_currency and pay_currency.lower() == price_currency.lower():
        fee = max(Decimal(0), actually_paid - price_amount)
        if fee > 0:
            values["gateway_fee"] = fee

    return values, captured


async def _apply_once(
    transaction_id: str, payload: Dict[str, Any], gateway_status: str, new_status: str
) -> Tuple[Transaction, str, CapturedHashes]:
    async with SessionLocal() as db:
        transaction = await db.get(Transaction, transaction_id)
        if transaction is None:
            raise WebhookError(404, "Payment not found")

        previous_status = transaction.status
        seen_version = transaction.version or 0
        values, captured = build_update(transaction, payload, gateway_status, new_status)
        values["version"] = seen_version + 1

        result = await db.execute(
            update(Transaction)
            .where(Transaction.id == transaction_id, Transaction.version == seen_version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            raise StaleTransactionError(f"transaction {transaction_id} changed concurrently")
        await db.commit()
        await db.refresh(transaction)

    return transaction, previous_status, captured


async def persist_update(
    transaction_id: str, payload: Dict[str, Any], gateway_status: str, new_status: str
) -> Tuple[Transaction, str, CapturedHashes]:
    """Apply the webhook to the row with optimistic locking and retries.

    Each attempt re-reads the row, so a lost race is recomputed against the
    winner's state. Returns the updated row, the status it had before and
    the captured hashes.

    Backoff is exponential from ``WEBHOOK_RETRY_BASE_DELAY``: with the
    defaults (3 attempts, base 1 s) the waits are 1 s then 2 s, and no wait
    follows the last attempt.
    """
    attempts = int(os.getenv("WEBHOOK_UPDATE_ATTEMPTS", "3"))
    base_delay = float(os.getenv("WEBHOOK_RETRY_BASE_DELAY", "1"))
    retrying = AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=base_delay, min=0),
        retry=retry_if_not_exception_type(WebhookError),
        before_sleep=before_sleep_log(logging.getLogger(), logging.WARNING),
        sleep=_sleep,
        reraise=True,
    )
    try:
        async for attempt in retrying:
            with attempt:
                outcome = await _apply_once(transaction_id, payload, gateway_status, new_status)
    except WebhookError:
        raise
    except Exception as e:
        logging.error("Error updating payment %s after %s attempts: %s", transaction_id, attempts, e)
        raise WebhookError(500, "Failed to update payment") from e
    return outcome


async def _best_effort(name: str, func, *args) -> Any:
    try:
        return await func(*args)
    except Exception:
        logging.exception("Post-payment action %s failed", name)
        return None


async def _link_action(name: str, func, link: PaymentLink) -> Any:
    async def run():
        async with SessionLocal() as db:
            return await func(db, link)

    return await _best_effort(name, run)


async def _load_link(link_id: str) -> Optional[PaymentLink]:
    async with SessionLocal() as db:
        return await db.get(PaymentLink, link_id)


async def after_confirmation(transaction: Transaction) -> None:
    """Side effects of entering ``confirmed``; each one fails on its own."""
    logging.info("Payment %s confirmed, running post-confirmation actions", transaction.id)

    link = None
    if transaction.payment_link_id:
        link = await _best_effort("load_payment_link", _load_link, transaction.payment_link_id)

    if link is not None:
        await _link_action(
            "increment_payment_link_usage", subscription_service.increment_payment_link_usage, link
        )
        await _link_action(
            "settle_subscription_invoice", subscription_service.settle_subscription_invoice, link
        )
        await _link_action(
            "resume_paused_subscription", subscription_service.resume_paused_subscription, link
        )

        metadata = link.link_metadata or {}
        customer_email = metadata.get("customer_email")
        if customer_email and metadata.get("email_receipts_enabled") is not False:
            await _best_effort(
                "send_customer_receipt",
                notification_service.send_customer_receipt,
                transaction,
                link,
                customer_email,
            )

    try:
        notification_service.schedule_merchant_notification(transaction.id)
    except Exception:
        logging.exception("Could not schedule merchant notification for %s", transaction.id)


async def fan_out(transaction: Transaction, previous_status: str, new_status: str) -> None:
    await _best_effort("realtime_broadcast", notification_service.broadcast_payment_update, transaction)
    if new_status == "confirmed" and previous_status != "confirmed":
        await after_confirmation(transaction)


def event_id_for(payload: Dict[str, Any], raw_body: bytes) -> str:
    event_id = payload.get("event_id") or payload.get("payment_id")
    if event_id:
        return str(event_id)
    return hashlib.sha256(raw_body).hexdigest()


async def record_delivery(event_id: str) -> None:
    async with SessionLocal() as db:
        result = await db.execute(select(WebhookLog).filter_by(provider=PROVIDER, event_id=event_id))
        log = result.scalars().first()
        if log:
            log.attempts = (log.attempts or 0) + 1
            log.processed_at = datetime.utcnow()
        else:
            db.add(WebhookLog(provider=PROVIDER, event_id=event_id, attempts=1))
        await db.commit()


async def process_webhook(raw_body: bytes, signature: Optional[str], client_ip: str = "unknown") -> Dict[str, Any]:
    start = time.monotonic()

    if not rate_limiter.allow(client_ip):
        logging.warning("Rate limit exceeded for IP: %s", client_ip)
        raise WebhookError(429, "Rate limit exceeded")

    payload = parse_payload(raw_body)
    signature_verified = check_signature(raw_body, signature)

    errors = validate_payload(payload)
    if errors:
        logging.error("Invalid webhook payload: %s", errors)
        raise WebhookError(400, "Invalid payload", errors)

    gateway_status = payload["payment_status"]
    new_status = map_status(gateway_status)

    found, _ = await find_transaction(payload)
    transaction, previous_status, captured = await persist_update(
        found.id, payload, gateway_status, new_status
    )
    elapsed_ms = int((time.monotonic() - start) * 1000)

    logging.info(
        "Payment %s updated from webhook: %s -> %s, hash source %s, %s ms",
        transaction.id,
        previous_status,
        new_status,
        captured.source,
        elapsed_ms,
    )

    await fan_out(transaction, previous_status, new_status)
    await _best_effort("record_delivery", record_delivery, event_id_for(payload, raw_body))

    return {
        "success": True,
        "message": "Webhook processed successfully",
        "payment_id": transaction.id,
        "status": new_status,
        "processing_time_ms": int((time.monotonic() - start) * 1000),
        "signature_verified": signature_verified,
        "hashes_captured": {
            "tx_hash": bool(captured.tx_hash),
            "payin_hash": bool(captured.payin_hash),
            "payout_hash": bool(captured.payout_hash),
            "source": captured.source,
        },
    }


# ---------- ОПРОС СТАТУСА У ШЛЮЗА (если вебхук потерялся) ----------
def _gateway_snapshot(transaction: Transaction, data: Dict[str, Any]) -> Dict[str, Any]:
    payload = dict(data)
    payload.setdefault("payment_id", transaction.nowpayments_payment_id)
    payload.setdefault("order_id", transaction.order_id)
    # GET /payment отдаёт выплату как outcome_amount / outcome_currency
    if payload.get("payout_amount") is None and payload.get("outcome_amount") is not None:
        payload["payout_amount"] = payload["outcome_amount"]
    if not payload.get("payout_currency") and payload.get("outcome_currency"):
        payload["payout_currency"] = payload["outcome_currency"]
    return payload


def _is_current(transaction: Transaction, new_status: str, captured: CapturedHashes) -> bool:
    if transaction.status != new_status:
        return False
    return all(getattr(transaction, name) == value for name, value in captured.as_update().items())


async def refresh_from_gateway(transaction: Transaction, gateway: NOWPaymentsClient) -> Transaction:
    """Poll ``GET /payment/{id}`` and apply a changed status like a webhook would.

    Best-effort: any gateway or persistence failure leaves the stored row as
    the answer.
    """
    try:
        data = await gateway.get_payment_status(transaction.nowpayments_payment_id)
    except NOWPaymentsAPIError as e:
        logging.warning("Status poll for payment %s failed: %s", transaction.id, e)
        return transaction
    if not isinstance(data, dict):
        logging.warning("Status poll for payment %s returned %r", transaction.id, data)
        return transaction

    payload = _gateway_snapshot(transaction, data)
    errors = validate_payload(payload)
    if errors:
        logging.warning("Status poll for payment %s returned invalid data: %s", transaction.id, errors)
        return transaction

    gateway_status = payload["payment_status"]
    new_status = map_status(gateway_status)
    if _is_current(transaction, new_status, capture_hashes(payload, gateway_status, new_status)):
        return transaction

    try:
        updated, previous_status, captured = await persist_update(
            transaction.id, payload, gateway_status, new_status
        )
    except WebhookError as e:
        logging.warning("Status poll for payment %s not saved: %s", transaction.id, e.message)
        return transaction

    logging.info(
        "Payment %s updated from status poll: %s -> %s, hash source %s",
        updated.id,
        previous_status,
        new_status,
        captured.source,
    )
    await fan_out(updated, previous_status, new_status)
    return updated
