# server/api/payment_router.py

import logging
import os
import uuid
from decimal import Decimal
from typing import Optional

from dotenv import load_dotenv
from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from server.db.base import Transaction
from server.db.session import SessionLocal
from server.services import webhook_service
from server.services.nowpayments_client import NOWPaymentsAPIError, get_nowpayments_client

load_dotenv()

router = APIRouter()

# Если /payout-currencies недоступен, отдаём самые ходовые валюты выплат
FALLBACK_PAYOUT_CURRENCIES = [
    {"code": "btc", "name": "Bitcoin", "symbol": "BTC", "min_amount": 0.0001, "max_amount": None, "logo_url": None},
    {"code": "eth", "name": "Ethereum", "symbol": "ETH", "min_amount": 0.001, "max_amount": None, "logo_url": None},
    {"code": "ltc", "name": "Litecoin", "symbol": "LTC", "min_amount": 0.01, "max_amount": None, "logo_url": None},
    {"code": "usdt", "name": "Tether USD", "symbol": "USDT", "min_amount": 1, "max_amount": None, "logo_url": None},
    {"code": "usdc", "name": "USD Coin", "symbol": "USDC", "min_amount": 1, "max_amount": None, "logo_url": None},
    {"code": "usdttrc20", "name": "Tether USD (TRC20)", "symbol": "USDT", "min_amount": 1, "max_amount": None, "logo_url": None},
    {"code": "usdcerc20", "name": "USD Coin (ERC20)", "symbol": "USDC", "min_amount": 1, "max_amount": None, "logo_url": None},
]


# ---------- МОДЕЛИ запросов ----------
class CreatePaymentBody(BaseModel):
    price_amount: Decimal = Field(..., gt=0)
    price_currency: str = "usd"
    pay_currency: str
    order_id: Optional[str] = None
    order_description: Optional[str] = None
    payment_link_id: Optional[str] = None
    merchant_id: Optional[str] = None
    payout_address: Optional[str] = None
    payout_currency: Optional[str] = None
    payout_extra_id: Optional[str] = None


class EstimateBody(BaseModel):
    amount: Decimal = Field(..., gt=0)
    currency_from: str
    currency_to: str


def _gateway_or_raise():
    try:
        return get_nowpayments_client()
    except RuntimeError as e:
        raise HTTPException(status_code=500, detail=str(e))


# ---------- СОЗДАНИЕ ПЛАТЕЖА ----------
@router.post("/api/nowpayments/create-payment")
async def create_payment(body: CreatePaymentBody):
    """
    Создаёт платёж в NOWPayments и сохраняет транзакцию в статусе pending.
    Вебхуки потом находят её по nowpayments_payment_id или order_id.
    """
    gateway = _gateway_or_raise()
    order_id = body.order_id or f"order-{uuid.uuid4().hex[:12]}"

    request = {
        "price_amount": float(body.price_amount),
        "price_currency": body.price_currency.lower(),
        "pay_currency": body.pay_currency.lower(),
        "order_id": order_id,
        "order_description": body.order_description or f"Payment {order_id}",
    }
    callback_url = os.getenv("NOWPAYMENTS_IPN_CALLBACK_URL")
    if callback_url:
        request["ipn_callback_url"] = callback_url
    if body.payout_address:
        request["payout_address"] = body.payout_address
        if body.payout_currency:
            request["payout_currency"] = body.payout_currency.lower()
        if body.payout_extra_id:
            request["payout_extra_id"] = body.payout_extra_id

    try:
        payment = await gateway.create_payment(request)
    except NOWPaymentsAPIError as e:
        logging.exception("NOWPayments create_payment failed")
        raise HTTPException(status_code=502, detail=f"NOWPayments error: {e.body}")

    async with SessionLocal() as db:
        transaction = Transaction(
            nowpayments_payment_id=str(payment["payment_id"]),
            order_id=order_id,
            merchant_id=body.merchant_id,
            payment_link_id=body.payment_link_id,
            status="pending",
            raw_gateway_status=payment.get("payment_status"),
            amount=body.price_amount,
            currency=body.price_currency.upper(),
            pay_amount=payment.get("pay_amount"),
            pay_currency=(payment.get("pay_currency") or body.pay_currency).upper(),
            pay_address=payment.get("pay_address"),
            payment_data={"now_created_payment_id": str(payment["payment_id"])},
        )
        db.add(transaction)
        await db.commit()
        await db.refresh(transaction)

    logging.info("Payment %s created for order %s", transaction.id, order_id)
    return {
        "success": True,
        "transaction_id": transaction.id,
        "payment_id": transaction.nowpayments_payment_id,
        "pay_address": payment.get("pay_address"),
        "pay_amount": payment.get("pay_amount"),
        "pay_currency": transaction.pay_currency,
        "order_id": order_id,
    }


# ---------- ОЦЕНКА КУРСА ----------
@router.post("/api/nowpayments/estimate")
async def estimate(body: EstimateBody):
    gateway = _gateway_or_raise()
    try:
        data = await gateway.get_estimate(body.currency_from, body.currency_to, body.amount)
    except NOWPaymentsAPIError as e:
        if e.status_code == 429:
            return JSONResponse(
                status_code=429,
                content={
                    "success": False,
                    "error": "Rate limit exceeded. Please try again in a moment.",
                    "retry_after": 30,
                },
            )
        if e.status_code == 400:
            return JSONResponse(
                status_code=400,
                content={"success": False, "error": "Invalid currency pair or amount"},
            )
        raise HTTPException(status_code=502, detail=f"NOWPayments error: {e}")

    return {
        "success": True,
        "estimate": {
            "currency_from": body.currency_from.upper(),
            "currency_to": body.currency_to.upper(),
            "amount_from": str(body.amount),
            "estimated_amount": data.get("estimated_amount"),
        },
    }


# ---------- СПИСОК ВАЛЮТ ----------
@router.get("/api/nowpayments/currencies")
async def currencies(force_refresh: bool = False):
    gateway = _gateway_or_raise()
    try:
        items = await gateway.fetch_available_currencies(force_refresh=force_refresh)
    except NOWPaymentsAPIError as e:
        raise HTTPException(status_code=502, detail=f"NOWPayments error: {e}")
    return {"success": True, "total": len(items), "currencies": items}


# ---------- ВАЛЮТЫ ВЫПЛАТ ----------
@router.get("/api/nowpayments/payout-currencies")
async def payout_currencies(force_refresh: bool = False):
    gateway = _gateway_or_raise()
    try:
        items = await gateway.fetch_payout_currencies(force_refresh=force_refresh)
    except NOWPaymentsAPIError as e:
        logging.warning("Payout currencies unavailable, using fallback list: %s", e)
        return {
            "success": True,
            "count": len(FALLBACK_PAYOUT_CURRENCIES),
            "currencies": FALLBACK_PAYOUT_CURRENCIES,
            "fallback": True,
            "error": str(e),
        }
    return {"success": True, "count": len(items), "currencies": items}


# ---------- СТАТУС ПЛАТЕЖА ----------
@router.get("/api/payments/{transaction_id}/status")
async def payment_status(transaction_id: str):
    async with SessionLocal() as db:
        transaction = await db.get(Transaction, transaction_id)
    if transaction is None:
        raise HTTPException(status_code=404, detail="Payment not found")

    # Вебхук мог не дойти: спрашиваем шлюз напрямую
    if transaction.nowpayments_payment_id:
        try:
            gateway = get_nowpayments_client()
        except RuntimeError as e:
            logging.warning("Status poll skipped for %s: %s", transaction.id, e)
        else:
            transaction = await webhook_service.refresh_from_gateway(transaction, gateway)

    return {
        "success": True,
        "payment_id": transaction.id,
        "status": transaction.status,
        "tx_hash": transaction.tx_hash,
        "payin_hash": transaction.payin_hash,
        "payout_hash": transaction.payout_hash,
        "amount_received": None if transaction.amount_received is None else str(transaction.amount_received),
        "currency_received": transaction.currency_received,
        "updated_at": transaction.updated_at.isoformat() if transaction.updated_at else None,
    }
