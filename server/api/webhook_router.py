# server/api/webhook_router.py

import logging
import time
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from server.services import webhook_service
from server.services.webhook_service import WebhookError

router = APIRouter()


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or "unknown"
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


# ---------- ВЕБХУК ОТ NOWPAYMENTS ----------
@router.post("/api/webhooks/nowpayments")
async def nowpayments_webhook(request: Request):
    """
    Принимаем СЫРОЕ тело: подпись считается по байтам до разбора JSON.
    Ответ всегда {"success": bool, "message": str, ...}.
    """
    start = time.monotonic()
    raw_body = await request.body()
    signature = request.headers.get("x-nowpayments-sig")

    try:
        return await webhook_service.process_webhook(raw_body, signature, client_ip(request))
    except WebhookError as e:
        return JSONResponse(status_code=e.status_code, content=e.to_body())
    except Exception:
        logging.exception("Error processing NOWPayments webhook")
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "message": "Webhook processing failed",
                "processing_time_ms": int((time.monotonic() - start) * 1000),
            },
        )


@router.get("/api/webhooks/nowpayments")
async def nowpayments_webhook_check(challenge: Optional[str] = None):
    # Проверка доступности эндпоинта со стороны шлюза
    if challenge:
        logging.info("Webhook verification challenge received")
        return PlainTextResponse(challenge)

    return {
        "success": True,
        "message": "NOWPayments webhook endpoint is active",
        "timestamp": datetime.utcnow().isoformat(),
        "security_features": [
            "HMAC-SHA512 signature verification",
            f"Rate limiting ({webhook_service.rate_limiter.limit} req/"
            f"{int(webhook_service.rate_limiter.window)}s per IP)",
            "Payload validation",
            "Optimistic locking on transaction updates",
            "Retry logic for database updates",
        ],
    }
