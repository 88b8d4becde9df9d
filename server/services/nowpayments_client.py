"""Thin async client for the NOWPayments v1 REST API."""

import logging
import os
from typing import Any, Dict, List, Optional

import httpx
from dotenv import load_dotenv

from server.services.cache_service import CacheKeys, CacheTTL, TwoTierCache, cache as default_cache

load_dotenv()

DEFAULT_BASE_URL = "https://api.nowpayments.io/v1"
DEFAULT_TIMEOUT = 10.0
CREATE_PAYMENT_TIMEOUT = 15.0


class NOWPaymentsAPIError(Exception):
    """Upstream call failed. ``status_code`` is None for transport errors."""

    def __init__(self, status_code: Optional[int], body: str):
        self.status_code = status_code
        self.body = body
        super().__init__(f"NOWPayments API error: {status_code} - {body}")


def _normalize_currencies(raw: Any) -> List[Dict[str, Any]]:
    # Ответ бывает списком строк, списком объектов, {"currencies": [...]}
    # или словарём с кодами валют в ключах
    if isinstance(raw, dict):
        if isinstance(raw.get("currencies"), list):
            items = raw["currencies"]
        else:
            items = list(raw.keys())
    elif isinstance(raw, list):
        items = raw
    else:
        items = []

    currencies = []
    for item in items:
        if isinstance(item, str):
            code = item
            currencies.append(
                {"code": code.upper(), "name": code.upper(), "nowpayments_code": code.lower(),
                 "min_amount": None, "max_amount": None, "logo_url": None}
            )
        elif isinstance(item, dict):
            code = item.get("currency") or item.get("code") or ""
            if not code:
                continue
            currencies.append(
                {
                    "code": code.upper(),
                    "name": item.get("name") or code.upper(),
                    "nowpayments_code": code.lower(),
                    "min_amount": item.get("min_amount"),
                    "max_amount": item.get("max_amount"),
                    "logo_url": item.get("logo_url"),
                }
            )
    return currencies


def _normalize_payout_currencies(raw: Any) -> List[Dict[str, Any]]:
    items = raw.get("currencies") if isinstance(raw, dict) else raw
    if not isinstance(items, list):
        return []

    currencies = []
    for item in items:
        if not isinstance(item, dict) or not item.get("currency") or not item.get("name"):
            continue
        code = str(item["currency"])
        currencies.append(
            {
                "code": code.lower(),
                "name": item["name"],
                "symbol": code.upper(),
                "min_amount": item.get("min_amount") or 0,
                "max_amount": item.get("max_amount"),
                "logo_url": item.get("logo_url"),
            }
        )
    return sorted(currencies, key=lambda currency: str(currency["name"]).lower())


class NOWPaymentsClient:
    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        cache: Optional[TwoTierCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.cache = cache or default_cache
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"x-api-key": api_key, "Content-Type": "application/json"},
            timeout=DEFAULT_TIMEOUT,
            transport=transport,
        )

    async def _request(self, method: str, path: str, timeout: float = DEFAULT_TIMEOUT, **kwargs) -> Any:
        try:
            response = await self._http.request(method, path, timeout=timeout, **kwargs)
        except httpx.HTTPError as e:
            logging.warning("NOWPayments %s %s failed: %s", method, path, e)
            raise NOWPaymentsAPIError(None, str(e)) from e

        if response.is_error:
            logging.error(
                "NOWPayments %s %s returned %s: %s", method, path, response.status_code, response.text
            )
            raise NOWPaymentsAPIError(response.status_code, response.text)
        return response.json()

    async def fetch_available_currencies(self, force_refresh: bool = False) -> List[Dict[str, Any]]:
        async def fetch():
            raw = await self._request("GET", "/currencies")
            currencies = _normalize_currencies(raw)
            logging.info("Fetched %s currencies from NOWPayments", len(currencies))
            return currencies

        return await self.cache.get_or_set(
            CacheKeys.currencies(), fetch, ttl=CacheTTL.CURRENCIES, force_refresh=force_refresh
        )

    async def fetch_payout_currencies(self, force_refresh: bool = False) -> List[Dict[str, Any]]:
        async def fetch():
            raw = await self._request("GET", "/payout-currencies")
            currencies = _normalize_payout_currencies(raw)
            logging.info("Fetched %s payout currencies from NOWPayments", len(currencies))
            return currencies

        return await self.cache.get_or_set(
            CacheKeys.payout_currencies(), fetch, ttl=CacheTTL.CURRENCIES, force_refresh=force_refresh
        )

    async def get_estimate(self, currency_from: str, currency_to: str, amount) -> Dict[str, Any]:
        params = {
            "amount": str(amount),
            "currency_from": currency_from.lower(),
            "currency_to": currency_to.lower(),
        }

        async def fetch():
            return await self._request("GET", "/estimate", params=params)

        return await self.cache.get_or_set(
            CacheKeys.estimate(currency_from, currency_to, amount), fetch, ttl=CacheTTL.ESTIMATES
        )

    async def create_payment(self, request: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", "/payment", timeout=CREATE_PAYMENT_TIMEOUT, json=request)

    async def get_payment_status(self, payment_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/payment/{payment_id}")

    async def aclose(self) -> None:
        await self._http.aclose()


_client: Optional[NOWPaymentsClient] = None


def get_nowpayments_client() -> NOWPaymentsClient:
    global _client
    if _client is None:
        api_key = os.getenv("NOWPAYMENTS_API_KEY")
        if not api_key:
            raise RuntimeError("NOWPAYMENTS_API_KEY environment variable is required")
        _client = NOWPaymentsClient(
            api_key, base_url=os.getenv("NOWPAYMENTS_API_BASE", DEFAULT_BASE_URL)
        )
    return _client


async def close_nowpayments_client() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
