import asyncio
import json
import sys
from pathlib import Path

import httpx
import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from conftest import FakeClock
from server.services.cache_service import TwoTierCache
from server.services.nowpayments_client import NOWPaymentsAPIError, NOWPaymentsClient


def make_client(handler):
    return NOWPaymentsClient(
        "test-key",
        base_url="https://gateway.test/v1",
        cache=TwoTierCache(clock=FakeClock()),
        transport=httpx.MockTransport(handler),
    )


def test_currencies_are_normalized_and_cached():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={"currencies": ["btc", {"currency": "usdttrc20", "name": "Tether"}]})

    client = make_client(handler)

    async def run():
        first = await client.fetch_available_currencies()
        second = await client.fetch_available_currencies()
        refreshed = await client.fetch_available_currencies(force_refresh=True)
        await client.aclose()
        return first, second, refreshed

    first, second, refreshed = asyncio.run(run())

    assert [c["code"] for c in first] == ["BTC", "USDTTRC20"]
    assert first[1]["name"] == "Tether"
    assert first[1]["nowpayments_code"] == "usdttrc20"
    assert second == first == refreshed
    assert len(calls) == 2
    assert calls[0].headers["x-api-key"] == "test-key"
    assert calls[0].url.path == "/v1/currencies"


def test_currency_mapping_response():
    client = make_client(lambda request: httpx.Response(200, json={"eth": {}, "ltc": {}}))

    async def run():
        try:
            return await client.fetch_available_currencies()
        finally:
            await client.aclose()

    assert [c["code"] for c in asyncio.run(run())] == ["ETH", "LTC"]


def test_estimate_sends_lowercase_params_and_caches():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={"estimated_amount": "0.0021"})

    client = make_client(handler)

    async def run():
        first = await client.get_estimate("USD", "BTC", 100)
        second = await client.get_estimate("usd", "btc", 100)
        await client.aclose()
        return first, second

    first, second = asyncio.run(run())
    assert first == second == {"estimated_amount": "0.0021"}
    assert len(calls) == 1
    params = calls[0].url.params
    assert params["currency_from"] == "usd"
    assert params["currency_to"] == "btc"
    assert params["amount"] == "100"


def test_create_payment_posts_json():
    seen = {}

    def handler(request):
        seen["method"] = request.method
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"payment_id": 5077125051, "pay_address": "addr"})

    client = make_client(handler)

    async def run():
        try:
            return await client.create_payment({"price_amount": 10, "price_currency": "usd"})
        finally:
            await client.aclose()

    assert asyncio.run(run())["payment_id"] == 5077125051
    assert seen == {"method": "POST", "body": {"price_amount": 10, "price_currency": "usd"}}


def test_http_error_carries_status_and_body():
    client = make_client(lambda request: httpx.Response(429, text="Too many requests"))

    async def run():
        try:
            await client.get_payment_status("123")
        finally:
            await client.aclose()

    with pytest.raises(NOWPaymentsAPIError) as excinfo:
        asyncio.run(run())
    assert excinfo.value.status_code == 429
    assert excinfo.value.body == "Too many requests"


def test_transport_error_has_no_status():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    client = make_client(handler)

    async def run():
        try:
            await client.get_payment_status("123")
        finally:
            await client.aclose()

    with pytest.raises(NOWPaymentsAPIError) as excinfo:
        asyncio.run(run())
    assert excinfo.value.status_code is None


def test_payout_currencies_are_filtered_sorted_and_cached():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(
            200,
            json={
                "currencies": [
                    {"currency": "USDTTRC20", "name": "Tether USD (TRC20)", "min_amount": 1},
                    {"currency": "btc", "name": "Bitcoin"},
                    {"currency": "xyz"},
                ]
            },
        )

    client = make_client(handler)

    async def run():
        first = await client.fetch_payout_currencies()
        second = await client.fetch_payout_currencies()
        await client.aclose()
        return first, second

    first, second = asyncio.run(run())

    assert [c["code"] for c in first] == ["btc", "usdttrc20"]
    assert first[0]["symbol"] == "BTC"
    assert first[0]["min_amount"] == 0
    assert first[1]["min_amount"] == 1
    assert second == first
    assert len(calls) == 1
    assert calls[0].url.path == "/v1/payout-currencies"
