"""
价格查询测试（httpx.MockTransport）
"""

import asyncio

import httpx
import pytest

from forksim.simulation.pricing import (
    CoinMarketCapClient,
    QUOTES_PATH,
    calculate_usd_value,
    format_token_amount,
)

USDC = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"
WETH = "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2"
UNKNOWN = "0x1111111111111111111111111111111111111111"


def quote(price):
    return {"quote": {"USD": {"price": price}}}


class RecordingTransport:
    """记录请求并返回固定响应"""

    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self.payload = payload
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.payload)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class TestGetPrices:
    """测试批量价格查询"""

    def test_batched_request(self):
        """一次请求查询所有符号，结果按地址映射回来"""
        recorder = RecordingTransport(
            payload={
                "status": {"error_code": 0},
                "data": {"USDC": quote(1.0), "WETH": [quote(3000.5)]},
            }
        )
        client = CoinMarketCapClient(api_key="test-key", transport=recorder.transport)

        prices = asyncio.run(client.get_prices({USDC: "USDC", WETH: "weth"}))

        assert prices == {USDC.lower(): 1.0, WETH.lower(): 3000.5}
        assert len(recorder.requests) == 1
        request = recorder.requests[0]
        assert request.url.path == QUOTES_PATH
        assert request.url.params["symbol"] == "USDC,WETH"
        assert request.url.params["convert"] == "USD"
        assert request.headers["X-CMC_PRO_API_KEY"] == "test-key"

    def test_disabled_without_key(self):
        recorder = RecordingTransport(payload={})
        client = CoinMarketCapClient(api_key=None, transport=recorder.transport)

        prices = asyncio.run(client.get_prices({USDC: "USDC"}))

        assert client.enabled is False
        assert prices == {}
        assert recorder.requests == []

    def test_unknown_and_non_positive(self):
        recorder = RecordingTransport(
            payload={
                "status": {"error_code": 0},
                "data": {"USDC": quote(0), "WETH": {"quote": {}}},
            }
        )
        client = CoinMarketCapClient(api_key="test-key", transport=recorder.transport)

        prices = asyncio.run(client.get_prices({USDC: "USDC", WETH: "WETH", UNKNOWN: "NOPE"}))

        assert prices == {}

    @pytest.mark.parametrize(
        "status_code,payload",
        [
            (500, {"status": {"error_code": 500}}),
            (200, {"status": {"error_code": 1001, "error_message": "invalid key"}, "data": {}}),
        ],
    )
    def test_failures_are_soft(self, status_code, payload):
        """请求失败不抛异常，只是没有价格"""
        recorder = RecordingTransport(status_code=status_code, payload=payload)
        client = CoinMarketCapClient(api_key="test-key", transport=recorder.transport)

        assert asyncio.run(client.get_prices({USDC: "USDC"})) == {}

    def test_transport_error_is_soft(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = CoinMarketCapClient(api_key="test-key", transport=httpx.MockTransport(handler))

        assert asyncio.run(client.get_prices({USDC: "USDC"})) == {}

    def test_blank_symbols_skipped(self):
        recorder = RecordingTransport(payload={})
        client = CoinMarketCapClient(api_key="test-key", transport=recorder.transport)

        assert asyncio.run(client.get_prices({USDC: "  "})) == {}
        assert recorder.requests == []


class TestAmounts:
    """测试数量格式化"""

    @pytest.mark.parametrize(
        "amount,decimals,expected",
        [
            ("1500000", 6, "1.5"),
            ("1000000000000000000", 18, "1"),
            ("0", 18, "0"),
            ("123", 0, "123"),
            ("1", 18, "0.000000000000000001"),
        ],
    )
    def test_format(self, amount, decimals, expected):
        assert format_token_amount(amount, decimals) == expected

    def test_usd_value(self):
        assert calculate_usd_value("2000000", 6, 1.5) == pytest.approx(3.0)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
