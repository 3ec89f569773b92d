"""
Price Oracle Client

通过 CoinMarketCap 批量查询 token 的 USD 价格。价格只是锦上添花：
缺少 API Key、请求失败、符号未知或价格非正时都视为"无价格"，不会中断模拟。
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import httpx

from .errors import PriceLookupError

DEFAULT_CMC_BASE_URL = "https://pro-api.coinmarketcap.com"
QUOTES_PATH = "/v1/cryptocurrency/quotes/latest"


class CoinMarketCapClient:
    """CoinMarketCap 报价客户端"""

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = DEFAULT_CMC_BASE_URL,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Args:
            api_key: CMC_PRO_API_KEY，为空时禁用价格查询
            base_url: API 地址
            timeout: 请求超时（秒）
            transport: 自定义 httpx transport
            logger: 日志记录器
        """
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport
        self.log = logger or logging.getLogger(__name__)

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def _fetch_quotes(self, symbols: List[str]) -> Dict[str, Any]:
        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self.transport,
            trust_env=False,
        ) as client:
            try:
                response = await client.get(
                    QUOTES_PATH,
                    params={"symbol": ",".join(symbols), "convert": "USD"},
                    headers={
                        "X-CMC_PRO_API_KEY": self.api_key,
                        "Accept": "application/json",
                    },
                )
            except httpx.HTTPError as e:
                raise PriceLookupError(f"价格请求失败: {e}", symbols=symbols) from e

        if response.status_code != 200:
            raise PriceLookupError(
                f"价格请求返回 HTTP {response.status_code}",
                symbols=symbols,
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise PriceLookupError("价格响应不是有效的 JSON", symbols=symbols) from e

        status = payload.get("status") or {}
        if status.get("error_code", 0) != 0:
            raise PriceLookupError(
                f"CoinMarketCap 返回错误: {status.get('error_message')}",
                symbols=symbols,
                error_code=status.get("error_code"),
            )

        data = payload.get("data") or {}
        return {str(k).upper(): v for k, v in data.items()}

    async def get_prices(self, token_symbols: Dict[str, str]) -> Dict[str, float]:
        """
        批量查询价格

        Args:
            token_symbols: token 地址 -> 符号

        Returns:
            Dict[str, float]: token 地址（小写） -> USD 单价，查不到的 token 不出现
        """
        prices: Dict[str, float] = {}

        if not self.enabled:
            self.log.warning("未配置 CMC_PRO_API_KEY，跳过价格查询")
            return prices

        wanted = {token.lower(): symbol for token, symbol in token_symbols.items() if symbol and symbol.strip()}
        if not wanted:
            self.log.info("没有需要查询价格的 token")
            return prices

        symbols = sorted({symbol.strip().upper() for symbol in wanted.values()})
        self.log.info(f"查询 {len(symbols)} 个 token 的价格: {symbols}")

        try:
            quotes = await self._fetch_quotes(symbols)
        except PriceLookupError as e:
            self.log.warning(f"价格查询失败，所有 USD 字段置为 0: {e}")
            return prices

        for token, symbol in wanted.items():
            quote = quotes.get(symbol.strip().upper())
            if isinstance(quote, list):
                quote = quote[0] if quote else None
            price = _usd_price(quote)
            if price is None:
                self.log.warning(f"未找到 {symbol} ({token}) 的价格")
                continue
            if price <= 0:
                self.log.warning(f"{symbol} ({token}) 的价格非正: {price}")
                continue
            prices[token] = price

        self.log.info(f"获取到 {len(prices)}/{len(wanted)} 个 token 的价格")
        return prices


def _usd_price(quote: Any) -> Optional[float]:
    if not isinstance(quote, dict):
        return None
    usd = (quote.get("quote") or {}).get("USD") or {}
    price = usd.get("price")
    if price is None:
        return None
    try:
        return float(price)
    except (TypeError, ValueError):
        return None


def to_decimal_amount(amount: Any, decimals: int) -> Decimal:
    """最小单位 -> 十进制数量"""
    return Decimal(int(amount)).scaleb(-int(decimals))


def format_token_amount(amount: Any, decimals: int) -> str:
    """按精度格式化数量，去掉多余的 0"""
    value = to_decimal_amount(amount, decimals)
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


def calculate_usd_value(amount: Any, decimals: int, price: float) -> float:
    """数量 x 单价"""
    try:
        return float(to_decimal_amount(amount, decimals) * Decimal(str(price)))
    except (InvalidOperation, TypeError, ValueError):
        return 0.0
