"""
Token classification & balance collection

ERC-20 识别是试探式的：对地址调用 balanceOf(0x0)，成功即视为 token。
所有读取都是独立的只读调用，以有限并发执行。
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, TypeVar

from web3 import Web3
from web3.exceptions import Web3Exception

from .errors import ProbeFailedError
from .models import AddressKind, TokenInfo, TouchedAddress, ZERO_ADDRESS
from .transfers import TokenTransfers

T = TypeVar("T")

# ERC-20 ABI（仅包含需要的函数）
ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "balance", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "symbol",
        "outputs": [{"name": "", "type": "string"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "name",
        "outputs": [{"name": "", "type": "string"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "type": "function",
    },
]

PROBE_ERRORS = (Web3Exception, ValueError, OSError)


class TokenProbe:
    """
    链上探测器

    功能：
    - 识别 ERC-20 合约
    - 读取 token 元数据
    - 读取原生币和 token 余额
    - 区分 EOA / 合约
    """

    def __init__(
        self,
        w3: Web3,
        concurrency: int = 8,
        logger: Optional[logging.Logger] = None,
    ):
        self.w3 = w3
        self.concurrency = max(1, concurrency)
        self.log = logger or logging.getLogger(__name__)

    # =========================================================================
    # 单次读取
    # =========================================================================

    def _call(self, token: str, function: str, *args: Any) -> Any:
        contract = self.w3.eth.contract(address=Web3.to_checksum_address(token), abi=ERC20_ABI)
        try:
            return getattr(contract.functions, function)(*args).call()
        except PROBE_ERRORS as e:
            raise ProbeFailedError(
                f"{function} 调用失败: {token}",
                address=token,
                function=function,
                error=str(e),
            ) from e

    def is_token(self, address: str) -> bool:
        """balanceOf(0x0) 能成功调用，或 symbol / name / decimals 能读到，即视为 ERC-20"""
        try:
            self._call(address, "balanceOf", Web3.to_checksum_address(ZERO_ADDRESS))
            return True
        except ProbeFailedError as e:
            self.log.debug(f"{address} balanceOf 失败，尝试读取元数据: {e.details.get('error')}")

        if self.get_token_info(address) is not None:
            return True
        self.log.debug(f"{address} 不是 ERC-20")
        return False

    def get_token_info(self, address: str) -> Optional[TokenInfo]:
        """读取 symbol / name / decimals，全部失败时返回 None"""
        values: Dict[str, Any] = {}
        for field in ("symbol", "name", "decimals"):
            try:
                values[field] = self._call(address, field)
            except ProbeFailedError:
                values[field] = None

        if values["symbol"] or values["name"] or values["decimals"] is not None:
            return TokenInfo(
                symbol=values["symbol"] or None,
                name=values["name"] or None,
                decimals=int(values["decimals"]) if values["decimals"] is not None else None,
            )
        return None

    def token_balance(self, token: str, address: str) -> int:
        try:
            return int(self._call(token, "balanceOf", Web3.to_checksum_address(address)))
        except ProbeFailedError as e:
            self.log.debug(f"读取 token 余额失败 {token}/{address}: {e.details.get('error')}")
            return 0

    def native_balance(self, address: str) -> int:
        try:
            return int(self.w3.eth.get_balance(Web3.to_checksum_address(address)))
        except PROBE_ERRORS as e:
            self.log.debug(f"读取 ETH 余额失败 {address}: {e}")
            return 0

    def is_contract(self, address: str) -> bool:
        try:
            code = self.w3.eth.get_code(Web3.to_checksum_address(address))
        except PROBE_ERRORS as e:
            self.log.debug(f"读取合约代码失败 {address}: {e}")
            return False
        return len(code) > 0

    # =========================================================================
    # 批量读取（有限并发）
    # =========================================================================

    async def _gather(self, func: Callable[..., T], items: Iterable[Any]) -> List[T]:
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run(item: Any) -> T:
            async with semaphore:
                if isinstance(item, tuple):
                    return await asyncio.to_thread(func, *item)
                return await asyncio.to_thread(func, item)

        tasks: List[Awaitable[T]] = [run(item) for item in items]
        return list(await asyncio.gather(*tasks))

    async def classify_tokens(self, addresses: Iterable[str]) -> List[str]:
        """
        从地址列表中识别 ERC-20 合约

        Returns:
            List[str]: 小写 token 地址，保持输入顺序
        """
        addresses = list(addresses)
        checks = await self._gather(self.is_token, addresses)
        tokens = [addr.lower() for addr, is_token in zip(addresses, checks) if is_token]
        self.log.info(f"识别出 {len(tokens)}/{len(addresses)} 个 ERC-20 合约: {tokens}")
        return tokens

    async def collect_token_balances(
        self, tokens: Iterable[str], addresses: Iterable[str]
    ) -> Dict[str, Dict[str, str]]:
        """读取 token x 地址 的余额矩阵（失败记为 0）"""
        tokens = list(tokens)
        addresses = list(addresses)
        pairs = [(token, addr) for token in tokens for addr in addresses]
        results = await self._gather(self.token_balance, pairs)

        balances: Dict[str, Dict[str, str]] = {token: {} for token in tokens}
        for (token, addr), balance in zip(pairs, results):
            balances[token][addr] = str(balance)
        return balances

    async def collect_native_balances(self, addresses: Iterable[str]) -> Dict[str, str]:
        addresses = list(addresses)
        results = await self._gather(self.native_balance, addresses)
        return {addr: str(balance) for addr, balance in zip(addresses, results)}

    async def enrich_transfers(self, transfers: TokenTransfers) -> None:
        """为每个 token 附加元数据"""
        tokens = list(transfers)
        infos = await self._gather(self.get_token_info, tokens)
        for token, info in zip(tokens, infos):
            if info is not None:
                transfers[token].token_info = info

    async def build_touched_addresses(
        self, addresses: Iterable[str], transfers: TokenTransfers
    ) -> List[TouchedAddress]:
        """为每个地址标注 EOA / 合约，并附上 token 信息"""
        addresses = list(addresses)

        def describe(address: str) -> TouchedAddress:
            contract = self.is_contract(address)
            token_info = None
            group = transfers.get(address)
            if group is not None and group.token_info is not None:
                token_info = group.token_info
            elif contract:
                token_info = self.get_token_info(address)
            return TouchedAddress(
                address=address,
                type=AddressKind.CONTRACT if contract else AddressKind.EOA,
                token_info=token_info,
            )

        return await self._gather(describe, addresses)
