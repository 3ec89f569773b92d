"""
SimulationEngine - 模拟编排

把分叉控制、前序交易回放、trace、地址收集、token 识别、转账提取、
差异分析和价格查询串成一次完整的请求/响应流程。

目标调用永远不会被打包上链：执行后的余额由转账记录推导，
分叉在每条退出路径上都会先回滚快照再销毁。
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from web3 import Web3
from web3.exceptions import TransactionNotFound, Web3Exception

from ..config import Settings, get_settings
from .anvil_fork import ForkController, _hex
from .diff import classify_flows, derive_after_balances, diff_balances, summarize_token_deltas
from .errors import RpcRequestError, RpcTimeoutError, SimulationError
from .models import (
    AssetChangeRecord,
    AssetTokenInfo,
    BalanceGrid,
    GasInfo,
    SimulateRequest,
    SimulateResponse,
    SimulationStatus,
    TraceNode,
    TransferKind,
)
from .pricing import CoinMarketCapClient, calculate_usd_value, format_token_amount
from .tokens import PROBE_ERRORS, TokenProbe
from .trace import collect_touched_addresses, extract_transfer_addresses
from .transfers import TokenTransfers, count_transfers, extract_transfers
from .validation import normalize_call_data, parse_quantity

ForkFactory = Callable[..., ForkController]
OriginFactory = Callable[[str], Web3]

ONE_GWEI = 10**9
DEFAULT_DECIMALS = 18


def _default_origin(fork_url: str) -> Web3:
    return Web3(Web3.HTTPProvider(fork_url))


class SimulationEngine:
    """
    模拟引擎

    每次 simulate 调用独占一个分叉进程；并发的模拟互不共享端口和连接。
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        fork_factory: Optional[ForkFactory] = None,
        price_oracle: Optional[CoinMarketCapClient] = None,
        origin_factory: Optional[OriginFactory] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.settings = settings or get_settings()
        self.log = logger or logging.getLogger(__name__)
        self.fork_factory = fork_factory or ForkController
        self.origin_factory = origin_factory or _default_origin
        self.price_oracle = price_oracle or CoinMarketCapClient(
            api_key=self.settings.cmc_pro_api_key,
            base_url=self.settings.cmc_base_url,
            timeout=self.settings.price_timeout_seconds,
            logger=self.log,
        )

    # =========================================================================
    # 公共接口
    # =========================================================================

    async def simulate(self, request: SimulateRequest, timeout: Optional[float] = None) -> SimulateResponse:
        """
        在指定区块位置模拟一次调用

        Args:
            request: 模拟请求
            timeout: 整体超时（秒），默认取 SIMULATION_TIMEOUT_SECONDS

        Returns:
            SimulateResponse: 模拟结果

        Raises:
            SimulationError: 致命错误（分叉不可用、RPC 超时/失败、calldata 无效）
        """
        timeout = timeout if timeout is not None else self.settings.simulation_timeout_seconds
        try:
            return await asyncio.wait_for(self._run(request), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise RpcTimeoutError(f"模拟超时 ({timeout}s)", timeout=timeout) from e

    async def simulate_transaction(
        self, fork_url: str, tx_hash: str, timeout: Optional[float] = None
    ) -> SimulateResponse:
        """按交易哈希在其原始位置重新模拟一笔已上链的交易"""
        origin = self.origin_factory(fork_url)
        try:
            tx = await asyncio.to_thread(origin.eth.get_transaction, tx_hash)
        except TransactionNotFound as e:
            raise RpcRequestError("eth_getTransactionByHash", f"交易不存在: {tx_hash}") from e
        except (Web3Exception, ValueError, OSError) as e:
            raise RpcRequestError("eth_getTransactionByHash", str(e)) from e

        if tx.get("blockNumber") is None:
            raise RpcRequestError("eth_getTransactionByHash", f"交易尚未上链: {tx_hash}")

        request = SimulateRequest(
            fork_url=fork_url,
            block_number=int(tx["blockNumber"]),
            tx_from=str(tx["from"]),
            tx_to=str(tx["to"]) if tx.get("to") else None,
            tx_value=hex(parse_quantity(tx.get("value"))),
            tx_data=_hex(tx.get("input") or "0x") or "0x",
            transaction_index=int(tx.get("transactionIndex") or 0),
        )
        self.log.info(
            f"模拟已上链交易 {tx_hash}: block={request.block_number} index={request.transaction_index}"
        )
        return await self.simulate(request, timeout=timeout)

    # =========================================================================
    # 流程
    # =========================================================================

    def _create_fork(self, request: SimulateRequest) -> ForkController:
        return self.fork_factory(
            fork_url=request.fork_url,
            fork_block=request.fork_block,
            anvil_path=self.settings.anvil_binary_path,
            host=self.settings.anvil_host,
            ready_attempts=self.settings.anvil_ready_attempts,
            ready_interval=self.settings.anvil_ready_interval,
            rpc_timeout=self.settings.rpc_timeout_seconds,
            stop_timeout=self.settings.anvil_stop_timeout,
            logger=self.log,
        )

    async def _run(self, request: SimulateRequest) -> SimulateResponse:
        call_data = normalize_call_data(
            request.tx_data,
            warn_hex_chars=self.settings.calldata_warn_hex_chars,
            max_bytes=self.settings.max_tx_size_bytes,
            log=self.log,
        )

        # 分叉操作都是阻塞调用，放到工作线程里执行，超时取消时事件循环不会被卡住
        fork = self._create_fork(request)
        try:
            await asyncio.to_thread(fork.start)

            if request.transaction_index is not None:
                await asyncio.to_thread(
                    fork.replay_prior_transactions, request.block_number, request.transaction_index
                )

            snapshot_id = await asyncio.to_thread(fork.snapshot)
            try:
                return await self._evaluate(fork, request, call_data.data)
            finally:
                try:
                    await asyncio.to_thread(fork.revert, snapshot_id)
                except (SimulationError, Web3Exception, ValueError, OSError) as e:
                    self.log.warning(f"回滚快照 {snapshot_id} 失败: {e}")
        except SimulationError as e:
            self.log.error(f"模拟失败 [{e.kind.value}]: {e}")
            raise
        finally:
            await asyncio.to_thread(fork.stop)

    async def _evaluate(self, fork: ForkController, request: SimulateRequest, data: str) -> SimulateResponse:
        tx_from = request.tx_from.lower()
        tx_to = request.tx_to.lower() if request.tx_to else None
        value = request.value_wei

        call: Dict[str, Any] = {"from": tx_from, "value": hex(value), "data": data}
        if tx_to:
            call["to"] = tx_to

        self.log.debug(f"debug_traceCall: from={tx_from} to={tx_to} value={value} data_len={len(data)}")
        raw_trace = await asyncio.to_thread(fork.trace_call, call) or {}
        trace = TraceNode.model_validate(raw_trace)
        gas_info = await asyncio.to_thread(self._gas_info, fork, trace)

        if trace.error:
            self.log.info(f"调用执行失败: {trace.error}")
            return SimulateResponse(
                status=SimulationStatus.REVERTED,
                error_message=trace.error,
                gas_info=gas_info,
            )

        # 受影响的地址
        touched = collect_touched_addresses(trace)
        touched.add(tx_from)
        if tx_to:
            touched.add(tx_to)
        extract_transfer_addresses(trace, touched)

        # 转账（trace -> 全量搜索 -> calldata）
        transfers = extract_transfers(raw_trace, tx_to, data, tx_from, self.log)
        for group in transfers.values():
            for transfer in group.transfers:
                touched.add(transfer.from_address)
                if transfer.type != TransferKind.BURN:
                    touched.add(transfer.to_address)

        addresses = sorted(touched)
        self.log.info(f"收集到 {len(addresses)} 个受影响地址")

        # token 识别 + 执行前余额
        probe = TokenProbe(fork.w3, concurrency=self.settings.probe_concurrency, logger=self.log)
        tokens = await probe.classify_tokens(addresses)
        before = BalanceGrid(
            native=await probe.collect_native_balances(addresses),
            tokens=await probe.collect_token_balances(tokens, addresses),
        ).zero_filled(tokens, addresses)

        await probe.enrich_transfers(transfers)

        grid_transfers = {token: group for token, group in transfers.items() if token in tokens}
        for token in transfers:
            if token not in grid_transfers:
                self.log.warning(f"{token} 未被识别为 ERC-20，不计入余额变动")

        # 推导执行后的余额并求差
        after = derive_after_balances(before, grid_transfers, tx_from, tx_to, value).zero_filled(tokens, addresses)
        diff = diff_balances(before, after)

        touched_info = await probe.build_touched_addresses(addresses, transfers)
        summary = summarize_token_deltas(touched_info, diff)
        swap = classify_flows(tx_from, diff)

        prices = await self._lookup_prices(transfers)
        asset_changes = build_asset_changes(transfers, before, prices)

        self.log.info(
            f"模拟完成: transfers={count_transfers(transfers)} asset_changes={len(asset_changes)}"
        )
        return SimulateResponse(
            status=SimulationStatus.SUCCESS,
            gas_info=gas_info,
            token_transfers=transfers,
            asset_changes=asset_changes,
            touched_addresses=touched_info,
            balances_before=before,
            balances_after=after,
            balance_diff=diff,
            token_delta_summary=summary,
            asset_swap=swap,
        )

    def _gas_info(self, fork: ForkController, trace: TraceNode) -> GasInfo:
        """gas 成本只用于展示，不计入余额"""
        gas_used = parse_quantity(trace.gas_used or trace.gas)
        try:
            block = fork.w3.eth.get_block("latest")
            base_fee = block.get("baseFeePerGas")
            gas_price = int(base_fee) + ONE_GWEI if base_fee is not None else ONE_GWEI
        except PROBE_ERRORS as e:
            self.log.warning(f"无法获取最新区块，gas 价格按 1 gwei 估算: {e}")
            gas_price = ONE_GWEI

        return GasInfo(
            gas_used=str(gas_used),
            effective_gas_price=str(gas_price),
            total_cost=str(gas_used * gas_price),
        )

    async def _lookup_prices(self, transfers: TokenTransfers) -> Dict[str, float]:
        symbols = {
            token: group.token_info.symbol
            for token, group in transfers.items()
            if group.token_info is not None and group.token_info.symbol
        }
        if not symbols:
            return {}
        return await self.price_oracle.get_prices(symbols)


def build_asset_changes(
    transfers: TokenTransfers,
    before: BalanceGrid,
    prices: Dict[str, float],
) -> List[AssetChangeRecord]:
    """把转账记录转换为带 USD 估值的资产变动记录"""
    changes: List[AssetChangeRecord] = []

    for token, group in transfers.items():
        info = group.token_info
        decimals = info.decimals if info is not None and info.decimals is not None else DEFAULT_DECIMALS
        price = prices.get(token.lower(), 0)

        token_info = AssetTokenInfo(
            contract_address=token,
            symbol=info.symbol if info else None,
            name=info.name if info else None,
            decimals=decimals,
            dollar_value=f"{price:.8f}" if price else "0",
        )

        for transfer in group.transfers:
            is_burn = transfer.type == TransferKind.BURN
            to_before = before.token_balance(token, transfer.to_address) if transfer.to_address else 0
            changes.append(
                AssetChangeRecord(
                    token_info=token_info,
                    type="Burn" if is_burn else "Transfer",
                    from_address=transfer.from_address,
                    to_address=None if is_burn else transfer.to_address,
                    amount=format_token_amount(transfer.amount, decimals),
                    raw_amount=transfer.amount,
                    dollar_value=f"{calculate_usd_value(transfer.amount, decimals, price):.2f}" if price else "0",
                    from_before_balance=hex(before.token_balance(token, transfer.from_address)),
                    to_before_balance=hex(to_before),
                )
            )

    return changes
