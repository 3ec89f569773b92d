"""
Balance diff analysis

debug_traceCall 不会改变链上状态，因此执行后的余额是根据转账记录推导出来的，
而不是从链上重新读取。

原生币只移动请求中的 value，不扣除手续费。这是有意的简化：如果以后加入
手续费模型，发起者的 ETH 变动会同时包含 value 和 gas 成本，classify_flows
和 summarize_token_deltas 的调用方需要一并调整。
"""

from typing import Dict, Iterable, List, Optional

from .models import (
    AddressKind,
    AssetFlow,
    AssetSwap,
    BalanceDiff,
    BalanceGrid,
    TokenDeltaSummary,
    TouchedAddress,
    TransferKind,
)
from .transfers import TokenTransfers


def _diff_rows(before: Dict[str, str], after: Dict[str, str]) -> Dict[str, str]:
    deltas: Dict[str, str] = {}
    for addr in list(dict.fromkeys(list(before) + list(after))):
        delta = int(after.get(addr, "0")) - int(before.get(addr, "0"))
        if delta != 0:
            deltas[addr] = str(delta)
    return deltas


def diff_balances(before: BalanceGrid, after: BalanceGrid) -> BalanceDiff:
    """
    after - before

    对 token x 地址 的并集求差，缺失的一侧记为 0，只保留非零结果。
    """
    native = _diff_rows(before.native, after.native)

    tokens: Dict[str, Dict[str, str]] = {}
    for token in dict.fromkeys(list(before.tokens) + list(after.tokens)):
        row = _diff_rows(before.tokens.get(token, {}), after.tokens.get(token, {}))
        if row:
            tokens[token] = row

    return BalanceDiff(native=native, tokens=tokens)


def derive_after_balances(
    before: BalanceGrid,
    transfers: TokenTransfers,
    tx_from: str,
    tx_to: Optional[str],
    value: int,
) -> BalanceGrid:
    """
    根据转账记录推导执行后的余额

    - token：转出方减去数量；非销毁时转入方加上数量
    - 原生币：value 从调用者转给被调用者（不含手续费）
    """
    tokens = {token: dict(row) for token, row in before.tokens.items()}
    for token, group in transfers.items():
        row = tokens.setdefault(token, {})
        for transfer in group.transfers:
            amount = int(transfer.amount)
            sender = transfer.from_address
            row[sender] = str(int(row.get(sender, "0")) - amount)
            if transfer.type != TransferKind.BURN and transfer.to_address:
                receiver = transfer.to_address
                row[receiver] = str(int(row.get(receiver, "0")) + amount)

    native = dict(before.native)
    if value > 0 and tx_to:
        sender = tx_from.lower()
        receiver = tx_to.lower()
        native[sender] = str(int(native.get(sender, "0")) - value)
        native[receiver] = str(int(native.get(receiver, "0")) + value)

    return BalanceGrid(native=native, tokens=tokens)


def classify_flows(initiator: str, diff: BalanceDiff) -> AssetSwap:
    """
    把非零变动按符号分为 sent（负）和 received（正）

    原生币变动不含手续费，见模块说明。
    """
    initiator = initiator.lower()
    swap = AssetSwap(initiator=initiator)

    def place(flow: AssetFlow) -> None:
        if int(flow.delta) < 0:
            swap.sent.append(flow)
        else:
            swap.received.append(flow)

    for address, delta in diff.native.items():
        place(AssetFlow(address=address, type="ETH", delta=delta, is_initiator=address == initiator))

    for token, row in diff.tokens.items():
        for address, delta in row.items():
            place(
                AssetFlow(
                    address=address,
                    type="ERC20",
                    token_address=token,
                    delta=delta,
                    is_initiator=address == initiator,
                )
            )

    return swap


def summarize_token_deltas(
    touched: Iterable[TouchedAddress],
    diff: BalanceDiff,
) -> List[TokenDeltaSummary]:
    """
    按 token 汇总净变动

    total_delta 覆盖所有账户；eoa_deltas 只列出外部账户。两者的差额
    由 contract_addresses 中的合约持有。
    """
    kinds = {t.address.lower(): t.type for t in touched}
    summaries: List[TokenDeltaSummary] = []

    for token, row in diff.tokens.items():
        if not row:
            continue

        total = 0
        eoa_deltas: Dict[str, str] = {}
        contracts: List[str] = []
        for address, delta in row.items():
            value = int(delta)
            if value == 0:
                continue
            total += value
            if kinds.get(address.lower()) == AddressKind.EOA:
                eoa_deltas[address] = delta
            else:
                contracts.append(address)

        summaries.append(
            TokenDeltaSummary(
                token_address=token,
                total_delta=str(total),
                eoa_deltas=eoa_deltas,
                contract_addresses=contracts,
            )
        )

    return summaries
