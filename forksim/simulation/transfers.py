"""
Token transfer extraction

从 trace 日志中解码 ERC-20 Transfer 事件；日志缺失时退回到解析顶层 calldata。
"""

import logging
from typing import Any, Dict, Iterable, Optional, Union

from .logs import NormalizedLog, is_transfer_log, normalize_log, topic_to_address
from .models import ZERO_ADDRESS, TokenTransfer, TokenTransferGroup, TraceNode, TransferKind
from .trace import MAX_SEARCH_DEPTH, any_children, walk

logger = logging.getLogger(__name__)

# transfer(address,uint256)
TRANSFER_SELECTOR = "0xa9059cbb"
# 0x + 4 字节选择器 + 32 字节地址 + 32 字节数量
TRANSFER_CALLDATA_LENGTH = 2 + 8 + 64 + 64

TokenTransfers = Dict[str, TokenTransferGroup]


def decode_transfer_log(entry: NormalizedLog, log: Optional[logging.Logger] = None) -> Optional[TokenTransfer]:
    """
    解码单条 Transfer 日志

    格式不符（缺少 topic、地址无效、数量不是十六进制）时返回 None。
    """
    log = log or logger
    if not is_transfer_log(entry):
        return None

    sender = topic_to_address(entry.topics[1])
    receiver = topic_to_address(entry.topics[2])
    if sender is None or receiver is None:
        log.warning(f"Transfer 事件的 topic 无效: {entry.topics[1:3]}")
        return None

    data = entry.data or "0x"
    amount = 0
    if data not in ("0x", "0X"):
        try:
            amount = int(data, 16)
        except ValueError:
            log.warning(f"无法解析 Transfer 数量: {data[:80]}")
            return None

    kind = TransferKind.BURN if receiver == ZERO_ADDRESS else TransferKind.TRANSFER
    return TokenTransfer(from_address=sender, to_address=receiver, amount=str(amount), type=kind)


def _add_logs(transfers: TokenTransfers, raw_logs: Iterable[Any], log: logging.Logger) -> None:
    for raw_log in raw_logs:
        entry = normalize_log(raw_log)
        if entry is None or not is_transfer_log(entry):
            continue
        if not entry.address:
            log.warning("Transfer 事件缺少 token 地址")
            continue
        transfer = decode_transfer_log(entry, log)
        if transfer is None:
            continue
        token = entry.address.lower()
        transfers.setdefault(token, TokenTransferGroup()).transfers.append(transfer)


def extract_transfers_from_trace(
    trace: Union[dict, list, TraceNode, None],
    log: Optional[logging.Logger] = None,
) -> TokenTransfers:
    """
    从 trace 中提取 Token 转账

    先遍历每个调用帧的 logs；一无所获时在整个结构里做有深度上限的全量搜索。

    Returns:
        TokenTransfers: token 地址（小写） -> 转账列表
    """
    log = log or logger
    transfers: TokenTransfers = {}
    if trace is None:
        return transfers

    raw = trace.model_dump(by_alias=True) if isinstance(trace, TraceNode) else trace

    if isinstance(raw, dict):
        frames = walk(raw, lambda frame: [c for c in (frame.get("calls") or []) if isinstance(c, dict)])
        for frame, _ in frames:
            logs = frame.get("logs")
            if isinstance(logs, list):
                _add_logs(transfers, logs, log)

    if not transfers:
        log.debug("标准路径未找到转账，尝试全量搜索 trace")
        found = [node for node, _ in walk(raw, any_children, MAX_SEARCH_DEPTH) if normalize_log(node) is not None]
        log.debug(f"全量搜索找到 {len(found)} 条日志")
        _add_logs(transfers, found, log)

    log.info(f"从 trace 中提取到 {len(transfers)} 个 token 的 {count_transfers(transfers)} 笔转账")
    return transfers


def extract_transfers_from_input(
    to: Optional[str],
    data: Optional[str],
    sender: str,
    log: Optional[logging.Logger] = None,
) -> TokenTransfers:
    """
    从顶层 calldata 解析一次直接的 transfer(address,uint256) 调用

    仅当长度恰好为 选择器 + 地址 + 数量 且选择器匹配时才解析，否则返回空。
    """
    log = log or logger
    transfers: TokenTransfers = {}

    if not to or not data or len(data) < 10:
        return transfers
    if data[:10].lower() != TRANSFER_SELECTOR:
        return transfers
    if len(data) != TRANSFER_CALLDATA_LENGTH:
        log.warning(f"transfer calldata 长度无效: {len(data)} (期望 {TRANSFER_CALLDATA_LENGTH})")
        return transfers

    address_word = data[10:74]
    amount_word = data[74:138]
    try:
        if int(address_word[:24], 16) != 0:
            log.warning(f"transfer calldata 中的地址参数无效: 0x{address_word}")
            return transfers
        amount = int(amount_word, 16)
    except ValueError:
        log.warning(f"transfer calldata 不是有效的十六进制: {data[:80]}")
        return transfers

    if amount == 0:
        return transfers

    receiver = "0x" + address_word[24:].lower()
    kind = TransferKind.BURN if receiver == ZERO_ADDRESS else TransferKind.TRANSFER
    group = transfers.setdefault(to.lower(), TokenTransferGroup())
    group.transfers.append(
        TokenTransfer(from_address=sender.lower(), to_address=receiver, amount=str(amount), type=kind)
    )
    log.info(f"从 calldata 解析到转账: {sender.lower()} -> {receiver} amount={amount} token={to.lower()}")
    return transfers


def extract_transfers(
    trace: Union[dict, list, TraceNode, None],
    to: Optional[str],
    data: Optional[str],
    sender: str,
    log: Optional[logging.Logger] = None,
) -> TokenTransfers:
    """trace 优先，其次 calldata"""
    log = log or logger
    transfers = extract_transfers_from_trace(trace, log)
    if not transfers:
        log.info("trace 中没有转账，尝试从 calldata 解析")
        transfers = extract_transfers_from_input(to, data, sender, log)
    return transfers


def count_transfers(transfers: TokenTransfers) -> int:
    return sum(len(group.transfers) for group in transfers.values())
