"""
prestateTracer diffMode 解析

debug_traceCall 配合 {"tracer": "prestateTracer", "tracerConfig": {"diffMode": true}}
返回交易前后发生变化的账户：

    {
        "pre":  {地址: {"balance": "0x..", "nonce": 1, "code": "0x..", "storage": {slot: 值}}},
        "post": {地址: {只包含变化的字段}}
    }

post 中出现的字段就是新值；pre 中有而 post 中没有的存储槽表示被清零。
"""

import logging
from typing import Any, Dict, List, Optional

from .models import StateDelta
from .validation import parse_quantity

logger = logging.getLogger(__name__)

ZERO_WORD = "0x" + "0" * 64


def _as_word(value: Any) -> str:
    """补齐为 32 字节十六进制"""
    if isinstance(value, int):
        value = hex(value)
    body = value[2:] if value.startswith(("0x", "0X")) else value
    return "0x" + body.lower().rjust(64, "0")


def _storage(pre_account: Dict[str, Any], post_account: Dict[str, Any]) -> Dict[str, str]:
    storage: Dict[str, str] = {}
    post_storage = post_account.get("storage") or {}
    pre_storage = pre_account.get("storage") or {}

    for slot, value in post_storage.items():
        storage[_as_word(slot)] = _as_word(value)
    # 被清零的槽只出现在 pre 中
    for slot in pre_storage:
        storage.setdefault(_as_word(slot), ZERO_WORD)
    return storage


def parse_state_diff(trace: Optional[Dict[str, Any]], log: Optional[logging.Logger] = None) -> List[StateDelta]:
    """
    解析 prestateTracer diffMode 的结果

    Args:
        trace: {"pre": {...}, "post": {...}}

    Returns:
        List[StateDelta]: 按 post 中的顺序排列，空变动被丢弃
    """
    log = log or logger
    deltas: List[StateDelta] = []

    if not isinstance(trace, dict):
        return deltas

    pre = trace.get("pre") or {}
    post = trace.get("post") or {}
    if not isinstance(pre, dict) or not isinstance(post, dict):
        log.debug("忽略无法识别的 prestate 结果")
        return deltas

    for address in pre:
        if address not in post:
            # 自毁的账户不回放
            log.debug(f"账户 {address} 只出现在 pre 中，跳过")

    for address, post_account in post.items():
        if not isinstance(post_account, dict):
            log.debug(f"忽略无法识别的 post 条目: {address}")
            continue
        pre_account = pre.get(address)
        if not isinstance(pre_account, dict):
            pre_account = {}

        balance = post_account.get("balance")
        nonce = post_account.get("nonce")
        code = post_account.get("code")

        try:
            delta = StateDelta(
                address=address.lower(),
                balance=parse_quantity(balance) if balance is not None else None,
                nonce=parse_quantity(nonce) if nonce is not None else None,
                code=code or None,
                storage=_storage(pre_account, post_account),
            )
        except (ValueError, AttributeError) as e:
            log.warning(f"prestate 条目格式错误 {address}: {e}")
            continue

        if not delta.is_empty:
            deltas.append(delta)

    return deltas
