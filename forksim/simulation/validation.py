"""
Call data validation
"""

import logging
import re
from typing import NamedTuple, Optional

from .errors import InvalidCallDataError

logger = logging.getLogger(__name__)

_HEX_BODY = re.compile(r"^[0-9a-fA-F]*$")

# 单个调用的 calldata 一般为 4 字节选择器 + 每个参数 32 字节
DEFAULT_WARN_HEX_CHARS = 4000
DEFAULT_MAX_BYTES = 131072


class CallData(NamedTuple):
    data: str
    oversized: bool


def normalize_call_data(
    data: Optional[str],
    warn_hex_chars: int = DEFAULT_WARN_HEX_CHARS,
    max_bytes: int = DEFAULT_MAX_BYTES,
    log: Optional[logging.Logger] = None,
) -> CallData:
    """
    规范化并校验交易 calldata

    Args:
        data: 原始 calldata（十六进制字符串）
        warn_hex_chars: 超过该长度只告警
        max_bytes: 超过该字节数直接拒绝

    Returns:
        CallData: 小写的 0x 前缀十六进制串，以及是否超长

    Raises:
        InvalidCallDataError: 非十六进制、奇数长度或超过上限
    """
    log = log or logger

    if data is None or data in ("", "0x", "0X"):
        return CallData("0x", False)

    if not data.startswith(("0x", "0X")):
        raise InvalidCallDataError(f"calldata 必须以 0x 开头: {data[:20]}", data_length=len(data))

    body = data[2:]
    if not _HEX_BODY.match(body):
        raise InvalidCallDataError(f"calldata 不是有效的十六进制: {data[:20]}", data_length=len(data))

    if len(body) % 2 != 0:
        raise InvalidCallDataError(
            f"calldata 长度必须为偶数: {len(body)}",
            data_length=len(data),
        )

    if len(body) // 2 > max_bytes:
        raise InvalidCallDataError(
            f"calldata 超过上限 {max_bytes} 字节",
            data_length=len(data),
        )

    clean = "0x" + body.lower()
    oversized = len(clean) > warn_hex_chars
    if oversized:
        log.warning(f"calldata 异常地长 ({len(clean)} 字符)，可能格式有误: {clean[:100]}")

    return CallData(clean, oversized)


def parse_quantity(value) -> int:
    """解析 RPC 中的数量（十六进制串、十进制串或整数）"""
    if value is None or value == "":
        return 0
    if isinstance(value, int):
        return value
    value = str(value)
    if value.startswith(("0x", "0X")):
        return int(value, 16) if len(value) > 2 else 0
    return int(value)
