"""
Log shape adapters

不同的 tracer 返回的日志结构并不一致。每个适配器尝试把一条原始日志
规范化为 NormalizedLog，按顺序尝试，第一个成功的生效。
"""

from typing import Any, Callable, List, NamedTuple, Optional, Sequence

# Transfer(address,address,uint256)
TRANSFER_EVENT_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


class NormalizedLog(NamedTuple):
    address: Optional[str]
    topics: List[str]
    data: str


def _topics_array(log: Any) -> Optional[NormalizedLog]:
    """{address, topics: [...], data}"""
    topics = log.get("topics")
    if not isinstance(topics, list):
        return None
    return NormalizedLog(log.get("address"), [str(t) for t in topics], log.get("data") or "0x")


def _raw_sub_object(log: Any) -> Optional[NormalizedLog]:
    """{raw: {address, topics, data}}"""
    raw = log.get("raw")
    if not isinstance(raw, dict):
        return None
    return _topics_array(raw)


def _flat_topic_fields(log: Any) -> Optional[NormalizedLog]:
    """{address, topic0, topic1, topic2, topic3, data}"""
    if "topic0" not in log:
        return None
    topics = []
    for i in range(4):
        topic = log.get(f"topic{i}")
        if not topic:
            break
        topics.append(str(topic))
    return NormalizedLog(log.get("address"), topics, log.get("data") or "0x")


LOG_ADAPTERS: Sequence[Callable[[Any], Optional[NormalizedLog]]] = (
    _topics_array,
    _raw_sub_object,
    _flat_topic_fields,
)


def normalize_log(log: Any) -> Optional[NormalizedLog]:
    """依次尝试各适配器，无法识别时返回 None"""
    if not isinstance(log, dict):
        return None
    for adapter in LOG_ADAPTERS:
        normalized = adapter(log)
        if normalized is not None:
            return normalized
    return None


def topic_to_address(topic: Optional[str]) -> Optional[str]:
    """取 32 字节 topic 的最右 20 字节作为地址"""
    if not topic or not isinstance(topic, str) or len(topic) < 42:
        return None
    body = topic[-40:]
    try:
        int(body, 16)
    except ValueError:
        return None
    return "0x" + body.lower()


def is_transfer_log(log: NormalizedLog) -> bool:
    return len(log.topics) >= 3 and log.topics[0].lower() == TRANSFER_EVENT_TOPIC
