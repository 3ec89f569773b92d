"""
Trace traversal

提供一个有深度上限的树遍历工具，以及从调用树中收集受影响地址的逻辑。
"""

import logging
from typing import Any, Callable, Iterable, Iterator, Optional, Set, Tuple, TypeVar, Union

from .logs import is_transfer_log, normalize_log, topic_to_address
from .models import ZERO_ADDRESS, TraceNode

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_TRACE_DEPTH = 1024
MAX_SEARCH_DEPTH = 10


def walk(
    root: T,
    children: Callable[[T], Iterable[T]],
    max_depth: int = MAX_TRACE_DEPTH,
) -> Iterator[Tuple[T, int]]:
    """
    深度优先遍历（前序），产出 (节点, 深度)

    超过 max_depth 的子树不再展开。
    """
    stack = [(root, 0)]
    while stack:
        node, depth = stack.pop()
        if node is None:
            continue
        yield node, depth
        if depth >= max_depth:
            continue
        kids = list(children(node))
        for child in reversed(kids):
            stack.append((child, depth + 1))


def call_frames(node: TraceNode) -> Iterable[TraceNode]:
    return node.calls


def as_trace_node(trace: Union[TraceNode, dict]) -> TraceNode:
    if isinstance(trace, TraceNode):
        return trace
    return TraceNode.model_validate(trace or {})


def collect_touched_addresses(trace: Union[TraceNode, dict]) -> Set[str]:
    """
    收集调用树中出现的所有地址（from、to、发出日志的合约）

    Returns:
        Set[str]: 小写地址
    """
    root = as_trace_node(trace)
    touched: Set[str] = set()

    for frame, _ in walk(root, call_frames):
        if frame.from_address:
            touched.add(frame.from_address.lower())
        if frame.to:
            touched.add(frame.to.lower())
        for raw_log in frame.logs:
            log = normalize_log(raw_log)
            if log is not None and log.address:
                touched.add(log.address.lower())

    return touched


def extract_transfer_addresses(trace: Union[TraceNode, dict], touched: Optional[Set[str]] = None) -> Set[str]:
    """
    把 Transfer 事件中的转出/转入地址加入 touched

    转账的双方不一定出现在调用树的其他位置。销毁（转入零地址）时不加入零地址。
    """
    root = as_trace_node(trace)
    if touched is None:
        touched = set()

    for frame, _ in walk(root, call_frames):
        for raw_log in frame.logs:
            log = normalize_log(raw_log)
            if log is None or not is_transfer_log(log):
                continue
            sender = topic_to_address(log.topics[1])
            receiver = topic_to_address(log.topics[2])
            if sender:
                touched.add(sender)
            if receiver and receiver != ZERO_ADDRESS:
                touched.add(receiver)

    return touched


def any_children(node: Any) -> Iterable[Any]:
    """遍历任意 JSON 结构；已识别为日志的对象不再展开"""
    if isinstance(node, list):
        return node
    if isinstance(node, dict):
        if normalize_log(node) is not None:
            return []
        return [v for v in node.values() if isinstance(v, (dict, list))]
    return []
