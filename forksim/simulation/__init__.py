"""
Simulation Engine - EVM 调用模拟模块

基于 Foundry Anvil 的一次性分叉：在指定区块位置执行调用，
提取 token 转账并给出余额变动，目标调用不会上链。
"""

from .models import (
    SimulateRequest,
    SimulateResponse,
    SimulationStatus,
    TokenTransfer,
    TokenTransferGroup,
    TouchedAddress,
    BalanceGrid,
    BalanceDiff,
    AssetChangeRecord,
    AssetSwap,
    TokenDeltaSummary,
    StateDelta,
    TraceNode,
)
from .errors import (
    ErrorKind,
    SimulationError,
    ForkUnavailableError,
    RpcTimeoutError,
    RpcRequestError,
    InvalidCallDataError,
    ProbeFailedError,
    PriceLookupError,
)
from .anvil_fork import ForkController, find_free_port
from .engine import SimulationEngine

__all__ = [
    # Models
    "SimulateRequest",
    "SimulateResponse",
    "SimulationStatus",
    "TokenTransfer",
    "TokenTransferGroup",
    "TouchedAddress",
    "BalanceGrid",
    "BalanceDiff",
    "AssetChangeRecord",
    "AssetSwap",
    "TokenDeltaSummary",
    "StateDelta",
    "TraceNode",
    # Errors
    "ErrorKind",
    "SimulationError",
    "ForkUnavailableError",
    "RpcTimeoutError",
    "RpcRequestError",
    "InvalidCallDataError",
    "ProbeFailedError",
    "PriceLookupError",
    # Engine
    "ForkController",
    "SimulationEngine",
    "find_free_port",
]
