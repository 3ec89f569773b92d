"""
Simulation Errors

模拟引擎的错误分类。致命错误会中止本次模拟（清理仍会执行），
非致命错误只在组件内部记录日志并降级为默认值。
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """错误类型"""
    FORK_UNAVAILABLE = "fork_unavailable"
    RPC_TIMEOUT = "rpc_timeout"
    RPC_FAILED = "rpc_failed"
    INVALID_CALL_DATA = "invalid_call_data"
    PROBE_FAILED = "probe_failed"
    PRICE_LOOKUP_FAILED = "price_lookup_failed"


class SimulationError(Exception):
    """模拟引擎错误基类"""

    kind: ErrorKind = ErrorKind.RPC_FAILED
    fatal: bool = True

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "fatal": self.fatal,
            "details": self.details,
        }


class ForkUnavailableError(SimulationError):
    """Anvil 无法启动（可执行文件缺失、进程提前退出或启动中被停止）"""

    kind = ErrorKind.FORK_UNAVAILABLE

    BINARY_MISSING = "binary_missing"
    PROCESS_EXITED = "process_exited"
    STOPPED = "stopped"

    def __init__(self, message: str, reason: str, output: Optional[str] = None, **details: Any):
        super().__init__(message, reason=reason, output=output, **details)
        self.reason = reason
        self.output = output


class RpcTimeoutError(SimulationError):
    """RPC 在重试预算内不可达，或整体模拟超时"""

    kind = ErrorKind.RPC_TIMEOUT


class RpcRequestError(SimulationError):
    """RPC 返回错误响应"""

    kind = ErrorKind.RPC_FAILED

    def __init__(self, method: str, error: Any):
        super().__init__(f"RPC 调用失败 {method}: {error}", method=method, error=error)
        self.method = method
        self.error = error


class InvalidCallDataError(SimulationError):
    """calldata / value 未通过前置校验"""

    kind = ErrorKind.INVALID_CALL_DATA


class ProbeFailedError(SimulationError):
    """单个地址的链上探测失败（非致命）"""

    kind = ErrorKind.PROBE_FAILED
    fatal = False


class PriceLookupError(SimulationError):
    """价格查询失败（非致命）"""

    kind = ErrorKind.PRICE_LOOKUP_FAILED
    fatal = False
