"""
ForkController - 一次性 Anvil 分叉

每次模拟独占一个 Anvil 进程（独立的临时端口）和一个 RPC 连接，
提供快照/回滚、账户状态注入以及前序交易的状态差异回放。

启动、RPC 调用都是阻塞的，引擎在工作线程里调用它们；stop() 可以在
start() 仍在另一个线程中等待就绪时被调用，之后的 start() 不会再拉起进程。
"""

import logging
import shutil
import socket
import subprocess
import tempfile
import threading
import time
from typing import Any, Dict, List, Optional

import httpx
from web3 import Web3
from web3.exceptions import TransactionNotFound, Web3Exception

from .errors import ForkUnavailableError, RpcRequestError, RpcTimeoutError
from .models import ForkProcessInfo, StateDelta
from .state_delta import parse_state_diff
from .validation import parse_quantity

MAX_UINT256 = 2**256 - 1


def find_free_port(host: str = "127.0.0.1") -> int:
    """向操作系统申请一个临时端口"""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        return s.getsockname()[1]


def trace_call_options() -> Dict[str, Any]:
    """debug_traceCall 的 tracer 配置：调用树 + 日志"""
    return {"tracer": "callTracer", "tracerConfig": {"withLog": True}}


def state_diff_options() -> Dict[str, Any]:
    """debug_traceCall 的 tracer 配置：交易前后的账户状态差异"""
    return {"tracer": "prestateTracer", "tracerConfig": {"diffMode": True}}


class ForkController:
    """
    Anvil 分叉控制器

    核心功能：
    1. 在指定区块启动 Anvil 分叉节点
    2. 快照 / 回滚
    3. 直接写入账户余额、nonce、存储
    4. 回放区块内的前序交易（只写入状态差异，不重新执行）
    5. 清理进程资源
    """

    def __init__(
        self,
        fork_url: str,
        fork_block: Optional[int] = None,
        anvil_path: str = "anvil",
        host: str = "127.0.0.1",
        port: Optional[int] = None,
        ready_attempts: int = 5,
        ready_interval: float = 0.5,
        rpc_timeout: float = 30,
        stop_timeout: float = 5,
        logger: Optional[logging.Logger] = None,
    ):
        """
        初始化 ForkController

        Args:
            fork_url: 分叉源 RPC URL
            fork_block: 分叉区块号（None 为最新区块）
            anvil_path: anvil 可执行文件路径
            host: 监听地址
            port: 监听端口（None 时每次启动分配新的临时端口）
            ready_attempts: 就绪检测次数
            ready_interval: 就绪检测间隔（秒）
            rpc_timeout: 单次 RPC 超时（秒）
            stop_timeout: 终止进程的等待时间（秒）
            logger: 日志记录器
        """
        self.fork_url = fork_url
        self.fork_block = fork_block
        self.anvil_path = anvil_path
        self.host = host
        self.port = port
        self.ready_attempts = ready_attempts
        self.ready_interval = ready_interval
        self.rpc_timeout = rpc_timeout
        self.stop_timeout = stop_timeout
        self.log = logger or logging.getLogger(__name__)

        self._process: Optional[subprocess.Popen] = None
        self._output = None
        self._process_info: Optional[ForkProcessInfo] = None
        self._w3: Optional[Web3] = None
        self._origin_w3: Optional[Web3] = None
        self._lock = threading.Lock()
        self._stopped = False

    @property
    def is_running(self) -> bool:
        """检查 Anvil 进程是否运行中"""
        return self._process is not None and self._process.poll() is None

    @property
    def process_info(self) -> Optional[ForkProcessInfo]:
        return self._process_info

    @property
    def rpc_url(self) -> str:
        """获取 RPC URL"""
        if self._process_info is None:
            raise RuntimeError("Anvil 进程未启动")
        return self._process_info.rpc_url

    @property
    def w3(self) -> Web3:
        """分叉节点的 Web3 实例"""
        if self._w3 is None:
            raise RuntimeError("Anvil 进程未启动")
        return self._w3

    @property
    def origin_w3(self) -> Web3:
        """分叉源（原始链）的 Web3 实例"""
        if self._origin_w3 is None:
            self._origin_w3 = Web3(
                Web3.HTTPProvider(self.fork_url, request_kwargs={"timeout": self.rpc_timeout})
            )
        return self._origin_w3

    # =========================================================================
    # 进程生命周期
    # =========================================================================

    def build_command(self, port: int) -> List[str]:
        cmd = [
            self.anvil_path,
            "--fork-url",
            self.fork_url,
            "--port",
            str(port),
            "--host",
            self.host,
            "--steps-tracing",
            "--silent",
        ]
        if self.fork_block is not None:
            cmd.extend(["--fork-block-number", str(self.fork_block)])
        return cmd

    def start(self) -> ForkProcessInfo:
        """
        启动 Anvil 分叉节点

        Returns:
            ForkProcessInfo: 进程信息

        Raises:
            ForkUnavailableError: 可执行文件缺失、进程在就绪前退出，或已经调用过 stop()
            RpcTimeoutError: 重试次数用尽仍未就绪
        """
        with self._lock:
            if self._stopped:
                raise self._stopped_error()
            if self.is_running:
                return self._process_info

            if shutil.which(self.anvil_path) is None:
                raise ForkUnavailableError(
                    f"找不到 anvil 可执行文件 '{self.anvil_path}'，"
                    "请安装 Foundry (https://getfoundry.sh) 或设置 ANVIL_BINARY_PATH",
                    reason=ForkUnavailableError.BINARY_MISSING,
                )

            port = self.port if self.port is not None else find_free_port(self.host)
            rpc_url = f"http://{self.host}:{port}"
            cmd = self.build_command(port)

            self.log.info(f"启动 Anvil: fork_block={self.fork_block} port={port}")

            self._output = tempfile.TemporaryFile(mode="w+")
            try:
                self._process = subprocess.Popen(
                    cmd,
                    stdout=self._output,
                    stderr=subprocess.STDOUT,
                    text=True,
                )
            except OSError as e:
                self._close_output()
                raise ForkUnavailableError(
                    f"无法启动 anvil: {e}",
                    reason=ForkUnavailableError.BINARY_MISSING,
                ) from e
            process = self._process

        try:
            self._wait_for_ready(rpc_url, process)
        except Exception:
            self.stop()
            raise

        with self._lock:
            if self._stopped:
                raise self._stopped_error()
            self._w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": self.rpc_timeout}))
            self._process_info = ForkProcessInfo(
                pid=process.pid,
                port=port,
                rpc_url=rpc_url,
                fork_url=self.fork_url,
                fork_block=self.fork_block,
            )

        self.log.info(f"Anvil 已启动: {rpc_url} (PID: {process.pid})")
        return self._process_info

    def _wait_for_ready(self, rpc_url: str, process: subprocess.Popen) -> None:
        """等待 Anvil 就绪（固定次数、固定间隔）"""
        for attempt in range(1, self.ready_attempts + 1):
            if self._stopped:
                raise self._stopped_error()
            if process.poll() is not None:
                raise ForkUnavailableError(
                    f"Anvil 在就绪前退出 (exit code {process.returncode})",
                    reason=ForkUnavailableError.PROCESS_EXITED,
                    output=self._read_output(),
                )
            try:
                response = httpx.post(
                    rpc_url,
                    json={
                        "jsonrpc": "2.0",
                        "method": "eth_blockNumber",
                        "params": [],
                        "id": 1,
                    },
                    timeout=1,
                )
                if response.status_code == 200:
                    self.log.debug(f"Anvil 就绪 (第 {attempt} 次检测)")
                    return
            except httpx.HTTPError as e:
                self.log.debug(f"Anvil 尚未就绪 (第 {attempt} 次检测): {e}")
            time.sleep(self.ready_interval)

        if process.poll() is not None:
            raise ForkUnavailableError(
                f"Anvil 在就绪前退出 (exit code {process.returncode})",
                reason=ForkUnavailableError.PROCESS_EXITED,
                output=self._read_output(),
            )
        raise RpcTimeoutError(
            f"Anvil 启动超时: {rpc_url}",
            rpc_url=rpc_url,
            attempts=self.ready_attempts,
        )

    def _stopped_error(self) -> ForkUnavailableError:
        return ForkUnavailableError(
            "分叉已停止，不能再启动",
            reason=ForkUnavailableError.STOPPED,
        )

    def _read_output(self) -> str:
        with self._lock:
            if self._output is None or self._output.closed:
                return ""
            self._output.seek(0)
            return self._output.read()

    def _close_output(self) -> None:
        if self._output is not None:
            self._output.close()
            self._output = None

    def stop(self) -> None:
        """停止 Anvil 进程（可重复调用；停止后不能再 start）"""
        with self._lock:
            self._stopped = True
            if self._process is not None:
                try:
                    self._process.terminate()
                    self._process.wait(timeout=self.stop_timeout)
                except subprocess.TimeoutExpired:
                    self._process.kill()
                    self._process.wait()
                self._process = None
                self.log.info("Anvil 进程已停止")

            self._close_output()
            self._process_info = None
            self._w3 = None

    def __enter__(self):
        """上下文管理器入口"""
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """上下文管理器退出"""
        self.stop()

    # =========================================================================
    # RPC
    # =========================================================================

    def rpc(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """发送原始 JSON-RPC 请求并返回 result"""
        response = self.w3.provider.make_request(method, params or [])
        if response.get("error"):
            raise RpcRequestError(method, response["error"])
        return response.get("result")

    def snapshot(self) -> str:
        """创建快照，返回快照 ID"""
        snapshot_id = self.rpc("evm_snapshot")
        self.log.info(f"已创建快照 {snapshot_id}")
        return snapshot_id

    def revert(self, snapshot_id: str) -> bool:
        """回滚到快照"""
        reverted = bool(self.rpc("evm_revert", [snapshot_id]))
        self.log.info(f"已回滚快照 {snapshot_id}")
        return reverted

    def set_balance(self, address: str, balance: int) -> None:
        if not (0 <= balance <= MAX_UINT256):
            raise ValueError("余额超出范围: 0 <= balance <= 2**256 - 1")
        self.rpc("anvil_setBalance", [address, hex(balance)])

    def set_nonce(self, address: str, nonce: int) -> None:
        if nonce < 0:
            raise ValueError("nonce 不能为负数")
        self.rpc("anvil_setNonce", [address, hex(nonce)])

    def set_storage_at(self, address: str, slot: str, value: str) -> None:
        self.rpc("anvil_setStorageAt", [address, slot, value])

    def set_code(self, address: str, code: str) -> None:
        self.rpc("anvil_setCode", [address, code])

    def apply_state_delta(self, delta: StateDelta) -> None:
        """按 余额 -> nonce -> 代码 -> 存储 的顺序写入账户状态"""
        if delta.balance is not None:
            self.set_balance(delta.address, delta.balance)
            self.log.debug(f"写入余额 {delta.address}: {delta.balance}")
        if delta.nonce is not None:
            self.set_nonce(delta.address, delta.nonce)
            self.log.debug(f"写入 nonce {delta.address}: {delta.nonce}")
        if delta.code is not None:
            self.set_code(delta.address, delta.code)
            self.log.debug(f"写入代码 {delta.address}: {len(delta.code)} 字符")
        for slot, value in delta.storage.items():
            self.set_storage_at(delta.address, slot, value)
            self.log.debug(f"写入存储 {delta.address} [{slot}] = {value}")

    def trace_call(self, call: Dict[str, Any], block: str = "latest") -> Dict[str, Any]:
        """在分叉上执行 debug_traceCall（不会上链），返回带日志的调用树"""
        return self.rpc("debug_traceCall", [call, block, trace_call_options()])

    def trace_state_diff(self, call: Dict[str, Any], block: str = "latest") -> Dict[str, Any]:
        """在分叉上执行 debug_traceCall，返回 prestateTracer 的 {pre, post} 差异"""
        return self.rpc("debug_traceCall", [call, block, state_diff_options()])

    # =========================================================================
    # 前序交易回放
    # =========================================================================

    def replay_prior_transactions(self, block_number: int, transaction_index: int) -> int:
        """
        回放区块内 transaction_index 之前的所有交易

        每笔交易从原始链获取，在分叉当前状态上用 prestateTracer 求出状态差异，
        再把交易后的值直接写入分叉。必须严格按顺序执行：第 i 笔的 trace
        依赖前 i-1 笔写入后的状态。

        Returns:
            int: 成功应用的交易数量
        """
        if transaction_index <= 0:
            return 0

        self.log.info(f"回放区块 {block_number} 中前 {transaction_index} 笔交易")

        try:
            block = self.origin_w3.eth.get_block(block_number, full_transactions=True)
        except (Web3Exception, ValueError, OSError) as e:
            self.log.warning(f"无法获取区块 {block_number} 的交易，跳过回放: {e}")
            return 0

        transactions = list(block.get("transactions") or [])
        if len(transactions) < transaction_index:
            self.log.warning(
                f"交易索引 {transaction_index} 超出区块交易数 {len(transactions)}，跳过回放"
            )
            return 0

        applied = 0
        for index, tx in enumerate(transactions[:transaction_index]):
            if self._stopped:
                self.log.info(f"分叉已停止，回放在第 {index} 笔交易处中止")
                break
            tx_hash = tx if isinstance(tx, (str, bytes)) else tx.get("hash")
            try:
                if isinstance(tx, (str, bytes)):
                    tx = self.origin_w3.eth.get_transaction(tx_hash)
                if self._replay_transaction(tx, index):
                    applied += 1
            except (TransactionNotFound, RpcRequestError, Web3Exception, ValueError, OSError) as e:
                self.log.error(f"回放交易 #{index} ({_hex(tx_hash)}) 失败，继续下一笔: {e}")

        self.log.info(f"前序交易回放完成: {applied}/{transaction_index}")
        return applied

    def _replay_transaction(self, tx: Dict[str, Any], index: int) -> bool:
        call: Dict[str, Any] = {
            "from": str(tx["from"]).lower(),
            "value": hex(parse_quantity(tx.get("value"))),
            "data": _hex(tx.get("input") or tx.get("data") or "0x"),
        }
        if tx.get("to"):
            call["to"] = str(tx["to"]).lower()
        if tx.get("gas"):
            call["gas"] = hex(parse_quantity(tx["gas"]))

        trace = self.trace_state_diff(call)
        if not isinstance(trace, dict) or "post" not in trace:
            self.log.warning(f"交易 #{index} 的 prestateTracer 结果中没有 post 状态，跳过")
            return False

        deltas = parse_state_diff(trace, self.log)
        for delta in deltas:
            self.apply_state_delta(delta)
        self.log.debug(f"交易 #{index} 已应用 {len(deltas)} 个账户的状态变动")
        return True


def _hex(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if hasattr(value, "hex") and not isinstance(value, str):
        hexed = value.hex()
        return hexed if hexed.startswith("0x") else "0x" + hexed
    return str(value)
