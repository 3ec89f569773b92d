"""
Simulation Engine Data Models

定义模拟执行过程中使用的数据结构。
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

ZERO_ADDRESS = "0x" + "0" * 40


class SimulationStatus(str, Enum):
    """模拟执行状态"""
    SUCCESS = "SUCCESS"
    REVERTED = "REVERTED"


class AddressKind(str, Enum):
    """地址类型"""
    EOA = "EOA"
    CONTRACT = "Contract"


class TransferKind(str, Enum):
    """Token 转账类型"""
    TRANSFER = "transfer"
    BURN = "burn"


def _validate_address(v: str) -> str:
    if not isinstance(v, str) or not v.startswith("0x") or len(v) != 42:
        raise ValueError(f"无效的以太坊地址: {v}")
    try:
        int(v, 16)
    except ValueError:
        raise ValueError(f"无效的以太坊地址: {v}")
    return v


# =============================================================================
# Trace
# =============================================================================


class TraceNode(BaseModel):
    """callTracer 输出的单个调用帧"""
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")

    type: Optional[str] = None
    from_address: Optional[str] = Field(None, alias="from")
    to: Optional[str] = None
    value: Optional[str] = None
    input: Optional[str] = None
    output: Optional[str] = None
    error: Optional[str] = None
    gas: Optional[str] = None
    gas_used: Optional[str] = Field(None, alias="gasUsed")
    logs: List[Any] = Field(default_factory=list)
    calls: List["TraceNode"] = Field(default_factory=list)

    @field_validator("logs", "calls", mode="before")
    @classmethod
    def none_as_empty(cls, v: Any) -> Any:
        return v if v is not None else []

    @field_validator("value", "gas", "gas_used", mode="before")
    @classmethod
    def int_as_hex(cls, v: Any) -> Any:
        if isinstance(v, int):
            return hex(v)
        return v


# =============================================================================
# Tokens & transfers
# =============================================================================


class TokenInfo(BaseModel):
    """ERC-20 元数据（尽力获取，字段可能缺失）"""
    symbol: Optional[str] = None
    name: Optional[str] = None
    decimals: Optional[int] = None


class TokenTransfer(BaseModel):
    """单笔 Token 转账"""
    model_config = ConfigDict(populate_by_name=True)

    from_address: str = Field(..., alias="from", description="转出地址")
    to_address: str = Field(..., alias="to", description="转入地址")
    amount: str = Field(..., description="最小单位的无符号整数")
    type: TransferKind = Field(default=TransferKind.TRANSFER)


class TokenTransferGroup(BaseModel):
    """同一 Token 合约下的所有转账"""
    transfers: List[TokenTransfer] = Field(default_factory=list)
    token_info: Optional[TokenInfo] = None


class TouchedAddress(BaseModel):
    """调用涉及的地址"""
    address: str
    type: AddressKind
    token_info: Optional[TokenInfo] = None


# =============================================================================
# Balances & diffs
# =============================================================================


class BalanceGrid(BaseModel):
    """
    (token 或原生币, 地址) -> 余额

    余额以十进制字符串存储。
    """
    native: Dict[str, str] = Field(default_factory=dict, description="原生币余额（wei）")
    tokens: Dict[str, Dict[str, str]] = Field(default_factory=dict, description="token -> 地址 -> 余额")

    def native_balance(self, address: str) -> int:
        return int(self.native.get(address, "0"))

    def token_balance(self, token: str, address: str) -> int:
        return int(self.tokens.get(token, {}).get(address, "0"))

    def addresses(self) -> List[str]:
        found = dict.fromkeys(self.native)
        for balances in self.tokens.values():
            found.update(dict.fromkeys(balances))
        return list(found)

    def zero_filled(self, tokens: Iterable[str], addresses: Iterable[str]) -> "BalanceGrid":
        """返回补全后的副本：每个 (token, 地址) 都存在，缺失记为 0"""
        addresses = list(addresses)
        tokens = list(tokens)
        native = {addr: self.native.get(addr, "0") for addr in addresses}
        for addr, bal in self.native.items():
            native.setdefault(addr, bal)

        token_grid: Dict[str, Dict[str, str]] = {}
        for token in tokens + [t for t in self.tokens if t not in tokens]:
            existing = self.tokens.get(token, {})
            row = {addr: existing.get(addr, "0") for addr in addresses}
            for addr, bal in existing.items():
                row.setdefault(addr, bal)
            token_grid[token] = row
        return BalanceGrid(native=native, tokens=token_grid)


class BalanceDiff(BaseModel):
    """带符号的余额变动，只保留非零项"""
    native: Dict[str, str] = Field(default_factory=dict)
    tokens: Dict[str, Dict[str, str]] = Field(default_factory=dict)

    def native_delta(self, address: str) -> int:
        return int(self.native.get(address, "0"))

    def token_delta(self, token: str, address: str) -> int:
        return int(self.tokens.get(token, {}).get(address, "0"))


class TokenDeltaSummary(BaseModel):
    """单个 Token 的净变动汇总"""
    token_address: str
    total_delta: str = Field(..., description="所有账户的净变动")
    eoa_deltas: Dict[str, str] = Field(default_factory=dict, description="仅外部账户的变动")
    contract_addresses: List[str] = Field(
        default_factory=list,
        description="持有剩余变动的合约地址",
    )


class AssetFlow(BaseModel):
    """单个地址的单项资产变动"""
    address: str
    type: str = Field(..., description="ETH 或 ERC20")
    token_address: Optional[str] = None
    delta: str
    is_initiator: bool = False


class AssetSwap(BaseModel):
    """
    资产流向分类

    注意：原生币的变动只包含 value 转移，不包含手续费。
    """
    initiator: str
    sent: List[AssetFlow] = Field(default_factory=list)
    received: List[AssetFlow] = Field(default_factory=list)


class AssetTokenInfo(BaseModel):
    """资产变动记录中的 Token 信息"""
    standard: str = "ERC20"
    type: str = "Fungible"
    contract_address: str
    symbol: Optional[str] = None
    name: Optional[str] = None
    decimals: int = 18
    dollar_value: str = Field(default="0", description="单价（USD）")


class AssetChangeRecord(BaseModel):
    """单笔资产变动（展示用）"""
    model_config = ConfigDict(populate_by_name=True)

    token_info: AssetTokenInfo
    type: str = Field(..., description="Transfer 或 Burn")
    from_address: str = Field(..., alias="from")
    to_address: Optional[str] = Field(None, alias="to")
    amount: str = Field(..., description="按精度格式化后的数量")
    raw_amount: str
    dollar_value: str = "0"
    from_before_balance: str = Field(..., description="十六进制")
    to_before_balance: str = Field(..., description="十六进制")


# =============================================================================
# State deltas
# =============================================================================


class StateDelta(BaseModel):
    """一笔交易对单个账户的状态变动（交易后的值）"""
    address: str
    balance: Optional[int] = None
    nonce: Optional[int] = None
    code: Optional[str] = Field(None, description="新部署或变化的合约代码")
    storage: Dict[str, str] = Field(default_factory=dict, description="slot -> 新值（32 字节十六进制）")

    @property
    def is_empty(self) -> bool:
        return self.balance is None and self.nonce is None and self.code is None and not self.storage


# =============================================================================
# Request / Response
# =============================================================================


class ForkProcessInfo(BaseModel):
    """Anvil 进程信息"""
    pid: int = Field(..., description="进程 ID")
    port: int = Field(..., description="监听端口")
    rpc_url: str = Field(..., description="RPC URL")
    fork_url: str = Field(..., description="分叉源 URL")
    fork_block: Optional[int] = Field(None, description="分叉区块号")
    start_time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class GasInfo(BaseModel):
    """Gas 信息（仅展示，不计入余额变动）"""
    gas_used: str = "0"
    effective_gas_price: str = "0"
    total_cost: str = "0"


class SimulateRequest(BaseModel):
    """模拟请求"""
    fork_url: str = Field(..., min_length=1, description="分叉源 RPC URL")
    block_number: int = Field(..., ge=1, description="目标区块号")
    tx_from: str = Field(..., description="交易发起者地址")
    tx_to: Optional[str] = Field(None, description="交易目标地址（None 为合约创建）")
    tx_value: str = Field(default="0x0", description="交易 value（wei，十六进制或十进制）")
    tx_data: str = Field(default="0x", description="交易 calldata")
    transaction_index: Optional[int] = Field(
        None,
        ge=0,
        description="交易在区块中的位置；提供时先回放之前的交易",
    )

    @field_validator("tx_from")
    @classmethod
    def validate_from(cls, v: str) -> str:
        """验证以太坊地址格式"""
        return _validate_address(v)

    @field_validator("tx_to")
    @classmethod
    def validate_to(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        return _validate_address(v)

    @field_validator("tx_value")
    @classmethod
    def validate_tx_value(cls, v: str) -> str:
        """验证 tx_value 是有效的十六进制或十进制字符串"""
        if v is None or v == "":
            return "0x0"
        base = 16 if v.startswith("0x") else 10
        try:
            parsed = int(v, base)
        except ValueError:
            raise ValueError(f"无效的 tx_value: {v}")
        if parsed < 0:
            raise ValueError(f"无效的 tx_value: {v}")
        return v

    @property
    def value_wei(self) -> int:
        base = 16 if self.tx_value.startswith("0x") else 10
        return int(self.tx_value, base)

    @property
    def fork_block(self) -> int:
        """给出交易位置时（包括位置 0）从上一个区块的末尾状态分叉"""
        if self.transaction_index is not None:
            return self.block_number - 1
        return self.block_number


class SimulateResponse(BaseModel):
    """模拟结果"""
    status: SimulationStatus
    error_message: Optional[str] = Field(None, description="执行失败原因")
    gas_info: GasInfo = Field(default_factory=GasInfo)
    token_transfers: Dict[str, TokenTransferGroup] = Field(default_factory=dict)
    asset_changes: List[AssetChangeRecord] = Field(default_factory=list)

    touched_addresses: List[TouchedAddress] = Field(default_factory=list)
    balances_before: BalanceGrid = Field(default_factory=BalanceGrid)
    balances_after: BalanceGrid = Field(default_factory=BalanceGrid)
    balance_diff: BalanceDiff = Field(default_factory=BalanceDiff)
    token_delta_summary: List[TokenDeltaSummary] = Field(default_factory=list)
    asset_swap: Optional[AssetSwap] = None
