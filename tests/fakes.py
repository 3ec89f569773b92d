"""
测试替身

FakeChain 是一个极简的 ERC-20 账本；FakeFork 继承 ForkController，
只替换进程生命周期和 rpc()，回放、快照、状态写入都走真实代码。
"""

import copy
from typing import Any, Dict, List, Optional

from web3.exceptions import BlockNotFound, TransactionNotFound, Web3Exception

from forksim.simulation.anvil_fork import ForkController
from forksim.simulation.errors import RpcRequestError
from forksim.simulation.logs import TRANSFER_EVENT_TOPIC
from forksim.simulation.models import ForkProcessInfo
from forksim.simulation.transfers import TRANSFER_SELECTOR, TRANSFER_CALLDATA_LENGTH

ALICE = "0x1111111111111111111111111111111111111111"
BOB = "0x2222222222222222222222222222222222222222"
CAROL = "0x3333333333333333333333333333333333333333"
TOKEN = "0x7777777777777777777777777777777777777777"
POOL = "0x8888888888888888888888888888888888888888"

ONE_ETHER = 10**18
GWEI = 10**9


def word(value: Any) -> str:
    """地址或整数 -> 32 字节十六进制（不带 0x）"""
    if isinstance(value, str):
        return value.lower()[2:].rjust(64, "0")
    return hex(value)[2:].rjust(64, "0")


def encode_transfer(to: str, amount: int) -> str:
    return TRANSFER_SELECTOR + word(to) + word(amount)


def balance_slot(holder: str) -> str:
    return "0x" + word(holder)


def transfer_log(token: str, sender: str, receiver: str, amount: int) -> Dict[str, Any]:
    return {
        "address": token,
        "topics": [TRANSFER_EVENT_TOPIC, "0x" + word(sender), "0x" + word(receiver)],
        "data": "0x" + word(amount),
    }


class FakeChain:
    """内存账本：ETH 余额、合约代码、token 存储（slot = 持有人地址）"""

    def __init__(self):
        self.eth: Dict[str, int] = {}
        self.code: Dict[str, bytes] = {}
        self.nonces: Dict[str, int] = {}
        self.storage: Dict[tuple, int] = {}
        self.token_meta: Dict[str, Dict[str, Any]] = {}
        self.blocks: Dict[int, List[Dict[str, Any]]] = {}
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self.base_fee: Optional[int] = 10 * GWEI
        self.emit_logs = True
        self.forks: List["FakeFork"] = []

    def add_token(self, token: str, symbol: str = "TKN", name: str = "Token", decimals: int = 18) -> None:
        token = token.lower()
        self.code[token] = b"\x60\x80\x60\x40"
        self.token_meta[token] = {"symbol": symbol, "name": name, "decimals": decimals}

    def add_contract(self, address: str) -> None:
        self.code[address.lower()] = b"\x60\x80"

    def token_balance(self, token: str, holder: str) -> int:
        return self.storage.get((token.lower(), balance_slot(holder)), 0)

    def set_token_balance(self, token: str, holder: str, amount: int) -> None:
        self.storage[(token.lower(), balance_slot(holder))] = amount

    def clone(self) -> "FakeChain":
        clone = FakeChain()
        clone.eth = dict(self.eth)
        clone.code = dict(self.code)
        clone.nonces = dict(self.nonces)
        clone.storage = dict(self.storage)
        clone.token_meta = copy.deepcopy(self.token_meta)
        clone.blocks = self.blocks
        clone.transactions = self.transactions
        clone.base_fee = self.base_fee
        clone.emit_logs = self.emit_logs
        return clone


# =============================================================================
# web3 替身
# =============================================================================


class FakeCall:
    def __init__(self, chain: FakeChain, token: str, function: str, args: tuple):
        self.chain = chain
        self.token = token
        self.function = function
        self.args = args

    def call(self):
        meta = self.chain.token_meta.get(self.token)
        if meta is None:
            raise Web3Exception("execution reverted")
        if self.function == "balanceOf":
            if meta.get("balance_of_reverts"):
                raise Web3Exception("balanceOf() reverted")
            return self.chain.token_balance(self.token, self.args[0])
        value = meta.get(self.function)
        if value is None:
            raise Web3Exception(f"{self.function}() reverted")
        return value


class FakeFunctions:
    def __init__(self, chain: FakeChain, token: str):
        self._chain = chain
        self._token = token

    def __getattr__(self, name: str):
        return lambda *args: FakeCall(self._chain, self._token, name, args)


class FakeContract:
    def __init__(self, chain: FakeChain, address: str):
        self.functions = FakeFunctions(chain, address.lower())


class FakeEth:
    def __init__(self, chain: FakeChain):
        self.chain = chain

    def get_balance(self, address: str) -> int:
        return self.chain.eth.get(address.lower(), 0)

    def get_code(self, address: str) -> bytes:
        return self.chain.code.get(address.lower(), b"")

    def contract(self, address: str, abi: Any) -> FakeContract:
        return FakeContract(self.chain, address)

    def get_block(self, block_identifier: Any, full_transactions: bool = False) -> Dict[str, Any]:
        if block_identifier == "latest":
            return {"number": max(self.chain.blocks or [0]), "baseFeePerGas": self.chain.base_fee}
        if block_identifier not in self.chain.blocks:
            raise BlockNotFound(f"Block with id: '{block_identifier}' not found.")
        txs = self.chain.blocks[block_identifier]
        return {
            "number": block_identifier,
            "transactions": txs if full_transactions else [tx["hash"] for tx in txs],
        }

    def get_transaction(self, tx_hash: str) -> Dict[str, Any]:
        if tx_hash not in self.chain.transactions:
            raise TransactionNotFound(f"Transaction with hash: '{tx_hash}' not found.")
        return self.chain.transactions[tx_hash]


class FakeWeb3:
    def __init__(self, chain: FakeChain):
        self.eth = FakeEth(chain)


# =============================================================================
# 分叉替身
# =============================================================================


class FakeFork(ForkController):
    """不启动进程的 ForkController，rpc() 直接操作 FakeChain 的副本"""

    def __init__(self, chain: FakeChain, **kwargs):
        super().__init__(**kwargs)
        self.chain = chain
        self.state: Optional[FakeChain] = None
        self.methods: List[str] = []
        self.stop_calls = 0
        self._snapshots: Dict[str, FakeChain] = {}
        chain.forks.append(self)

    @property
    def origin_w3(self):
        return FakeWeb3(self.chain)

    def start(self) -> ForkProcessInfo:
        self.state = self.chain.clone()
        self._w3 = FakeWeb3(self.state)
        self._process_info = ForkProcessInfo(
            pid=4242,
            port=8545,
            rpc_url="http://127.0.0.1:8545",
            fork_url=self.fork_url,
            fork_block=self.fork_block,
        )
        return self._process_info

    def stop(self) -> None:
        self.stop_calls += 1
        self._stopped = True
        self._w3 = None
        self._process_info = None

    def rpc(self, method: str, params: Optional[List[Any]] = None) -> Any:
        self.methods.append(method)
        handler = getattr(self, f"_rpc_{method}", None)
        if handler is None:
            raise RpcRequestError(method, {"code": -32601, "message": "Method not found"})
        return handler(*(params or []))

    def _rpc_evm_snapshot(self) -> str:
        snapshot_id = hex(len(self._snapshots) + 1)
        self._snapshots[snapshot_id] = self.state.clone()
        return snapshot_id

    def _rpc_evm_revert(self, snapshot_id: str) -> bool:
        saved = self._snapshots.pop(snapshot_id, None)
        if saved is None:
            return False
        self.state.eth, self.state.nonces, self.state.storage = saved.eth, saved.nonces, saved.storage
        self.state.code = saved.code
        return True

    def _rpc_anvil_setBalance(self, address: str, balance: str) -> None:
        self.state.eth[address.lower()] = int(balance, 16)

    def _rpc_anvil_setNonce(self, address: str, nonce: str) -> None:
        self.state.nonces[address.lower()] = int(nonce, 16)

    def _rpc_anvil_setStorageAt(self, address: str, slot: str, value: str) -> None:
        self.state.storage[(address.lower(), slot.lower())] = int(value, 16)

    def _rpc_anvil_setCode(self, address: str, code: str) -> None:
        self.state.code[address.lower()] = bytes.fromhex(code[2:])

    def _rpc_debug_traceCall(self, call: Dict[str, Any], block: str, options: Dict[str, Any]) -> Dict[str, Any]:
        result = self._execute(call)
        if options.get("tracer") == "prestateTracer":
            assert options.get("tracerConfig") == {"diffMode": True}
            return self._prestate_diff(result)
        assert options == {"tracer": "callTracer", "tracerConfig": {"withLog": True}}
        return self._call_frame(call, result)

    def _execute(self, call: Dict[str, Any]) -> Dict[str, Any]:
        """在 self.state 上计算调用的效果，但不写入"""
        state = self.state
        sender = call["from"].lower()
        to = call.get("to")
        to = to.lower() if to else None
        data = call.get("data") or "0x"
        value = int(call.get("value") or "0x0", 16)

        result: Dict[str, Any] = {
            "error": None,
            "gas_used": 21_000,
            "nonces": {sender: state.nonces.get(sender, 0) + 1},
            "eth": {},
            "storage": {},
            "logs": [],
        }

        if value > 0:
            if state.eth.get(sender, 0) < value:
                result["error"] = "insufficient funds for transfer"
                return result
            result["eth"][sender] = state.eth.get(sender, 0) - value
            if to and to != sender:
                result["eth"][to] = state.eth.get(to, 0) + value

        is_transfer = (
            to in state.token_meta
            and data[:10] == TRANSFER_SELECTOR
            and len(data) == TRANSFER_CALLDATA_LENGTH
        )
        if is_transfer:
            receiver = "0x" + data[34:74]
            amount = int(data[74:], 16)
            sender_balance = state.token_balance(to, sender)
            if sender_balance < amount:
                result["error"] = "execution reverted: ERC20: transfer amount exceeds balance"
                return result

            if receiver != sender:
                result["storage"][(to, balance_slot(sender))] = sender_balance - amount
                result["storage"][(to, balance_slot(receiver))] = state.token_balance(to, receiver) + amount
            result["gas_used"] = 50_000
            result["logs"].append(transfer_log(to, sender, receiver, amount))

        return result

    def _call_frame(self, call: Dict[str, Any], result: Dict[str, Any]) -> Dict[str, Any]:
        """callTracer 的调用帧"""
        frame: Dict[str, Any] = {
            "type": "CALL",
            "from": call["from"].lower(),
            "to": call["to"].lower() if call.get("to") else None,
            "value": call.get("value") or "0x0",
            "input": call.get("data") or "0x",
            "gas": hex(1_000_000),
            "gasUsed": hex(result["gas_used"]),
            "output": "0x",
            "calls": None,
            "logs": None,
        }
        if result["error"]:
            frame["error"] = result["error"]
        elif self.chain.emit_logs and result["logs"]:
            frame["logs"] = result["logs"]
        return frame

    def _prestate_diff(self, result: Dict[str, Any]) -> Dict[str, Any]:
        """
        prestateTracer diffMode 的输出：pre 是变化账户的原始状态，
        post 只包含变化的字段；被清零的存储槽不出现在 post 中
        """
        state = self.state
        pre: Dict[str, Dict[str, Any]] = {}
        post: Dict[str, Dict[str, Any]] = {}

        def touch(address: str) -> None:
            if address not in pre:
                account: Dict[str, Any] = {
                    "balance": hex(state.eth.get(address, 0)),
                    "nonce": state.nonces.get(address, 0),
                }
                if address in state.code:
                    account["code"] = "0x" + state.code[address].hex()
                pre[address] = account
                post[address] = {}

        for address, nonce in result["nonces"].items():
            touch(address)
            post[address]["nonce"] = nonce
        if result["error"]:
            return {"pre": pre, "post": post}

        for address, balance in result["eth"].items():
            touch(address)
            post[address]["balance"] = hex(balance)
        for (token, slot), value in result["storage"].items():
            old = state.storage.get((token, slot), 0)
            if old == value:
                continue
            touch(token)
            if old:
                pre[token].setdefault("storage", {})[slot] = "0x" + word(old)
            if value:
                post[token].setdefault("storage", {})[slot] = "0x" + word(value)

        return {"pre": pre, "post": post}
