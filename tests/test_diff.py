"""
余额差异分析测试
"""

import pytest

from forksim.simulation.diff import (
    classify_flows,
    derive_after_balances,
    diff_balances,
    summarize_token_deltas,
)
from forksim.simulation.models import (
    AddressKind,
    BalanceGrid,
    TokenTransfer,
    TokenTransferGroup,
    TouchedAddress,
    TransferKind,
    ZERO_ADDRESS,
)

from fakes import ALICE, BOB, CAROL, POOL, TOKEN

OTHER_TOKEN = "0x9999999999999999999999999999999999999999"


def group(*transfers):
    return TokenTransferGroup(transfers=list(transfers))


class TestDiffBalances:
    """测试 after - before"""

    def test_union_and_non_zero(self):
        before = BalanceGrid(
            native={ALICE: "10", BOB: "5"},
            tokens={TOKEN: {ALICE: "100", BOB: "0"}},
        )
        after = BalanceGrid(
            native={ALICE: "7", BOB: "5", CAROL: "3"},
            tokens={TOKEN: {ALICE: "60"}, OTHER_TOKEN: {BOB: "1"}},
        )

        diff = diff_balances(before, after)

        assert diff.native == {ALICE: "-3", CAROL: "3"}
        assert diff.tokens == {TOKEN: {ALICE: "-40"}, OTHER_TOKEN: {BOB: "1"}}

    def test_identical(self):
        grid = BalanceGrid(native={ALICE: "1"}, tokens={TOKEN: {ALICE: "2"}})
        diff = diff_balances(grid, grid)
        assert diff.native == {}
        assert diff.tokens == {}


class TestZeroFilled:
    """测试余额矩阵补全"""

    def test_every_pair_present(self):
        grid = BalanceGrid(native={ALICE: "1"}, tokens={TOKEN: {ALICE: "2"}})

        filled = grid.zero_filled([TOKEN, OTHER_TOKEN], [ALICE, BOB])

        assert filled.native == {ALICE: "1", BOB: "0"}
        assert filled.tokens[TOKEN] == {ALICE: "2", BOB: "0"}
        assert filled.tokens[OTHER_TOKEN] == {ALICE: "0", BOB: "0"}

    def test_accepts_generators(self):
        grid = BalanceGrid()
        filled = grid.zero_filled((t for t in [TOKEN]), (a for a in [ALICE]))
        assert filled.tokens == {TOKEN: {ALICE: "0"}}


class TestDeriveAfterBalances:
    """测试执行后余额推导"""

    def test_transfer_and_burn(self):
        before = BalanceGrid(
            native={ALICE: "10", BOB: "0"},
            tokens={TOKEN: {ALICE: "100", BOB: "0"}},
        )
        transfers = {
            TOKEN: group(
                TokenTransfer(from_address=ALICE, to_address=BOB, amount="30"),
                TokenTransfer(from_address=ALICE, to_address=ZERO_ADDRESS, amount="20", type=TransferKind.BURN),
            )
        }

        after = derive_after_balances(before, transfers, ALICE, TOKEN, 0)

        assert after.token_balance(TOKEN, ALICE) == 50
        assert after.token_balance(TOKEN, BOB) == 30
        assert ZERO_ADDRESS not in after.tokens[TOKEN]
        assert after.native == before.native

    def test_value_moved_without_fee(self):
        """原生币只移动 value，不扣手续费"""
        before = BalanceGrid(native={ALICE: "10", BOB: "0"})

        after = derive_after_balances(before, {}, ALICE, BOB, 4)

        assert after.native_balance(ALICE) == 6
        assert after.native_balance(BOB) == 4

    def test_before_not_mutated(self):
        before = BalanceGrid(tokens={TOKEN: {ALICE: "100"}})
        transfers = {TOKEN: group(TokenTransfer(from_address=ALICE, to_address=BOB, amount="1"))}

        derive_after_balances(before, transfers, ALICE, TOKEN, 0)

        assert before.tokens == {TOKEN: {ALICE: "100"}}


class TestClassifyFlows:
    """测试资产流向分类"""

    def test_sent_and_received(self):
        before = BalanceGrid(native={ALICE: "10"}, tokens={TOKEN: {ALICE: "100", POOL: "0"}})
        after = BalanceGrid(native={ALICE: "9", BOB: "1"}, tokens={TOKEN: {ALICE: "60", POOL: "40"}})

        swap = classify_flows(ALICE, diff_balances(before, after))

        sent = {(f.address, f.type, f.token_address): f.delta for f in swap.sent}
        received = {(f.address, f.type, f.token_address): f.delta for f in swap.received}
        assert sent == {(ALICE, "ETH", None): "-1", (ALICE, "ERC20", TOKEN): "-40"}
        assert received == {(BOB, "ETH", None): "1", (POOL, "ERC20", TOKEN): "40"}
        assert all(f.is_initiator for f in swap.sent)
        assert not any(f.is_initiator for f in swap.received)


class TestSummarizeTokenDeltas:
    """测试 token 净变动汇总"""

    def test_contract_holds_remainder(self):
        before = BalanceGrid(tokens={TOKEN: {ALICE: "100", BOB: "0", POOL: "0"}})
        after = BalanceGrid(tokens={TOKEN: {ALICE: "40", BOB: "50", POOL: "10"}})
        touched = [
            TouchedAddress(address=ALICE, type=AddressKind.EOA),
            TouchedAddress(address=BOB, type=AddressKind.EOA),
            TouchedAddress(address=POOL, type=AddressKind.CONTRACT),
        ]

        summaries = summarize_token_deltas(touched, diff_balances(before, after))

        assert len(summaries) == 1
        summary = summaries[0]
        assert summary.total_delta == "0"
        assert summary.eoa_deltas == {ALICE: "-60", BOB: "50"}
        assert summary.contract_addresses == [POOL]
        eoa_total = sum(int(d) for d in summary.eoa_deltas.values())
        assert int(summary.total_delta) - eoa_total == 10

    def test_burn_total(self):
        before = BalanceGrid(tokens={TOKEN: {ALICE: "100"}})
        after = BalanceGrid(tokens={TOKEN: {ALICE: "70"}})
        touched = [TouchedAddress(address=ALICE, type=AddressKind.EOA)]

        summary = summarize_token_deltas(touched, diff_balances(before, after))[0]

        assert summary.total_delta == "-30"
        assert summary.contract_addresses == []

    def test_no_changes(self):
        assert summarize_token_deltas([], diff_balances(BalanceGrid(), BalanceGrid())) == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
