import pytest

from forksim.config import Settings
from forksim.simulation.pricing import CoinMarketCapClient

from fakes import ALICE, ONE_ETHER, TOKEN, FakeChain, FakeFork


@pytest.fixture
def chain() -> FakeChain:
    chain = FakeChain()
    chain.add_token(TOKEN, symbol="TKN", name="Test Token", decimals=18)
    chain.eth[ALICE] = 5 * ONE_ETHER
    chain.set_token_balance(TOKEN, ALICE, 1000)
    return chain


@pytest.fixture
def settings() -> Settings:
    return Settings(
        anvil_binary_path="anvil",
        simulation_timeout_seconds=30,
        probe_concurrency=4,
        cmc_pro_api_key=None,
    )


@pytest.fixture
def fork_factory(chain: FakeChain):
    return lambda **kwargs: FakeFork(chain, **kwargs)


@pytest.fixture
def no_prices() -> CoinMarketCapClient:
    return CoinMarketCapClient(api_key=None)
