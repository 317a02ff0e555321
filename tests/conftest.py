import pytest
import asyncio
import os
from typing import Dict, List, Optional, Set, Tuple

# Set test environment
os.environ["ENV"] = "test"
os.environ["LOG_LEVEL"] = "ERROR"  # Reduce noise in tests

from wedged_risk.cache import RiskCache, default_ttls
from wedged_risk.chain_reader import ChainReader
from wedged_risk.config import Settings, WAD
from wedged_risk.error_handling import NotFound, UpstreamUnavailable
from wedged_risk.history import RiskHistory
from wedged_risk.models import AssetPairKey, PoolInfo, RiskComponents, Strategy
from wedged_risk.notifications import RiskUpdateNotifier
from wedged_risk.risk_engine import RiskEngine
from wedged_risk.sampler import PriceSampler

TOKEN_A = "0x" + "a" * 40
TOKEN_B = "0x" + "b" * 40
WETH = "0xC02aaA39b223FE8dCcE9d7b542fFC25BeF35a6f8"
USER = "0x742b4c0d8fd9b2b29e70dc3e08f4e98a78b3a2b5"

START_TIME = 1_700_000_000.0


def eth(amount: float) -> int:
    return int(amount * WAD)


class FakeClock:
    """Manually advanced clock; seconds for the cache, milliseconds for timestamps"""

    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def ms(self) -> int:
        return int(self.now * 1000)

    def advance(self, seconds: float):
        self.now += seconds


class FakeChainReader(ChainReader):
    """In-memory Chain Reader; optional capabilities are enabled by setting their data"""

    def __init__(self):
        self.pools: Dict[int, PoolInfo] = {}
        self.prices: Dict[AssetPairKey, List[int]] = {}
        self.volatility_oracle: Optional[Dict[AssetPairKey, int]] = None
        self.correlation_oracle: Optional[int] = None
        self.risk_metrics: Optional[Dict[int, RiskComponents]] = None
        self.il_oracle: Optional[int] = None
        self.strategies: Optional[List[Strategy]] = None
        self.hedge_cost: Optional[int] = None
        self.user_pools: Dict[str, List[int]] = {}
        self.user_deposits: Dict[Tuple[int, str], int] = {}

        self.fail_pools: Set[int] = set()
        self.fail_total = False
        self.gate: Optional[asyncio.Event] = None

        self.pool_reads: Dict[int, int] = {}
        self.price_reads = 0
        self.hedge_cost_requests: List[Tuple[int, int]] = []
        self.user_pool_reads = 0

    def add_pool(self, pool: PoolInfo):
        self.pools[pool.id] = pool

    def add_position(self, user: str, pool_id: int, deposit: int):
        pools = self.user_pools.setdefault(user.lower(), [])
        if pool_id not in pools:
            pools.append(pool_id)
        self.user_deposits[(pool_id, user.lower())] = deposit

    def set_prices(self, pair: AssetPairKey, prices: List[int]):
        """Successive reads return each price in turn; the last one repeats"""
        self.prices[pair] = list(prices)

    async def get_pool_info(self, pool_id: int) -> PoolInfo:
        if self.gate is not None:
            await self.gate.wait()
        self.pool_reads[pool_id] = self.pool_reads.get(pool_id, 0) + 1

        if pool_id in self.fail_pools:
            raise UpstreamUnavailable(f"pool {pool_id} read failed")
        if pool_id not in self.pools:
            raise NotFound(f"Pool {pool_id} does not exist")
        return self.pools[pool_id]

    async def get_total_pools(self) -> int:
        if self.fail_total:
            raise UpstreamUnavailable("totalPools failed")
        return max(self.pools, default=0)

    async def get_price(self, pair: AssetPairKey) -> int:
        self.price_reads += 1
        series = self.prices.get(pair)
        if not series:
            raise NotFound(f"No price for {pair}")
        return series.pop(0) if len(series) > 1 else series[0]

    async def get_volatility(self, pair: AssetPairKey) -> int:
        if self.volatility_oracle is None or pair not in self.volatility_oracle:
            return await super().get_volatility(pair)
        return self.volatility_oracle[pair]

    async def get_correlation(self, pair_a: AssetPairKey, pair_b: AssetPairKey) -> int:
        if self.correlation_oracle is None:
            return await super().get_correlation(pair_a, pair_b)
        return self.correlation_oracle

    async def get_pool_risk_metrics(self, pool_id: int) -> RiskComponents:
        if self.risk_metrics is None or pool_id not in self.risk_metrics:
            return await super().get_pool_risk_metrics(pool_id)
        return self.risk_metrics[pool_id]

    async def get_user_pools(self, user: str) -> List[int]:
        self.user_pool_reads += 1
        return list(self.user_pools.get(user.lower(), []))

    async def get_user_deposit(self, pool_id: int, user: str) -> int:
        return self.user_deposits.get((pool_id, user.lower()), 0)

    async def get_impermanent_loss(self, token0: str, token1: str, amount: int = WAD) -> int:
        if self.il_oracle is None:
            return await super().get_impermanent_loss(token0, token1, amount)
        return self.il_oracle

    async def get_strategies(self) -> List[Strategy]:
        if self.strategies is None:
            return await super().get_strategies()
        return list(self.strategies)

    async def estimate_hedging_cost(self, pool_id: int, amount: int) -> int:
        self.hedge_cost_requests.append((pool_id, amount))
        if self.hedge_cost is None:
            return await super().estimate_hedging_cost(pool_id, amount)
        return self.hedge_cost


@pytest.fixture
def settings():
    """Settings isolated from any local .env file"""
    return Settings(
        _env_file=None,
        ENV="test",
        LOG_LEVEL="ERROR",
        ENABLE_BACKGROUND_TASKS=False,
        REQUEST_TIMEOUT_SECONDS=5.0,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sample_pool():
    """100 ETH deposited, 20 ETH available, 10 ETH hedged, on-chain score 8000"""
    return PoolInfo(
        id=1,
        token0=TOKEN_A,
        token1=TOKEN_B,
        total_deposits=eth(100),
        available_liquidity=eth(20),
        hedged_amount=eth(10),
        risk_score=8000,
        active=True
    )


@pytest.fixture
def chain_reader(sample_pool):
    reader = FakeChainReader()
    reader.add_pool(sample_pool)
    reader.set_prices(sample_pool.pair, [eth(2)])
    return reader


@pytest.fixture
def sampler():
    return PriceSampler(capacity=30)


@pytest.fixture
def cache(settings, clock):
    return RiskCache(default_ttls(settings), clock=clock)


@pytest.fixture
def engine(chain_reader, cache, sampler, settings, clock):
    return RiskEngine(
        chain_reader=chain_reader,
        cache=cache,
        sampler=sampler,
        settings=settings,
        notifier=RiskUpdateNotifier(),
        history=RiskHistory(settings.HISTORY_MAX_ENTRIES),
        clock_ms=clock.ms
    )
