"""
Volatility, correlation and impermanent-loss estimators.

Each estimator tries the Chain Reader first and falls back to a local
computation over the price sampler when the reader is unavailable. The pure
statistical helpers raise InsufficientData / ComputeFault; the estimator
classes turn those into their documented defaults so callers only ever see a
basis-point value.
"""
import math
from typing import Awaitable, Callable, Optional, Sequence
import numpy as np
import structlog

from .chain_reader import ChainReader
from .config import BPS, NEUTRAL_CORRELATION_BP, TRADING_DAYS_PER_YEAR
from .error_handling import (
    ComputeFault, InsufficientData, RiskEngineError, with_fallback
)
from .models import AssetPairKey, PoolInfo
from .sampler import PriceSampler

logger = structlog.get_logger()


def clamp_bp(value: float) -> int:
    return int(max(0, min(BPS, value)))


def volatility_from_returns(returns: Sequence[float]) -> int:
    """Annualized volatility of log returns in basis points.

    Uses the population standard deviation (divides by N), annualizes with
    sqrt(365) and caps the result at 10000 (100%).
    """
    if len(returns) < 2:
        raise InsufficientData(f"Need at least 2 returns, got {len(returns)}")

    sigma = float(np.std(np.asarray(returns, dtype=float)))
    if not math.isfinite(sigma):
        raise ComputeFault("Volatility is not finite")

    annualized_pct = sigma * math.sqrt(TRADING_DAYS_PER_YEAR) * 100
    return clamp_bp(annualized_pct * 100)


def pearson_correlation(x: Sequence[float], y: Sequence[float]) -> float:
    """Pearson r over the last min(len(x), len(y)) values of each series"""
    n = min(len(x), len(y))
    if n < 2:
        return 0.0

    xs = np.asarray(x[-n:], dtype=float)
    ys = np.asarray(y[-n:], dtype=float)

    sum_x, sum_y = xs.sum(), ys.sum()
    numerator = n * (xs * ys).sum() - sum_x * sum_y
    denominator = math.sqrt(
        max(0.0, (n * (xs * xs).sum() - sum_x ** 2) * (n * (ys * ys).sum() - sum_y ** 2))
    )

    if denominator == 0:
        return 0.0

    r = float(numerator / denominator)
    if not math.isfinite(r):
        raise ComputeFault("Correlation is not finite")
    return max(-1.0, min(1.0, r))


def correlation_to_bp(r: float) -> int:
    """Map r in [-1, 1] onto [0, 10000]; 0 correlation is 5000"""
    return clamp_bp(round((r + 1) * 5000))


def impermanent_loss_bp(price_change_percent: float) -> int:
    """Closed-form impermanent loss magnitude for a relative price move.

    ratio = (100 + pct) / 100 and il = 2*sqrt(ratio) / (1 + ratio) - 1. The
    signed il is never positive, so ``max(0, il)`` would always be 0; the sign
    is flipped and ``-il`` is reported in basis points instead. A ratio below
    zero is not a valid price move.
    """
    ratio = (100 + price_change_percent) / 100
    if ratio < 0 or not math.isfinite(ratio):
        raise ComputeFault(f"Invalid price ratio {ratio}")

    il = 2 * math.sqrt(ratio) / (1 + ratio) - 1
    return clamp_bp(round(-il * BPS))


class VolatilityEstimator:
    """Volatility of a pair: on-chain oracle first, sampled log returns second"""

    def __init__(
        self,
        chain_reader: ChainReader,
        sampler: PriceSampler,
        sample_fn: Optional[Callable[[AssetPairKey], Awaitable[object]]] = None
    ):
        self.chain_reader = chain_reader
        self.sampler = sampler
        self.sample_fn = sample_fn

    async def estimate(self, pair: AssetPairKey) -> int:
        return await with_fallback(
            "volatility",
            lambda: self.primary(pair),
            lambda: self.local(pair)
        )

    async def primary(self, pair: AssetPairKey) -> int:
        return await self.chain_reader.get_volatility(pair)

    async def local(self, pair: AssetPairKey) -> int:
        if self.sample_fn is not None:
            try:
                await self.sample_fn(pair)
            except RiskEngineError as e:
                # A failed sample still leaves the existing history usable
                logger.warning("Price sample failed", pair=str(pair), error=str(e))

        try:
            return volatility_from_returns(self.sampler.compute_returns(pair))
        except (InsufficientData, ComputeFault) as e:
            logger.debug("Volatility defaulted to 0", pair=str(pair), reason=str(e))
            return 0


class CorrelationEstimator:
    """Symmetric correlation between the price histories of two pairs"""

    def __init__(self, chain_reader: ChainReader, sampler: PriceSampler, min_observations: int = 10):
        self.chain_reader = chain_reader
        self.sampler = sampler
        self.min_observations = min_observations

    @staticmethod
    def ordered(pair_a: AssetPairKey, pair_b: AssetPairKey):
        if str(pair_b) < str(pair_a):
            return pair_b, pair_a
        return pair_a, pair_b

    async def estimate(self, pair_a: AssetPairKey, pair_b: AssetPairKey) -> int:
        pair_a, pair_b = self.ordered(pair_a, pair_b)
        return await with_fallback(
            "correlation",
            lambda: self.primary(pair_a, pair_b),
            lambda: self.local(pair_a, pair_b)
        )

    async def primary(self, pair_a: AssetPairKey, pair_b: AssetPairKey) -> int:
        return await self.chain_reader.get_correlation(pair_a, pair_b)

    async def local(self, pair_a: AssetPairKey, pair_b: AssetPairKey) -> int:
        try:
            return self._historical(pair_a, pair_b)
        except (InsufficientData, ComputeFault) as e:
            logger.debug(
                "Correlation defaulted to neutral",
                pair_a=str(pair_a),
                pair_b=str(pair_b),
                reason=str(e)
            )
            return NEUTRAL_CORRELATION_BP

    def _historical(self, pair_a: AssetPairKey, pair_b: AssetPairKey) -> int:
        count_a = self.sampler.observation_count(pair_a)
        count_b = self.sampler.observation_count(pair_b)
        if count_a < self.min_observations or count_b < self.min_observations:
            raise InsufficientData(f"Observations {count_a}/{count_b} below {self.min_observations}")

        returns_a = self.sampler.compute_returns(pair_a)
        returns_b = self.sampler.compute_returns(pair_b)
        if not returns_a or not returns_b:
            raise InsufficientData("Empty return series")

        return correlation_to_bp(pearson_correlation(returns_a, returns_b))


class ImpermanentLossEstimator:
    """Pool impermanent loss: on-chain calculator first, closed form second"""

    def __init__(self, chain_reader: ChainReader, sampler: PriceSampler):
        self.chain_reader = chain_reader
        self.sampler = sampler

    async def estimate(self, pool: PoolInfo, price_change_percent: Optional[float] = None) -> int:
        return await with_fallback(
            "impermanent_loss",
            lambda: self.chain_reader.get_impermanent_loss(pool.token0, pool.token1),
            lambda: self.local(pool, price_change_percent)
        )

    @staticmethod
    def estimate_impermanent_loss(price_change_percent: float) -> int:
        """Closed-form loss magnitude (``-il``) in basis points; an impossible price move is 0"""
        try:
            return impermanent_loss_bp(price_change_percent)
        except ComputeFault as e:
            logger.debug("Impermanent loss defaulted to 0", price_change_percent=price_change_percent, reason=str(e))
            return 0

    async def local(self, pool: PoolInfo, price_change_percent: Optional[float] = None) -> int:
        if price_change_percent is None:
            price_change_percent = self.sampler.price_change_percent(pool.pair) or 0.0
        return self.estimate_impermanent_loss(price_change_percent)
