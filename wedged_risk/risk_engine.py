import asyncio
from typing import Callable, Dict, List, Optional
import numpy as np
import structlog

from .cache import CacheCategory, CacheKey, RiskCache
from .chain_reader import ChainReader
from .config import Settings, MarketThresholds, NEUTRAL_CORRELATION_BP
from .error_handling import RiskEngineError, UpstreamUnavailable, with_default, with_fallback
from .estimators import CorrelationEstimator, ImpermanentLossEstimator, VolatilityEstimator
from .history import RiskHistory
from .models import (
    AssetPairKey, CacheStatsResponse, MarketConditions, PoolInfo, PoolPosition, PortfolioRisk,
    PriceObservation, Recommendation, RiskComponents, RiskHistoryPoint, RiskSnapshot,
    Sentiment, Strategy, Timeframe, now_ms
)
from .notifications import RiskUpdateNotifier, SnapshotCallback
from .recommendations import (
    RecommendationEngine, market_recommendation, portfolio_recommendations,
    required_hedge_amount, select_strategy
)
from .sampler import PriceSampler
from .scoring import CompositeRiskScorer, classify_risk_level, utilization_bp

logger = structlog.get_logger()

PROTOCOL_DEPOSITS = "protocol_deposits"
STRATEGIES = "strategies"


class RiskEngine:
    """Risk Query interface: cache-backed pool risk, history, recommendations and market view"""

    def __init__(
        self,
        chain_reader: ChainReader,
        cache: RiskCache,
        sampler: PriceSampler,
        settings: Settings,
        notifier: Optional[RiskUpdateNotifier] = None,
        history: Optional[RiskHistory] = None,
        clock_ms: Callable[[], int] = now_ms
    ):
        self.chain_reader = chain_reader
        self.cache = cache
        self.sampler = sampler
        self.settings = settings
        self.notifier = notifier or RiskUpdateNotifier()
        self.history = history or RiskHistory(settings.HISTORY_MAX_ENTRIES)
        self.clock_ms = clock_ms
        self.reference_token = settings.REFERENCE_TOKEN

        self.volatility_estimator = VolatilityEstimator(chain_reader, sampler, sample_fn=self.get_price)
        self.correlation_estimator = CorrelationEstimator(
            chain_reader, sampler, min_observations=settings.MIN_CORRELATION_OBSERVATIONS
        )
        self.il_estimator = ImpermanentLossEstimator(chain_reader, sampler)
        self.scorer = CompositeRiskScorer()
        self.recommender = RecommendationEngine()

    async def _with_deadline(self, awaitable, timeout: Optional[float], what: str):
        """Await with an optional deadline; shared cache population keeps running on expiry"""
        if not timeout:
            return await awaitable
        try:
            return await asyncio.wait_for(awaitable, timeout)
        except asyncio.TimeoutError:
            logger.warning("Request deadline exceeded", target=what, timeout=timeout)
            raise UpstreamUnavailable(f"Timed out after {timeout}s waiting for {what}")

    # Pool risk
    async def get_pool_risk(self, pool_id: int, timeout: Optional[float] = None, force: bool = False) -> RiskSnapshot:
        return await self._with_deadline(
            self.cache.get_or_compute(
                CacheKey.pool_risk(pool_id),
                lambda: self._compute_pool_risk(pool_id),
                force=force
            ),
            timeout,
            f"pool {pool_id} risk"
        )

    async def _compute_pool_risk(self, pool_id: int) -> RiskSnapshot:
        pool = await self.chain_reader.get_pool_info(pool_id)

        components = await self._pool_components(pool)
        protocol_deposits = await with_default("protocol_deposits", self._protocol_deposits, 0)
        strategies = await with_default("strategies", self._strategies, [])
        hedge_cost = await self._hedge_cost(pool, strategies)

        recommendations = self.recommender.recommend(pool, components, strategies, hedge_cost)
        snapshot = self.scorer.score_pool(
            pool, components, protocol_deposits, recommendations, timestamp=self.clock_ms()
        )

        self.history.record(snapshot)
        await self.notifier.publish(snapshot)

        logger.info(
            "Pool risk computed",
            pool_id=pool_id,
            composite_score=snapshot.composite_score,
            level=snapshot.level.value,
            recommendations=len(recommendations)
        )
        return snapshot

    async def _pool_components(self, pool: PoolInfo) -> RiskComponents:
        return await with_fallback(
            "pool_risk_metrics",
            lambda: self._onchain_components(pool),
            lambda: self._local_components(pool)
        )

    async def _onchain_components(self, pool: PoolInfo) -> RiskComponents:
        return await self.chain_reader.get_pool_risk_metrics(pool.id)

    async def _local_components(self, pool: PoolInfo) -> RiskComponents:
        volatility = await self.estimate_volatility(pool.pair)
        correlation = await self.estimate_correlation(
            AssetPairKey.of(pool.token0, self.reference_token),
            AssetPairKey.of(pool.token1, self.reference_token)
        )
        impermanent_loss = await self.estimate_pool_impermanent_loss(pool)

        return RiskComponents(
            volatility=volatility,
            impermanent_loss=impermanent_loss,
            correlation_risk=correlation,
            liquidity_risk=utilization_bp(pool)
        )

    async def _active_pools(self) -> List[PoolInfo]:
        total = await self.chain_reader.get_total_pools()
        pool_ids = list(range(1, total + 1))
        results = await asyncio.gather(
            *(self.chain_reader.get_pool_info(pool_id) for pool_id in pool_ids),
            return_exceptions=True
        )

        pools = []
        for pool_id, result in zip(pool_ids, results):
            if isinstance(result, BaseException):
                logger.warning("Skipping unreadable pool", pool_id=pool_id, error=str(result))
                continue
            if result.active:
                pools.append(result)
        return pools

    async def _protocol_deposits(self) -> int:
        async def compute():
            return sum(pool.total_deposits for pool in await self._active_pools())

        return await self.cache.get_or_compute(CacheKey.analytics(PROTOCOL_DEPOSITS), compute)

    async def _strategies(self) -> List[Strategy]:
        return await self.cache.get_or_compute(
            CacheKey.pool_metadata(STRATEGIES),
            self.chain_reader.get_strategies
        )

    async def _hedge_cost(self, pool: PoolInfo, strategies: List[Strategy]) -> Optional[int]:
        strategy = select_strategy(strategies, pool.risk_score)
        if strategy is None:
            return None

        amount = required_hedge_amount(pool, strategy)
        if amount <= 0:
            return None

        return await with_default(
            "hedging_cost",
            lambda: self.chain_reader.estimate_hedging_cost(pool.id, amount),
            None
        )

    async def get_pool_risk_history(
        self,
        pool_id: int,
        timeframe: Timeframe,
        timeout: Optional[float] = None
    ) -> List[RiskHistoryPoint]:
        """Risk components sampled at the timeframe's spacing, oldest first"""
        if not self.history.has_pool(pool_id):
            snapshot = await self.get_pool_risk(pool_id, timeout=timeout)
            if not self.history.has_pool(pool_id):
                self.history.record(snapshot)

        async def compute():
            return self.history.series(pool_id, timeframe, self.clock_ms())

        return await self.cache.get_or_compute(CacheKey.pool_history(pool_id, timeframe), compute)

    async def get_recommendations(self, pool_id: int, timeout: Optional[float] = None) -> List[Recommendation]:
        snapshot = await self.get_pool_risk(pool_id, timeout=timeout)
        return list(snapshot.recommendations)

    # Portfolio risk
    async def get_portfolio_risk(self, user: str, timeout: Optional[float] = None, force: bool = False) -> PortfolioRisk:
        """Average risk, spread and diversification of a user's pool positions"""
        return await self._with_deadline(
            self.cache.get_or_compute(
                CacheKey.account_health(user),
                lambda: self._compute_portfolio_risk(user),
                force=force
            ),
            timeout,
            f"portfolio of {user}"
        )

    async def _compute_portfolio_risk(self, user: str) -> PortfolioRisk:
        pool_ids = await self.chain_reader.get_user_pools(user)
        results = await asyncio.gather(
            *(self._position(pool_id, user) for pool_id in pool_ids),
            return_exceptions=True
        )

        positions = []
        for pool_id, result in zip(pool_ids, results):
            if isinstance(result, BaseException):
                logger.warning("Skipping unreadable position", pool_id=pool_id, user=user, error=str(result))
                continue
            positions.append(result)

        portfolio = self.scorer.score_portfolio(user, positions, timestamp=self.clock_ms())
        portfolio = portfolio.model_copy(update={"recommendations": portfolio_recommendations(portfolio)})

        logger.info(
            "Portfolio risk computed",
            user=user,
            positions=len(positions),
            overall_risk=portfolio.overall_risk,
            diversification=portfolio.diversification_score
        )
        return portfolio

    async def _position(self, pool_id: int, user: str) -> PoolPosition:
        pool = await self.chain_reader.get_pool_info(pool_id)
        deposit = await self.chain_reader.get_user_deposit(pool_id, user)
        snapshot = await self.get_pool_risk(pool_id)

        share = min(100.0, deposit * 100 / pool.total_deposits) if pool.total_deposits > 0 else 0.0
        return PoolPosition(
            pool_id=pool_id,
            token0=pool.token0,
            token1=pool.token1,
            deposit=deposit,
            share=share,
            risk_score=snapshot.composite_score,
            level=classify_risk_level(snapshot.composite_score)
        )

    # Prices and estimators
    async def sample_price(self, pair: AssetPairKey) -> PriceObservation:
        """Read the current price and append it to the pair's history"""
        price = await self.chain_reader.get_price(pair)
        observation = PriceObservation(timestamp=self.clock_ms(), price=price)
        self.sampler.record_price(pair, observation)
        return observation

    async def get_price(self, pair: AssetPairKey, force: bool = False) -> PriceObservation:
        return await self.cache.get_or_compute(
            CacheKey.price(pair), lambda: self.sample_price(pair), force=force
        )

    async def estimate_volatility(self, pair: AssetPairKey, force: bool = False) -> int:
        return await self.cache.get_or_compute(
            CacheKey.volatility(pair),
            lambda: self.volatility_estimator.estimate(pair),
            force=force
        )

    async def estimate_correlation(self, pair_a: AssetPairKey, pair_b: AssetPairKey, force: bool = False) -> int:
        return await self.cache.get_or_compute(
            CacheKey.correlation(pair_a, pair_b),
            lambda: self.correlation_estimator.estimate(pair_a, pair_b),
            force=force
        )

    async def estimate_pool_impermanent_loss(
        self,
        pool: PoolInfo,
        price_change_percent: Optional[float] = None
    ) -> int:
        return await self.il_estimator.estimate(pool, price_change_percent)

    # Market view
    def get_market_conditions(self) -> MarketConditions:
        volatilities = self.cache.values(CacheCategory.VOLATILITY)
        correlations = self.cache.values(CacheCategory.CORRELATION)

        avg_volatility = float(np.mean(volatilities)) if volatilities else 0.0
        avg_correlation = float(np.mean(correlations)) if correlations else float(NEUTRAL_CORRELATION_BP)

        if avg_volatility > MarketThresholds.HIGH_VOLATILITY:
            sentiment = Sentiment.HIGH_VOLATILITY
        elif avg_volatility < MarketThresholds.LOW_VOLATILITY:
            sentiment = Sentiment.LOW_VOLATILITY
        else:
            sentiment = Sentiment.NEUTRAL

        return MarketConditions(
            volatility_index=avg_volatility / 100,
            correlation_index=avg_correlation / 100,
            sentiment=sentiment,
            recommendation=market_recommendation(avg_volatility, avg_correlation),
            timestamp=self.clock_ms()
        )

    # Sweeps
    async def refresh_all_pool_risks(self) -> List[RiskSnapshot]:
        """Recompute every active pool's snapshot, isolating per-pool failures"""
        pools = await self._active_pools()
        deposits_key = CacheKey.analytics(PROTOCOL_DEPOSITS)
        self.cache.invalidate(deposits_key)
        self.cache.set(deposits_key, sum(pool.total_deposits for pool in pools))

        results = await asyncio.gather(
            *(self.get_pool_risk(pool.id, force=True) for pool in pools),
            return_exceptions=True
        )

        snapshots = []
        for pool, result in zip(pools, results):
            if isinstance(result, BaseException):
                logger.warning("Pool risk refresh failed", pool_id=pool.id, error=str(result))
            else:
                snapshots.append(result)

        logger.info("Pool risk sweep complete", pools=len(pools), refreshed=len(snapshots))
        return snapshots

    async def refresh_volatility_metrics(self) -> Dict[str, int]:
        """Recompute volatility of each common token against the reference token,
        plus every pair the sampler already tracks"""
        pairs = [
            AssetPairKey.of(token, self.reference_token)
            for token in self.settings.common_tokens
            if token.lower() != self.reference_token.lower()
        ]
        pairs += [pair for pair in self.sampler.pairs() if pair not in pairs]

        results = await asyncio.gather(
            *(self.estimate_volatility(pair, force=True) for pair in pairs),
            return_exceptions=True
        )

        refreshed = {}
        for pair, result in zip(pairs, results):
            if isinstance(result, BaseException):
                logger.warning("Volatility refresh failed", pair=str(pair), error=str(result))
            else:
                refreshed[str(pair)] = result

        logger.info("Volatility sweep complete", pairs=len(pairs), refreshed=len(refreshed))
        return refreshed

    # Cache management
    def invalidate_pool(self, pool_id: int) -> int:
        """Drop everything derived from a pool after a state-changing action"""
        removed = self.cache.invalidate_pool(pool_id)
        if self.cache.invalidate(CacheKey.analytics(PROTOCOL_DEPOSITS)):
            removed += 1
        return removed

    def invalidate_user(self, user: str) -> int:
        return self.cache.invalidate_user(user)

    def invalidate_category(self, category: CacheCategory) -> int:
        removed = self.cache.invalidate_category(category)
        logger.info("Invalidated cache category", category=category.value, removed=removed)
        return removed

    def clear_cache(self):
        self.cache.clear()
        self.sampler.clear()
        self.history.clear()
        logger.info("Risk caches, price history and risk history cleared")

    def cache_stats(self) -> CacheStatsResponse:
        return CacheStatsResponse(**self.cache.stats(), price_series=len(self.sampler))

    def subscribe(self, callback: SnapshotCallback) -> Callable[[], None]:
        return self.notifier.subscribe(callback)

    def health(self) -> Dict:
        try:
            reader = self.chain_reader.health()
        except RiskEngineError as e:
            reader = {"error": str(e)}
        return {
            "chain_reader": reader,
            "cached_entries": len(self.cache),
            "tracked_pairs": len(self.sampler),
            "pools_with_history": len(self.history),
            "subscribers": self.notifier.subscriber_count,
        }

    async def close(self):
        await self.chain_reader.close()
