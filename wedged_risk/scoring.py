from typing import Optional, Sequence
import structlog

from .config import (
    BPS, CONCENTRATION_BUCKETS, CONCENTRATION_FLOOR, DIVERSIFICATION_FULL_POOLS,
    DIVERSIFICATION_FULL_TOKENS, RiskThresholds
)
from .models import (
    PoolInfo, PoolPosition, PortfolioRisk, Recommendation, RiskComponents, RiskLevel,
    RiskSnapshot, now_ms
)

logger = structlog.get_logger()


def _percent(part: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return max(0.0, min(100.0, part * 100 / total))


def calculate_utilization(pool: PoolInfo) -> float:
    """Share of deposits currently in use, 0-100"""
    return _percent(pool.total_deposits - pool.available_liquidity, pool.total_deposits)


def calculate_hedge_ratio(pool: PoolInfo) -> float:
    return _percent(pool.hedged_amount, pool.total_deposits)


def calculate_liquidity_depth(pool: PoolInfo) -> float:
    return _percent(pool.available_liquidity, pool.total_deposits)


def hedge_ratio_bp(pool: PoolInfo) -> int:
    """Hedge ratio in basis points using integer arithmetic"""
    if pool.total_deposits <= 0:
        return 0
    return pool.hedged_amount * BPS // pool.total_deposits


def utilization_bp(pool: PoolInfo) -> int:
    if pool.total_deposits <= 0:
        return 0
    used = max(0, pool.total_deposits - pool.available_liquidity)
    return min(BPS, used * BPS // pool.total_deposits)


def calculate_concentration_risk(pool_deposits: int, total_protocol_deposits: int) -> int:
    """Bucket a pool's share of protocol-wide deposits into a risk value"""
    if total_protocol_deposits <= 0:
        return 0

    pool_share = pool_deposits * BPS // total_protocol_deposits
    for share_above, risk in CONCENTRATION_BUCKETS:
        if pool_share > share_above:
            return risk
    return CONCENTRATION_FLOOR


def calculate_diversification_score(pool_count: int, unique_tokens: int) -> float:
    """Half the score from the number of pools, half from distinct tokens, 0-100"""
    pool_score = min(pool_count / DIVERSIFICATION_FULL_POOLS, 1) * 50
    token_score = min(unique_tokens / DIVERSIFICATION_FULL_TOKENS, 1) * 50
    return pool_score + token_score


def classify_risk_level(score: int) -> RiskLevel:
    if score > RiskThresholds.CRITICAL:
        return RiskLevel.CRITICAL
    if score > RiskThresholds.HIGH:
        return RiskLevel.HIGH
    if score > RiskThresholds.MEDIUM:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


class CompositeRiskScorer:
    """Builds a RiskSnapshot from raw pool state and its risk components.

    The composite score is the pool's on-chain risk score; the locally derived
    components only travel alongside it and drive the recommendations.
    """

    def score_pool(
        self,
        pool: PoolInfo,
        components: RiskComponents,
        total_protocol_deposits: int,
        recommendations: Sequence[Recommendation] = (),
        timestamp: Optional[int] = None
    ) -> RiskSnapshot:
        composite = max(0, min(BPS, pool.risk_score))
        snapshot = RiskSnapshot(
            pool_id=pool.id,
            timestamp=timestamp if timestamp is not None else now_ms(),
            composite_score=composite,
            level=classify_risk_level(composite),
            components=components,
            utilization=calculate_utilization(pool),
            hedge_ratio=calculate_hedge_ratio(pool),
            liquidity_depth=calculate_liquidity_depth(pool),
            concentration_risk=calculate_concentration_risk(pool.total_deposits, total_protocol_deposits),
            recommendations=list(recommendations)
        )

        logger.debug(
            "Pool scored",
            pool_id=pool.id,
            composite_score=composite,
            level=snapshot.level.value,
            concentration_risk=snapshot.concentration_risk
        )
        return snapshot

    def score_portfolio(
        self,
        user: str,
        positions: Sequence[PoolPosition],
        timestamp: Optional[int] = None
    ) -> PortfolioRisk:
        """Aggregate a user's positions; recommendations are attached by the caller"""
        timestamp = timestamp if timestamp is not None else now_ms()
        if not positions:
            return PortfolioRisk(
                user=user,
                overall_risk=0,
                level=RiskLevel.LOW,
                diversification_score=0,
                timestamp=timestamp
            )

        overall = sum(p.risk_score for p in positions) / len(positions)
        distribution = {level.value: 0 for level in RiskLevel}
        for position in positions:
            distribution[position.level.value] += 1
        tokens = {token.lower() for p in positions for token in (p.token0, p.token1)}

        return PortfolioRisk(
            user=user,
            overall_risk=overall,
            level=classify_risk_level(int(overall)),
            diversification_score=calculate_diversification_score(len(positions), len(tokens)),
            total_exposure=sum(p.deposit for p in positions),
            risk_distribution=distribution,
            unique_tokens=len(tokens),
            positions=list(positions),
            timestamp=timestamp
        )
