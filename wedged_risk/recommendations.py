from typing import List, Optional, Sequence
import structlog

from .config import BPS, MarketThresholds, PortfolioThresholds, RecommendationThresholds
from .models import (
    HedgeAction, PoolInfo, PortfolioRisk, Priority, Recommendation, RecommendationKind,
    RiskComponents, RiskLevel, Strategy
)
from .scoring import calculate_utilization, hedge_ratio_bp

logger = structlog.get_logger()


def select_strategy(strategies: Sequence[Strategy], current_risk: int) -> Optional[Strategy]:
    """Active strategy with the tightest threshold at or below the current risk.

    Ties keep the first strategy in input order.
    """
    best = None
    best_gap = None
    for strategy in strategies:
        if not strategy.active or strategy.risk_threshold_bp > current_risk:
            continue
        gap = current_risk - strategy.risk_threshold_bp
        if best_gap is None or gap < best_gap:
            best, best_gap = strategy, gap
    return best


def required_hedge_amount(pool: PoolInfo, strategy: Strategy) -> int:
    """Additional hedged amount needed to reach the strategy's ratio"""
    shortfall = strategy.hedge_ratio_bp - hedge_ratio_bp(pool)
    if shortfall <= 0:
        return 0
    return pool.total_deposits * shortfall // BPS


def _fmt_ratio(bp: int) -> str:
    return f"{bp / 100:.1f}%"


def market_recommendation(avg_volatility: float, avg_correlation: float) -> str:
    high_vol = avg_volatility > MarketThresholds.HIGH_VOLATILITY
    high_corr = avg_correlation > MarketThresholds.HIGH_CORRELATION

    if high_vol and high_corr:
        return "High volatility and correlation - reduce risk exposure"
    if high_vol:
        return "High volatility environment - increase hedging"
    if high_corr:
        return "High correlation - diversify holdings"
    if avg_volatility < MarketThresholds.LOW_VOLATILITY:
        return "Low volatility - consider increasing position sizes"
    return "Market conditions are normal - maintain current strategy"


def portfolio_recommendations(portfolio: PortfolioRisk) -> List[str]:
    if not portfolio.positions:
        return []

    distribution = portfolio.risk_distribution
    elevated = distribution.get(RiskLevel.HIGH.value, 0) + distribution.get(RiskLevel.CRITICAL.value, 0)
    moderate = distribution.get(RiskLevel.LOW.value, 0) + distribution.get(RiskLevel.MEDIUM.value, 0)

    recommendations = []
    if portfolio.overall_risk > PortfolioThresholds.HIGH_AVERAGE_RISK:
        recommendations.append("Portfolio risk is high - consider rebalancing towards lower-risk pools")
    if portfolio.diversification_score < PortfolioThresholds.LOW_DIVERSIFICATION:
        recommendations.append("Low diversification - consider adding pools with different token pairs")
    if elevated > moderate:
        recommendations.append("Too many high-risk positions - balance with some low-risk pools")
    if portfolio.diversification_score > PortfolioThresholds.HIGH_DIVERSIFICATION:
        recommendations.append("Excellent diversification - well-balanced portfolio")
    return recommendations


class RecommendationEngine:
    """Rule-based recommendations for a pool, emitted in a fixed order"""

    def recommend(
        self,
        pool: PoolInfo,
        components: RiskComponents,
        strategies: Sequence[Strategy],
        hedge_cost: Optional[int] = None
    ) -> List[Recommendation]:
        recommendations = []
        score = pool.risk_score

        if score > RecommendationThresholds.CRITICAL_RISK:
            recommendations.append(Recommendation(
                kind=RecommendationKind.CRITICAL,
                priority=Priority.CRITICAL,
                message="Pool risk is critically high - immediate action required",
                suggested_actions=["Reduce position sizes", "Increase hedging", "Monitor closely"]
            ))
        elif score > RecommendationThresholds.WARNING_RISK:
            recommendations.append(Recommendation(
                kind=RecommendationKind.WARNING,
                priority=Priority.MEDIUM,
                message="Pool risk is elevated - consider risk mitigation",
                suggested_actions=["Review hedging strategy", "Consider position adjustment"]
            ))

        if calculate_utilization(pool) > RecommendationThresholds.HIGH_UTILIZATION:
            recommendations.append(Recommendation(
                kind=RecommendationKind.LIQUIDITY,
                priority=Priority.HIGH,
                message="Pool utilization is very high - withdrawal capacity limited",
                suggested_actions=["Monitor liquidity closely", "Prepare for potential liquidity constraints"]
            ))

        strategy = select_strategy(strategies, score)
        if strategy is not None:
            recommendations.append(self._hedging(pool, strategy, hedge_cost))

        if components.volatility > RecommendationThresholds.HIGH_VOLATILITY:
            recommendations.append(Recommendation(
                kind=RecommendationKind.VOLATILITY,
                priority=Priority.MEDIUM,
                message="High volatility detected in underlying assets",
                suggested_actions=["Monitor price movements", "Consider volatility-based hedging"]
            ))

        if components.correlation_risk > RecommendationThresholds.HIGH_CORRELATION:
            recommendations.append(Recommendation(
                kind=RecommendationKind.CORRELATION,
                priority=Priority.LOW,
                message="High correlation between pool tokens reduces diversification",
                suggested_actions=["Consider diversifying into uncorrelated assets"]
            ))

        logger.debug("Recommendations generated", pool_id=pool.id, count=len(recommendations))
        return recommendations

    def _hedging(self, pool: PoolInfo, strategy: Strategy, hedge_cost: Optional[int]) -> Recommendation:
        current = hedge_ratio_bp(pool)
        optimal = strategy.hedge_ratio_bp
        metadata = {
            "strategy_id": strategy.id,
            "strategy_name": strategy.name,
            "current_hedge_ratio_bp": current,
            "optimal_hedge_ratio_bp": optimal,
        }

        if current < optimal * RecommendationThresholds.UNDER_HEDGED_FACTOR:
            metadata["additional_hedge_amount"] = required_hedge_amount(pool, strategy)
            metadata["estimated_cost"] = hedge_cost
            return Recommendation(
                kind=RecommendationKind.HEDGING,
                priority=Priority.HIGH,
                action=HedgeAction.INCREASE,
                message=f"Consider increasing hedge ratio from {_fmt_ratio(current)} to {_fmt_ratio(optimal)}",
                suggested_actions=["Increase hedge position", f"Apply strategy {strategy.name}"],
                metadata=metadata
            )

        if current > optimal * RecommendationThresholds.OVER_HEDGED_FACTOR:
            return Recommendation(
                kind=RecommendationKind.HEDGING,
                priority=Priority.MEDIUM,
                action=HedgeAction.REDUCE,
                message=f"Consider reducing hedge ratio from {_fmt_ratio(current)} to {_fmt_ratio(optimal)}",
                suggested_actions=["Reduce hedge position to save on hedging cost"],
                metadata=metadata
            )

        return Recommendation(
            kind=RecommendationKind.MAINTAIN,
            priority=Priority.LOW,
            action=HedgeAction.MAINTAIN,
            message=f"Current hedge ratio of {_fmt_ratio(current)} is optimal for current risk level",
            metadata=metadata
        )
