import pytest

from wedged_risk.models import PoolInfo, PoolPosition, RiskComponents, RiskLevel
from wedged_risk.scoring import (
    CompositeRiskScorer, calculate_concentration_risk, calculate_diversification_score,
    calculate_hedge_ratio, calculate_liquidity_depth, calculate_utilization, classify_risk_level,
    hedge_ratio_bp, utilization_bp
)

from tests.conftest import TOKEN_A, TOKEN_B, eth


class TestPoolMetrics:
    """Utilization, hedge ratio and liquidity depth"""

    def test_reference_pool(self, sample_pool):
        assert calculate_utilization(sample_pool) == pytest.approx(80.0)
        assert calculate_hedge_ratio(sample_pool) == pytest.approx(10.0)
        assert calculate_liquidity_depth(sample_pool) == pytest.approx(20.0)
        assert hedge_ratio_bp(sample_pool) == 1000
        assert utilization_bp(sample_pool) == 8000

    def test_empty_pool_is_all_zero(self):
        pool = PoolInfo(id=7, token0=TOKEN_A, token1=TOKEN_B)

        assert calculate_utilization(pool) == 0
        assert calculate_hedge_ratio(pool) == 0
        assert calculate_liquidity_depth(pool) == 0
        assert hedge_ratio_bp(pool) == 0


class TestConcentrationRisk:
    """Pool share of protocol deposits bucketed into a risk value"""

    @pytest.mark.parametrize("pool_share, expected", [
        (60.0, 8000),
        (30.0, 5000),
        (15.0, 3000),
        (0.5, 1000),
    ])
    def test_buckets(self, pool_share, expected):
        assert calculate_concentration_risk(eth(pool_share), eth(100)) == expected

    def test_bucket_boundaries_are_exclusive(self):
        assert calculate_concentration_risk(eth(50), eth(100)) == 5000
        assert calculate_concentration_risk(eth(20), eth(100)) == 3000
        assert calculate_concentration_risk(eth(10), eth(100)) == 1000

    def test_no_protocol_deposits(self):
        assert calculate_concentration_risk(eth(10), 0) == 0


class TestRiskLevel:
    """Composite score classification"""

    @pytest.mark.parametrize("score, level", [
        (10000, RiskLevel.CRITICAL),
        (7001, RiskLevel.CRITICAL),
        (7000, RiskLevel.HIGH),
        (5001, RiskLevel.HIGH),
        (5000, RiskLevel.MEDIUM),
        (3001, RiskLevel.MEDIUM),
        (3000, RiskLevel.LOW),
        (0, RiskLevel.LOW),
    ])
    def test_thresholds(self, score, level):
        assert classify_risk_level(score) == level


class TestCompositeRiskScorer:
    def test_snapshot_uses_on_chain_score(self, sample_pool):
        components = RiskComponents(volatility=1200, impermanent_loss=30, correlation_risk=5000, liquidity_risk=8000)

        snapshot = CompositeRiskScorer().score_pool(
            sample_pool, components, total_protocol_deposits=eth(400), timestamp=1234
        )

        assert snapshot.pool_id == 1
        assert snapshot.timestamp == 1234
        assert snapshot.composite_score == 8000
        assert snapshot.level == RiskLevel.CRITICAL
        assert snapshot.components == components
        assert snapshot.utilization == pytest.approx(80.0)
        assert snapshot.hedge_ratio == pytest.approx(10.0)
        assert snapshot.concentration_risk == 5000
        assert snapshot.recommendations == []

    def test_snapshot_is_immutable(self, sample_pool):
        snapshot = CompositeRiskScorer().score_pool(sample_pool, RiskComponents(), eth(100))

        with pytest.raises(Exception):
            snapshot.composite_score = 0


def position(pool_id, score, token0=TOKEN_A, token1=TOKEN_B, deposit=eth(10)):
    return PoolPosition(
        pool_id=pool_id,
        token0=token0,
        token1=token1,
        deposit=deposit,
        share=10.0,
        risk_score=score,
        level=classify_risk_level(score)
    )


class TestPortfolioScoring:
    @pytest.mark.parametrize("pools, tokens, expected", [
        (0, 0, 0),
        (1, 2, 20),
        (5, 10, 100),
        (8, 20, 100),
        (3, 4, 50),
    ])
    def test_diversification_score(self, pools, tokens, expected):
        assert calculate_diversification_score(pools, tokens) == pytest.approx(expected)

    def test_empty_portfolio(self):
        portfolio = CompositeRiskScorer().score_portfolio("0xuser", [], timestamp=1)

        assert portfolio.overall_risk == 0
        assert portfolio.level == RiskLevel.LOW
        assert portfolio.diversification_score == 0
        assert portfolio.risk_distribution == {}

    def test_average_distribution_and_tokens(self):
        positions = [
            position(1, 8000),
            position(2, 2000, token1="0x" + "c" * 40, deposit=eth(30)),
        ]

        portfolio = CompositeRiskScorer().score_portfolio("0xuser", positions, timestamp=1)

        assert portfolio.overall_risk == pytest.approx(5000)
        assert portfolio.level == RiskLevel.MEDIUM
        assert portfolio.risk_distribution == {"Low": 1, "Medium": 0, "High": 0, "Critical": 1}
        assert portfolio.unique_tokens == 3
        assert portfolio.total_exposure == eth(40)
        assert portfolio.diversification_score == pytest.approx(35.0)
