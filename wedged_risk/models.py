from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
from enum import Enum
import time


def now_ms() -> int:
    """Milliseconds since epoch"""
    return int(time.time() * 1000)


# Enums
class RiskLevel(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"

class RecommendationKind(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    HEDGING = "hedging"
    VOLATILITY = "volatility"
    CORRELATION = "correlation"
    LIQUIDITY = "liquidity"
    MAINTAIN = "maintain"

class Priority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

class HedgeAction(str, Enum):
    INCREASE = "increase-hedge"
    REDUCE = "reduce-hedge"
    MAINTAIN = "maintain"

class Sentiment(str, Enum):
    HIGH_VOLATILITY = "high_volatility"
    LOW_VOLATILITY = "low_volatility"
    NEUTRAL = "neutral"

class Timeframe(str, Enum):
    H24 = "24h"
    D7 = "7d"
    D30 = "30d"
    D90 = "90d"

    @property
    def points(self) -> int:
        return {"24h": 24, "7d": 7, "30d": 30, "90d": 90}[self.value]

    @property
    def spacing_ms(self) -> int:
        hour = 60 * 60 * 1000
        return hour if self is Timeframe.H24 else 24 * hour


# Asset Models
def _normalize_asset(identifier: str) -> str:
    identifier = identifier.strip()
    if identifier.lower().startswith("0x"):
        return identifier.lower()
    return identifier

class AssetPairKey(BaseModel):
    """Unordered asset pair; (A, B) and (B, A) produce the same key"""
    model_config = ConfigDict(frozen=True)

    token_a: str
    token_b: str

    @model_validator(mode="before")
    @classmethod
    def canonical_order(cls, data: Any) -> Any:
        if isinstance(data, dict) and "token_a" in data and "token_b" in data:
            a = _normalize_asset(str(data["token_a"]))
            b = _normalize_asset(str(data["token_b"]))
            if b.lower() < a.lower():
                a, b = b, a
            data = {**data, "token_a": a, "token_b": b}
        return data

    @classmethod
    def of(cls, first: str, second: str) -> "AssetPairKey":
        return cls(token_a=first, token_b=second)

    def other(self, asset: str) -> str:
        """Return the side of the pair that is not ``asset``"""
        asset = _normalize_asset(asset)
        return self.token_b if self.token_a == asset else self.token_a

    def involves(self, asset: str) -> bool:
        asset = _normalize_asset(asset)
        return asset in (self.token_a, self.token_b)

    def __str__(self) -> str:
        return f"{self.token_a}-{self.token_b}"

class PriceObservation(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: int  # ms since epoch
    price: int      # 18-decimal fixed point

    @field_validator("price")
    @classmethod
    def non_negative_price(cls, v):
        if v < 0:
            raise ValueError("Price cannot be negative")
        return v


# Chain Models
class PoolInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    token0: str
    token1: str
    total_deposits: int = 0
    available_liquidity: int = 0
    hedged_amount: int = 0
    risk_score: int = 0
    active: bool = True

    @property
    def pair(self) -> AssetPairKey:
        return AssetPairKey.of(self.token0, self.token1)

class Strategy(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    risk_threshold_bp: int
    hedge_ratio_bp: int
    active: bool = True


# Risk Models
class RiskComponents(BaseModel):
    model_config = ConfigDict(frozen=True)

    volatility: int = Field(default=0, ge=0, le=10000)
    impermanent_loss: int = Field(default=0, ge=0, le=10000)
    correlation_risk: int = Field(default=0, ge=0, le=10000)
    liquidity_risk: int = Field(default=0, ge=0, le=10000)

class Recommendation(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: RecommendationKind
    priority: Priority
    message: str
    suggested_actions: List[str] = []
    action: Optional[HedgeAction] = None
    metadata: Dict[str, Any] = {}

class RiskSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    pool_id: int
    timestamp: int
    composite_score: int = Field(ge=0, le=10000)
    level: RiskLevel
    components: RiskComponents

    # Pool-derived metrics
    utilization: float = Field(ge=0, le=100)
    hedge_ratio: float = Field(ge=0, le=100)
    liquidity_depth: float = Field(default=0.0, ge=0, le=100)
    concentration_risk: int = Field(ge=0, le=10000)

    recommendations: List[Recommendation] = []

class PoolPosition(BaseModel):
    """A user's deposit in one pool with that pool's current risk"""
    model_config = ConfigDict(frozen=True)

    pool_id: int
    token0: str
    token1: str
    deposit: int  # 18-decimal fixed point
    share: float = Field(ge=0, le=100)  # percent of the pool's deposits
    risk_score: int = Field(ge=0, le=10000)
    level: RiskLevel

class PortfolioRisk(BaseModel):
    model_config = ConfigDict(frozen=True)

    user: str
    overall_risk: float = Field(ge=0, le=10000)  # mean position risk score
    level: RiskLevel
    diversification_score: float = Field(ge=0, le=100)
    total_exposure: int = 0
    risk_distribution: Dict[str, int] = {}
    unique_tokens: int = 0
    positions: List[PoolPosition] = []
    recommendations: List[str] = []
    timestamp: int

class RiskHistoryPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: int
    risk_score: int
    components: RiskComponents

class MarketConditions(BaseModel):
    volatility_index: float  # percent
    correlation_index: float  # percent
    sentiment: Sentiment
    recommendation: str
    timestamp: int = Field(default_factory=now_ms)


# API Response Models
class RiskHistoryResponse(BaseModel):
    pool_id: int
    timeframe: Timeframe
    points: List[RiskHistoryPoint]

class CacheStatsResponse(BaseModel):
    count: int
    per_category: Dict[str, int]
    hits: int = 0
    misses: int = 0
    stale_served: int = 0
    in_flight: int = 0
    price_series: int = 0

class ServiceHealth(BaseModel):
    status: str = "operational"
    version: str = "1.0.0"
    uptime_seconds: int
    background_tasks_running: bool
    chain_reader: Dict[str, Any]
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
