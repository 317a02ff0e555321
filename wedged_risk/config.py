from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    LOG_LEVEL: str = "INFO"

    # Blockchain Configuration
    RPC_URL: str = "http://localhost:8545"
    RPC_TIMEOUT_SECONDS: float = 15.0
    WEDGED_POOL_ADDRESS: Optional[str] = None
    RISK_CALCULATOR_ADDRESS: Optional[str] = None
    HEDGING_MANAGER_ADDRESS: Optional[str] = None
    EULER_SWAP_INTEGRATION_ADDRESS: Optional[str] = None

    # Reference and common assets (mainnet defaults)
    REFERENCE_TOKEN: str = "0xC02aaA39b223FE8dCcE9d7b542fFC25BeF35a6f8"
    WETH_ADDRESS: str = "0xC02aaA39b223FE8dCcE9d7b542fFC25BeF35a6f8"
    USDC_ADDRESS: str = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"
    USDT_ADDRESS: str = "0xdAC17F958D2ee523a2206206994597C13D831ec7"
    DAI_ADDRESS: str = "0x6B175474E89094C44Da98b954EedeAC495271d0F"

    # Service Configuration
    RISK_ENGINE_PORT: int = 8001
    REQUEST_TIMEOUT_SECONDS: Optional[float] = 20.0
    ENABLE_BACKGROUND_TASKS: bool = True

    # Cache TTLs (seconds)
    PRICE_TTL_SECONDS: float = 30
    ACCOUNT_HEALTH_TTL_SECONDS: float = 10
    POOL_RISK_TTL_SECONDS: float = 300
    ANALYTICS_TTL_SECONDS: float = 60
    POOL_METADATA_TTL_SECONDS: float = 30
    VOLATILITY_TTL_SECONDS: float = 300
    CORRELATION_TTL_SECONDS: float = 300

    # Background sweeps (seconds)
    POOL_RISK_SWEEP_INTERVAL: int = 120
    VOLATILITY_SWEEP_INTERVAL: int = 300

    # Chain reader resilience
    RPC_RETRY_ATTEMPTS: int = 3
    CIRCUIT_BREAKER_FAILURE_THRESHOLD: int = 5
    CIRCUIT_BREAKER_TIMEOUT: int = 60

    # Risk calculation parameters
    PRICE_HISTORY_CAPACITY: int = 30
    MIN_CORRELATION_OBSERVATIONS: int = 10
    MAX_STRATEGIES: int = 10
    HISTORY_MAX_ENTRIES: int = 5000

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",  # Allow extra fields in .env
    )

    @property
    def common_tokens(self) -> List[str]:
        """Assets swept by the periodic volatility refresh"""
        return [self.WETH_ADDRESS, self.USDC_ADDRESS, self.USDT_ADDRESS, self.DAI_ADDRESS]


# Basis point scale
BPS = 10_000

# Fixed-point scale used by every on-chain amount
WAD = 10 ** 18

# Risk level cutoffs on the composite score (strictly greater than)
class RiskThresholds:
    CRITICAL = 7000
    HIGH = 5000
    MEDIUM = 3000

# Concentration buckets: (pool share bp strictly above, resulting risk bp)
CONCENTRATION_BUCKETS = (
    (5000, 8000),
    (2000, 5000),
    (1000, 3000),
)
CONCENTRATION_FLOOR = 1000

# Recommendation triggers
class RecommendationThresholds:
    CRITICAL_RISK = 7000
    WARNING_RISK = 5000
    HIGH_UTILIZATION = 90
    HIGH_VOLATILITY = 6000
    HIGH_CORRELATION = 7000
    UNDER_HEDGED_FACTOR = 0.8
    OVER_HEDGED_FACTOR = 1.2

# Market sentiment cutoffs on average volatility bp
class MarketThresholds:
    HIGH_VOLATILITY = 6000
    LOW_VOLATILITY = 2000
    HIGH_CORRELATION = 7000

NEUTRAL_CORRELATION_BP = 5000
TRADING_DAYS_PER_YEAR = 365

# Portfolio scoring: diversification saturates at these counts
DIVERSIFICATION_FULL_POOLS = 5
DIVERSIFICATION_FULL_TOKENS = 10

class PortfolioThresholds:
    HIGH_AVERAGE_RISK = 6000
    LOW_DIVERSIFICATION = 30
    HIGH_DIVERSIFICATION = 80
