"""
Wedged Risk Engine - risk analytics and caching core for Wedged pools

This package reads pool state from the Wedged contracts, derives volatility,
impermanent loss, correlation, liquidity and concentration signals, and serves
cached risk snapshots, history and hedging recommendations over FastAPI.

Key Features:
- Chain Reader over the pool, risk calculator, hedging manager and swap contracts
- On-chain metrics with local fallbacks from a rolling price history
- Composite risk classification and rule-based hedging recommendations
- Per-category TTL cache with single-flight population and stale fallback
- Periodic pool-risk and volatility sweeps
- Push notifications for updated risk snapshots
- Structured logging with structlog
"""

__version__ = "1.0.0"

from .config import Settings
from .risk_engine import RiskEngine

__all__ = ["Settings", "RiskEngine", "__version__"]
