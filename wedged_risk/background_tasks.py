import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional
import structlog

from .config import Settings
from .risk_engine import RiskEngine

logger = structlog.get_logger()


class BackgroundTaskManager:
    """Runs the periodic pool-risk and volatility sweeps against a shared engine"""

    def __init__(self, engine: RiskEngine, settings: Settings):
        self.engine = engine
        self.is_running = False
        self.tasks: List[asyncio.Task] = []
        self.pool_risk_interval = settings.POOL_RISK_SWEEP_INTERVAL
        self.volatility_interval = settings.VOLATILITY_SWEEP_INTERVAL

        self.last_pool_sweep: Optional[datetime] = None
        self.last_volatility_sweep: Optional[datetime] = None
        self.sweep_errors = 0

    async def start(self):
        """Start all background tasks"""
        if self.is_running:
            logger.warning("Background tasks already running")
            return

        self.is_running = True
        logger.info(
            "Starting background tasks",
            pool_risk_interval=self.pool_risk_interval,
            volatility_interval=self.volatility_interval
        )

        self.tasks.append(asyncio.create_task(self._pool_risk_loop()))
        self.tasks.append(asyncio.create_task(self._volatility_loop()))

    async def stop(self):
        """Stop all background tasks"""
        if not self.is_running:
            return

        logger.info("Stopping background tasks")
        self.is_running = False

        for task in self.tasks:
            task.cancel()

        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)

        self.tasks.clear()

    async def run_pool_risk_sweep(self) -> int:
        start_time = datetime.now(timezone.utc)
        snapshots = await self.engine.refresh_all_pool_risks()
        self.last_pool_sweep = datetime.now(timezone.utc)

        duration = (self.last_pool_sweep - start_time).total_seconds()
        logger.info(f"Pool risk sweep completed in {duration:.1f}s", pools=len(snapshots))
        return len(snapshots)

    async def run_volatility_sweep(self) -> int:
        refreshed = await self.engine.refresh_volatility_metrics()
        self.last_volatility_sweep = datetime.now(timezone.utc)
        return len(refreshed)

    async def _pool_risk_loop(self):
        """Refresh every active pool's risk snapshot"""
        while self.is_running:
            try:
                await self.run_pool_risk_sweep()
            except Exception as e:
                self.sweep_errors += 1
                logger.error("Error in pool risk sweep", error=str(e))

            await asyncio.sleep(self.pool_risk_interval)

    async def _volatility_loop(self):
        """Refresh common-asset volatility"""
        while self.is_running:
            try:
                await self.run_volatility_sweep()
            except Exception as e:
                self.sweep_errors += 1
                logger.error("Error in volatility sweep", error=str(e))

            await asyncio.sleep(self.volatility_interval)

    def status(self) -> Dict:
        return {
            "running": self.is_running,
            "tasks": len(self.tasks),
            "last_pool_sweep": self.last_pool_sweep.isoformat() if self.last_pool_sweep else None,
            "last_volatility_sweep": self.last_volatility_sweep.isoformat() if self.last_volatility_sweep else None,
            "sweep_errors": self.sweep_errors,
        }
