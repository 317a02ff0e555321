from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple
import structlog
from web3 import AsyncWeb3
from web3.exceptions import ContractLogicError

from .abis import (
    WEDGED_POOL_ABI, RISK_CALCULATOR_ABI, HEDGING_MANAGER_ABI, EULER_SWAP_INTEGRATION_ABI
)
from .config import Settings, BPS, WAD
from .error_handling import (
    CircuitBreaker, CircuitBreakerConfig, NotFound, UpstreamUnavailable, retry_with_backoff
)
from .models import AssetPairKey, PoolInfo, RiskComponents, Strategy

logger = structlog.get_logger()

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class ContractReverted(UpstreamUnavailable):
    """A contract call reverted; retrying will not help"""
    pass


class ChainReader(ABC):
    """Read-only capability over the pool, risk, hedging and swap contracts.

    Pool info, pool count and pair prices are required. The remaining reads are
    optional capabilities: an implementation without them raises
    UpstreamUnavailable, which callers treat as "use the local fallback".
    """

    @abstractmethod
    async def get_pool_info(self, pool_id: int) -> PoolInfo:
        """Raise NotFound for an unknown pool"""

    @abstractmethod
    async def get_total_pools(self) -> int:
        ...

    @abstractmethod
    async def get_price(self, pair: AssetPairKey) -> int:
        """Price of ``pair.token_a`` in ``pair.token_b``, 18-decimal fixed point"""

    async def get_reserves(self, pair: AssetPairKey) -> Tuple[int, int]:
        raise UpstreamUnavailable("Reserves are not available from this reader")

    async def get_pool_risk_metrics(self, pool_id: int) -> RiskComponents:
        raise UpstreamUnavailable("Risk calculator is not available")

    async def get_volatility(self, pair: AssetPairKey) -> int:
        raise UpstreamUnavailable("Volatility oracle is not available")

    async def get_correlation(self, pair_a: AssetPairKey, pair_b: AssetPairKey) -> int:
        raise UpstreamUnavailable("Correlation oracle is not available")

    async def get_impermanent_loss(self, token0: str, token1: str, amount: int = WAD) -> int:
        raise UpstreamUnavailable("Impermanent loss calculator is not available")

    async def get_user_pools(self, user: str) -> List[int]:
        raise UpstreamUnavailable("User positions are not available")

    async def get_user_deposit(self, pool_id: int, user: str) -> int:
        raise UpstreamUnavailable("User positions are not available")

    async def get_strategies(self) -> List[Strategy]:
        raise UpstreamUnavailable("Hedging manager is not available")

    async def estimate_hedging_cost(self, pool_id: int, amount: int) -> int:
        raise UpstreamUnavailable("Hedging manager is not available")

    def health(self) -> Dict[str, Any]:
        return {"reader": type(self).__name__}

    async def close(self):
        pass


def _clamp_bp(value: int) -> int:
    return max(0, min(BPS, int(value)))


class Web3ChainReader(ChainReader):
    """Chain Reader over JSON-RPC with retries and one circuit breaker per contract"""

    def __init__(self, settings: Settings, w3: Optional[AsyncWeb3] = None):
        self.settings = settings
        self.w3 = w3 or AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(
            settings.RPC_URL,
            request_kwargs={"timeout": settings.RPC_TIMEOUT_SECONDS}
        ))
        self.reference_token = settings.REFERENCE_TOKEN

        addresses = {
            "wedged_pool": (settings.WEDGED_POOL_ADDRESS, WEDGED_POOL_ABI),
            "risk_calculator": (settings.RISK_CALCULATOR_ADDRESS, RISK_CALCULATOR_ABI),
            "hedging_manager": (settings.HEDGING_MANAGER_ADDRESS, HEDGING_MANAGER_ABI),
            "swap_integration": (settings.EULER_SWAP_INTEGRATION_ADDRESS, EULER_SWAP_INTEGRATION_ABI),
        }

        self.contracts = {}
        self.breakers: Dict[str, CircuitBreaker] = {}
        for name, (address, abi) in addresses.items():
            if not address:
                logger.warning("Contract address not configured", contract=name)
                continue
            self.contracts[name] = self.w3.eth.contract(
                address=AsyncWeb3.to_checksum_address(address), abi=abi
            )
            self.breakers[name] = CircuitBreaker(CircuitBreakerConfig(
                name=name,
                failure_threshold=settings.CIRCUIT_BREAKER_FAILURE_THRESHOLD,
                timeout=settings.CIRCUIT_BREAKER_TIMEOUT,
                excluded=(ContractReverted,),
            ))

        self._retry = retry_with_backoff(
            max_attempts=settings.RPC_RETRY_ATTEMPTS,
            excluded=(ContractReverted,)
        )

    async def _invoke(self, contract_name: str, function: str, *args) -> Any:
        contract = self.contracts[contract_name]
        try:
            return await getattr(contract.functions, function)(*args).call()
        except ContractLogicError as e:
            raise ContractReverted(f"{contract_name}.{function} reverted: {e}") from e
        except Exception as e:
            logger.error("Chain call failed", contract=contract_name, function=function, error=str(e))
            raise UpstreamUnavailable(f"{contract_name}.{function} failed: {e}") from e

    async def _call(self, contract_name: str, function: str, *args) -> Any:
        """Call a view function with retry and circuit breaker protection"""
        if contract_name not in self.contracts:
            raise UpstreamUnavailable(f"Contract {contract_name} is not configured")

        breaker = self.breakers[contract_name]
        return await self._retry(breaker.call)(self._invoke, contract_name, function, *args)

    def _address(self, token: str) -> str:
        return AsyncWeb3.to_checksum_address(token)

    def _asset_of(self, pair: AssetPairKey) -> str:
        """The non-reference side of a pair quoted against the reference token"""
        if pair.involves(self.reference_token):
            return pair.other(self.reference_token)
        return pair.token_a

    # Pool reads
    async def get_total_pools(self) -> int:
        return int(await self._call("wedged_pool", "totalPools"))

    async def get_pool_info(self, pool_id: int) -> PoolInfo:
        if pool_id < 1:
            raise NotFound(f"Pool {pool_id} does not exist")

        try:
            raw = await self._call("wedged_pool", "getPoolInfo", pool_id)
        except ContractReverted as e:
            raise NotFound(f"Pool {pool_id} does not exist") from e

        pool_identifier, token0, token1, total, available, hedged, risk_score, active = raw
        if pool_identifier == 0 and token0 == ZERO_ADDRESS:
            raise NotFound(f"Pool {pool_id} does not exist")

        return PoolInfo(
            id=pool_id,
            token0=token0,
            token1=token1,
            total_deposits=int(total),
            available_liquidity=int(available),
            hedged_amount=int(hedged),
            risk_score=_clamp_bp(risk_score),
            active=bool(active)
        )

    # User position reads
    async def get_user_pools(self, user: str) -> List[int]:
        pool_ids = await self._call("wedged_pool", "getUserPools", self._address(user))
        return [int(pool_id) for pool_id in pool_ids]

    async def get_user_deposit(self, pool_id: int, user: str) -> int:
        return int(await self._call("wedged_pool", "getUserDeposit", pool_id, self._address(user)))

    # Pair reads
    async def get_reserves(self, pair: AssetPairKey) -> Tuple[int, int]:
        raw = await self._call(
            "swap_integration", "getPoolInfo",
            self._address(pair.token_a), self._address(pair.token_b)
        )
        pool_address, token0, _token1, _fee, reserve0, reserve1, _supply = raw
        if pool_address == ZERO_ADDRESS:
            raise NotFound(f"No swap pool registered for {pair}")

        # Orient reserves to the pair's canonical order
        if token0.lower() == pair.token_a.lower():
            return int(reserve0), int(reserve1)
        return int(reserve1), int(reserve0)

    async def get_price(self, pair: AssetPairKey) -> int:
        try:
            return int(await self._call(
                "swap_integration", "getPrice",
                self._address(pair.token_a), self._address(pair.token_b)
            ))
        except UpstreamUnavailable as e:
            logger.warning("Contract price fetch failed, using reserves", pair=str(pair), error=str(e))

        reserve_a, reserve_b = await self.get_reserves(pair)
        if reserve_a == 0 or reserve_b == 0:
            return 0
        return reserve_b * WAD // reserve_a

    # Risk calculator reads
    async def get_pool_risk_metrics(self, pool_id: int) -> RiskComponents:
        # Composite comes from the pool record, not the calculator
        volatility, il, correlation, liquidity, _composite = await self._call(
            "risk_calculator", "getPoolRiskMetrics", pool_id
        )
        return RiskComponents(
            volatility=_clamp_bp(volatility),
            impermanent_loss=_clamp_bp(il),
            correlation_risk=_clamp_bp(correlation),
            liquidity_risk=_clamp_bp(liquidity)
        )

    async def get_volatility(self, pair: AssetPairKey) -> int:
        value = await self._call("risk_calculator", "calculateVolatility", self._address(self._asset_of(pair)))
        return _clamp_bp(value)

    async def get_correlation(self, pair_a: AssetPairKey, pair_b: AssetPairKey) -> int:
        value = await self._call(
            "risk_calculator", "calculateCorrelation",
            self._address(self._asset_of(pair_a)), self._address(self._asset_of(pair_b))
        )
        return _clamp_bp(value)

    async def get_impermanent_loss(self, token0: str, token1: str, amount: int = WAD) -> int:
        """Loss per ``amount`` of deposit converted to basis points"""
        loss = await self._call(
            "risk_calculator", "calculateImpermanentLoss",
            self._address(token0), self._address(token1), amount
        )
        return _clamp_bp(int(loss) * BPS // amount)

    # Hedging manager reads
    async def get_strategies(self) -> List[Strategy]:
        strategies = []
        for strategy_id in range(1, self.settings.MAX_STRATEGIES + 1):
            try:
                _sid, name, threshold, ratio, active = await self._call(
                    "hedging_manager", "getStrategy", strategy_id
                )
            except ContractReverted:
                # Strategy ids are sequential; the first missing one ends the list
                break
            strategies.append(Strategy(
                id=strategy_id,
                name=name,
                risk_threshold_bp=int(threshold),
                hedge_ratio_bp=int(ratio),
                active=bool(active)
            ))

        logger.info("Loaded hedging strategies", count=len(strategies))
        return strategies

    async def estimate_hedging_cost(self, pool_id: int, amount: int) -> int:
        return int(await self._call("hedging_manager", "calculateHedgingCost", pool_id, amount))

    def health(self) -> Dict[str, Any]:
        return {
            "reader": type(self).__name__,
            "rpc_url": self.settings.RPC_URL,
            "contracts": sorted(self.contracts),
            "circuit_breakers": {name: cb.get_stats() for name, cb in self.breakers.items()}
        }

    async def close(self):
        disconnect = getattr(self.w3.provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()
