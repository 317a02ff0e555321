"""
Rolling per-pair price history and log-return computation
"""
from collections import deque
from typing import Deque, Dict, List, Optional
import threading
import numpy as np
import structlog

from .models import AssetPairKey, PriceObservation

logger = structlog.get_logger()

DEFAULT_CAPACITY = 30


class PriceSampler:
    """Bounded FIFO of price observations per asset pair.

    Each pair keeps at most ``capacity`` observations sorted ascending by
    timestamp. An observation with the same timestamp as the newest one
    replaces it; an observation older than the newest one is dropped.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 2:
            raise ValueError("Price history capacity must be at least 2")
        self.capacity = capacity
        self._buffers: Dict[AssetPairKey, Deque[PriceObservation]] = {}
        self._lock = threading.Lock()

    def record_price(self, pair: AssetPairKey, observation: PriceObservation) -> bool:
        """Append an observation, evicting the oldest when full. Returns False if dropped."""
        with self._lock:
            buffer = self._buffers.get(pair)
            if buffer is None:
                buffer = deque(maxlen=self.capacity)
                self._buffers[pair] = buffer

            if buffer:
                newest = buffer[-1]
                if observation.timestamp == newest.timestamp:
                    buffer[-1] = observation
                    return True
                if observation.timestamp < newest.timestamp:
                    logger.debug(
                        "Dropping out-of-order price observation",
                        pair=str(pair),
                        timestamp=observation.timestamp,
                        newest=newest.timestamp
                    )
                    return False

            buffer.append(observation)
            return True

    def observations(self, pair: AssetPairKey) -> List[PriceObservation]:
        with self._lock:
            return list(self._buffers.get(pair, ()))

    def observation_count(self, pair: AssetPairKey) -> int:
        with self._lock:
            return len(self._buffers.get(pair, ()))

    def compute_returns(self, pair: AssetPairKey) -> List[float]:
        """Natural-log returns ln(p[i] / p[i-1]) between consecutive observations.

        Steps whose prior (or current) price is zero contribute nothing.
        Empty when fewer than two observations exist.
        """
        history = self.observations(pair)
        if len(history) < 2:
            return []

        prices = np.array([float(o.price) for o in history], dtype=float)
        previous, current = prices[:-1], prices[1:]
        valid = (previous > 0) & (current > 0)
        if not valid.any():
            return []

        return np.log(current[valid] / previous[valid]).tolist()

    def price_change_percent(self, pair: AssetPairKey) -> Optional[float]:
        """Relative change from the oldest to the newest observation, in percent"""
        history = self.observations(pair)
        if len(history) < 2 or history[0].price == 0:
            return None
        return (history[-1].price - history[0].price) * 100 / history[0].price

    def pairs(self) -> List[AssetPairKey]:
        with self._lock:
            return list(self._buffers.keys())

    def clear(self):
        with self._lock:
            self._buffers.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffers)
