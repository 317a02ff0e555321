from bisect import bisect_right
from collections import deque
from typing import Deque, Dict, List
import structlog

from .models import RiskHistoryPoint, RiskSnapshot, Timeframe

logger = structlog.get_logger()


class RiskHistory:
    """Bounded per-pool record of computed risk snapshots"""

    def __init__(self, max_entries: int = 5000):
        self.max_entries = max_entries
        self._snapshots: Dict[int, Deque[RiskSnapshot]] = {}

    def record(self, snapshot: RiskSnapshot):
        snapshots = self._snapshots.setdefault(snapshot.pool_id, deque(maxlen=self.max_entries))
        if snapshots and snapshot.timestamp < snapshots[-1].timestamp:
            logger.debug("Ignoring out-of-order snapshot", pool_id=snapshot.pool_id)
            return
        if snapshots and snapshot.timestamp == snapshots[-1].timestamp:
            snapshots[-1] = snapshot
            return
        snapshots.append(snapshot)

    def has_pool(self, pool_id: int) -> bool:
        return bool(self._snapshots.get(pool_id))

    def series(self, pool_id: int, timeframe: Timeframe, now: int) -> List[RiskHistoryPoint]:
        """Evenly spaced points ending at ``now``, oldest first.

        Each point carries the latest snapshot recorded at or before its
        timestamp; points earlier than the first recording carry the earliest
        snapshot.
        """
        snapshots = list(self._snapshots.get(pool_id, ()))
        if not snapshots:
            return []

        timestamps = [s.timestamp for s in snapshots]
        points = []
        for i in range(timeframe.points - 1, -1, -1):
            at = now - i * timeframe.spacing_ms
            index = bisect_right(timestamps, at) - 1
            snapshot = snapshots[max(index, 0)]
            points.append(RiskHistoryPoint(
                timestamp=at,
                risk_score=snapshot.composite_score,
                components=snapshot.components
            ))
        return points

    def clear(self):
        self._snapshots.clear()

    def __len__(self) -> int:
        return len(self._snapshots)
