"""Circuit breaker: retained core mass must stay above the retention threshold."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from memkeeper.errors import CircuitBreakerTrip

if TYPE_CHECKING:
    from memkeeper.memory.store import MemoryStore
    from memkeeper.refinement.session import Session

logger = logging.getLogger(__name__)


@dataclass
class BreakerReading:
    pre_mass: int
    post_mass: int
    threshold: float

    @property
    def ratio(self) -> float | None:
        if self.pre_mass == 0:
            return None
        return self.post_mass / self.pre_mass

    @property
    def tripped(self) -> bool:
        ratio = self.ratio
        return ratio is not None and ratio < self.threshold


class CircuitBreaker:
    """Reads committed core mass and compares it to the pre-session mass."""

    def __init__(self, store: MemoryStore) -> None:
        self.store = store

    def read(self, session: Session) -> BreakerReading:
        return BreakerReading(
            pre_mass=session.pre_session_mass,
            post_mass=self.store.core_mass(session.owner_id),
            threshold=session.retention_threshold,
        )

    def check(self, session: Session) -> BreakerReading:
        """Raise CircuitBreakerTrip when the session fell below its threshold."""
        reading = self.read(session)
        if reading.tripped:
            logger.warning(
                "[Refinement] Circuit breaker tripped for %s: %d -> %d tokens (%.0f%% < %.0f%%)",
                session.owner_id,
                reading.pre_mass,
                reading.post_mass,
                reading.ratio * 100,
                reading.threshold * 100,
            )
            raise CircuitBreakerTrip(reading.pre_mass, reading.post_mass, reading.threshold)
        return reading
