"""
Dispatch Engine - Candidate Search and Ranking.

============================================================
PURPOSE
============================================================
Finds executors near an order and orders them by suitability.

RESPONSIBILITIES:
- CandidateSource contract (geo search + live availability)
- In-memory source for tests and simulation
- Weighted ranking with relationship modifiers

RANKING:
    base  = (w_d * distance + w_r * rating + w_a * availability) / sum(w)
    score = base * modifier
    modifier = preferred (1.5) | previously served (1.3) | 1.0

Ties break on distance, then executor ID, so ranking is
deterministic.

============================================================
"""

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .config import RankingConfig
from .types import Candidate, AvailabilityResult, SearchCriteria, Location


logger = logging.getLogger(__name__)


EARTH_RADIUS_M = 6371000.0


def haversine_m(a: Location, b: Location) -> float:
    """Great-circle distance in meters."""
    lat1, lat2 = math.radians(a.lat), math.radians(b.lat)
    dlat = lat2 - lat1
    dlng = math.radians(b.lng - a.lng)
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(h))


# ============================================================
# CANDIDATE SOURCE
# ============================================================

class CandidateSource(ABC):
    """Executor search backend."""

    @abstractmethod
    async def search(self, criteria: SearchCriteria) -> List[Candidate]:
        """Candidates within the radius, excluding the given IDs."""
        pass

    @abstractmethod
    async def check_availability(self, executor_id: str) -> AvailabilityResult:
        """Live availability check right before an offer."""
        pass


@dataclass
class ExecutorProfile:
    """Executor known to the in-memory source."""

    executor_id: str
    location: Location
    rating: float = 5.0
    service_types: List[str] = field(default_factory=list)
    """Supported services; empty means all."""

    online: bool = True
    active_orders: int = 0
    max_active_orders: int = 1
    executor_type: str = "individual"
    served_requesters: Set[str] = field(default_factory=set)
    speed_kmh: float = 40.0


class InMemoryCandidateSource(CandidateSource):
    """Candidate source over a dict of executor profiles."""

    def __init__(self, executors: Optional[Iterable[ExecutorProfile]] = None):
        self._executors: Dict[str, ExecutorProfile] = {}
        for profile in executors or []:
            self.add_executor(profile)

    def add_executor(self, profile: ExecutorProfile) -> None:
        self._executors[profile.executor_id] = profile

    def get_executor(self, executor_id: str) -> Optional[ExecutorProfile]:
        return self._executors.get(executor_id)

    def set_online(self, executor_id: str, online: bool) -> None:
        self._executors[executor_id].online = online

    async def search(self, criteria: SearchCriteria) -> List[Candidate]:
        excluded = set(criteria.excluded_executor_ids)
        found: List[Candidate] = []
        for profile in self._executors.values():
            if profile.executor_id in excluded or not profile.online:
                continue
            if profile.service_types and criteria.service_type not in profile.service_types:
                continue
            distance = haversine_m(criteria.location, profile.location)
            if distance > criteria.radius_m:
                continue
            found.append(Candidate(
                executor_id=profile.executor_id,
                distance_m=distance,
                rating=profile.rating,
                eta_minutes=round(distance / 1000.0 / profile.speed_kmh * 60.0, 1),
                executor_type=profile.executor_type,
                active_orders=profile.active_orders,
                max_active_orders=profile.max_active_orders,
                previously_served=criteria.requester_id in profile.served_requesters,
            ))
        found.sort(key=lambda c: (c.distance_m, c.executor_id))
        return found[:criteria.limit]

    async def check_availability(self, executor_id: str) -> AvailabilityResult:
        profile = self._executors.get(executor_id)
        if profile is None:
            return AvailabilityResult(available=False, reason="unknown_executor")
        if not profile.online:
            return AvailabilityResult(available=False, reason="offline")
        if profile.active_orders >= profile.max_active_orders:
            return AvailabilityResult(available=False, reason="busy")
        return AvailabilityResult(available=True)


# ============================================================
# RANKING
# ============================================================

class CandidateRanker:
    """Weighted candidate scoring."""

    def __init__(self, config: Optional[RankingConfig] = None):
        self._config = config or RankingConfig()

    def modifier(self, candidate: Candidate, preferred_ids: Iterable[str]) -> float:
        if candidate.executor_id in set(preferred_ids):
            return self._config.preferred_modifier
        if candidate.previously_served:
            return self._config.previous_modifier
        return 1.0

    def score(
        self,
        candidate: Candidate,
        radius_m: float,
        preferred_ids: Iterable[str] = (),
    ) -> float:
        cfg = self._config
        distance_score = max(0.0, 1.0 - candidate.distance_m / radius_m) if radius_m > 0 else 0.0
        rating_score = min(max(candidate.rating / 5.0, 0.0), 1.0)
        if candidate.max_active_orders > 0:
            availability_score = 1.0 - candidate.active_orders / candidate.max_active_orders
            availability_score = min(max(availability_score, 0.0), 1.0)
        else:
            availability_score = 0.0

        total_weight = cfg.distance_weight + cfg.rating_weight + cfg.availability_weight
        base = (
            cfg.distance_weight * distance_score
            + cfg.rating_weight * rating_score
            + cfg.availability_weight * availability_score
        ) / total_weight
        return round(base * self.modifier(candidate, preferred_ids), 6)

    def rank(
        self,
        candidates: Iterable[Candidate],
        radius_m: float,
        preferred_ids: Iterable[str] = (),
    ) -> List[Tuple[Candidate, float]]:
        """Candidates with scores, best first."""
        preferred = list(preferred_ids)
        scored = [(c, self.score(c, radius_m, preferred)) for c in candidates]
        scored.sort(key=lambda pair: (-pair[1], pair[0].distance_m, pair[0].executor_id))
        return scored
