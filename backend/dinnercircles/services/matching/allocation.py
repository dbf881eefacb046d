from __future__ import annotations

import logging
import time
from typing import Iterable, List, Optional

from ...errors import InsufficientPool
from .clusters import participant_count
from .models import Cluster, PlannedCircle
from .scoring import DiversityMetric, get_metric

logger = logging.getLogger('matching')


def plan_capacities(total: int, circle_size: int) -> List[PlannedCircle]:
    """Full circles for every complete multiple of circle_size, plus one
    overflow circle holding the remainder (never padded)."""
    if circle_size < 1:
        raise ValueError('circle_size must be positive')
    full, remainder = divmod(total, circle_size)
    circles = [PlannedCircle(index=i + 1, capacity=circle_size) for i in range(full)]
    if remainder:
        circles.append(PlannedCircle(index=full + 1, capacity=remainder, overflow=True))
    return circles


def allocate_circles(
    clusters: Iterable[Cluster],
    circle_size: int,
    minimum_pool_size: int,
    metric: Optional[DiversityMetric] = None,
) -> List[PlannedCircle]:
    """Partition clusters into circles of circle_size.

    Pairs are placed first. Each cluster goes to the circle with room whose
    current members share the fewest profile tags with it (per ``metric``);
    ties go to the emptier circle, then to the lower index. Pure and
    deterministic for a given input order.
    """
    start = time.perf_counter()
    ordered = sorted(clusters, key=lambda c: (-c.size, c.key))
    total = participant_count(ordered)
    if total < minimum_pool_size:
        raise InsufficientPool(
            f'Need at least {minimum_pool_size} participants, only {total} opted in',
            pool_size=total,
            minimum_pool_size=minimum_pool_size,
        )
    score = metric or get_metric()
    circles = plan_capacities(total, circle_size)

    for cluster in ordered:
        candidates = [c for c in circles if c.free >= cluster.size]
        if not candidates:
            # Only reachable with odd circle sizes: no circle has two free seats left.
            extra = PlannedCircle(index=len(circles) + 1, capacity=cluster.size, overflow=True)
            logger.warning('matching.allocate.extra_overflow cluster=%s circle_size=%d', cluster.key, circle_size)
            circles.append(extra)
            candidates = [extra]
        tags = cluster.profile_tags()
        best = max(candidates, key=lambda c: (score(tags, c.profile_tags()), -c.fill, -c.index))
        best.clusters.append(cluster)

    result = [c for c in circles if c.clusters]
    for position, circle in enumerate(result, start=1):
        circle.index = position
        if circle.fill != circle_size:
            circle.overflow = True
        circle.capacity = circle.fill
    logger.info(
        'matching.allocate participants=%d clusters=%d circles=%d overflow=%d duration=%.3fs',
        total, len(ordered), len(result), sum(1 for c in result if c.overflow), time.perf_counter() - start,
    )
    return result
