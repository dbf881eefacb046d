"""Diversity metrics used by the allocator to pick a circle for a cluster.

A metric receives the profile tags of the incoming cluster and of the
circle's current members and returns a score; higher means more dissimilar,
so a better fit. Metrics are looked up by name from ``METRICS``.
"""
from __future__ import annotations

from typing import Callable, Dict, FrozenSet, Optional, Protocol

from .config import diversity_metric_name


class DiversityMetric(Protocol):
    def __call__(self, cluster_tags: FrozenSet[str], circle_tags: FrozenSet[str]) -> float: ...


def jaccard_distance(cluster_tags: FrozenSet[str], circle_tags: FrozenSet[str]) -> float:
    union = cluster_tags | circle_tags
    if not union:
        return 1.0
    return 1.0 - len(cluster_tags & circle_tags) / len(union)


def fewest_shared_tags(cluster_tags: FrozenSet[str], circle_tags: FrozenSet[str]) -> float:
    return -float(len(cluster_tags & circle_tags))


METRICS: Dict[str, Callable[[FrozenSet[str], FrozenSet[str]], float]] = {
    'jaccard': jaccard_distance,
    'shared_tags': fewest_shared_tags,
}


def get_metric(name: Optional[str] = None) -> DiversityMetric:
    key = (name or diversity_metric_name()).strip().lower()
    try:
        return METRICS[key]
    except KeyError as exc:
        raise ValueError(f"unknown diversity metric '{key}', expected one of: {', '.join(sorted(METRICS))}") from exc
