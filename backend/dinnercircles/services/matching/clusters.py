from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Set

from ...errors import CorruptPartnerLink
from .models import Cluster, OptInRecord

logger = logging.getLogger('matching')


def build_clusters(records: Iterable[OptInRecord]) -> List[Cluster]:
    """Turn the opt-in pool into indivisible allocation units.

    Each unpartnered record becomes a single cluster; each mutually linked
    pair becomes one cluster of two, visited once. Any link that is not
    mirrored by the partner's record is fatal: the pool is never repaired here.
    """
    by_user: Dict[str, OptInRecord] = {}
    for record in records:
        if record.user_id in by_user:
            raise CorruptPartnerLink('Duplicate opt-in record in pool', user_id=record.user_id)
        by_user[record.user_id] = record

    clusters: List[Cluster] = []
    visited: Set[str] = set()
    for user_id in sorted(by_user):
        if user_id in visited:
            continue
        record = by_user[user_id]
        partner_id = record.partner_user_id
        if not partner_id:
            clusters.append(Cluster(members=(record,)))
            visited.add(user_id)
            continue
        partner = by_user.get(partner_id)
        if partner_id == user_id or partner is None or partner.partner_user_id != user_id:
            logger.error(
                'matching.clusters.corrupt_link event_id=%s user_id=%s partner_user_id=%s partner_link=%s',
                record.event_id, user_id, partner_id, partner.partner_user_id if partner else None,
            )
            raise CorruptPartnerLink(user_id=user_id, partner_user_id=partner_id)
        clusters.append(Cluster(members=(record, partner)))
        visited.update((user_id, partner_id))

    clusters.sort(key=lambda c: (-c.size, c.key))
    return clusters


def participant_count(clusters: Iterable[Cluster]) -> int:
    return sum(c.size for c in clusters)
