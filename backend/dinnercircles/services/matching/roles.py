from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence

from ...enums import CircleRole, CoursePreference, EventFormat, normalized_value
from ...errors import NoHostAvailable
from .config import courses as configured_courses
from .models import Cluster, MemberRole, PlannedCircle, RoleAssignment

logger = logging.getLogger('matching')


def _member_role(record, role: Optional[str]) -> MemberRole:
    return MemberRole(
        user_id=record.user_id,
        role=role,
        partner_user_id=record.partner_user_id,
        hosting_available=record.hosting_available,
        course_preference=record.course_preference,
    )


def _cluster_preference(cluster: Cluster) -> Optional[str]:
    for member in sorted(cluster.members, key=lambda m: m.user_id):
        pref = normalized_value(CoursePreference, member.course_preference)
        if pref:
            return pref
    return None


def assign_rotating(circle: PlannedCircle, courses: Optional[Sequence[str]] = None) -> RoleAssignment:
    """Give every cluster one course, keeping course head counts balanced.

    Partners share a course. Units are visited pairs first, then by user id;
    each takes the least-staffed course. When several courses are tied the
    unit's course preference decides if it is among them, otherwise cycle
    order does. Preference is advisory: it never unbalances the circle.
    """
    cycle = list(courses or configured_courses())
    counts: Dict[str, int] = {course: 0 for course in cycle}
    roles: Dict[str, str] = {}
    for cluster in sorted(circle.clusters, key=lambda c: (-c.size, c.key)):
        lowest = min(counts.values())
        tied = [course for course in cycle if counts[course] == lowest]
        preference = _cluster_preference(cluster)
        course = preference if preference in tied else tied[0]
        counts[course] += cluster.size
        for member in cluster.members:
            roles[member.user_id] = course

    warnings: List[str] = []
    # a pair cooks at whichever home has a kitchen
    if any(not any(m.hosting_available for m in c.members) for c in circle.clusters):
        warnings.append('member_without_kitchen')
    members = [_member_role(m, roles[m.user_id]) for m in sorted(circle.members, key=lambda m: m.user_id)]
    return RoleAssignment(members=members, warnings=warnings)


def assign_hosted(circle: PlannedCircle) -> RoleAssignment:
    """Pick exactly one host among members able to host (lowest user id wins)."""
    candidates = sorted(m.user_id for m in circle.members if m.hosting_available)
    if not candidates:
        raise NoHostAvailable(circle_index=circle.index, members=len(circle.members))
    host_id = candidates[0]
    members = [
        _member_role(m, CircleRole.host.value if m.user_id == host_id else CircleRole.participant.value)
        for m in sorted(circle.members, key=lambda m: m.user_id)
    ]
    return RoleAssignment(members=members)


def assign_roles(circle: PlannedCircle, event_format, courses: Optional[Sequence[str]] = None) -> RoleAssignment:
    fmt = EventFormat.normalize(event_format)
    if fmt is EventFormat.hosted:
        assignment = assign_hosted(circle)
    else:
        assignment = assign_rotating(circle, courses)
    logger.debug('matching.roles circle=%d format=%s counts=%s', circle.index, fmt.value, assignment.role_counts())
    return assignment


def unassigned(circle: PlannedCircle) -> RoleAssignment:
    """Membership without roles, for circles awaiting manual resolution."""
    return RoleAssignment(members=[_member_role(m, None) for m in sorted(circle.members, key=lambda m: m.user_id)])
