"""In-memory types shared by the pool, the allocator and the role assigner."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple


def normalize_tags(values: Iterable[object] | str | None) -> List[str]:
    """Lower-case, strip and de-duplicate free-form tags (interests, diets).

    A plain string is split on commas so legacy profiles storing
    ``"vegetarian, nut allergy"`` still produce separate tags.
    """
    if values is None:
        return []
    if isinstance(values, str):
        values = values.split(',')
    normalized = set()
    for value in values:
        if value is None:
            continue
        item = str(value).strip().lower()
        if item:
            normalized.add(item)
    return sorted(normalized)


@dataclass(frozen=True)
class OptInRecord:
    event_id: str
    user_id: str
    partner_user_id: Optional[str] = None
    hosting_available: bool = False
    dietary_restrictions: Tuple[str, ...] = ()
    interests: Tuple[str, ...] = ()
    match_address: Optional[str] = None
    course_preference: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> 'OptInRecord':
        partner = doc.get('partner_user_id')
        return cls(
            event_id=str(doc['event_id']),
            user_id=str(doc['user_id']),
            partner_user_id=str(partner) if partner else None,
            hosting_available=bool(doc.get('hosting_available')),
            dietary_restrictions=tuple(normalize_tags(doc.get('dietary_restrictions'))),
            interests=tuple(normalize_tags(doc.get('interests'))),
            match_address=doc.get('match_address'),
            course_preference=doc.get('course_preference'),
            created_at=doc.get('created_at'),
        )

    def to_doc(self) -> Dict[str, Any]:
        return {
            'event_id': self.event_id,
            'user_id': self.user_id,
            'partner_user_id': self.partner_user_id,
            'hosting_available': self.hosting_available,
            'dietary_restrictions': list(self.dietary_restrictions),
            'interests': list(self.interests),
            'match_address': self.match_address,
            'course_preference': self.course_preference,
            'created_at': self.created_at,
        }

    def profile_tags(self) -> frozenset:
        """Tags compared by the diversity metric: interests plus `diet:` tags."""
        return frozenset(self.interests) | frozenset(f'diet:{d}' for d in self.dietary_restrictions)


@dataclass(frozen=True)
class Cluster:
    """One person, or two partners, placed together as a single unit."""
    members: Tuple[OptInRecord, ...]

    @property
    def size(self) -> int:
        return len(self.members)

    @property
    def key(self) -> str:
        return min(m.user_id for m in self.members)

    @property
    def user_ids(self) -> Tuple[str, ...]:
        return tuple(m.user_id for m in self.members)

    @property
    def is_pair(self) -> bool:
        return len(self.members) == 2

    def profile_tags(self) -> frozenset:
        tags: frozenset = frozenset()
        for member in self.members:
            tags = tags | member.profile_tags()
        return tags


@dataclass
class PlannedCircle:
    """A circle under construction (or finalized) before it is persisted."""
    index: int
    capacity: int
    overflow: bool = False
    clusters: List[Cluster] = field(default_factory=list)

    @property
    def fill(self) -> int:
        return sum(c.size for c in self.clusters)

    @property
    def free(self) -> int:
        return self.capacity - self.fill

    @property
    def members(self) -> List[OptInRecord]:
        return [m for c in self.clusters for m in c.members]

    def profile_tags(self) -> frozenset:
        tags: frozenset = frozenset()
        for cluster in self.clusters:
            tags = tags | cluster.profile_tags()
        return tags


@dataclass(frozen=True)
class MemberRole:
    user_id: str
    role: Optional[str]
    partner_user_id: Optional[str] = None
    hosting_available: bool = False
    course_preference: Optional[str] = None

    def to_doc(self) -> Dict[str, Any]:
        return {
            'user_id': self.user_id,
            'role': self.role,
            'partner_user_id': self.partner_user_id,
            'hosting_available': self.hosting_available,
            'course_preference': self.course_preference,
        }


@dataclass
class RoleAssignment:
    members: List[MemberRole]
    warnings: List[str] = field(default_factory=list)

    def role_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for member in self.members:
            if member.role is None:
                continue
            counts[member.role] = counts.get(member.role, 0) + 1
        return counts
