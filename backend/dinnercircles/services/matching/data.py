from __future__ import annotations

import datetime
from typing import Any, Dict, Iterable, List, Optional

from bson.errors import InvalidId
from bson.objectid import ObjectId

from ... import db as db_mod
from ...enums import CoursePreference, EventFormat, MatchingStatus, normalized_value
from ...errors import EventNotFound
from .config import circle_size as default_circle_size
from .config import minimum_pool_size as default_minimum_pool_size
from .models import normalize_tags


def now_utc() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def to_object_id(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError, ValueError):
        return None


async def get_event(event_id) -> Optional[dict]:
    oid = to_object_id(event_id)
    if oid is None:
        return None
    return await db_mod.db.events.find_one({'_id': oid})


async def require_event(event_id) -> dict:
    ev = await get_event(event_id)
    if not ev:
        raise EventNotFound(event_id=event_id)
    return ev


async def create_event(
    title: str,
    event_format: str = EventFormat.rotating.value,
    *,
    circle_size: Optional[int] = None,
    minimum_pool_size: Optional[int] = None,
    **extra: Any,
) -> dict:
    """Insert an event ready to collect opt-ins.

    Scheduling lives in the events service; this helper is what it (and the
    seeding script) calls so the matching fields always start consistent.
    """
    now = now_utc()
    doc = {
        'title': title,
        'format': EventFormat.normalize(event_format).value,
        'matching_status': MatchingStatus.open.value,
        'circle_size': int(circle_size or default_circle_size()),
        'minimum_pool_size': int(minimum_pool_size or default_minimum_pool_size()),
        'pool_revision': 0,
        'pool_lock': None,
        'pool_lock_at': None,
        'matching_trigger_id': None,
        'matching_triggered_at': None,
        'matching_completed_at': None,
        'created_at': now,
        'updated_at': now,
        **extra,
    }
    res = await db_mod.db.events.insert_one(doc)
    doc['_id'] = res.inserted_id
    return doc


async def get_user(user_id) -> Optional[dict]:
    oid = to_object_id(user_id)
    if oid is None:
        return None
    return await db_mod.db.users.find_one({'_id': oid})


async def find_user_by_ref(partner_id: Optional[str] = None, partner_email: Optional[str] = None) -> Optional[dict]:
    if partner_id:
        return await get_user(partner_id)
    if partner_email:
        return await db_mod.db.users.find_one({'email': str(partner_email).strip().lower()})
    return None


async def create_guest_user(email: str, invited_by: Optional[str] = None) -> dict:
    """Placeholder account for a partner invited by e-mail who has not signed up yet."""
    now = now_utc()
    doc = {
        'email': str(email).strip().lower(),
        'name': 'Guest',
        'roles': ['user'],
        'guest': True,
        'invited_by': invited_by,
        'created_at': now,
        'updated_at': now,
    }
    res = await db_mod.db.users.insert_one(doc)
    doc['_id'] = res.inserted_id
    return doc


def profile_attributes(user: dict) -> Dict[str, Any]:
    """Profile data copied into an opt-in record when it is created."""
    return {
        'dietary_restrictions': normalize_tags(user.get('dietary_restrictions')),
        'interests': normalize_tags(user.get('interests')),
        'course_preference': normalized_value(CoursePreference, user.get('course_preference')),
    }


async def load_user_snippets(user_ids: Iterable[str]) -> Dict[str, dict]:
    """Public profile snippets keyed by user id (name, interests, diet)."""
    oids = [oid for oid in (to_object_id(u) for u in set(user_ids)) if oid is not None]
    snippets: Dict[str, dict] = {}
    if not oids:
        return snippets
    async for user in db_mod.db.users.find({'_id': {'$in': oids}}):
        snippets[str(user['_id'])] = {
            'name': user.get('name') or user.get('first_name'),
            'interests': normalize_tags(user.get('interests')),
            'dietary_restrictions': normalize_tags(user.get('dietary_restrictions')),
        }
    return snippets


def serialize_circle(doc: dict, snippets: Optional[Dict[str, dict]] = None) -> dict:
    snippets = snippets or {}
    members: List[dict] = []
    for member in doc.get('members') or []:
        entry = {
            'user_id': member.get('user_id'),
            'role': member.get('role'),
            'partner_user_id': member.get('partner_user_id'),
            'hosting_available': bool(member.get('hosting_available')),
        }
        profile = snippets.get(str(member.get('user_id')))
        if profile is not None:
            entry['profile'] = profile
        members.append(entry)
    created = doc.get('created_at')
    return {
        'id': str(doc.get('_id')) if doc.get('_id') is not None else None,
        'event_id': doc.get('event_id'),
        'index': doc.get('index'),
        'name': doc.get('name'),
        'format': doc.get('format'),
        'overflow': bool(doc.get('overflow')),
        'status': doc.get('status'),
        'flags': list(doc.get('flags') or []),
        'warnings': list(doc.get('warnings') or []),
        'members': members,
        'created_at': created.isoformat() if isinstance(created, datetime.datetime) else created,
    }
