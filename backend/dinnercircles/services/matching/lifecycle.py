"""Matching lifecycle of an event: ``open -> matching -> closed``.

``trigger`` is the only way out of ``open``. The move to ``matching`` is a
single conditional update on the event document, so of two concurrent
triggers exactly one wins. Circles carry the winning trigger id; a failed
run deletes them and moves the event back to ``open``.
"""
from __future__ import annotations

import asyncio
import datetime
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from ... import db as db_mod
from ...enums import CircleStatus, EventFormat, MatchingStatus
from ...errors import AlreadyTriggered, CorruptPartnerLink, MatchingAborted, MatchingError, NoHostAvailable
from .allocation import allocate_circles
from .clusters import build_clusters
from .config import circle_size as default_circle_size
from .config import minimum_pool_size as default_minimum_pool_size
from .config import offload_allocation, stale_matching_minutes
from .data import load_user_snippets, now_utc, require_event, serialize_circle
from .models import PlannedCircle, RoleAssignment
from .pool import claim_open_event, list_pool, pool_count
from .roles import assign_roles, unassigned

logger = logging.getLogger('matching')


class _StateConflict(RuntimeError):
    """The event left `matching` under our feet (e.g. stale recovery reopened it)."""


@dataclass
class TriggerResult:
    event_id: str
    matching_status: str
    circles: List[dict] = field(default_factory=list)
    flagged: List[dict] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'event_id': self.event_id,
            'matching_status': self.matching_status,
            'circles': self.circles,
            'flagged': self.flagged,
            'partial': bool(self.flagged),
        }


def _circle_name(fmt: EventFormat, index: int) -> str:
    return f'Hosted Circle {index}' if fmt is EventFormat.hosted else f'Circle {index}'


def _circle_doc(event_key: str, fmt: EventFormat, circle: PlannedCircle, assignment: RoleAssignment,
                status: CircleStatus, flags: List[str], trigger_id: str, created_at: datetime.datetime) -> dict:
    return {
        'event_id': event_key,
        'format': fmt.value,
        'index': circle.index,
        'name': _circle_name(fmt, circle.index),
        'overflow': circle.overflow,
        'status': status.value,
        'flags': flags,
        'warnings': list(assignment.warnings),
        'members': [m.to_doc() for m in assignment.members],
        'trigger_id': trigger_id,
        'created_at': created_at,
    }


async def trigger(event_id, triggered_by: Optional[str] = None) -> TriggerResult:
    """Run matching once for an event and commit the circles.

    Raises AlreadyTriggered when the event is not `open` and PoolBusy when an
    opt-in change holds the pool for too long. InsufficientPool and
    CorruptPartnerLink propagate after rollback; any other failure is rolled
    back and surfaced as MatchingAborted. Circles without a possible host are
    committed unassigned and listed in ``flagged``.
    """
    event = await require_event(event_id)
    event_key = str(event['_id'])
    trigger_id = uuid.uuid4().hex
    # waits for an opt-in change in flight so the snapshot below sees all of it or none
    claimed = await claim_open_event(event, lambda now: {'$set': {
        'matching_status': MatchingStatus.matching.value,
        'matching_trigger_id': trigger_id,
        'matching_triggered_at': now,
        'matching_triggered_by': triggered_by,
        'pool_lock': None,
        'pool_lock_at': None,
        'updated_at': now,
    }})
    if claimed is None:
        current = await db_mod.db.events.find_one({'_id': event['_id']}) or event
        logger.info('matching.trigger.rejected event_id=%s status=%s', event_key, current.get('matching_status'))
        raise AlreadyTriggered(event_id=event_key, matching_status=current.get('matching_status'))

    logger.info('matching.trigger.started event_id=%s trigger_id=%s by=%s', event_key, trigger_id, triggered_by)
    start = time.perf_counter()
    try:
        result = await _run_pipeline(claimed, trigger_id)
    except CorruptPartnerLink:
        logger.error('matching.trigger.corrupt_pool event_id=%s trigger_id=%s', event_key, trigger_id)
        await _safe_rollback(claimed['_id'], trigger_id)
        raise
    except MatchingError as exc:
        logger.info('matching.trigger.aborted event_id=%s reason=%s', event_key, exc.code)
        await _safe_rollback(claimed['_id'], trigger_id)
        raise
    except Exception as exc:
        logger.exception('matching.trigger.failed event_id=%s trigger_id=%s', event_key, trigger_id)
        await _safe_rollback(claimed['_id'], trigger_id)
        raise MatchingAborted(event_id=event_key, cause=exc.__class__.__name__) from exc
    logger.info(
        'matching.trigger.closed event_id=%s circles=%d flagged=%d duration=%.3fs',
        event_key, len(result.circles), len(result.flagged), time.perf_counter() - start,
    )
    return result


async def _run_pipeline(event: dict, trigger_id: str) -> TriggerResult:
    event_key = str(event['_id'])
    fmt = EventFormat.normalize(event.get('format'))
    size = int(event.get('circle_size') or default_circle_size())
    minimum = int(event.get('minimum_pool_size') or default_minimum_pool_size())

    # The event is in `matching` now, so the pool can no longer change.
    records = await list_pool(event_key)
    clusters = build_clusters(records)
    if offload_allocation():
        planned = await asyncio.to_thread(allocate_circles, clusters, size, minimum)
    else:
        planned = allocate_circles(clusters, size, minimum)

    created_at = now_utc()
    docs: List[dict] = []
    for circle in planned:
        try:
            assignment = assign_roles(circle, fmt)
            status, flags = CircleStatus.assigned, []
        except NoHostAvailable:
            logger.warning('matching.trigger.no_host event_id=%s circle=%d members=%d',
                           event_key, circle.index, len(circle.members))
            assignment = unassigned(circle)
            status, flags = CircleStatus.needs_host, [NoHostAvailable.code]
        docs.append(_circle_doc(event_key, fmt, circle, assignment, status, flags, trigger_id, created_at))

    async with db_mod.transaction() as session:
        if docs:
            await db_mod.db.circles.insert_many(docs, session=session)
        closed = await db_mod.db.events.find_one_and_update(
            {'_id': event['_id'], 'matching_status': MatchingStatus.matching.value, 'matching_trigger_id': trigger_id},
            {'$set': {
                'matching_status': MatchingStatus.closed.value,
                'matching_completed_at': created_at,
                'updated_at': created_at,
            }},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        if closed is None:
            raise _StateConflict(f'event {event_key} is no longer matching under trigger {trigger_id}')
        if session is not None:
            await db_mod.db.opt_ins.delete_many({'event_id': event_key}, session=session)
    if session is None:
        await _clear_pool_after_close(event_key)

    circles = [serialize_circle(doc) for doc in docs]
    flagged = [
        {'circle_id': c['id'], 'index': c['index'], 'reason': NoHostAvailable.code}
        for c in circles if NoHostAvailable.code in c['flags']
    ]
    return TriggerResult(event_id=event_key, matching_status=MatchingStatus.closed.value, circles=circles, flagged=flagged)


async def _clear_pool_after_close(event_key: str) -> None:
    # The circles are committed at this point; a leftover pool is harmless
    # and is removed again by recover_stale_triggers.
    try:
        await db_mod.db.opt_ins.delete_many({'event_id': event_key})
    except PyMongoError:
        logger.warning('matching.trigger.pool_cleanup_failed event_id=%s', event_key, exc_info=True)


async def _safe_rollback(event_oid, trigger_id: Optional[str]) -> None:
    # the error that made us roll back is the one the caller must see;
    # recover_stale_triggers reopens the event later
    try:
        await _rollback(event_oid, trigger_id)
    except Exception:
        logger.exception('matching.trigger.rollback_failed event_id=%s trigger_id=%s', event_oid, trigger_id)


async def _rollback(event_oid, trigger_id: Optional[str]) -> bool:
    """Delete this trigger's circles and move the event back to `open`.

    Returns False when the event turned out to be closed by this very
    trigger (commit succeeded despite the error), in which case nothing is undone.
    """
    current = await db_mod.db.events.find_one({'_id': event_oid})
    if current and current.get('matching_status') == MatchingStatus.closed.value \
            and current.get('matching_trigger_id') == trigger_id:
        return False
    if trigger_id:
        await db_mod.db.circles.delete_many({'trigger_id': trigger_id})
    res = await db_mod.db.events.update_one(
        {'_id': event_oid, 'matching_status': MatchingStatus.matching.value, 'matching_trigger_id': trigger_id},
        {'$set': {
            'matching_status': MatchingStatus.open.value,
            'matching_trigger_id': None,
            'matching_triggered_at': None,
            'matching_triggered_by': None,
            'updated_at': now_utc(),
        }},
    )
    logger.info('matching.trigger.rolled_back event_id=%s trigger_id=%s reopened=%s',
                event_oid, trigger_id, bool(res.modified_count))
    return bool(res.modified_count)


async def recover_stale_triggers(max_age_minutes: Optional[int] = None, now: Optional[datetime.datetime] = None) -> List[str]:
    """Reopen events whose trigger died mid-run (process crash, cancellation).

    Also drops pool records left behind by events that did close.
    """
    now = now or now_utc()
    cutoff = now - datetime.timedelta(minutes=max_age_minutes or stale_matching_minutes())
    stale = [ev async for ev in db_mod.db.events.find({
        'matching_status': MatchingStatus.matching.value,
        'matching_triggered_at': {'$lt': cutoff},
    })]
    reopened: List[str] = []
    for ev in stale:
        if await _rollback(ev['_id'], ev.get('matching_trigger_id')):
            reopened.append(str(ev['_id']))
            logger.warning('matching.recover.reopened event_id=%s trigger_id=%s', ev['_id'], ev.get('matching_trigger_id'))

    closed_ids = [str(ev['_id']) async for ev in db_mod.db.events.find({'matching_status': MatchingStatus.closed.value})]
    if closed_ids:
        res = await db_mod.db.opt_ins.delete_many({'event_id': {'$in': closed_ids}})
        if res.deleted_count:
            logger.info('matching.recover.pool_purged records=%d', res.deleted_count)
    return reopened


async def get_results(event_id, with_profiles: bool = True) -> List[dict]:
    event = await require_event(event_id)
    cursor = db_mod.db.circles.find({'event_id': str(event['_id'])}).sort([('index', 1)])
    docs = [doc async for doc in cursor]
    snippets: Dict[str, dict] = {}
    if with_profiles:
        snippets = await load_user_snippets(m.get('user_id') for d in docs for m in d.get('members') or [])
    return [serialize_circle(doc, snippets) for doc in docs]


async def get_user_circle(event_id, user_id) -> Optional[dict]:
    user_key = str(user_id)
    async for doc in db_mod.db.circles.find({'event_id': str(event_id)}):
        if any(m.get('user_id') == user_key for m in doc.get('members') or []):
            snippets = await load_user_snippets(m.get('user_id') for m in doc.get('members') or [])
            return serialize_circle(doc, snippets)
    return None


async def matching_status(event_id, user_id, include_pool_count: bool = False) -> Dict[str, Any]:
    """Status card for one user: own opt-in and circle once closed.

    ``pool_count`` is only filled in for organisers (``include_pool_count``).
    """
    event = await require_event(event_id)
    event_key = str(event['_id'])
    status = event.get('matching_status') or MatchingStatus.open.value
    user_circle = None
    if status == MatchingStatus.closed.value:
        user_circle = await get_user_circle(event_key, user_id)
        is_opted_in = user_circle is not None
        count = None
        if include_pool_count:
            # the pool is gone once closed; report how many people were matched
            count = sum(len(c.get('members') or []) for c in await get_results(event_key, with_profiles=False))
    else:
        is_opted_in = await db_mod.db.opt_ins.count_documents({'event_id': event_key, 'user_id': str(user_id)}) > 0
        count = await pool_count(event_key) if include_pool_count else None

    def _iso(value):
        return value.isoformat() if isinstance(value, datetime.datetime) else value

    return {
        'event_id': event_key,
        'format': event.get('format'),
        'matching_status': status,
        'pool_count': count,
        'is_opted_in': is_opted_in,
        'user_circle': user_circle,
        'matching_triggered_at': _iso(event.get('matching_triggered_at')),
        'matching_completed_at': _iso(event.get('matching_completed_at')),
    }
