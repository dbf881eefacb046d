"""Opt-in pool: who wants to be matched for an event, and with whom.

Every pool change first takes the event with a write filtered on
``matching_status: open`` and bumps ``pool_revision``. Inside a transaction
that write conflicts with a concurrent trigger's compare-and-swap. Without
transactions the same write also sets ``pool_lock``, which the trigger waits
on, so the trigger never snapshots a half-applied change and no change lands
after its snapshot. A lock older than MATCH_POOL_LOCK_LEASE_SECONDS belongs to
a crashed writer and is ignored.
"""
from __future__ import annotations

import asyncio
import datetime
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from ... import db as db_mod
from ...enums import MatchingStatus
from ...errors import AlreadyOptedIn, EventNotOpen, NotOptedIn, PartnerConflict, PartnerNotFound, PoolBusy
from .config import pool_lock_lease_seconds, pool_lock_wait_seconds
from .data import create_guest_user, find_user_by_ref, get_user, now_utc, profile_attributes, require_event
from .models import OptInRecord

logger = logging.getLogger('matching')

LOCK_POLL_SECONDS = 0.02


def _lock_free(now: datetime.datetime) -> dict:
    expired = now - datetime.timedelta(seconds=pool_lock_lease_seconds())
    return {'$or': [{'pool_lock': None}, {'pool_lock_at': {'$lt': expired}}]}


async def claim_open_event(event: dict, build_update: Callable[[datetime.datetime], dict]) -> Optional[dict]:
    """Apply ``build_update(now)`` to the event while it is open and its pool unlocked.

    Waits up to MATCH_POOL_LOCK_WAIT_SECONDS for another writer's lock, then
    raises PoolBusy. Returns the updated event, or None once the event is no
    longer open.
    """
    deadline = time.monotonic() + pool_lock_wait_seconds()
    while True:
        now = now_utc()
        claimed = await db_mod.db.events.find_one_and_update(
            {'_id': event['_id'], 'matching_status': MatchingStatus.open.value, **_lock_free(now)},
            build_update(now),
            return_document=ReturnDocument.AFTER,
        )
        if claimed is not None:
            return claimed
        current = await db_mod.db.events.find_one({'_id': event['_id']})
        if current is None or current.get('matching_status') != MatchingStatus.open.value:
            return None
        if time.monotonic() >= deadline:
            logger.warning('matching.pool.busy event_id=%s', event['_id'])
            raise PoolBusy(event_id=event['_id'])
        await asyncio.sleep(LOCK_POLL_SECONDS)


async def _claim_in_transaction(event: dict, session) -> None:
    guard = await db_mod.db.events.find_one_and_update(
        {'_id': event['_id'], 'matching_status': MatchingStatus.open.value},
        {'$inc': {'pool_revision': 1}, '$set': {'updated_at': now_utc()}},
        return_document=ReturnDocument.AFTER,
        session=session,
    )
    if guard is None:
        current = await db_mod.db.events.find_one({'_id': event['_id']}, session=session)
        raise EventNotOpen(event_id=event['_id'], matching_status=(current or event).get('matching_status'))


@asynccontextmanager
async def pool_write(event: dict):
    """Hold an open event's pool for one change. Yields the session, or None."""
    async with db_mod.transaction() as session:
        if session is not None:
            await _claim_in_transaction(event, session)
            yield session
            return

        token = uuid.uuid4().hex
        locked = await claim_open_event(event, lambda now: {
            '$set': {'pool_lock': token, 'pool_lock_at': now, 'updated_at': now},
            '$inc': {'pool_revision': 1},
        })
        if locked is None:
            current = await db_mod.db.events.find_one({'_id': event['_id']}) or event
            raise EventNotOpen(event_id=event['_id'], matching_status=current.get('matching_status'))
        try:
            yield None
        finally:
            released = await db_mod.db.events.update_one(
                {'_id': event['_id'], 'pool_lock': token},
                {'$set': {'pool_lock': None, 'pool_lock_at': None}},
            )
            if not released.modified_count:
                # lease expired and someone else took over
                logger.error('matching.pool.lock_lost event_id=%s', event['_id'])


def _split_partner_ref(partner_ref: Optional[str]) -> Dict[str, Optional[str]]:
    if not partner_ref:
        return {'partner_id': None, 'partner_email': None}
    ref = str(partner_ref).strip()
    if '@' in ref:
        return {'partner_id': None, 'partner_email': ref}
    return {'partner_id': ref, 'partner_email': None}


async def _resolve_partner(partner_ref: str, user_key: str) -> dict:
    ref = _split_partner_ref(partner_ref)
    partner_user = await find_user_by_ref(**ref)
    if partner_user is None:
        if not ref['partner_email']:
            raise PartnerNotFound(partner_ref=partner_ref)
        partner_user = await create_guest_user(ref['partner_email'], invited_by=user_key)
        logger.info('matching.optin.guest_partner user_id=%s invited_by=%s', partner_user['_id'], user_key)
    if str(partner_user['_id']) == user_key:
        raise PartnerConflict('You cannot link yourself as your own partner')
    return partner_user


async def opt_in(
    event_id,
    user_id,
    attrs: Optional[Dict[str, Any]] = None,
    partner_ref: Optional[str] = None,
) -> OptInRecord:
    """Add a user (and optionally their partner) to an event's pool.

    attrs: ``hosting_available`` (bool) and ``match_address`` (str).
    partner_ref: partner's user id or e-mail. An e-mail without an account
    gets a guest account; an unknown id is rejected. An opted-in partner
    without a partner gets linked back; a partner not yet in the pool gets a
    record of their own (not hosting, same address).
    """
    attrs = attrs or {}
    event = await require_event(event_id)
    event_key = str(event['_id'])
    user_key = str(user_id)

    partner_user = await _resolve_partner(partner_ref, user_key) if partner_ref else None
    partner_key = str(partner_user['_id']) if partner_user else None

    user = await get_user(user_key) or {}
    now = now_utc()
    own_doc = {
        'event_id': event_key,
        'user_id': user_key,
        'partner_user_id': partner_key,
        'hosting_available': bool(attrs.get('hosting_available', False)),
        'match_address': attrs.get('match_address'),
        **profile_attributes(user),
        'created_at': now,
    }

    async with pool_write(event) as session:
        existing = await db_mod.db.opt_ins.find_one({'event_id': event_key, 'user_id': user_key}, session=session)
        if existing:
            raise AlreadyOptedIn(event_id=event_key)
        try:
            await db_mod.db.opt_ins.insert_one(own_doc, session=session)
        except DuplicateKeyError as exc:
            raise AlreadyOptedIn(event_id=event_key) from exc

        if partner_user is not None:
            try:
                await _link_partner(event_key, user_key, partner_user, own_doc, session=session)
            except (PartnerConflict, DuplicateKeyError) as exc:
                # undo our own record so the pool never holds a one-sided link
                await db_mod.db.opt_ins.delete_one({'_id': own_doc['_id']}, session=session)
                if isinstance(exc, PartnerConflict):
                    raise
                raise PartnerConflict(partner_user_id=partner_key) from exc

    logger.info(
        'matching.optin event_id=%s user_id=%s partner_user_id=%s hosting=%s',
        event_key, user_key, partner_key, own_doc['hosting_available'],
    )
    return OptInRecord.from_doc(own_doc)


async def _link_partner(event_key: str, user_key: str, partner_user: dict, own_doc: dict, session=None) -> None:
    partner_key = str(partner_user['_id'])
    partner_doc = await db_mod.db.opt_ins.find_one({'event_id': event_key, 'user_id': partner_key}, session=session)
    if partner_doc is None:
        await db_mod.db.opt_ins.insert_one({
            'event_id': event_key,
            'user_id': partner_key,
            'partner_user_id': user_key,
            'hosting_available': False,
            'match_address': own_doc.get('match_address'),
            **profile_attributes(partner_user),
            'created_at': own_doc['created_at'],
        }, session=session)
        return
    res = await db_mod.db.opt_ins.update_one(
        {'_id': partner_doc['_id'], 'partner_user_id': {'$in': [None, user_key]}},
        {'$set': {'partner_user_id': user_key}},
        session=session,
    )
    if res.matched_count == 0:
        raise PartnerConflict(partner_user_id=partner_key)


async def opt_out(event_id, user_id) -> List[str]:
    """Remove the user's record and their partner's. Returns removed user ids."""
    event = await require_event(event_id)
    event_key = str(event['_id'])
    user_key = str(user_id)
    removed: List[str] = []
    async with pool_write(event) as session:
        record = await db_mod.db.opt_ins.find_one({'event_id': event_key, 'user_id': user_key}, session=session)
        if not record:
            raise NotOptedIn(event_id=event_key)
        await db_mod.db.opt_ins.delete_one({'_id': record['_id']}, session=session)
        removed.append(user_key)
        partner_key = record.get('partner_user_id')
        if partner_key:
            res = await db_mod.db.opt_ins.delete_one(
                {'event_id': event_key, 'user_id': partner_key, 'partner_user_id': user_key},
                session=session,
            )
            if res.deleted_count:
                removed.append(partner_key)
    logger.info('matching.optout event_id=%s removed=%s', event_key, ','.join(removed))
    return removed


async def list_pool(event_id, session=None) -> List[OptInRecord]:
    """Pool records sorted by user id, so a trigger sees a reproducible order."""
    cursor = db_mod.db.opt_ins.find({'event_id': str(event_id)}, session=session).sort([('user_id', 1)])
    records = [OptInRecord.from_doc(doc) async for doc in cursor]
    records.sort(key=lambda r: r.user_id)
    return records


async def pool_count(event_id) -> int:
    return await db_mod.db.opt_ins.count_documents({'event_id': str(event_id)})


async def get_record(event_id, user_id) -> Optional[OptInRecord]:
    doc = await db_mod.db.opt_ins.find_one({'event_id': str(event_id), 'user_id': str(user_id)})
    return OptInRecord.from_doc(doc) if doc else None
