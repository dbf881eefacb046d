"""Opt-in pool service: partner linking, cascading opt-out, status guard, pool lock."""
import datetime

import pytest
from bson.objectid import ObjectId

from conftest import create_user
from dinnercircles import db as db_mod
from dinnercircles.errors import (
    AlreadyOptedIn,
    EventNotFound,
    EventNotOpen,
    NotOptedIn,
    PartnerConflict,
    PartnerNotFound,
    PoolBusy,
)
from dinnercircles.services import matching as svc
from dinnercircles.services.matching import pool as pool_mod


@pytest.fixture
async def event():
    return await svc.create_event('Autumn Circles')


async def _records(event):
    return {r.user_id: r for r in await svc.list_pool(event['_id'])}


@pytest.mark.asyncio
async def test_opt_in_copies_profile(event):
    user = await create_user('ann@example.com', interests=['Jazz', 'hiking'], dietary_restrictions='vegan',
                             course_preference='appetizer')
    record = await svc.opt_in(event['_id'], user['_id'], {'hosting_available': True, 'match_address': 'Main St 1'})
    assert record.user_id == str(user['_id'])
    assert record.event_id == str(event['_id'])
    assert record.hosting_available is True
    assert record.interests == ('hiking', 'jazz')
    assert record.dietary_restrictions == ('vegan',)
    assert record.course_preference == 'starter'
    assert record.partner_user_id is None
    assert await svc.pool_count(event['_id']) == 1


@pytest.mark.asyncio
async def test_opt_in_twice_is_rejected(event):
    user = await create_user('ann@example.com')
    await svc.opt_in(event['_id'], user['_id'])
    with pytest.raises(AlreadyOptedIn):
        await svc.opt_in(event['_id'], user['_id'])
    assert await svc.pool_count(event['_id']) == 1


@pytest.mark.asyncio
async def test_opt_in_unknown_event():
    user = await create_user('ann@example.com')
    with pytest.raises(EventNotFound):
        await svc.opt_in(ObjectId(), user['_id'])
    with pytest.raises(EventNotFound):
        await svc.opt_in('not-an-id', user['_id'])


@pytest.mark.asyncio
async def test_partner_by_email_gets_linked_record(event):
    ann = await create_user('ann@example.com')
    bob = await create_user('bob@example.com', interests=['chess'])
    await svc.opt_in(event['_id'], ann['_id'], {'hosting_available': True, 'match_address': 'Elm 2'},
                     partner_ref='BOB@example.com')
    records = await _records(event)
    a, b = records[str(ann['_id'])], records[str(bob['_id'])]
    assert a.partner_user_id == str(bob['_id'])
    assert b.partner_user_id == str(ann['_id'])
    assert b.hosting_available is False
    assert b.match_address == 'Elm 2'
    assert b.interests == ('chess',)


@pytest.mark.asyncio
async def test_partner_already_in_pool_gets_linked(event):
    ann = await create_user('ann@example.com')
    bob = await create_user('bob@example.com')
    await svc.opt_in(event['_id'], bob['_id'], {'hosting_available': True})
    await svc.opt_in(event['_id'], ann['_id'], partner_ref=str(bob['_id']))
    records = await _records(event)
    assert records[str(bob['_id'])].partner_user_id == str(ann['_id'])
    # the partner keeps their own hosting answer
    assert records[str(bob['_id'])].hosting_available is True
    assert len(records) == 2


@pytest.mark.asyncio
async def test_partner_linked_elsewhere_conflicts(event):
    ann = await create_user('ann@example.com')
    bob = await create_user('bob@example.com')
    cat = await create_user('cat@example.com')
    await svc.opt_in(event['_id'], bob['_id'], partner_ref=str(cat['_id']))
    with pytest.raises(PartnerConflict):
        await svc.opt_in(event['_id'], ann['_id'], partner_ref=str(bob['_id']))
    records = await _records(event)
    assert str(ann['_id']) not in records
    assert records[str(bob['_id'])].partner_user_id == str(cat['_id'])


@pytest.mark.asyncio
async def test_unknown_partner_id(event):
    ann = await create_user('ann@example.com')
    with pytest.raises(PartnerNotFound):
        await svc.opt_in(event['_id'], ann['_id'], partner_ref=str(ObjectId()))
    assert await svc.pool_count(event['_id']) == 0


@pytest.mark.asyncio
async def test_partner_email_without_account_gets_guest(event):
    ann = await create_user('ann@example.com', interests=['jazz'])
    record = await svc.opt_in(event['_id'], ann['_id'], {'match_address': 'Elm 2'}, partner_ref='Ghost@example.com')

    guest = await db_mod.db.users.find_one({'email': 'ghost@example.com'})
    assert guest['guest'] is True
    assert guest['name'] == 'Guest'
    assert guest['invited_by'] == str(ann['_id'])
    assert record.partner_user_id == str(guest['_id'])

    records = await _records(event)
    assert records[str(guest['_id'])].partner_user_id == str(ann['_id'])
    assert records[str(guest['_id'])].match_address == 'Elm 2'

    # a second invite finds the same guest instead of creating another
    await svc.opt_out(event['_id'], ann['_id'])
    await svc.opt_in(event['_id'], ann['_id'], partner_ref='ghost@example.com')
    assert await db_mod.db.users.count_documents({'email': 'ghost@example.com'}) == 1


@pytest.mark.asyncio
async def test_self_as_partner_conflicts(event):
    ann = await create_user('ann@example.com')
    with pytest.raises(PartnerConflict):
        await svc.opt_in(event['_id'], ann['_id'], partner_ref='ann@example.com')
    assert await svc.pool_count(event['_id']) == 0


@pytest.mark.asyncio
async def test_opt_out_removes_partner_too(event):
    ann = await create_user('ann@example.com')
    bob = await create_user('bob@example.com')
    cat = await create_user('cat@example.com')
    await svc.opt_in(event['_id'], ann['_id'], partner_ref='bob@example.com')
    await svc.opt_in(event['_id'], cat['_id'])
    removed = await svc.opt_out(event['_id'], bob['_id'])
    assert sorted(removed) == sorted([str(ann['_id']), str(bob['_id'])])
    assert list(await _records(event)) == [str(cat['_id'])]
    with pytest.raises(NotOptedIn):
        await svc.opt_out(event['_id'], bob['_id'])


@pytest.mark.asyncio
async def test_opt_out_without_record(event):
    ann = await create_user('ann@example.com')
    with pytest.raises(NotOptedIn):
        await svc.opt_out(event['_id'], ann['_id'])


@pytest.mark.asyncio
async def test_pool_is_frozen_once_not_open(event):
    ann = await create_user('ann@example.com')
    bob = await create_user('bob@example.com')
    await svc.opt_in(event['_id'], ann['_id'])
    await db_mod.db.events.update_one({'_id': event['_id']}, {'$set': {'matching_status': 'matching'}})
    with pytest.raises(EventNotOpen):
        await svc.opt_in(event['_id'], bob['_id'])
    with pytest.raises(EventNotOpen):
        await svc.opt_out(event['_id'], ann['_id'])
    assert await svc.pool_count(event['_id']) == 1


@pytest.mark.asyncio
async def test_pool_writes_bump_revision(event):
    ann = await create_user('ann@example.com')
    await svc.opt_in(event['_id'], ann['_id'])
    await svc.opt_out(event['_id'], ann['_id'])
    stored = await svc.get_event(event['_id'])
    assert stored['pool_revision'] == 2
    assert stored['pool_lock'] is None
    assert await svc.get_record(event['_id'], ann['_id']) is None


async def _hold_pool_lock(event, age_seconds=0):
    held_at = datetime.datetime.now(datetime.timezone.utc) - datetime.timedelta(seconds=age_seconds)
    await db_mod.db.events.update_one({'_id': event['_id']}, {'$set': {'pool_lock': 'other', 'pool_lock_at': held_at}})


@pytest.mark.asyncio
async def test_held_pool_lock_makes_writers_wait_then_give_up(event, monkeypatch):
    ann = await create_user('ann@example.com')
    await svc.opt_in(event['_id'], ann['_id'])
    await _hold_pool_lock(event)
    monkeypatch.setattr(pool_mod, 'pool_lock_wait_seconds', lambda: 0.05)

    bob = await create_user('bob@example.com')
    with pytest.raises(PoolBusy):
        await svc.opt_in(event['_id'], bob['_id'])
    with pytest.raises(PoolBusy):
        await svc.opt_out(event['_id'], ann['_id'])
    assert list(await _records(event)) == [str(ann['_id'])]
    # the other holder still owns the lock
    assert (await svc.get_event(event['_id']))['pool_lock'] == 'other'


@pytest.mark.asyncio
async def test_expired_pool_lock_is_taken_over(event):
    await _hold_pool_lock(event, age_seconds=3600)
    ann = await create_user('ann@example.com')
    await svc.opt_in(event['_id'], ann['_id'])
    stored = await svc.get_event(event['_id'])
    assert stored['pool_lock'] is None
    assert stored['pool_lock_at'] is None
    assert await svc.pool_count(event['_id']) == 1


@pytest.mark.asyncio
async def test_pool_lock_released_when_write_fails(event):
    ann = await create_user('ann@example.com')
    with pytest.raises(NotOptedIn):
        await svc.opt_out(event['_id'], ann['_id'])
    await svc.opt_in(event['_id'], ann['_id'])
    with pytest.raises(AlreadyOptedIn):
        await svc.opt_in(event['_id'], ann['_id'])
    assert (await svc.get_event(event['_id']))['pool_lock'] is None
