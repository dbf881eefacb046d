from fastapi import APIRouter, Depends

from ..auth import get_current_user, is_admin, require_admin
from ..schemas import OptInOut, OptInRequest, OptOutOut, PoolOut, ResultsOut, StatusOut, TriggerOut
from ..services import matching as matching_service

######### Router / Endpoints #########

# Mounted under /matching in main.py
router = APIRouter()


@router.post('/{event_id}/opt-in', response_model=OptInOut)
async def opt_in(event_id: str, payload: OptInRequest, current_user=Depends(get_current_user)):
    """Join the event's matching pool, optionally together with a partner."""
    record = await matching_service.opt_in(
        event_id,
        str(current_user['_id']),
        {'hosting_available': payload.hosting_available, 'match_address': payload.match_address},
        payload.partner_ref,
    )
    return OptInOut(
        event_id=record.event_id,
        user_id=record.user_id,
        partner_user_id=record.partner_user_id,
        hosting_available=record.hosting_available,
        match_address=record.match_address,
        interests=list(record.interests),
        dietary_restrictions=list(record.dietary_restrictions),
    )


@router.post('/{event_id}/opt-out', response_model=OptOutOut)
async def opt_out(event_id: str, current_user=Depends(get_current_user)):
    """Leave the pool; a linked partner leaves with you."""
    removed = await matching_service.opt_out(event_id, str(current_user['_id']))
    return OptOutOut(message='Successfully opted out of matching', removed_user_ids=removed)


@router.get('/{event_id}/status', response_model=StatusOut)
async def status(event_id: str, current_user=Depends(get_current_user)):
    """Own opt-in state and circle. Pool size is shown to admins only."""
    return await matching_service.matching_status(
        event_id, str(current_user['_id']), include_pool_count=is_admin(current_user),
    )


@router.post('/{event_id}/trigger', response_model=TriggerOut)
async def trigger(event_id: str, current_admin=Depends(require_admin)):
    """Close opt-ins and commit circles. Runs at most once per event.

    A non-empty ``flagged`` list means some circles have nobody able to host
    and need manual resolution; the rest of the event is committed.
    """
    result = await matching_service.trigger(event_id, triggered_by=str(current_admin.get('_id')))
    return result.to_dict()


@router.get('/{event_id}/results', response_model=ResultsOut)
async def results(event_id: str, _=Depends(get_current_user)):
    event = await matching_service.require_event(event_id)
    circles = await matching_service.get_results(event_id)
    return {'event_id': str(event['_id']), 'matching_status': event.get('matching_status'), 'circles': circles}


@router.get('/{event_id}/pool', response_model=PoolOut)
async def pool(event_id: str, _=Depends(require_admin)):
    event = await matching_service.require_event(event_id)
    records = await matching_service.list_pool(str(event['_id']))
    return {'event_id': str(event['_id']), 'pool': [r.to_doc() for r in records]}
