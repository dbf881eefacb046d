"""Error taxonomy of the opt-in pool and matching engine.

Every error carries a stable ``code`` (returned to API clients in the
``error`` field) and the HTTP status the API layer maps it to.
"""
from __future__ import annotations

from typing import Any, Optional


class MatchingError(Exception):
    code = 'matching_error'
    status_code = 400
    default_detail = 'Matching request failed'

    def __init__(self, detail: Optional[str] = None, **context: Any) -> None:
        self.detail = detail or self.default_detail
        self.context = context
        super().__init__(self.detail)

    def to_dict(self) -> dict:
        body = {'error': self.code, 'detail': self.detail}
        if self.context:
            body['context'] = {k: (str(v) if v is not None else None) for k, v in self.context.items()}
        return body


class EventNotFound(MatchingError):
    code = 'event_not_found'
    status_code = 404
    default_detail = 'Event not found'


class PartnerNotFound(MatchingError):
    code = 'partner_not_found'
    status_code = 404
    default_detail = 'No user with that partner id'


class AlreadyOptedIn(MatchingError):
    code = 'already_opted_in'
    status_code = 409
    default_detail = 'Already opted in for this event'


class NotOptedIn(MatchingError):
    code = 'not_opted_in'
    status_code = 409
    default_detail = 'Not opted in for this event'


class EventNotOpen(MatchingError):
    code = 'event_not_open'
    status_code = 409
    default_detail = 'Event is not open for matching'


class PartnerConflict(MatchingError):
    code = 'partner_conflict'
    status_code = 409
    default_detail = 'Partner is already linked to someone else for this event'


class PoolBusy(MatchingError):
    """Another opt-in change held the pool lock past MATCH_POOL_LOCK_WAIT_SECONDS."""
    code = 'pool_busy'
    status_code = 409
    default_detail = 'The opt-in pool is being updated, retry shortly'


class InsufficientPool(MatchingError):
    code = 'insufficient_pool'
    status_code = 422
    default_detail = 'Not enough participants opted in to form circles'


class AlreadyTriggered(MatchingError):
    code = 'already_triggered'
    status_code = 409
    default_detail = 'Matching has already been triggered for this event'


class CorruptPartnerLink(MatchingError):
    """Partner links in the pool are not symmetric. Never repaired automatically."""
    code = 'corrupt_partner_link'
    status_code = 500
    default_detail = 'Opt-in pool contains an inconsistent partner link'


class NoHostAvailable(MatchingError):
    """Raised per circle; the trigger flags the circle instead of aborting."""
    code = 'no_host_available'
    status_code = 409
    default_detail = 'No member of the circle can host'


class MatchingAborted(MatchingError):
    code = 'matching_aborted'
    status_code = 500
    default_detail = 'Matching failed and was rolled back; the event is open again'


__all__ = [
    'MatchingError',
    'EventNotFound',
    'PartnerNotFound',
    'AlreadyOptedIn',
    'NotOptedIn',
    'EventNotOpen',
    'PartnerConflict',
    'PoolBusy',
    'InsufficientPool',
    'AlreadyTriggered',
    'CorruptPartnerLink',
    'NoHostAvailable',
    'MatchingAborted',
]
