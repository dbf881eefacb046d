from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, EmailStr, field_validator, model_validator

from .enums import EventFormat, MatchingStatus


class OptInRequest(BaseModel):
    partner_id: Optional[str] = None
    partner_email: Optional[EmailStr] = None
    hosting_available: bool = False
    match_address: Optional[str] = None

    @field_validator('match_address')
    @classmethod
    def _strip_address(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None

    @model_validator(mode='after')
    def _one_partner_ref(self) -> 'OptInRequest':
        if self.partner_id and self.partner_email:
            raise ValueError('at most one of partner_id or partner_email allowed')
        return self

    @property
    def partner_ref(self) -> Optional[str]:
        if self.partner_id:
            return self.partner_id
        if self.partner_email:
            return str(self.partner_email).lower()
        return None


class OptInOut(BaseModel):
    event_id: str
    user_id: str
    partner_user_id: Optional[str] = None
    hosting_available: bool
    match_address: Optional[str] = None
    interests: List[str] = []
    dietary_restrictions: List[str] = []


class OptOutOut(BaseModel):
    message: str
    removed_user_ids: List[str]


class MemberProfile(BaseModel):
    name: Optional[str] = None
    interests: List[str] = []
    dietary_restrictions: List[str] = []


class CircleMemberOut(BaseModel):
    user_id: str
    role: Optional[str] = None
    partner_user_id: Optional[str] = None
    hosting_available: bool = False
    profile: Optional[MemberProfile] = None


class CircleOut(BaseModel):
    id: Optional[str] = None
    event_id: str
    index: int
    name: str
    format: EventFormat
    overflow: bool = False
    status: str
    flags: List[str] = []
    warnings: List[str] = []
    members: List[CircleMemberOut]
    created_at: Optional[str] = None


class FlaggedCircle(BaseModel):
    circle_id: Optional[str] = None
    index: int
    reason: str


class TriggerOut(BaseModel):
    event_id: str
    matching_status: MatchingStatus
    circles: List[CircleOut]
    flagged: List[FlaggedCircle] = []
    partial: bool = False


class ResultsOut(BaseModel):
    event_id: str
    matching_status: MatchingStatus
    circles: List[CircleOut]


class StatusOut(BaseModel):
    event_id: str
    format: Optional[EventFormat] = None
    matching_status: MatchingStatus
    pool_count: Optional[int] = None
    is_opted_in: bool
    user_circle: Optional[CircleOut] = None
    matching_triggered_at: Optional[str] = None
    matching_completed_at: Optional[str] = None


class PoolOut(BaseModel):
    event_id: str
    pool: List[Dict[str, Any]]
