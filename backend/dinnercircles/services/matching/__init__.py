from __future__ import annotations

from .allocation import allocate_circles, plan_capacities
from .clusters import build_clusters, participant_count
from .config import circle_size, courses, diversity_metric_name, minimum_pool_size, stale_matching_minutes
from .data import create_event, get_event, require_event, serialize_circle
from .lifecycle import (
    TriggerResult,
    get_results,
    get_user_circle,
    matching_status,
    recover_stale_triggers,
    trigger,
)
from .models import Cluster, MemberRole, OptInRecord, PlannedCircle, RoleAssignment
from .pool import get_record, list_pool, opt_in, opt_out, pool_count
from .roles import assign_hosted, assign_roles, assign_rotating
from .scoring import METRICS, get_metric, jaccard_distance

__all__ = [
    'allocate_circles',
    'plan_capacities',
    'build_clusters',
    'participant_count',
    'circle_size',
    'courses',
    'diversity_metric_name',
    'minimum_pool_size',
    'stale_matching_minutes',
    'create_event',
    'get_event',
    'require_event',
    'serialize_circle',
    'TriggerResult',
    'get_results',
    'get_user_circle',
    'matching_status',
    'recover_stale_triggers',
    'trigger',
    'Cluster',
    'MemberRole',
    'OptInRecord',
    'PlannedCircle',
    'RoleAssignment',
    'get_record',
    'list_pool',
    'opt_in',
    'opt_out',
    'pool_count',
    'assign_hosted',
    'assign_roles',
    'assign_rotating',
    'METRICS',
    'get_metric',
    'jaccard_distance',
]
