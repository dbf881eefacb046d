import pytest

from dinnercircles.errors import InsufficientPool
from dinnercircles.services.matching import (
    OptInRecord,
    allocate_circles,
    build_clusters,
    get_metric,
    jaccard_distance,
    plan_capacities,
)
from dinnercircles.services.matching.scoring import fewest_shared_tags


def _rec(uid, partner=None, interests=()):
    return OptInRecord(event_id='e1', user_id=uid, partner_user_id=partner, interests=tuple(interests))


def _singles(n):
    return [_rec(f'u{i:02d}') for i in range(n)]


def _circle_ids(circles):
    return [sorted(m.user_id for m in c.members) for c in circles]


def test_plan_capacities_full_and_remainder():
    plan = plan_capacities(14, 6)
    assert [(c.capacity, c.overflow) for c in plan] == [(6, False), (6, False), (2, True)]
    assert [c.index for c in plan] == [1, 2, 3]
    assert plan_capacities(12, 6)[-1].overflow is False


def test_twelve_singles_make_two_full_circles():
    circles = allocate_circles(build_clusters(_singles(12)), 6, 6)
    assert [len(c.members) for c in circles] == [6, 6]
    assert not any(c.overflow for c in circles)


def test_seven_singles_make_one_full_and_one_overflow():
    circles = allocate_circles(build_clusters(_singles(7)), 6, 6)
    assert sorted(len(c.members) for c in circles) == [1, 6]
    assert [c.overflow for c in circles if len(c.members) == 1] == [True]
    assert [c.overflow for c in circles if len(c.members) == 6] == [False]


def test_every_participant_placed_exactly_once():
    records = _singles(9) + [_rec('p1', 'p2'), _rec('p2', 'p1'), _rec('q1', 'q2'), _rec('q2', 'q1')]
    circles = allocate_circles(build_clusters(records), 6, 6)
    placed = [m.user_id for c in circles for m in c.members]
    assert sorted(placed) == sorted(r.user_id for r in records)
    assert len(placed) == len(set(placed))
    assert all(len(c.members) <= 6 for c in circles)


def test_partners_always_share_a_circle():
    records = []
    for i in range(5):
        records += [_rec(f'a{i}', f'b{i}'), _rec(f'b{i}', f'a{i}')]
    records += _singles(4)
    circles = allocate_circles(build_clusters(records), 6, 6)
    for i in range(5):
        homes = [c.index for c in circles for m in c.members if m.user_id in (f'a{i}', f'b{i}')]
        assert len(homes) == 2 and homes[0] == homes[1]


def test_allocation_is_deterministic():
    records = _singles(8) + [_rec('p1', 'p2', ['jazz']), _rec('p2', 'p1', ['hiking'])]
    first = allocate_circles(build_clusters(records), 4, 4)
    second = allocate_circles(build_clusters(list(reversed(records))), 4, 4)
    assert _circle_ids(first) == _circle_ids(second)


def test_pool_below_minimum_raises():
    with pytest.raises(InsufficientPool) as exc:
        allocate_circles(build_clusters(_singles(5)), 6, 6)
    assert exc.value.context['pool_size'] == 5
    assert exc.value.context['minimum_pool_size'] == 6


def test_small_pool_above_minimum_forms_single_overflow_circle():
    circles = allocate_circles(build_clusters(_singles(3)), 6, 2)
    assert len(circles) == 1
    assert circles[0].overflow and len(circles[0].members) == 3


def test_odd_circle_size_opens_extra_circle_for_a_pair():
    # 3 pairs into circles of 3: each circle takes one pair, none has room for another
    records = []
    for i in range(3):
        records += [_rec(f'a{i}', f'b{i}'), _rec(f'b{i}', f'a{i}')]
    circles = allocate_circles(build_clusters(records), 3, 3)
    assert len(circles) == 3
    assert all(len(c.members) == 2 and c.overflow for c in circles)
    assert [c.index for c in circles] == [1, 2, 3]


def test_diversity_spreads_similar_profiles():
    records = [
        _rec('u1', interests=['jazz']),
        _rec('u2', interests=['jazz']),
        _rec('u3', interests=['hiking']),
        _rec('u4', interests=['hiking']),
    ]
    circles = allocate_circles(build_clusters(records), 2, 2)
    for circle in circles:
        tags = [m.interests for m in circle.members]
        assert tags[0] != tags[1]


def test_jaccard_distance_bounds():
    assert jaccard_distance(frozenset(), frozenset()) == 1.0
    assert jaccard_distance(frozenset({'a'}), frozenset({'a'})) == 0.0
    assert jaccard_distance(frozenset({'a', 'b'}), frozenset({'b', 'c'})) == pytest.approx(2 / 3)


def test_metric_registry():
    assert get_metric('jaccard') is jaccard_distance
    assert get_metric('shared_tags') is fewest_shared_tags
    with pytest.raises(ValueError):
        get_metric('nope')


def test_custom_metric_is_used():
    calls = []

    def metric(cluster_tags, circle_tags):
        calls.append((cluster_tags, circle_tags))
        return 0.0

    allocate_circles(build_clusters(_singles(6)), 6, 6, metric=metric)
    assert len(calls) == 6
