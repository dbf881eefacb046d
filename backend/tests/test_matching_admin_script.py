import importlib.util
from pathlib import Path

import pytest

from dinnercircles.services import matching as svc

SCRIPT = Path(__file__).resolve().parents[1] / 'scripts' / 'matching_admin.py'


def _load_script():
    spec = importlib.util.spec_from_file_location('matching_admin', SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.mark.asyncio
async def test_seed_builds_a_triggerable_pool():
    script = _load_script()
    event_id = await script.seed_event('Demo', 'rotating', participants=14, pairs=3, seed=1)

    records = await svc.list_pool(event_id)
    assert len(records) == 14
    assert sum(1 for r in records if r.partner_user_id) == 6

    result = await svc.trigger(event_id)
    assert sorted(len(c['members']) for c in result.circles) == [2, 6, 6]


@pytest.mark.asyncio
async def test_seed_rejects_too_many_pairs():
    script = _load_script()
    with pytest.raises(ValueError):
        await script.seed_event('Demo', 'rotating', participants=3, pairs=2, seed=1)


def test_parse_args():
    script = _load_script()
    args = script.parse_args(['recover', '--max-age', '30'])
    assert args.command == 'recover' and args.max_age == 30
