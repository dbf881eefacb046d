#!/usr/bin/env python3
"""Operator commands for the matching engine, run directly against MongoDB.

Usage:
    python backend/scripts/matching_admin.py seed --participants 14 --pairs 2
    python backend/scripts/matching_admin.py trigger <event_id>
    python backend/scripts/matching_admin.py recover --max-age 30

Environment:
- MONGO_URI / MONGO_DB as for the backend
- MATCH_* knobs as for the backend (circle size, minimum pool size, ...)

`recover` is meant for a cron job next to the startup recovery in the API.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import random
import sys
from pathlib import Path
from typing import Optional, Sequence


def _ensure_app_on_path() -> None:
    """Ensure the backend/dinnercircles package is importable when running the script directly."""
    root = Path(__file__).resolve().parents[1]
    if str(root) not in sys.path:
        sys.path.insert(0, str(root))


_ensure_app_on_path()

from dinnercircles import db as db_mod  # noqa: E402
from dinnercircles.errors import MatchingError  # noqa: E402
from dinnercircles.logging_config import configure_logging  # noqa: E402
from dinnercircles.services import matching as matching_service  # noqa: E402

INTERESTS = ['board games', 'cycling', 'film', 'gardening', 'hiking', 'jazz', 'languages', 'photography']
DIETS = ['vegetarian', 'vegan', 'gluten free', 'nut allergy']


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Seed, trigger and recover dinner circle matching.')
    sub = parser.add_subparsers(dest='command', required=True)

    seed = sub.add_parser('seed', help='create a demo event with an opted-in pool')
    seed.add_argument('--title', default='Demo Circles')
    seed.add_argument('--format', default='rotating', choices=['rotating', 'hosted'])
    seed.add_argument('--participants', type=int, default=12, help='number of users to opt in')
    seed.add_argument('--pairs', type=int, default=0, help='how many of them opt in as partners')
    seed.add_argument('--seed', type=int, default=7, help='random seed for profiles')

    trig = sub.add_parser('trigger', help='run matching for an event')
    trig.add_argument('event_id')

    rec = sub.add_parser('recover', help='reopen events stuck in matching')
    rec.add_argument('--max-age', type=int, default=None, help='minutes (default MATCH_STALE_MINUTES)')
    return parser.parse_args(argv)


async def seed_event(title: str, fmt: str, participants: int, pairs: int, seed: int) -> str:
    if pairs * 2 > participants:
        raise ValueError('--pairs needs two participants each')
    rng = random.Random(seed)
    event = await matching_service.create_event(title, fmt)
    users = []
    for i in range(participants):
        doc = {
            'email': f'demo{i:03d}.{event["_id"]}@example.com',
            'name': f'Demo {i:03d}',
            'roles': ['user'],
            'interests': rng.sample(INTERESTS, k=rng.randint(1, 3)),
            'dietary_restrictions': rng.sample(DIETS, k=rng.randint(0, 1)),
        }
        res = await db_mod.db.users.insert_one(doc)
        doc['_id'] = res.inserted_id
        users.append(doc)

    partnered = users[:pairs * 2]
    for first, second in zip(partnered[::2], partnered[1::2]):
        await matching_service.opt_in(event['_id'], first['_id'], {'hosting_available': True},
                                      partner_ref=str(second['_id']))
    for user in users[pairs * 2:]:
        await matching_service.opt_in(event['_id'], user['_id'], {'hosting_available': rng.random() < 0.6})
    return str(event['_id'])


async def run(args: argparse.Namespace) -> int:
    await db_mod.connect()
    try:
        if args.command == 'seed':
            event_id = await seed_event(args.title, args.format, args.participants, args.pairs, args.seed)
            print(event_id)
        elif args.command == 'trigger':
            result = await matching_service.trigger(args.event_id, triggered_by='matching_admin')
            print(json.dumps(result.to_dict(), indent=2, default=str))
        else:
            reopened = await matching_service.recover_stale_triggers(args.max_age)
            print(f'reopened {len(reopened)} event(s): {", ".join(reopened) or "-"}')
    finally:
        await db_mod.close()
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging()
    try:
        return asyncio.run(run(args))
    except MatchingError as exc:
        print(f'Error: {exc.code}: {exc.detail}', file=sys.stderr)
        return 1
    except ValueError as exc:
        print(f'Error: {exc}', file=sys.stderr)
        return 2


if __name__ == '__main__':
    raise SystemExit(main())
