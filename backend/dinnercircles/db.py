"""MongoDB connection management, index creation and transaction helper."""
import copy
import logging
import os
from contextlib import asynccontextmanager
from urllib.parse import parse_qsl, quote, urlencode, urlparse, urlunparse

from bson.objectid import ObjectId
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

logger = logging.getLogger(__name__)

# ---------------- In-memory Fake DB (test mode) -----------------
if os.getenv('USE_FAKE_DB_FOR_TESTS'):
    import types

    class _InsertOneResult:
        def __init__(self, inserted_id):
            self.inserted_id = inserted_id

    class _InsertManyResult:
        def __init__(self, inserted_ids):
            self.inserted_ids = inserted_ids

    class _UpdateResult:
        def __init__(self, matched, modified):
            self.matched_count = matched
            self.modified_count = modified

    class _Cursor:
        def __init__(self, docs):
            self._docs = docs

        def sort(self, key_or_list, direction=None):
            keys = key_or_list if isinstance(key_or_list, (list, tuple)) else [(key_or_list, direction or 1)]
            # apply in reverse for multi-key stability
            for key, dirn in reversed(list(keys)):
                self._docs.sort(key=lambda d: (d.get(key) is None, d.get(key)), reverse=int(dirn) == -1)
            return self

        def limit(self, n):
            if n:
                self._docs = self._docs[:n]
            return self

        async def to_list(self, length=None):
            return list(self._docs if length is None else self._docs[:length])

        def __aiter__(self):
            self._iter = iter(self._docs)
            return self

        async def __anext__(self):
            try:
                return next(self._iter)
            except StopIteration:
                raise StopAsyncIteration

    class FakeCollection:
        def __init__(self, name, store):
            self._name = name
            self._store = store  # list of dicts
            self._unique = []  # list of key tuples

        async def create_index(self, keys, unique=False, **kwargs):
            if unique:
                if isinstance(keys, str):
                    self._unique.append((keys,))
                else:
                    self._unique.append(tuple(k for k, _ in keys))
            return None

        def _check_unique(self, doc, ignore=None):
            for fields in self._unique:
                key = tuple(doc.get(f) for f in fields)
                if all(v is None for v in key):
                    continue
                for other in self._store:
                    if other is ignore:
                        continue
                    if tuple(other.get(f) for f in fields) == key:
                        raise DuplicateKeyError(f'E11000 duplicate key error collection: {self._name} index: {fields}')

        @staticmethod
        def _match_value(actual, cond):
            if isinstance(cond, dict) and any(str(k).startswith('$') for k in cond):
                for op, expected in cond.items():
                    if op == '$in' and actual not in expected:
                        return False
                    if op == '$nin' and actual in expected:
                        return False
                    if op == '$ne' and actual == expected:
                        return False
                    if op == '$exists' and (actual is not None) != bool(expected):
                        return False
                    if op in ('$gt', '$gte', '$lt', '$lte'):
                        if actual is None:
                            return False
                        if op == '$gt' and not actual > expected:
                            return False
                        if op == '$gte' and not actual >= expected:
                            return False
                        if op == '$lt' and not actual < expected:
                            return False
                        if op == '$lte' and not actual <= expected:
                            return False
                return True
            return actual == cond

        def _match(self, doc, filt):
            if not filt:
                return True
            for k, v in filt.items():
                if k == '$or':
                    if not any(self._match(doc, sub) for sub in v):
                        return False
                    continue
                if not self._match_value(doc.get(k), v):
                    return False
            return True

        @staticmethod
        def _apply_update(doc, update):
            if '$set' in update:
                doc.update(copy.deepcopy(update['$set']))
            if '$unset' in update:
                for key in update['$unset'].keys():
                    doc.pop(key, None)
            if '$inc' in update:
                for key, amount in update['$inc'].items():
                    doc[key] = (doc.get(key) or 0) + amount

        async def find_one(self, filt: dict | None = None, projection=None, sort=None, session=None):
            matches = [d for d in self._store if self._match(d, filt or {})]
            if sort:
                matches = _Cursor(matches).sort(sort)._docs
            for d in matches:
                return copy.deepcopy(d)
            return None

        async def insert_one(self, doc: dict, session=None):
            if '_id' not in doc:
                doc['_id'] = ObjectId()
            self._check_unique(doc)
            self._store.append(copy.deepcopy(doc))
            return _InsertOneResult(doc['_id'])

        async def insert_many(self, docs, ordered=True, session=None):
            ids = []
            for doc in docs:
                res = await self.insert_one(doc)
                ids.append(res.inserted_id)
            return _InsertManyResult(ids)

        async def find_one_and_update(self, filt: dict, update: dict, upsert: bool = False,
                                      return_document: ReturnDocument = ReturnDocument.BEFORE, session=None):
            for d in self._store:
                if self._match(d, filt):
                    original = copy.deepcopy(d)
                    self._apply_update(d, update)
                    if return_document == ReturnDocument.AFTER:
                        return copy.deepcopy(d)
                    return original
            if not upsert:
                return None
            new_doc = {k: v for k, v in (filt or {}).items() if not isinstance(v, dict)}
            new_doc.setdefault('_id', ObjectId())
            self._apply_update(new_doc, update)
            self._store.append(new_doc)
            return copy.deepcopy(new_doc) if return_document == ReturnDocument.AFTER else None

        async def update_one(self, filt: dict, update: dict, session=None):
            for d in self._store:
                if self._match(d, filt):
                    self._apply_update(d, update)
                    return _UpdateResult(1, 1)
            return _UpdateResult(0, 0)

        async def update_many(self, filt: dict, update: dict, session=None):
            modified = 0
            for d in self._store:
                if self._match(d, filt):
                    self._apply_update(d, update)
                    modified += 1
            return _UpdateResult(modified, modified)

        async def delete_many(self, filt: dict, session=None):
            before = len(self._store)
            self._store[:] = [d for d in self._store if not self._match(d, filt)]
            return types.SimpleNamespace(deleted_count=before - len(self._store))

        async def delete_one(self, filt: dict, session=None):
            for idx, d in enumerate(self._store):
                if self._match(d, filt):
                    del self._store[idx]
                    return types.SimpleNamespace(deleted_count=1)
            return types.SimpleNamespace(deleted_count=0)

        async def count_documents(self, filt: dict, session=None):
            return sum(1 for d in self._store if self._match(d, filt or {}))

        def find(self, filt: dict | None = None, projection=None, session=None):
            return _Cursor([copy.deepcopy(d) for d in self._store if self._match(d, filt or {})])

    class FakeDB:
        def __init__(self):
            self._collections = {}

        def __getattr__(self, item):
            if item.startswith('_'):
                raise AttributeError(item)
            if item not in self._collections:
                self._collections[item] = FakeCollection(item, [])
            return self._collections[item]

        def reset(self):
            """Drop all documents, keeping declared unique indexes."""
            for coll in self._collections.values():
                coll._store.clear()

    _fake_db = FakeDB()


class MongoDB:
    """Wrapper managing a Motor client + DB plus test fake DB swap."""
    def __init__(self):
        self.client: AsyncIOMotorClient | None = None
        self.db = None
        self.supports_transactions = False
        self._connected = False

    async def connect(self):
        """Connect to MongoDB (or fake) and create indexes (idempotent)."""
        if self._connected:
            return

        base_url = os.getenv('MONGO_URI', 'mongodb://mongo:27017/dinnercircles')
        db_name = os.getenv('MONGO_DB', 'dinnercircles')

        if os.getenv('USE_FAKE_DB_FOR_TESTS'):
            self.client = None
            self.db = _fake_db  # type: ignore[name-defined]
        else:
            user = os.getenv('MONGO_USER')
            pwd = os.getenv('MONGO_PASSWORD')
            mongo_url = base_url
            if user and '@' not in base_url:
                p = urlparse(base_url)
                path = p.path if p.path and p.path != '/' else f'/{db_name}'
                netloc = f"{quote(user)}:{quote(pwd or '')}@{p.hostname or 'localhost'}"
                if p.port:
                    netloc += f":{p.port}"
                q = dict(parse_qsl(p.query, keep_blank_values=True))
                q.setdefault('authSource', os.getenv('MONGO_AUTH_SOURCE', path.lstrip('/')))
                mongo_url = urlunparse((p.scheme or 'mongodb', netloc, path, '', urlencode(q), ''))
            self.client = AsyncIOMotorClient(mongo_url)
            self.db = self.client[db_name]
            self.supports_transactions = await self._detect_transactions()
        globals()['db'] = self.db

        try:
            # EVENTS
            await self.db.events.create_index('matching_status')
            await self.db.events.create_index('matching_triggered_at')

            # OPT-IN POOL
            await self.db.opt_ins.create_index([('event_id', 1), ('user_id', 1)], unique=True)
            await self.db.opt_ins.create_index('event_id')
            await self.db.opt_ins.create_index([('event_id', 1), ('partner_user_id', 1)])

            # CIRCLES
            await self.db.circles.create_index([('event_id', 1), ('index', 1)])
            await self.db.circles.create_index('trigger_id')
            await self.db.circles.create_index([('event_id', 1), ('members.user_id', 1)])

            # USERS (owned by the account service; lookups only)
            await self.db.users.create_index('email')
        except PyMongoError as e:
            logger.warning("MongoDB index creation failed; continuing startup: %s", e)

        self._connected = True
        logger.info('db.connected fake=%s transactions=%s', self.client is None, self.supports_transactions)

    async def _detect_transactions(self) -> bool:
        """Transactions need a replica set or mongos with wire version >= 7."""
        try:
            hello_doc = await self.client.admin.command('hello')
        except PyMongoError:
            return False
        try:
            max_wire = int(hello_doc.get('maxWireVersion', 0))
        except (TypeError, ValueError):
            max_wire = 0
        is_replica = bool(hello_doc.get('setName'))
        is_mongos = hello_doc.get('msg') == 'isdbgrid'
        return max_wire >= 7 and (is_replica or is_mongos)

    async def close(self):
        if self.client:
            self.client.close()
            logger.info('db.closed')
        self._connected = False


mongo_db = MongoDB()


async def connect():
    """Module-level connect function used by the application startup event."""
    await mongo_db.connect()


async def close():
    """Module-level close function used by the application shutdown event."""
    await mongo_db.close()


def get_db():
    return mongo_db.db


@asynccontextmanager
async def transaction():
    """Yield a session running a multi-document transaction, or None.

    When the deployment cannot run transactions the body executes without a
    session and callers rely on conditional writes plus their own cleanup.
    The transaction commits when the body exits normally and aborts on error.
    """
    if not mongo_db.supports_transactions or mongo_db.client is None:
        yield None
        return
    session = await mongo_db.client.start_session()
    try:
        session.start_transaction()
        try:
            yield session
        except BaseException:
            if session.in_transaction:
                await session.abort_transaction()
            raise
        await session.commit_transaction()
    finally:
        await session.end_session()


# Module-level handle used as `db_mod.db`; set by connect().
db = None
