import datetime
import os
import sys
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

# Ensure the backend directory is on PYTHONPATH when pytest is run from repo root
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

# Ensure test env
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("ALLOWED_ORIGINS", "*")
os.environ.setdefault("USE_FAKE_DB_FOR_TESTS", "1")
os.environ.setdefault("MATCH_RECOVER_ON_STARTUP", "false")

# Import app AFTER env vars
from dinnercircles.main import app  # noqa: E402
from dinnercircles import db as db_mod  # noqa: E402
from dinnercircles.auth import create_access_token  # noqa: E402
from dinnercircles.db import connect as connect_to_mongo  # noqa: E402


@pytest.fixture(autouse=True)
async def _fresh_db():
    # Manually invoke DB connect (startup events not auto run with ASGITransport)
    await connect_to_mongo()
    db_mod.db.reset()
    yield


@pytest.fixture
async def client():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c


async def create_user(email, *, admin=False, **profile):
    """Insert a user the way the account service stores them."""
    now = datetime.datetime.now(datetime.timezone.utc)
    doc = {
        "email": email.lower(),
        "name": email.split('@')[0].title(),
        "roles": ["admin"] if admin else ["user"],
        "interests": [],
        "dietary_restrictions": [],
        "course_preference": None,
        "created_at": now,
        "updated_at": now,
    }
    doc.update(profile)
    res = await db_mod.db.users.insert_one(doc)
    doc["_id"] = res.inserted_id
    return doc


def auth_headers(user):
    return {"Authorization": f"Bearer {create_access_token({'sub': user['email']})}"}


@pytest.fixture
async def admin_user():
    return await create_user("admin@example.com", admin=True)


@pytest.fixture
async def make_users():
    """Factory creating ``n`` plain users named u00, u01, ... in id order."""
    async def _make(n, prefix="u", **profile):
        return [await create_user(f"{prefix}{i:02d}@example.com", **profile) for i in range(n)]
    return _make
