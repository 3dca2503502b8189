"""
Shared fixtures: a throwaway SQLite database per test and settings
pointed away from any real deployment.
"""

import os
import tempfile

# Settings are read once at import; point them at a scratch database first
_SCRATCH_DIR = tempfile.mkdtemp(prefix="jobfeed-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_SCRATCH_DIR}/app.db")
os.environ.setdefault("SCRAPE_SECRET", "cron-secret")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("APP_PASSWORD", "user-pass")
os.environ.setdefault("ADMIN_PASSWORD", "admin-pass")
os.environ.setdefault("SUPABASE_URL", "")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "")

import pytest
import pytest_asyncio

from jobfeed.database import create_session_factory, init_db
from jobfeed.services.run_state import RunStateStore


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine, session_factory = create_session_factory(f"sqlite:///{tmp_path / 'jobs.db'}")
    await init_db(engine)
    yield engine, session_factory
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return db_engine[1]


@pytest.fixture
def store(session_factory):
    return RunStateStore(session_factory, history_max_items=100)
