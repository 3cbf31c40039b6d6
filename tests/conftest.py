import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import storage  # noqa: E402


@pytest.fixture
def db(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'test.db'}")
    storage.reset_engine()
    storage.init_db()
    yield storage
    storage.reset_engine()


@pytest.fixture
def patient(db):
    phone = "+8613800138000"
    db.upsert_profile(phone, {"full_name": "Test Patient"})
    return phone
