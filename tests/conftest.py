import os

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import pytest


@pytest.fixture
def db_path(tmp_path) -> str:
    return str(tmp_path / "examiner.db")
