from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine

from clinical_kb.config import get_settings
from clinical_kb.db import create_schema, get_engine
from clinical_kb.dependencies import get_qdrant_client
from clinical_kb.main import app


@pytest.fixture(autouse=True)
def reset_api_caches() -> Iterator[None]:
    get_settings.cache_clear()
    get_engine.cache_clear()
    get_qdrant_client.cache_clear()
    yield
    get_settings.cache_clear()
    get_engine.cache_clear()
    get_qdrant_client.cache_clear()


@pytest.fixture
def sqlite_engine(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[Engine]:
    sqlite_db_path = tmp_path / "kb-tests.db"
    monkeypatch.setenv("KB_DATABASE_URL", f"sqlite+pysqlite:///{sqlite_db_path}")
    monkeypatch.setenv("KB_DB_ECHO", "false")

    engine = get_engine()
    create_schema(engine)

    yield engine

    engine.dispose()


@pytest.fixture
def client(sqlite_engine: Engine) -> Iterator[TestClient]:
    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
