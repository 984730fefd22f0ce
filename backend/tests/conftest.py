import os
import pathlib
import sys
import tempfile

import pytest


REPO_ROOT = pathlib.Path(__file__).resolve().parents[2]
sys.path.append(str(REPO_ROOT))


def pytest_configure():
    if os.getenv("DATABASE_URL") or os.getenv("SQLALCHEMY_DATABASE_URL"):
        return
    temp_dir = tempfile.mkdtemp(prefix="ops-alerting-tests-")
    db_path = pathlib.Path(temp_dir) / "pytest.db"
    os.environ["DATABASE_URL"] = f"sqlite:///{db_path}"


@pytest.fixture(scope="session")
def sqlite_engine():
    from backend.app import models  # noqa: F401
    from backend.app.db import Base, engine

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def _isolated_ops_env(monkeypatch):
    from backend.app.ops.rate_limit import rate_limiter
    from backend.app.services.ops_alerts_service import reset_test_alert_cache

    for name in (
        "OPS_ALERT_WEBHOOK_URL",
        "OPS_ALERT_WEBHOOK_SECRET",
        "OPS_ALERT_COOLDOWN_MINUTES",
        "OPS_ALERT_NOTIFY_TIMEOUT_SECONDS",
        "OPS_SITE_URL",
    ):
        monkeypatch.delenv(name, raising=False)
    rate_limiter.reset()
    reset_test_alert_cache()
    yield
    rate_limiter.reset()


@pytest.fixture()
def sqlite_session(sqlite_engine):
    from backend.app.db import Base, SessionLocal

    with sqlite_engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())

    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def api_client(sqlite_engine, sqlite_session):
    from backend.app.db import get_db
    from backend.app.main import app
    from fastapi.testclient import TestClient

    def _get_test_db():
        yield sqlite_session

    app.dependency_overrides[get_db] = _get_test_db
    client = TestClient(app)
    try:
        yield client
    finally:
        app.dependency_overrides.pop(get_db, None)
