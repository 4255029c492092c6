import os

# Keep test runs from writing rotating log files under logs/.
os.environ.setdefault("LOG_FILE_ENABLED", "false")

import httpx
import pytest
from fastapi.testclient import TestClient

import shared.middleware as middleware
import shared.tenant as tenant
from apps.adsheet.api.v1.helpers.broadcast import hub
from apps.adsheet.api.v1.helpers.config import reset_validation_cache
from apps.adsheet.api.v1.helpers.memory_store import reset_memory_stores
from apps.adsheet.core.auth import AuthContext
from apps.adsheet.sync.client import PersistenceClient
from apps.adsheet.sync.orchestrator import GridOrchestrator
from apps.adsheet.sync.session import new_session_id
from apps.adsheet.sync.settings import SyncSettings
from main import app

API_KEY = "grid-test-key"
TENANT_ID = "acme"
OWNER_ID = 7
BASE_URL = "http://testserver/api/adsheet"


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path, monkeypatch):
    secrets = tmp_path / "secrets"
    secrets.mkdir()
    (secrets / "acme.yaml").write_text(
        "ACCOUNT_STORE: memory\nCHANGE_HISTORY_SIZE: 50\n",
        encoding="utf-8",
    )
    (secrets / "tiny.yaml").write_text(
        "ACCOUNT_STORE: memory\nCHANGE_HISTORY_SIZE: 2\n",
        encoding="utf-8",
    )
    (secrets / "warehouse.yaml").write_text(
        "ACCOUNT_STORE: mysql\nDB_HOST: db.internal\n",
        encoding="utf-8",
    )
    (secrets / "oddstore.yaml").write_text(
        "ACCOUNT_STORE: sqlite\nCHANGE_HISTORY_SIZE: -3\n",
        encoding="utf-8",
    )
    monkeypatch.setattr(tenant, "LOCAL_SECRETS_DIR", secrets)
    monkeypatch.setenv("API_KEY_REGISTRY", f"grid-tests:{API_KEY}")
    monkeypatch.setattr(middleware, "_API_KEY_REGISTRY", None)
    reset_validation_cache()
    reset_memory_stores()
    hub.reset()
    yield secrets
    reset_validation_cache()
    reset_memory_stores()
    hub.reset()


@pytest.fixture
def make_headers():
    def _make(
        user_id: int = OWNER_ID,
        role: str = "director",
        director_id: int | None = None,
        session_id: str | None = None,
        tenant_id: str | None = TENANT_ID,
    ) -> dict[str, str]:
        headers = {
            "X-API-Key": API_KEY,
            "X-User-Id": str(user_id),
            "X-User-Role": role,
        }
        if tenant_id:
            headers["X-Tenant-Id"] = tenant_id
        if director_id is not None:
            headers["X-Director-Id"] = str(director_id)
        if session_id:
            headers["X-Session-Id"] = session_id
        return headers

    return _make


@pytest.fixture
def api_client():
    return TestClient(app)


@pytest.fixture
def fast_settings():
    return SyncSettings(
        save_delay=0.01,
        temp_row_delay=0.01,
        follow_up_delay=0.0,
        reload_delay=0.0,
        phantom_grace=30.0,
        max_create_retries=3,
        poll_interval=0.05,
    )


@pytest.fixture
async def asgi_client():
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


@pytest.fixture
async def make_orchestrator(asgi_client, fast_settings):
    created: list[GridOrchestrator] = []

    async def _make(auth: AuthContext | None = None, **kwargs) -> GridOrchestrator:
        client = PersistenceClient(
            BASE_URL,
            auth or AuthContext(user_id=OWNER_ID),
            new_session_id(),
            api_key=API_KEY,
            tenant_id=TENANT_ID,
            client=asgi_client,
        )
        orchestrator = GridOrchestrator(client, settings=fast_settings, **kwargs)
        created.append(orchestrator)
        await orchestrator.start()
        return orchestrator

    yield _make
    for orchestrator in created:
        await orchestrator.close()
