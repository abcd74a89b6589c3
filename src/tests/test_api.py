import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from circdesk.deps import get_dispatcher, get_session
from circdesk.dispatcher import Dispatcher, UNKNOWN_COMMAND, INVALID_MESSAGE
from circdesk.main import app
from circdesk.reports import ReportCache

pytestmark = pytest.mark.asyncio

@pytest_asyncio.fixture
async def client(session_factory, tmp_path):
    dispatcher = Dispatcher(session_factory, ReportCache(tmp_path))

    async def _session():
        async with session_factory() as s:
            yield s

    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_session] = _session
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
            yield c
    finally:
        app.dependency_overrides.clear()

async def test_health(client):
    r = await client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}

async def test_commands_round_trip(client):
    r = await client.post("/commands", json={"command": "AddBook", "payload": {"title": "Dune", "totalCopies": 2}})
    assert r.status_code == 200
    body = r.json()
    assert body["command"] == "AddBook"
    assert body["payload"]["availableCopies"] == 2

    r = await client.post("/commands", json={"command": "GetAllBooks", "payload": None})
    assert [b["title"] for b in r.json()["payload"]] == ["Dune"]

async def test_unknown_command_is_not_an_http_error(client):
    r = await client.post("/commands", json={"command": "Teleport", "payload": 1})
    assert r.status_code == 200
    assert r.json() == {"command": "Teleport", "payload": UNKNOWN_COMMAND}

async def test_malformed_envelope_is_answered(client):
    r = await client.post("/commands", json=[1, 2, 3])
    assert r.status_code == 200
    assert r.json()["payload"] == INVALID_MESSAGE
