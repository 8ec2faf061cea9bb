"""
pytest integration tests for ALL endpoints.

Tests cover:
1. Health / banner / test endpoints
2. Coins (GET with auto-create, PUT, POST add)
3. Legacy document-store coin routes
4. Typed generation (/api/generate/{type})
5. Tiered generation (/api/generate)
6. Gemini proxy (/api/gemini)
7. Rate limiting
8. Error envelope

Vendors run in MOCK_MODE or are monkeypatched; the coin store is in memory
unless a test swaps in the SQLite backend.

Run with: pytest proxy/test_api.py -v
"""

import json
from typing import Any, Dict, List

import httpx
import pytest

import config
import generation
import ledger
import providers
import server


BASE_URL = "http://testserver"


def _build_client(*, timeout: float = 30.0) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        transport=httpx.ASGITransport(app=server.app),
        base_url=BASE_URL,
        timeout=timeout,
    )


@pytest.fixture(autouse=True)
def _isolated_server(monkeypatch: pytest.MonkeyPatch) -> ledger.MemoryCoinStore:
    store = ledger.MemoryCoinStore(starting_coins=100)
    monkeypatch.setattr(server, "_STORE", store)
    monkeypatch.setattr(config, "MOCK_MODE", True)
    monkeypatch.setattr(config, "STARTING_COINS", 100)
    monkeypatch.setattr(config, "RATE_LIMIT_REQUESTS", 20)
    monkeypatch.setattr(config, "RATE_LIMIT_WINDOW_SECONDS", 60)
    server._reset_rate_limits()
    return store


# =============================================================================
# 1. Health
# =============================================================================


async def test_root_banner() -> None:
    async with _build_client() as client:
        response = await client.get("/")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "online"
    assert data["storage"] == "memory"
    assert "POST /api/gemini" in data["endpoints"]
    assert set(data["tiers"]) == {"free", "paid"}
    assert data["generation_types"] == ["animation", "vfx", "script", "ui"]


async def test_test_endpoint() -> None:
    async with _build_client() as client:
        response = await client.get("/test")
    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["timestamp"].endswith("Z")


async def test_health() -> None:
    async with _build_client() as client:
        response = await client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["ok"] is True
    assert isinstance(data["ts"], int)


async def test_unknown_route_is_404_envelope() -> None:
    async with _build_client() as client:
        response = await client.get("/api/nope")
    assert response.status_code == 404
    assert response.json() == {"success": False, "error": "Not found"}


# =============================================================================
# 2. Coins
# =============================================================================


async def test_coins_lifecycle() -> None:
    async with _build_client() as client:
        first = await client.get("/api/coins/player1")
        assert first.status_code == 200
        assert first.json()["coins"] == 100
        assert first.json()["isNew"] is True

        second = await client.get("/api/coins/player1")
        assert second.json()["isNew"] is False

        put = await client.put("/api/coins/player1", json={"coins": 40})
        assert put.status_code == 200
        assert put.json()["success"] is True
        assert put.json()["coins"] == 40

        add = await client.post("/api/coins/player1/add", json={"amount": 500})
        assert add.status_code == 200
        assert add.json()["coins"] == 540

        spend = await client.post("/api/coins/player1/add", json={"amount": -40})
        assert spend.json()["coins"] == 500

        final = await client.get("/api/coins/player1")
        assert final.json()["coins"] == 500
        assert isinstance(final.json()["lastUpdated"], int)


async def test_add_to_unknown_user_starts_from_default() -> None:
    async with _build_client() as client:
        response = await client.post("/api/coins/newbie/add", json={"amount": 10})
    assert response.status_code == 200
    assert response.json()["coins"] == 110


@pytest.mark.parametrize(
    "method,path,payload,error",
    [
        ("PUT", "/api/coins/u1", {"coins": -5}, "coins must be a non-negative integer"),
        ("PUT", "/api/coins/u1", {"coins": "lots"}, "coins must be an integer"),
        ("PUT", "/api/coins/u1", {}, "Missing coins"),
        ("POST", "/api/coins/u1/add", {"amount": -1000}, "insufficient coins"),
        ("POST", "/api/coins/u1/add", {"amount": 1.5}, "amount must be an integer"),
        ("POST", "/api/coins/u1/add", {}, "Missing amount"),
        ("POST", "/api/coins/u1/add", [1, 2], "Invalid JSON"),
    ],
)
async def test_coin_validation_errors(method: str, path: str, payload: Any, error: str) -> None:
    async with _build_client() as client:
        response = await client.request(method, path, json=payload)
    assert response.status_code == 400
    assert response.json() == {"success": False, "error": error}


async def test_invalid_json_body() -> None:
    async with _build_client() as client:
        response = await client.put(
            "/api/coins/u1", content=b"{not json", headers={"content-type": "application/json"}
        )
    assert response.status_code == 400
    assert response.json()["error"] == "Invalid JSON"


async def test_invalid_user_id() -> None:
    async with _build_client() as client:
        response = await client.get("/api/coins/bad%20id")
    assert response.status_code == 400
    assert response.json()["error"] == "invalid userId"


async def test_ledger_outage_maps_to_upstream_status(monkeypatch: pytest.MonkeyPatch) -> None:
    class DownStore(ledger.MemoryCoinStore):
        async def get(self, user_id: str) -> ledger.Balance:
            raise ledger.LedgerUnavailable("Firebase error", status_code=503)

    monkeypatch.setattr(server, "_STORE", DownStore())
    async with _build_client() as client:
        response = await client.get("/api/coins/u1")
    assert response.status_code == 503
    assert response.json() == {"success": False, "error": "Firebase error"}


async def test_coins_lifecycle_on_sqlite(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    store = ledger.SqliteCoinStore(str(tmp_path / "coins.sqlite3"), starting_coins=100)
    await store.init()
    monkeypatch.setattr(server, "_STORE", store)

    async with _build_client() as client:
        first = await client.get("/api/coins/player1")
        assert first.json()["coins"] == 100
        assert first.json()["isNew"] is True
        assert (await client.get("/api/coins/player1")).json()["isNew"] is False

        put = await client.put("/api/coins/player1", json={"coins": 40})
        assert put.json()["coins"] == 40

        add = await client.post("/api/coins/player1/add", json={"amount": 60})
        assert add.json()["coins"] == 100

        overdraw = await client.post("/api/coins/player1/add", json={"amount": -101})
        assert overdraw.status_code == 400
        assert overdraw.json() == {"success": False, "error": "insufficient coins"}

        huge_put = await client.put("/api/coins/player1", json={"coins": 2**63})
        assert huge_put.status_code == 400
        assert huge_put.json() == {"success": False, "error": "coins out of range"}

        huge_add = await client.post("/api/coins/player2/add", json={"amount": 2**63})
        assert huge_add.status_code == 400
        assert huge_add.json() == {"success": False, "error": "amount out of range"}

        final = await client.get("/api/coins/player1")
        assert final.json()["coins"] == 100
        assert final.json()["lastUpdated"] == add.json()["lastUpdated"]

    assert await store.peek("player2") is None


async def test_unhandled_error_is_500_envelope(monkeypatch: pytest.MonkeyPatch) -> None:
    class BrokenStore(ledger.MemoryCoinStore):
        async def get(self, user_id: str) -> ledger.Balance:
            raise RuntimeError("kaboom")

    monkeypatch.setattr(server, "_STORE", BrokenStore())
    # Starlette re-raises after sending the 500, so keep it inside the transport.
    transport = httpx.ASGITransport(app=server.app, raise_app_exceptions=False)
    async with httpx.AsyncClient(transport=transport, base_url=BASE_URL) as client:
        response = await client.get("/api/coins/u1")
    assert response.status_code == 500
    assert response.json() == {
        "success": False,
        "error": "Internal server error",
        "details": "kaboom",
    }


# =============================================================================
# 3. Legacy document-store routes
# =============================================================================


async def test_legacy_firebase_routes() -> None:
    async with _build_client() as client:
        load = await client.get("/api/firebase/coins/u9")
        assert load.status_code == 200
        assert load.json() == {"coins": 100, "isNew": True}

        save = await client.put("/api/firebase/coins/u9", json={"coins": 250})
        assert save.status_code == 200
        data = save.json()
        assert data["success"] is True
        assert data["data"]["coins"] == 250
        assert data["data"]["userId"] == "u9"

        reload = await client.get("/api/firebase/coins/u9")
        assert reload.json() == {"coins": 250, "isNew": False}

        missing = await client.put("/api/firebase/coins/u9", json={})
        assert missing.status_code == 400
        assert missing.json()["error"] == "Missing userId or coins"


# =============================================================================
# 4. Typed generation
# =============================================================================


async def test_generate_script_mock_mode() -> None:
    async with _build_client() as client:
        response = await client.post(
            "/api/generate/script",
            json={"systemPrompt": "You write Luau.", "prompt": "spin a part", "userId": "u1"},
        )
    assert response.status_code == 200, response.text
    data = response.json()
    assert data["success"] is True
    assert data["data"].endswith("spin a part")
    assert data["model"] == config.OPENAI_MODEL
    assert data["usage"]["total_tokens"] > 0
    assert data["attempts"] == 1
    assert "elapsed_ms" in data


async def test_generate_animation_mock_mode_returns_validated_json() -> None:
    async with _build_client() as client:
        response = await client.post(
            "/api/generate/animation",
            json={"prompt": "idle sway", "rigType": "R15", "duration": 1, "keyframeCount": 2},
        )
    assert response.status_code == 200, response.text
    data = response.json()
    assert isinstance(data["data"], dict)
    assert data["data"]["rigType"] == "R15"
    assert data["model"] == config.PRIMARY_MODEL


async def test_generate_animation_fallback_through_http(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "MOCK_MODE", False)
    models: List[str] = []
    valid = {
        "name": "Idle",
        "duration": 2,
        "rigType": "R6",
        "loop": True,
        "keyframes": [{"time": 0, "poses": [{"part": "Torso", "rotation": [0, 0, 0]}]}],
    }

    async def fake_call_openai(*, model, messages, max_tokens, temperature=None, response_format=None):
        models.append(model)
        content = "oops" if len(models) == 1 else json.dumps(valid)
        return {"choices": [{"message": {"content": content}}], "usage": {"prompt_tokens": 1, "completion_tokens": 1}}

    monkeypatch.setattr(providers, "call_openai", fake_call_openai)
    async with _build_client() as client:
        response = await client.post("/api/generate/animation", json={"prompt": "idle"})
    assert response.status_code == 200, response.text
    data = response.json()
    assert models == [config.PRIMARY_MODEL, config.FALLBACK_MODEL]
    assert data["model"] == config.FALLBACK_MODEL
    assert data["attempts"] == 2
    assert data["data"] == valid


async def test_generate_unknown_type() -> None:
    async with _build_client() as client:
        response = await client.post("/api/generate/music", json={"prompt": "x"})
    assert response.status_code == 400
    assert "unknown generation type" in response.json()["error"]


async def test_generate_missing_key_is_500(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "MOCK_MODE", False)
    monkeypatch.setattr(config, "OPENAI_API_KEY", "")
    async with _build_client() as client:
        response = await client.post("/api/generate/ui", json={"prompt": "shop menu"})
    assert response.status_code == 500
    assert response.json() == {"success": False, "error": "OPENAI_API_KEY not configured"}


async def test_generate_upstream_status_passthrough(monkeypatch: pytest.MonkeyPatch) -> None:
    async def failing(**kwargs):
        raise providers.UpstreamError("You exceeded your current quota", status_code=429)

    monkeypatch.setattr(providers, "call_openai", failing)
    async with _build_client() as client:
        response = await client.post("/api/generate/vfx", json={"prompt": "sparkles"})
    assert response.status_code == 429
    assert response.json()["error"] == "You exceeded your current quota"


# =============================================================================
# 5. Tiered generation
# =============================================================================


async def test_tiered_generation_free_then_paid(_isolated_server: ledger.MemoryCoinStore) -> None:
    async with _build_client() as client:
        free = await client.post("/api/generate", json={"prompt": "hello", "userId": "u1"})
        assert free.status_code == 200, free.text
        assert free.json()["tier"] == "free"
        assert free.json()["model_used"] == config.FREE_MODEL
        # Tier lookup must not create a balance.
        assert await _isolated_server.peek("u1") is None

        await client.put("/api/coins/u1", json={"coins": 1000})
        paid = await client.post("/api/generate", json={"prompt": "hello", "userId": "u1"})
        assert paid.json()["tier"] == "paid"
        assert paid.json()["model_used"] == config.PAID_MODEL
        assert paid.json()["choices"][0]["message"]["content"].startswith("[MOCK:")


async def test_tiered_generation_ledger_failure_falls_back_to_free(monkeypatch: pytest.MonkeyPatch) -> None:
    class DownStore(ledger.MemoryCoinStore):
        async def peek(self, user_id: str):
            raise ledger.LedgerUnavailable("Firebase error")

    monkeypatch.setattr(server, "_STORE", DownStore())
    async with _build_client() as client:
        response = await client.post("/api/generate", json={"prompt": "hello", "userId": "u1"})
    assert response.status_code == 200
    assert response.json()["tier"] == "free"


@pytest.mark.parametrize("payload", [{"prompt": "hi"}, {"userId": "u1"}, {"prompt": "", "userId": "u1"}])
async def test_tiered_generation_requires_prompt_and_user(payload: Dict[str, Any]) -> None:
    async with _build_client() as client:
        response = await client.post("/api/generate", json=payload)
    assert response.status_code == 400
    assert response.json()["error"] == "Missing prompt or userId"


# =============================================================================
# 6. Gemini proxy
# =============================================================================


async def test_gemini_passthrough(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: Dict[str, Any] = {}

    async def fake_call_gemini(*, prompt, temperature=None, max_tokens=None):
        seen.update(prompt=prompt, temperature=temperature, max_tokens=max_tokens)
        return {"candidates": [{"content": {"parts": [{"text": "{}"}]}}]}

    monkeypatch.setattr(providers, "call_gemini", fake_call_gemini)
    async with _build_client() as client:
        response = await client.post(
            "/api/gemini", json={"prompt": "ui please", "userId": "u1", "temperature": 0.3, "maxTokens": 1000}
        )
    assert response.status_code == 200
    assert response.json() == {"candidates": [{"content": {"parts": [{"text": "{}"}]}}]}
    assert seen == {"prompt": "ui please", "temperature": 0.3, "max_tokens": 1000}


async def test_gemini_requires_prompt_and_user() -> None:
    async with _build_client() as client:
        response = await client.post("/api/gemini", json={"prompt": "x"})
    assert response.status_code == 400


# =============================================================================
# 7. Rate limiting
# =============================================================================


async def test_rate_limit_per_user(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "RATE_LIMIT_REQUESTS", 3)
    async with _build_client() as client:
        for _ in range(3):
            ok = await client.post("/api/gemini", json={"prompt": "x", "userId": "spammer"})
            assert ok.status_code == 200
        blocked = await client.post("/api/gemini", json={"prompt": "x", "userId": "spammer"})
        assert blocked.status_code == 429
        assert blocked.json() == {"success": False, "error": "Rate limit exceeded. Try again later."}

        # Other users are unaffected.
        other = await client.post("/api/gemini", json={"prompt": "x", "userId": "someone-else"})
        assert other.status_code == 200


async def test_rate_limit_is_shared_across_generation_routes(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "RATE_LIMIT_REQUESTS", 2)
    async with _build_client() as client:
        assert (await client.post("/api/generate", json={"prompt": "x", "userId": "u1"})).status_code == 200
        assert (await client.post("/api/generate/script", json={"prompt": "x", "userId": "u1"})).status_code == 200
        blocked = await client.post("/api/gemini", json={"prompt": "x", "userId": "u1"})
        assert blocked.status_code == 429


async def test_rate_limit_falls_back_to_forwarded_ip(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "RATE_LIMIT_REQUESTS", 2)
    first_ip = {"x-forwarded-for": "203.0.113.7, 10.0.0.1"}
    async with _build_client() as client:
        for _ in range(2):
            ok = await client.post("/api/generate/script", json={"prompt": "x"}, headers=first_ip)
            assert ok.status_code == 200
        blocked = await client.post("/api/generate/script", json={"prompt": "x"}, headers=first_ip)
        assert blocked.status_code == 429

        # Only the first hop counts, so another client behind the same proxy is fine.
        other = await client.post(
            "/api/generate/script",
            json={"prompt": "x"},
            headers={"x-forwarded-for": "198.51.100.2, 10.0.0.1"},
        )
        assert other.status_code == 200


def test_rate_limit_evicts_idle_keys(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "RATE_LIMIT_WINDOW_SECONDS", 60)
    server._check_rate_limit("ip:203.0.113.7", now=1000.0)
    server._check_rate_limit("user:u1", now=1030.0)
    assert set(server._RATE_LIMIT_HITS) == {"ip:203.0.113.7", "user:u1"}

    server._check_rate_limit("user:u2", now=1061.0)
    assert set(server._RATE_LIMIT_HITS) == {"user:u1", "user:u2"}


async def test_coin_routes_are_not_rate_limited(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "RATE_LIMIT_REQUESTS", 1)
    async with _build_client() as client:
        for _ in range(5):
            assert (await client.get("/api/coins/u1")).status_code == 200


# =============================================================================
# 8. Error envelope
# =============================================================================


async def test_generation_error_envelope(monkeypatch: pytest.MonkeyPatch) -> None:
    async def always_invalid(req):
        raise generation.GenerationError("model output failed schema validation")

    monkeypatch.setattr(generation, "generate", always_invalid)
    async with _build_client() as client:
        response = await client.post("/api/generate/animation", json={"prompt": "x"})
    assert response.status_code == 502
    assert response.json() == {"success": False, "error": "model output failed schema validation"}
