import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
import generation
import ledger
import providers
from errors import ServiceError


logger = logging.getLogger("tissue.server")


# -----------------------------
# Rate limiting
# -----------------------------

_RATE_LIMIT_HITS: Dict[str, List[float]] = {}
_RATE_LIMIT_LOCK = Lock()


def _client_ip(request: Request) -> str:
    # Prefer X-Forwarded-For when behind a proxy; otherwise fall back to peer address.
    xff = request.headers.get("x-forwarded-for")
    if isinstance(xff, str) and xff.strip():
        return xff.split(",")[0].strip() or "unknown"
    if request.client and getattr(request.client, "host", None):
        return str(request.client.host)
    return "unknown"


def _check_rate_limit(key: str, now: Optional[float] = None) -> None:
    max_requests = max(1, int(config.RATE_LIMIT_REQUESTS))
    window = max(1, int(config.RATE_LIMIT_WINDOW_SECONDS))
    now = time.time() if now is None else now
    cutoff = now - window

    with _RATE_LIMIT_LOCK:
        # Drop keys whose hits have all aged out of the window.
        for stale in [k for k, v in _RATE_LIMIT_HITS.items() if not v or v[-1] <= cutoff]:
            del _RATE_LIMIT_HITS[stale]
        hits = [t for t in (_RATE_LIMIT_HITS.get(key) or []) if t > cutoff]
        if len(hits) >= max_requests:
            _RATE_LIMIT_HITS[key] = hits
            raise HTTPException(status_code=429, detail="Rate limit exceeded. Try again later.")
        hits.append(now)
        _RATE_LIMIT_HITS[key] = hits


def _reset_rate_limits() -> None:
    with _RATE_LIMIT_LOCK:
        _RATE_LIMIT_HITS.clear()


# -----------------------------
# Coin store
# -----------------------------

_STORE: Optional[ledger.CoinStore] = None


async def _get_store() -> ledger.CoinStore:
    global _STORE
    if _STORE is None:
        store = ledger.make_store()
        await store.init()
        _STORE = store
        logger.info("[Coins] storage backend: %s", store.name)
    return _STORE


async def _read_json_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid JSON")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON")
    return body


def _error_response(status_code: int, message: str, **extra: Any) -> JSONResponse:
    content: Dict[str, Any] = {"success": False, "error": message}
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


@asynccontextmanager
async def _lifespan(app: FastAPI):
    await _get_store()
    yield


app = FastAPI(title=config.SERVICE_NAME, version=config.SERVICE_VERSION, lifespan=_lifespan)


@app.exception_handler(ServiceError)
async def _service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    return _error_response(exc.status_code, exc.message)


@app.exception_handler(StarletteHTTPException)
async def _http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    detail = exc.detail
    if exc.status_code == 404 and detail == "Not Found":
        detail = "Not found"
    return _error_response(exc.status_code, str(detail))


@app.exception_handler(Exception)
async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("[%s %s] unhandled error", request.method, request.url.path)
    return _error_response(500, "Internal server error", details=str(exc))


@app.middleware("http")
async def _access_log_middleware(request: Request, call_next):
    started = time.monotonic()
    response = await call_next(request)
    logger.info(
        "%s %s -> %s (%dms)",
        request.method,
        request.url.path,
        response.status_code,
        int((time.monotonic() - started) * 1000),
    )
    return response


# -----------------------------
# Health
# -----------------------------


@app.get("/")
async def root() -> Dict[str, Any]:
    return {
        "status": "online",
        "message": f"{config.SERVICE_NAME} v{config.SERVICE_VERSION}",
        "version": config.SERVICE_VERSION,
        "storage": config.LEDGER_BACKEND if _STORE is None else _STORE.name,
        "endpoints": [
            "GET  /test",
            "GET  /health",
            "GET  /api/coins/{userId}",
            "PUT  /api/coins/{userId}",
            "POST /api/coins/{userId}/add",
            "GET  /api/firebase/coins/{userId}",
            "PUT  /api/firebase/coins/{userId}",
            "POST /api/generate/{type}",
            "POST /api/generate",
            "POST /api/gemini",
        ],
        "generation_types": list(generation.GENERATION_TYPES),
        "tiers": {
            "free": f"{config.FREE_MODEL} (via OpenRouter)",
            "paid": f"{config.PAID_MODEL} (via OpenAI)",
        },
    }


@app.get("/test")
async def test_endpoint() -> Dict[str, Any]:
    return {
        "success": True,
        "message": f"{config.SERVICE_NAME} - {config.LEDGER_BACKEND} storage",
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    }


@app.get("/health")
async def health() -> Dict[str, Any]:
    return {"ok": True, "ts": int(time.time())}


# -----------------------------
# Coins
# -----------------------------


@app.get("/api/coins/{user_id}")
async def get_coins(user_id: str) -> Any:
    uid = ledger.validate_user_id(user_id)
    store = await _get_store()
    balance = await store.get(uid)
    if balance.is_new:
        logger.info("[Coins] new user %s starts with %d coins", uid, balance.coins)
    return {
        "success": True,
        "coins": balance.coins,
        "isNew": balance.is_new,
        "lastUpdated": balance.last_updated,
    }


@app.put("/api/coins/{user_id}")
async def put_coins(user_id: str, request: Request) -> Any:
    uid = ledger.validate_user_id(user_id)
    body = await _read_json_body(request)
    if "coins" not in body:
        raise HTTPException(status_code=400, detail="Missing coins")
    coins = ledger.coerce_int(body.get("coins"), "coins")

    store = await _get_store()
    balance = await store.set(uid, coins)
    logger.info("[Coins] updated user %s: %d coins", uid, balance.coins)
    return {"success": True, "coins": balance.coins, "lastUpdated": balance.last_updated}


@app.post("/api/coins/{user_id}/add")
async def add_coins(user_id: str, request: Request) -> Any:
    uid = ledger.validate_user_id(user_id)
    body = await _read_json_body(request)
    if "amount" not in body:
        raise HTTPException(status_code=400, detail="Missing amount")
    amount = ledger.coerce_int(body.get("amount"), "amount")

    store = await _get_store()
    balance = await store.add(uid, amount)
    logger.info("[Coins] added %d coins to user %s, new balance %d", amount, uid, balance.coins)
    return {"success": True, "coins": balance.coins, "lastUpdated": balance.last_updated}


# Document-store shaped routes kept for plugin builds that still call them.
@app.get("/api/firebase/coins/{user_id}")
async def get_coins_legacy(user_id: str) -> Any:
    uid = ledger.validate_user_id(user_id)
    store = await _get_store()
    balance = await store.get(uid)
    return {"coins": balance.coins, "isNew": balance.is_new}


@app.put("/api/firebase/coins/{user_id}")
async def put_coins_legacy(user_id: str, request: Request) -> Any:
    uid = ledger.validate_user_id(user_id)
    body = await _read_json_body(request)
    if body.get("coins") is None:
        raise HTTPException(status_code=400, detail="Missing userId or coins")
    coins = ledger.coerce_int(body.get("coins"), "coins")

    store = await _get_store()
    balance = await store.set(uid, coins)
    logger.info("[Coins] saved %d coins for user %s", balance.coins, uid)
    return {"success": True, "data": balance.to_document()}


# -----------------------------
# Generation
# -----------------------------


def _require_prompt_and_user(body: Dict[str, Any]) -> str:
    prompt = body.get("prompt")
    user_id = body.get("userId")
    if not isinstance(prompt, str) or not prompt.strip() or not user_id:
        raise HTTPException(status_code=400, detail="Missing prompt or userId")
    return ledger.validate_user_id(user_id)


def _optional_int(body: Dict[str, Any], key: str) -> Optional[int]:
    v = body.get(key)
    if isinstance(v, bool) or not isinstance(v, int) or v <= 0:
        return None
    return v


def _optional_float(body: Dict[str, Any], key: str) -> Optional[float]:
    v = body.get(key)
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return None
    return float(v)


@app.post("/api/generate/{gen_type}")
async def generate_typed(gen_type: str, request: Request) -> Any:
    body = await _read_json_body(request)
    req = generation.parse_generation_request(gen_type, body)

    user_id = body.get("userId")
    key = f"user:{ledger.validate_user_id(user_id)}" if user_id else f"ip:{_client_ip(request)}"
    _check_rate_limit(key)

    logger.info("[Generate] type=%s for %s", req.type, key)
    result = await generation.generate(req)
    logger.info(
        "[Generate] type=%s model=%s attempts=%d elapsed=%dms",
        req.type,
        result.model,
        result.attempts,
        result.elapsed_ms,
    )
    return result.to_response()


@app.post("/api/generate")
async def generate_by_tier(request: Request) -> Any:
    body = await _read_json_body(request)
    uid = _require_prompt_and_user(body)
    _check_rate_limit(f"user:{uid}")

    coins: Optional[int] = None
    try:
        store = await _get_store()
        balance = await store.peek(uid)
        coins = balance.coins if balance is not None else None
    except ledger.LedgerError as e:
        # Tier lookup failures degrade to the free tier.
        logger.warning("[Tier Check] %s: %s", uid, e.message)

    data = await generation.generate_tiered(
        prompt=body["prompt"],
        coins=coins,
        temperature=_optional_float(body, "temperature"),
        max_tokens=_optional_int(body, "maxTokens"),
    )
    logger.info("[Generate] user %s tier=%s model=%s", uid, data["tier"], data["model_used"])
    return JSONResponse(data)


@app.post("/api/gemini")
async def gemini_proxy(request: Request) -> Any:
    body = await _read_json_body(request)
    uid = _require_prompt_and_user(body)
    _check_rate_limit(f"user:{uid}")

    logger.info("[Gemini] request from user %s", uid)
    data = await providers.call_gemini(
        prompt=body["prompt"],
        temperature=_optional_float(body, "temperature"),
        max_tokens=_optional_int(body, "maxTokens"),
    )
    return JSONResponse(data)


def _log_banner() -> None:
    def configured(key: str) -> str:
        return "configured" if key else "not configured"

    logger.info("%s v%s", config.SERVICE_NAME, config.SERVICE_VERSION)
    logger.info("Server:  http://%s:%s", config.LISTEN_HOST, config.LISTEN_PORT)
    logger.info("Storage: %s", config.LEDGER_BACKEND)
    logger.info(
        "OpenAI: %s, OpenRouter: %s, Gemini: %s",
        configured(config.OPENAI_API_KEY),
        configured(config.OPENROUTER_API_KEY),
        configured(config.GEMINI_API_KEY),
    )
    logger.info("Tiers:   free=%s paid=%s", config.FREE_MODEL, config.PAID_MODEL)
    if config.MOCK_MODE:
        logger.warning("MOCK_MODE is on: upstream vendors will not be called")


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _log_banner()
    uvicorn.run(app, host=config.LISTEN_HOST, port=config.LISTEN_PORT)
