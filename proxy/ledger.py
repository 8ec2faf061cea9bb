"""Per-user coin balances.

Three interchangeable backends share the ``CoinStore`` interface:

- ``MemoryCoinStore``: process-local dict, lost on restart.
- ``SqliteCoinStore``: ``user_coins`` table through aiosqlite.
- ``FirebaseCoinStore``: one JSON document per user under ``{FIREBASE_URL}/users``.

A user that has never been seen starts with ``config.STARTING_COINS``. Balances
never go below zero or above ``MAX_COINS``.
"""

import asyncio
import logging
import os
import re
import sqlite3
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import aiosqlite
import httpx

import config
from errors import ServiceError


logger = logging.getLogger("tissue.ledger")

_USER_ID_RE = re.compile(r"^[A-Za-z0-9_.:\-]{1,128}$")

# Largest integer a JSON client can hold exactly; also fits SQLite INTEGER.
MAX_COINS = 2**53 - 1


class LedgerError(ServiceError):
    status_code = 400


class InsufficientCoins(LedgerError):
    pass


class LedgerUnavailable(LedgerError):
    status_code = 502


@dataclass(frozen=True)
class Balance:
    user_id: str
    coins: int
    last_updated: int
    is_new: bool = False

    def to_document(self) -> Dict[str, Any]:
        return {"coins": self.coins, "lastUpdated": self.last_updated, "userId": self.user_id}


def _now_ms() -> int:
    return int(time.time() * 1000)


def validate_user_id(user_id: Any) -> str:
    uid = str(user_id or "").strip()
    if not _USER_ID_RE.fullmatch(uid):
        raise LedgerError("invalid userId")
    return uid


def coerce_int(value: Any, field: str) -> int:
    # JSON numbers may arrive as 150.0; bools are ints in Python but not here.
    if isinstance(value, bool) or value is None:
        raise LedgerError(f"{field} must be an integer")
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int):
        raise LedgerError(f"{field} must be an integer")
    if abs(value) > MAX_COINS:
        raise LedgerError(f"{field} out of range")
    return value


def _check_new_balance(coins: int) -> int:
    if coins < 0:
        raise LedgerError("coins must be a non-negative integer")
    if coins > MAX_COINS:
        raise LedgerError("coins out of range")
    return coins


def _check_added_balance(coins: int) -> int:
    if coins < 0:
        raise InsufficientCoins("insufficient coins")
    if coins > MAX_COINS:
        raise LedgerError("coins out of range")
    return coins


class CoinStore:
    name = "base"

    def __init__(self, *, starting_coins: Optional[int] = None) -> None:
        self.starting_coins = config.STARTING_COINS if starting_coins is None else int(starting_coins)

    async def init(self) -> None:
        return None

    async def peek(self, user_id: str) -> Optional[Balance]:
        """Read a balance without creating it."""
        raise NotImplementedError

    async def get(self, user_id: str) -> Balance:
        raise NotImplementedError

    async def set(self, user_id: str, coins: int) -> Balance:
        raise NotImplementedError

    async def add(self, user_id: str, amount: int) -> Balance:
        raise NotImplementedError


class MemoryCoinStore(CoinStore):
    name = "memory"

    def __init__(self, *, starting_coins: Optional[int] = None) -> None:
        super().__init__(starting_coins=starting_coins)
        self._rows: Dict[str, Tuple[int, int]] = {}
        self._lock = asyncio.Lock()

    async def peek(self, user_id: str) -> Optional[Balance]:
        row = self._rows.get(user_id)
        return Balance(user_id, row[0], row[1]) if row is not None else None

    async def get(self, user_id: str) -> Balance:
        async with self._lock:
            row = self._rows.get(user_id)
            if row is not None:
                return Balance(user_id, row[0], row[1])
            now = _now_ms()
            self._rows[user_id] = (self.starting_coins, now)
            return Balance(user_id, self.starting_coins, now, is_new=True)

    async def set(self, user_id: str, coins: int) -> Balance:
        coins = _check_new_balance(coins)
        async with self._lock:
            now = _now_ms()
            self._rows[user_id] = (coins, now)
        return Balance(user_id, coins, now)

    async def add(self, user_id: str, amount: int) -> Balance:
        async with self._lock:
            current, _ = self._rows.get(user_id, (self.starting_coins, 0))
            new_coins = _check_added_balance(current + amount)
            now = _now_ms()
            self._rows[user_id] = (new_coins, now)
        return Balance(user_id, new_coins, now)


class SqliteCoinStore(CoinStore):
    name = "sqlite"

    def __init__(self, db_path: Optional[str] = None, *, starting_coins: Optional[int] = None) -> None:
        super().__init__(starting_coins=starting_coins)
        self.db_path = db_path or config.COIN_DB_PATH

    async def init(self) -> None:
        d = os.path.dirname(os.path.abspath(self.db_path))
        if d:
            os.makedirs(d, exist_ok=True)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                f"""
                CREATE TABLE IF NOT EXISTS user_coins (
                  user_id TEXT PRIMARY KEY,
                  coins INTEGER NOT NULL CHECK (coins >= 0 AND coins <= {MAX_COINS}),
                  last_updated INTEGER NOT NULL
                )
                """
            )
            await db.commit()

    async def _select(self, db: aiosqlite.Connection, user_id: str) -> Optional[Balance]:
        async with db.execute(
            "SELECT coins,last_updated FROM user_coins WHERE user_id=?",
            (user_id,),
        ) as cur:
            row = await cur.fetchone()
        if not row:
            return None
        return Balance(user_id, int(row["coins"]), int(row["last_updated"]))

    async def peek(self, user_id: str) -> Optional[Balance]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            return await self._select(db, user_id)

    async def get(self, user_id: str) -> Balance:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            existing = await self._select(db, user_id)
            if existing is not None:
                return existing
            now = _now_ms()
            cur = await db.execute(
                "INSERT OR IGNORE INTO user_coins(user_id,coins,last_updated) VALUES (?,?,?)",
                (user_id, self.starting_coins, now),
            )
            await db.commit()
            if cur.rowcount == 0:
                # Lost a race with a concurrent first access.
                return await self._select(db, user_id)
            return Balance(user_id, self.starting_coins, now, is_new=True)

    async def set(self, user_id: str, coins: int) -> Balance:
        coins = _check_new_balance(coins)
        now = _now_ms()
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO user_coins(user_id, coins, last_updated)
                VALUES (?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                  coins = excluded.coins,
                  last_updated = excluded.last_updated
                """,
                (user_id, coins, now),
            )
            await db.commit()
        return Balance(user_id, coins, now)

    async def add(self, user_id: str, amount: int) -> Balance:
        now = _now_ms()
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            try:
                await db.execute(
                    """
                    INSERT INTO user_coins(user_id, coins, last_updated)
                    VALUES (?, ?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET
                      coins = coins + ?,
                      last_updated = excluded.last_updated
                    """,
                    (user_id, self.starting_coins + amount, now, amount),
                )
            except sqlite3.IntegrityError:
                # The CHECK constraint rejected the new balance.
                if amount < 0:
                    raise InsufficientCoins("insufficient coins")
                raise LedgerError("coins out of range")
            balance = await self._select(db, user_id)
            await db.commit()
        return balance


class FirebaseCoinStore(CoinStore):
    name = "firebase"

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        starting_coins: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(starting_coins=starting_coins)
        self.base_url = (base_url if base_url is not None else config.FIREBASE_URL).rstrip("/")
        self._transport = transport
        # Read-modify-write increments are serialized within this process.
        self._lock = asyncio.Lock()

    async def init(self) -> None:
        if not self.base_url:
            raise ValueError("FIREBASE_URL is required for the firebase ledger backend")

    def _doc_url(self, user_id: str) -> str:
        return f"{self.base_url}/users/{user_id}.json"

    async def _request(self, method: str, user_id: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        url = self._doc_url(user_id)
        try:
            async with httpx.AsyncClient(
                timeout=config.UPSTREAM_TIMEOUT_SECONDS,
                transport=self._transport,
            ) as client:
                resp = await client.request(method, url, json=payload)
        except httpx.HTTPError as e:
            logger.warning("[Firebase] %s %s failed: %r", method, user_id, e)
            raise LedgerUnavailable("Firebase error")
        if resp.status_code >= 400:
            logger.warning("[Firebase] %s %s -> %s %s", method, user_id, resp.status_code, resp.text[:200])
            raise LedgerUnavailable("Firebase error", status_code=resp.status_code)
        try:
            return resp.json()
        except ValueError:
            raise LedgerUnavailable("Firebase returned invalid JSON")

    async def _load(self, user_id: str) -> Optional[Balance]:
        data = await self._request("GET", user_id)
        if not isinstance(data, dict):
            return None
        coins = data.get("coins")
        if isinstance(coins, bool) or not isinstance(coins, (int, float)):
            return None
        last = data.get("lastUpdated")
        return Balance(user_id, int(coins), int(last) if isinstance(last, (int, float)) else 0)

    async def _store(self, user_id: str, coins: int, *, is_new: bool = False) -> Balance:
        balance = Balance(user_id, coins, _now_ms(), is_new=is_new)
        await self._request("PUT", user_id, balance.to_document())
        return balance

    async def peek(self, user_id: str) -> Optional[Balance]:
        return await self._load(user_id)

    async def get(self, user_id: str) -> Balance:
        async with self._lock:
            existing = await self._load(user_id)
            if existing is not None:
                return existing
            return await self._store(user_id, self.starting_coins, is_new=True)

    async def set(self, user_id: str, coins: int) -> Balance:
        coins = _check_new_balance(coins)
        async with self._lock:
            return await self._store(user_id, coins)

    async def add(self, user_id: str, amount: int) -> Balance:
        async with self._lock:
            existing = await self._load(user_id)
            current = existing.coins if existing is not None else self.starting_coins
            new_coins = _check_added_balance(current + amount)
            return await self._store(user_id, new_coins)


STORES = {
    MemoryCoinStore.name: MemoryCoinStore,
    SqliteCoinStore.name: SqliteCoinStore,
    FirebaseCoinStore.name: FirebaseCoinStore,
}


def make_store(backend: Optional[str] = None) -> CoinStore:
    name = (backend or config.LEDGER_BACKEND or "memory").strip().lower()
    cls = STORES.get(name)
    if cls is None:
        raise ValueError(f"unknown LEDGER_BACKEND: {name!r} (expected one of {', '.join(STORES)})")
    return cls()
