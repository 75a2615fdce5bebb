from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import itertools
import json
import logging
import time
from typing import Any, Callable, Literal, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field
import redis.asyncio as aioredis
from redis.exceptions import WatchError

logger = logging.getLogger("aika.store")

Sender = Literal["user", "assistant"]
TitleFn = Callable[[int], str]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = "ゲスト"
    points: int = Field(default=0, ge=0)
    title: str
    created_at: datetime = Field(default_factory=_utcnow)


class NoteRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_id: str
    content: str
    analysis_result: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)


class ConversationTurn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_id: str
    message: str
    sender: Sender
    created_at: datetime = Field(default_factory=_utcnow)
    seq: int = 0


class LedgerStore(Protocol):
    async def get_user(self, uid: str) -> Optional[UserRecord]: ...

    async def get_or_create_user(self, uid: str, *, name: str, title: str) -> UserRecord: ...

    async def add_points(self, uid: str, delta: int, *, title_fn: TitleFn) -> Optional[UserRecord]: ...

    async def append_note(self, note: NoteRecord) -> None: ...

    async def recent_notes(self, uid: str, limit: int) -> list[NoteRecord]: ...

    async def append_turn(self, turn: ConversationTurn, *, retention: int = 0) -> None: ...

    async def recent_turns(self, uid: str, limit: int) -> list[ConversationTurn]: ...

    async def incr_counter(self, key: str, amount: int, *, ttl_s: int) -> int: ...

    async def get_counter(self, key: str) -> int: ...

    async def close(self) -> None: ...


def normalize_uid(uid: str) -> str:
    if not isinstance(uid, str):
        raise TypeError("uid must be a string")
    normalized = uid.strip()
    if not normalized:
        raise ValueError("uid must be non-empty")
    if len(normalized) > 200:
        raise ValueError("uid too long")
    return normalized


def _check_delta(delta: int) -> None:
    if isinstance(delta, bool) or not isinstance(delta, int):
        raise TypeError("delta must be an int")
    if delta < 0:
        raise ValueError("delta must be non-negative")


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), sort_keys=True)


def _chronological(turns: list[ConversationTurn]) -> list[ConversationTurn]:
    return sorted(turns, key=lambda t: (_as_utc(t.created_at), t.seq))


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class InMemoryLedgerStore(LedgerStore):
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._users: dict[str, dict[str, Any]] = {}
        self._notes: dict[str, list[dict[str, Any]]] = {}
        self._turns: dict[str, list[ConversationTurn]] = {}
        self._counters: dict[str, tuple[int, Optional[float]]] = {}
        self._seq = itertools.count(1)

    async def get_user(self, uid: str) -> Optional[UserRecord]:
        key = normalize_uid(uid)
        async with self._lock:
            data = self._users.get(key)
            return UserRecord.model_validate(data) if data else None

    async def get_or_create_user(self, uid: str, *, name: str, title: str) -> UserRecord:
        key = normalize_uid(uid)
        async with self._lock:
            data = self._users.get(key)
            if data is None:
                data = UserRecord(id=key, name=name, points=0, title=title).model_dump(mode="json")
                self._users[key] = data
                logger.info("user_created uid=%s", key)
            return UserRecord.model_validate(data)

    async def add_points(self, uid: str, delta: int, *, title_fn: TitleFn) -> Optional[UserRecord]:
        _check_delta(delta)
        key = normalize_uid(uid)
        async with self._lock:
            data = self._users.get(key)
            if data is None:
                return None
            total = int(data.get("points") or 0) + delta
            updated = {**data, "points": total, "title": title_fn(total)}
            self._users[key] = updated
            return UserRecord.model_validate(updated)

    async def append_note(self, note: NoteRecord) -> None:
        key = normalize_uid(note.user_id)
        async with self._lock:
            self._notes.setdefault(key, []).append(note.model_dump(mode="json"))

    async def recent_notes(self, uid: str, limit: int) -> list[NoteRecord]:
        key = normalize_uid(uid)
        if limit <= 0:
            return []
        async with self._lock:
            rows = list(self._notes.get(key, []))[-limit:]
        return [NoteRecord.model_validate(r) for r in rows]

    async def append_turn(self, turn: ConversationTurn, *, retention: int = 0) -> None:
        key = normalize_uid(turn.user_id)
        async with self._lock:
            stored = turn.model_copy(update={"user_id": key, "seq": next(self._seq)})
            turns = _chronological([*self._turns.get(key, []), stored])
            if retention > 0:
                turns = turns[-retention:]
            self._turns[key] = turns

    async def recent_turns(self, uid: str, limit: int) -> list[ConversationTurn]:
        key = normalize_uid(uid)
        if limit <= 0:
            return []
        async with self._lock:
            newest_first = list(reversed(_chronological(self._turns.get(key, []))))[:limit]
        return list(reversed(newest_first))

    async def incr_counter(self, key: str, amount: int, *, ttl_s: int) -> int:
        async with self._lock:
            now = time.monotonic()
            value, expires_at = self._counters.get(key, (0, None))
            if expires_at is not None and now >= expires_at:
                value, expires_at = 0, None
            value += amount
            if ttl_s > 0:
                expires_at = now + ttl_s
            self._counters[key] = (value, expires_at)
            return value

    async def get_counter(self, key: str) -> int:
        async with self._lock:
            value, expires_at = self._counters.get(key, (0, None))
            if expires_at is not None and time.monotonic() >= expires_at:
                self._counters.pop(key, None)
                return 0
            return value

    async def close(self) -> None:
        return None


class RedisLedgerStore(LedgerStore):
    def __init__(
        self,
        *,
        redis_url: str,
        connect_timeout_s: float = 1.0,
        socket_timeout_s: float = 1.0,
        key_prefix: str = "aika",
    ) -> None:
        self._key_prefix = key_prefix.strip(":") or "aika"
        self._redis = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=connect_timeout_s,
            socket_timeout=socket_timeout_s,
        )

    async def ping(self) -> None:
        await self._redis.ping()

    def _key(self, kind: str, uid: str) -> str:
        return f"{self._key_prefix}:{kind}:{normalize_uid(uid)}"

    async def get_user(self, uid: str) -> Optional[UserRecord]:
        raw = await self._redis.hgetall(self._key("user", uid))
        if not raw:
            return None
        return UserRecord.model_validate(raw)

    async def get_or_create_user(self, uid: str, *, name: str, title: str) -> UserRecord:
        key = self._key("user", uid)
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    existing = await pipe.hgetall(key)
                    if existing:
                        await pipe.unwatch()
                        return UserRecord.model_validate(existing)
                    record = UserRecord(id=normalize_uid(uid), name=name, points=0, title=title)
                    pipe.multi()
                    pipe.hset(key, mapping=_user_mapping(record))
                    await pipe.execute()
                    logger.info("user_created uid=%s", record.id)
                    return record
                except WatchError:
                    continue

    async def add_points(self, uid: str, delta: int, *, title_fn: TitleFn) -> Optional[UserRecord]:
        _check_delta(delta)
        key = self._key("user", uid)
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    existing = await pipe.hgetall(key)
                    if not existing:
                        await pipe.unwatch()
                        return None
                    total = int(existing.get("points") or 0) + delta
                    title = title_fn(total)
                    pipe.multi()
                    pipe.hset(key, mapping={"points": total, "title": title})
                    await pipe.execute()
                    return UserRecord.model_validate({**existing, "points": total, "title": title})
                except WatchError:
                    logger.info("ledger_add_points_retry uid=%s", uid)
                    continue

    async def append_note(self, note: NoteRecord) -> None:
        await self._redis.rpush(self._key("notes", note.user_id), _json_dumps(note.model_dump(mode="json")))

    async def recent_notes(self, uid: str, limit: int) -> list[NoteRecord]:
        if limit <= 0:
            return []
        rows = await self._redis.lrange(self._key("notes", uid), -limit, -1)
        return [NoteRecord.model_validate(json.loads(r)) for r in rows]

    async def append_turn(self, turn: ConversationTurn, *, retention: int = 0) -> None:
        key = self._key("turns", turn.user_id)
        seq = await self._redis.incr(self._key("turn_seq", turn.user_id))
        stored = turn.model_copy(update={"user_id": normalize_uid(turn.user_id), "seq": int(seq)})
        score = _as_utc(stored.created_at).timestamp()
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zadd(key, {_json_dumps(stored.model_dump(mode="json")): score})
            if retention > 0:
                pipe.zremrangebyrank(key, 0, -(retention + 1))
            await pipe.execute()

    async def recent_turns(self, uid: str, limit: int) -> list[ConversationTurn]:
        if limit <= 0:
            return []
        rows = await self._redis.zrevrange(self._key("turns", uid), 0, limit - 1)
        turns: list[ConversationTurn] = []
        for raw in rows:
            try:
                turns.append(ConversationTurn.model_validate(json.loads(raw)))
            except Exception:
                logger.warning("redis_turn_parse_failed uid=%s", uid)
        return _chronological(turns)

    async def incr_counter(self, key: str, amount: int, *, ttl_s: int) -> int:
        full_key = f"{self._key_prefix}:counter:{key}"
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.incrby(full_key, amount)
            if ttl_s > 0:
                pipe.expire(full_key, ttl_s)
            value, *_ = await pipe.execute()
        return int(value)

    async def get_counter(self, key: str) -> int:
        raw = await self._redis.get(f"{self._key_prefix}:counter:{key}")
        try:
            return int(raw) if raw else 0
        except ValueError:
            return 0

    async def close(self) -> None:
        try:
            await self._redis.aclose()
        except Exception:
            pass


def _user_mapping(record: UserRecord) -> dict[str, Any]:
    data = record.model_dump(mode="json")
    return {k: v for k, v in data.items() if v is not None}


class PersistentLedgerStore(LedgerStore):
    """Redis-backed store that uses process memory when Redis is unreachable at startup.

    The backend is chosen once in ``initialize``; errors after that propagate
    to the caller.
    """

    def __init__(
        self,
        *,
        redis_url: Optional[str] = None,
        connect_timeout_s: float = 1.0,
        socket_timeout_s: float = 1.0,
        key_prefix: str = "aika",
    ) -> None:
        self._redis_url = redis_url
        self._connect_timeout_s = connect_timeout_s
        self._socket_timeout_s = socket_timeout_s
        self._key_prefix = key_prefix
        self._backend: LedgerStore = InMemoryLedgerStore()
        self._backend_kind = "memory"

    @property
    def backend_kind(self) -> str:
        return self._backend_kind

    async def initialize(self) -> None:
        redis_url = (self._redis_url or "").strip() or None

        if not redis_url:
            logger.info("ledger_store_backend=memory reason=missing_REDIS_URL")
            return

        try:
            redis_backend = RedisLedgerStore(
                redis_url=redis_url,
                connect_timeout_s=self._connect_timeout_s,
                socket_timeout_s=self._socket_timeout_s,
                key_prefix=self._key_prefix,
            )
            await redis_backend.ping()
        except Exception as exc:
            logger.warning(
                "ledger_store_backend=memory reason=redis_unavailable err=%s",
                getattr(exc, "message", str(exc)),
            )
            return

        self._backend = redis_backend
        self._backend_kind = "redis"
        logger.info("ledger_store_backend=redis")

    async def get_user(self, uid: str) -> Optional[UserRecord]:
        return await self._backend.get_user(uid)

    async def get_or_create_user(self, uid: str, *, name: str, title: str) -> UserRecord:
        return await self._backend.get_or_create_user(uid, name=name, title=title)

    async def add_points(self, uid: str, delta: int, *, title_fn: TitleFn) -> Optional[UserRecord]:
        return await self._backend.add_points(uid, delta, title_fn=title_fn)

    async def append_note(self, note: NoteRecord) -> None:
        await self._backend.append_note(note)

    async def recent_notes(self, uid: str, limit: int) -> list[NoteRecord]:
        return await self._backend.recent_notes(uid, limit)

    async def append_turn(self, turn: ConversationTurn, *, retention: int = 0) -> None:
        await self._backend.append_turn(turn, retention=retention)

    async def recent_turns(self, uid: str, limit: int) -> list[ConversationTurn]:
        return await self._backend.recent_turns(uid, limit)

    async def incr_counter(self, key: str, amount: int, *, ttl_s: int) -> int:
        return await self._backend.incr_counter(key, amount, ttl_s=ttl_s)

    async def get_counter(self, key: str) -> int:
        return await self._backend.get_counter(key)

    async def close(self) -> None:
        await self._backend.close()
