from __future__ import annotations

from typing import Optional, Sequence

from aika.services.titles import DEFAULT_TITLE_TIERS, TitleTier, title_for
from aika.store.ledger_store import ConversationTurn, LedgerStore, NoteRecord, Sender, UserRecord

DEFAULT_USER_NAME = "ゲスト"

_ROLE_LABELS = {"user": "User", "assistant": "AI"}


class Ledger:
    """Users, their point totals and the titles those totals earn."""

    def __init__(self, store: LedgerStore, *, tiers: Sequence[TitleTier] = DEFAULT_TITLE_TIERS) -> None:
        self._store = store
        self._tiers = tuple(tiers)

    def title_for(self, total: int) -> str:
        return title_for(total, self._tiers)

    async def get_user(self, user_id: str) -> Optional[UserRecord]:
        return await self._store.get_user(user_id)

    async def get_or_create_user(self, user_id: str, name: Optional[str] = None) -> UserRecord:
        return await self._store.get_or_create_user(
            user_id,
            name=(name or "").strip() or DEFAULT_USER_NAME,
            title=self.title_for(0),
        )

    async def add_points(self, user_id: str, delta: int) -> Optional[UserRecord]:
        """Add ``delta`` points and refresh the title in one store write.

        Returns ``None`` when the user does not exist.
        """
        return await self._store.add_points(user_id, delta, title_fn=self.title_for)

    async def save_note(self, user_id: str, content: str, analysis_result: Optional[str] = None) -> NoteRecord:
        note = NoteRecord(user_id=user_id, content=content, analysis_result=analysis_result)
        await self._store.append_note(note)
        return note


class ConversationMemory:
    def __init__(self, store: LedgerStore, *, window: int = 5, retention: int = 0) -> None:
        self._store = store
        self._window = max(1, window)
        self._retention = max(0, retention)

    async def record(self, user_id: str, message: str, sender: Sender) -> None:
        await self._store.append_turn(
            ConversationTurn(user_id=user_id, message=message, sender=sender),
            retention=self._retention,
        )

    async def recent(self, user_id: str, limit: Optional[int] = None) -> list[ConversationTurn]:
        return await self._store.recent_turns(user_id, self._window if limit is None else limit)

    async def context(self, user_id: str, limit: Optional[int] = None) -> str:
        turns = await self.recent(user_id, limit)
        return format_turns(turns)


def format_turns(turns: list[ConversationTurn]) -> str:
    return "\n".join(f"{_ROLE_LABELS.get(t.sender, t.sender)}: {t.message}" for t in turns)
