from __future__ import annotations

from fastapi import Request

from aika.services.admission import AdmissionGate
from aika.services.ledger import ConversationMemory, Ledger
from aika.settings import Settings
from aika.store.ledger_store import PersistentLedgerStore


class Services:
    """Per-app handles shared by the routes; built once in ``create_app``."""

    def __init__(self, settings: Settings, *, store: PersistentLedgerStore | None = None) -> None:
        self.settings = settings
        self.store = store or PersistentLedgerStore(
            redis_url=settings.redis_url,
            key_prefix=settings.redis_key_prefix,
        )
        self.ledger = Ledger(self.store, tiers=settings.title_tiers)
        self.memory = ConversationMemory(
            self.store,
            window=settings.conversation_window,
            retention=settings.conversation_retention,
        )
        self.gate = AdmissionGate(
            self.store,
            daily_cap=settings.daily_usage_cap,
            tz_name=settings.admission_timezone,
        )


def get_services(request: Request) -> Services:
    return request.app.state.services
