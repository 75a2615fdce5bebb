from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from aika.store.ledger_store import LedgerStore

logger = logging.getLogger("aika.admission")

# Counters outlive their day so a late request near midnight still reads them.
_COUNTER_TTL_S = 2 * 86400


class AdmissionGate:
    """Daily usage cap shared by every request that spends upstream AI quota.

    The day boundary is local midnight in ``tz_name``. A cap of 0 disables
    the gate.
    """

    def __init__(
        self,
        store: LedgerStore,
        *,
        daily_cap: int,
        tz_name: str = "Asia/Tokyo",
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._daily_cap = daily_cap
        self._tz = ZoneInfo(tz_name)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _day_key(self) -> str:
        return self._clock().astimezone(self._tz).strftime("%Y-%m-%d")

    async def usage_today(self) -> int:
        return await self._store.get_counter(f"usage:{self._day_key()}")

    async def check_limit(self) -> bool:
        if self._daily_cap <= 0:
            return True
        used = await self.usage_today()
        if used >= self._daily_cap:
            logger.warning("admission_denied used=%s cap=%s", used, self._daily_cap)
            return False
        return True

    async def record_usage(self, kind: str, cost: int = 1) -> int:
        day = self._day_key()
        total = await self._store.incr_counter(f"usage:{day}", cost, ttl_s=_COUNTER_TTL_S)
        await self._store.incr_counter(f"usage:{day}:{kind}", cost, ttl_s=_COUNTER_TTL_S)
        logger.info("admission_usage kind=%s cost=%s total=%s", kind, cost, total)
        return total
