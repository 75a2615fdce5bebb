from __future__ import annotations

from typing import Iterable, Sequence

TitleTier = tuple[int, str]

# Ascending (minimum_total, title). Product content; override with TITLE_TIERS.
DEFAULT_TITLE_TIERS: tuple[TitleTier, ...] = (
    (0, "ルーキー"),
    (100, "ファイター"),
    (500, "エリート会員"),
    (1000, "伝説の相棒"),
)


def title_for(total: int, tiers: Sequence[TitleTier] = DEFAULT_TITLE_TIERS) -> str:
    """Map a cumulative point total to its title.

    Tiers are checked from the highest threshold down and the first one the
    total reaches wins, so a total sitting exactly on a threshold gets that
    tier. Totals below every threshold get the lowest tier.
    """
    ordered = sorted(tiers, key=lambda t: t[0])
    if not ordered:
        raise ValueError("title tiers must not be empty")
    for minimum, name in reversed(ordered):
        if total >= minimum:
            return name
    return ordered[0][1]


def parse_title_tiers(raw: str) -> list[TitleTier]:
    """Parse ``"0:ルーキー,100:ファイター"`` into a sorted tier list."""
    tiers: list[TitleTier] = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        threshold, sep, name = part.partition(":")
        if not sep or not name.strip():
            raise ValueError(f"invalid title tier: {part!r}")
        try:
            minimum = int(threshold.strip())
        except ValueError as exc:
            raise ValueError(f"invalid title tier threshold: {part!r}") from exc
        if minimum < 0:
            raise ValueError(f"title tier threshold must be non-negative: {part!r}")
        tiers.append((minimum, name.strip()))
    return _validated(tiers)


def _validated(tiers: Iterable[TitleTier]) -> list[TitleTier]:
    ordered = sorted(tiers, key=lambda t: t[0])
    if not ordered:
        raise ValueError("title tiers must not be empty")
    seen: set[int] = set()
    for minimum, _ in ordered:
        if minimum in seen:
            raise ValueError(f"duplicate title tier threshold: {minimum}")
        seen.add(minimum)
    return ordered
