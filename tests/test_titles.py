from __future__ import annotations

from pathlib import Path
import sys
import unittest

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from aika.services.titles import DEFAULT_TITLE_TIERS, parse_title_tiers, title_for


class TestTitleFor(unittest.TestCase):
    def test_lowest_tier_at_zero(self) -> None:
        self.assertEqual(title_for(0), "ルーキー")

    def test_threshold_boundary_grants_tier(self) -> None:
        self.assertEqual(title_for(99), "ルーキー")
        self.assertEqual(title_for(100), "ファイター")
        self.assertEqual(title_for(499), "ファイター")
        self.assertEqual(title_for(500), "エリート会員")
        self.assertEqual(title_for(1000), "伝説の相棒")
        self.assertEqual(title_for(10**9), "伝説の相棒")

    def test_monotonic_over_ascending_totals(self) -> None:
        rank = {name: i for i, (_, name) in enumerate(DEFAULT_TITLE_TIERS)}
        previous = -1
        for total in range(0, 1500, 7):
            current = rank[title_for(total)]
            self.assertGreaterEqual(current, previous)
            previous = current

    def test_unsorted_table_is_evaluated_by_threshold(self) -> None:
        tiers = [(50, "B"), (0, "A"), (200, "C")]
        self.assertEqual(title_for(49, tiers), "A")
        self.assertEqual(title_for(50, tiers), "B")
        self.assertEqual(title_for(250, tiers), "C")

    def test_below_lowest_threshold_gets_lowest_tier(self) -> None:
        self.assertEqual(title_for(3, [(10, "X"), (20, "Y")]), "X")

    def test_empty_table_rejected(self) -> None:
        with self.assertRaises(ValueError):
            title_for(5, [])


class TestParseTitleTiers(unittest.TestCase):
    def test_parses_and_sorts(self) -> None:
        tiers = parse_title_tiers("100:ファイター, 0:ルーキー,50:見習い")
        self.assertEqual(tiers, [(0, "ルーキー"), (50, "見習い"), (100, "ファイター")])

    def test_rejects_malformed_entries(self) -> None:
        for raw in ("abc", "x:name", "10:", "-5:neg", "0:a,0:b", ""):
            with self.subTest(raw=raw):
                with self.assertRaises(ValueError):
                    parse_title_tiers(raw)
