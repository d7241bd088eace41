import json
import tempfile
import unittest
from datetime import datetime
from pathlib import Path

from towertracker.core.aliases import add_killer_alias, load_killer_aliases
from towertracker.core.autocorrect import Autocorrecter, KillerNameCorrector
from towertracker.core.extract import (
    datetime_from_filename,
    extract_from_ocr_lines,
    fix_ocr_misreads,
    parse_battle_report,
)

BATTLE_REPORT = """Battle Report
Battle Date\tOct 14, 2025 13:45
Game Time\t1d 2h 3m 4s
Real Time\t5h 6m 7s
Tier\t11+
Wave\t3456
Killed By\tVampire
Coins Earned\t12.34T
Cells Earned\t1,234
Reroll Shards Earned\t567
"""

OCR_LINES = [
    "Battle Report",
    "Tier 10",
    "Wave 2500",
    "Real Time 2h 30m 0s",
    "Coins Earned 1.5T",
    "Cells Earned 12.3K",
    "Reroll Shards Earned 800",
    "Killed By",
    "Boss",
]


def _write_json(path: Path, data) -> None:
    path.write_text(json.dumps(data, indent=2), encoding="utf-8")


class BattleReportTests(unittest.TestCase):
    def test_parses_pasted_report(self) -> None:
        data = parse_battle_report(BATTLE_REPORT)
        self.assertEqual(data["tier"], 11)
        self.assertEqual(data["tierDisplay"], "11+")
        self.assertTrue(data["tierHasPlus"])
        self.assertEqual(data["type"], "Tournament")
        self.assertEqual(data["wave"], 3456)
        self.assertEqual(data["roundDuration"], "5h6m7s")
        self.assertEqual(data["totalCoins"], "12.34T")
        self.assertEqual(data["totalCells"], "1234")
        self.assertEqual(data["totalDice"], "567")
        self.assertEqual(data["killedBy"], "Vampire")
        self.assertEqual(data["Battle Date"], "Oct 14, 2025 13:45")

    def test_comma_decimal_report(self) -> None:
        data = parse_battle_report("Tier 3\nWave 10\nCoins Earned 1,5B\n", decimal_separator=",")
        self.assertEqual(data["totalCoins"], "1.5B")
        self.assertNotIn("type", data)

    def test_text_without_labels(self) -> None:
        self.assertEqual(parse_battle_report("hello there"), {})
        self.assertEqual(parse_battle_report(None), {})


class OcrTests(unittest.TestCase):
    def test_fix_ocr_misreads(self) -> None:
        self.assertEqual(fix_ocr_misreads("1O.5B"), "10.5B")
        self.assertEqual(fix_ocr_misreads("S00"), "500")
        self.assertEqual(fix_ocr_misreads("12.5S"), "12.5S")
        self.assertEqual(fix_ocr_misreads(""), "0")

    def test_extract_from_lines(self) -> None:
        data = extract_from_ocr_lines(OCR_LINES)
        self.assertEqual(data["tier"], 10)
        self.assertFalse(data["tierHasPlus"])
        self.assertEqual(data["wave"], 2500)
        self.assertEqual(data["roundDuration"], "2h30m0s")
        self.assertEqual(data["totalCoins"], "1.5T")
        self.assertEqual(data["totalCells"], "12.3K")
        self.assertEqual(data["totalDice"], "800")
        self.assertEqual(data["killedBy"], "Boss")

    def test_other_language_labels(self) -> None:
        lines = ["Stufe 7", "Welle 1200", "Verdiente Münzen 2,5M"]
        data = extract_from_ocr_lines(lines, scan_language="German")
        self.assertEqual(data["tier"], 7)
        self.assertEqual(data["wave"], 1200)
        self.assertEqual(data["totalCoins"], "2.5M")

    def test_no_lines(self) -> None:
        self.assertEqual(extract_from_ocr_lines([]), {})


class FilenameDateTests(unittest.TestCase):
    def test_android_screenshot(self) -> None:
        self.assertEqual(
            datetime_from_filename("Screenshot_20251014-134501.png"),
            datetime(2025, 10, 14, 13, 45, 1),
        )

    def test_dashed_date_with_clock(self) -> None:
        self.assertEqual(
            datetime_from_filename("IMG_2025-10-14_09-30.png"),
            datetime(2025, 10, 14, 9, 30),
        )

    def test_unrecognised_name(self) -> None:
        self.assertIsNone(datetime_from_filename("report.png"))
        self.assertIsNone(datetime_from_filename(None))


class KillerCorrectionTests(unittest.TestCase):
    def test_close_misspelling_is_corrected(self) -> None:
        corrector = KillerNameCorrector()
        self.assertEqual(corrector.correct("vampyre"), "Vampire")
        self.assertEqual(corrector.correct("BOSS"), "Boss")

    def test_unknown_name_is_title_cased(self) -> None:
        self.assertEqual(KillerNameCorrector().correct("zzz qqq"), "Zzz Qqq")
        self.assertEqual(KillerNameCorrector().correct(""), "Apathy")

    def test_aliases_from_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            base_dir = Path(tmpdir)
            _write_json(base_dir / "killer_aliases.json", {"Vamp": "Vampire"})
            add_killer_alias(base_dir, "RNG", "Ranged")
            aliases = load_killer_aliases(base_dir)
            self.assertEqual(aliases, {"vamp": "Vampire", "rng": "Ranged"})

            corrector = KillerNameCorrector(aliases)
            self.assertEqual(corrector.correct("vamp"), "Vampire")
            self.assertEqual(corrector.correct("Rng"), "Ranged")

    def test_autocorrecter_best_match(self) -> None:
        corrector = Autocorrecter(["Protector", "Commander", "Saboteur"])
        self.assertEqual(corrector.best_match("protector"), "Protector")
        self.assertIsNone(corrector.best_match("xyz"))

    def test_learned_alias_is_used_and_saved(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            base_dir = Path(tmpdir)
            corrector = KillerNameCorrector()
            self.assertEqual(corrector.add_alias(" Vmp ", "vampire", base_dir), "Vampire")
            self.assertEqual(corrector.correct("VMP"), "Vampire")
            self.assertEqual(load_killer_aliases(base_dir), {"vmp": "Vampire"})

            with self.assertRaises(ValueError):
                corrector.add_alias("  ", "Vampire")


if __name__ == "__main__":
    unittest.main()
