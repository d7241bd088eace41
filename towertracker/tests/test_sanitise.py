import unittest
from datetime import datetime

from towertracker.core.models import RunRecord
from towertracker.core.sanitise import (
    build_battle_date,
    clean_field_value,
    merge_edits,
    normalize_incoming,
    prepare_for_submission,
    sanitize_for_upload,
    should_discard_key,
)

NOW = datetime(2025, 10, 14, 13, 45, 0)


def _now() -> datetime:
    return NOW


class NormalizeIncomingTests(unittest.TestCase):
    def test_empty_input_gets_every_default(self) -> None:
        record = normalize_incoming({}, now=_now)
        self.assertEqual(record.tier, "Unknown")
        self.assertEqual(record.wave, "Unknown")
        self.assertEqual(record.duration, "0h0m0s")
        self.assertEqual(record.killed_by, "Apathy")
        self.assertEqual((record.coins, record.cells, record.dice), ("0", "0", "0"))
        self.assertEqual(record.type, "Farming")
        self.assertEqual(record.notes, "")
        self.assertEqual(record.date, "10/14/25")
        self.assertEqual(record.time, "13:45:00")
        self.assertIsNone(record.run_id)

    def test_non_mapping_input_does_not_raise(self) -> None:
        for value in (None, [], "junk", 42):
            record = normalize_incoming(value, now=_now)
            self.assertEqual(record.tier, "Unknown")

    def test_alias_ranking_prefers_canonical_key(self) -> None:
        record = normalize_incoming({"coins": "1T", "totalCoins": "2T"}, now=_now)
        self.assertEqual(record.coins, "2T")

    def test_fallback_used_when_extracted_lacks_field(self) -> None:
        record = normalize_incoming({"wave": 100}, {"Coins Earned": "3b", "wave": 5}, now=_now)
        self.assertEqual(record.coins, "3B")
        self.assertEqual(record.wave, 100)

    def test_blank_values_fall_through_to_next_alias(self) -> None:
        record = normalize_incoming({"totalCoins": "  ", "Coins": "7M"}, now=_now)
        self.assertEqual(record.coins, "7M")

    def test_plus_tier_is_kept_and_marks_tournament(self) -> None:
        record = normalize_incoming({"tierDisplay": "12+", "tier": 12}, now=_now)
        self.assertEqual(record.tier, "12+")
        self.assertEqual(record.tier_number, 12)
        self.assertEqual(record.type, "Tournament")

    def test_tier_has_plus_flag_restores_qualifier(self) -> None:
        record = normalize_incoming({"tier": 12, "tierHasPlus": True}, now=_now)
        self.assertEqual(record.tier, "12+")

    def test_explicit_type_wins_over_plus_tier(self) -> None:
        record = normalize_incoming({"tier": "12+", "type": "milestone"}, now=_now)
        self.assertEqual(record.tier, "12+")
        self.assertEqual(record.type, "Milestone")

    def test_unreadable_values_use_defaults(self) -> None:
        record = normalize_incoming(
            {"tier": "abc", "wave": "lots", "roundDuration": "forever", "totalCoins": "many"},
            now=_now,
        )
        self.assertEqual(record.tier, "Unknown")
        self.assertEqual(record.wave, "Unknown")
        self.assertEqual(record.duration, "0h0m0s")
        self.assertEqual(record.coins, "0")

    def test_non_finite_numbers_use_defaults(self) -> None:
        for value in (float("inf"), float("nan")):
            record = normalize_incoming(
                {"tier": value, "wave": value, "totalCoins": value}, now=_now
            )
            self.assertEqual(record.tier, "Unknown")
            self.assertEqual(record.wave, "Unknown")
            self.assertEqual(record.coins, "0")

    def test_killer_is_title_cased(self) -> None:
        record = normalize_incoming({"killedBy": "VAMPIRE"}, now=_now)
        self.assertEqual(record.killed_by, "Vampire")

    def test_battle_date_supplies_date_and_time(self) -> None:
        record = normalize_incoming({"Battle Date": "Oct 3, 2025 09:05"}, now=_now)
        self.assertEqual(record.date, "10/3/25")
        self.assertEqual(record.time, "09:05:00")

    def test_report_timestamp_used_without_battle_date(self) -> None:
        record = normalize_incoming({"reportTimestamp": "2025-01-02T03:04:05Z"}, now=_now)
        self.assertEqual(record.date, "1/2/25")
        self.assertEqual(record.time, "03:04:05")

    def test_run_id_from_any_id_key(self) -> None:
        self.assertEqual(normalize_incoming({"_id": "abc"}, now=_now).run_id, "abc")
        self.assertEqual(normalize_incoming({"runId": 7}, now=_now).run_id, "7")

    def test_noise_keys_are_dropped_and_unknown_keys_kept(self) -> None:
        record = normalize_incoming(
            {
                "Oct 14": "x",
                "123": "y",
                "Battle Report": "z",
                "2h": "w",
                "Damage Dealt": "5T",
                "totalCoins": "1T",
            },
            now=_now,
        )
        self.assertEqual(record.extras, {"Damage Dealt": "5T"})

    def test_should_discard_key(self) -> None:
        self.assertTrue(should_discard_key("Sep 12"))
        self.assertTrue(should_discard_key("42"))
        self.assertTrue(should_discard_key("Battle Report Extra"))
        self.assertFalse(should_discard_key("Battle Report Coins earned"))
        self.assertFalse(should_discard_key("Damage Dealt"))


class SubmissionTests(unittest.TestCase):
    def _run(self) -> RunRecord:
        return RunRecord(
            tier="15+",
            wave=200,
            duration="1h2m3s",
            killed_by="Boss",
            coins="5T",
            cells="1.2K",
            dice="300",
            type="Tournament",
            date="10/14/25",
            time="13:45:00",
            run_id="r1",
        )

    def test_canonical_keys_and_aliases(self) -> None:
        payload = prepare_for_submission(self._run())
        self.assertEqual(payload["tier"], 15)
        self.assertEqual(payload["tierDisplay"], "15+")
        self.assertTrue(payload["tierHasPlus"])
        self.assertEqual(payload["wave"], 200)
        self.assertEqual(payload["totalCoins"], "5T")
        self.assertEqual(payload["Coins Earned"], "5T")
        self.assertEqual(payload["totalCells"], "1.2K")
        self.assertEqual(payload["roundDuration"], "1h2m3s")
        self.assertEqual(payload["Real Time"], "1h 2m 3s")
        self.assertEqual(payload["killedBy"], "Boss")
        self.assertEqual(payload["Battle Date"], "Oct 14, 2025 13:45")
        self.assertEqual(payload["runId"], "r1")

    def test_notes_and_type_never_missing(self) -> None:
        payload = prepare_for_submission(RunRecord(type="", notes=""))
        self.assertEqual(payload["notes"], "")
        self.assertEqual(payload["type"], "Farming")
        self.assertEqual(payload["tier"], "Unknown")
        self.assertEqual(payload["totalCoins"], "0")
        self.assertNotIn("Battle Date", payload)

    def test_sanitize_strips_internal_keys(self) -> None:
        payload = prepare_for_submission(self._run())
        payload.update({"id": 1, "timestamp": 2, "settings": {}, "lastUpdated": "x", "screenshotBuffer": b"", "empty": None})
        cleaned = sanitize_for_upload(payload)
        for key in ("runId", "id", "timestamp", "settings", "lastUpdated", "screenshotBuffer", "empty"):
            self.assertNotIn(key, cleaned)
        self.assertEqual(cleaned["totalCoins"], "5T")

    def test_build_battle_date_needs_both_parts(self) -> None:
        self.assertIsNone(build_battle_date("10/14/25", ""))
        self.assertEqual(build_battle_date("10/14/2025", "1:05 PM"), "Oct 14, 2025 13:05")


class FieldValueTests(unittest.TestCase):
    def test_amounts(self) -> None:
        self.assertEqual(clean_field_value("coins", "1,5t", ","), "1.5T")
        self.assertEqual(clean_field_value("coins", "1,500", "."), "1500")
        self.assertEqual(clean_field_value("dice", "", "."), "0")

    def test_other_fields(self) -> None:
        self.assertEqual(clean_field_value("wave", "2,500"), 2500)
        self.assertEqual(clean_field_value("wave", "abc"), "Unknown")
        self.assertEqual(clean_field_value("tier", "9 +"), "9+")
        self.assertEqual(clean_field_value("duration", "2h"), "2h0m0s")
        self.assertEqual(clean_field_value("notes", "N/A"), "")
        self.assertEqual(clean_field_value("type", "overnight"), "Overnight")

    def test_unknown_field_raises(self) -> None:
        with self.assertRaises(KeyError):
            clean_field_value("colour", "red")


class MergeEditsTests(unittest.TestCase):
    def test_only_changed_fields_are_reported(self) -> None:
        original = RunRecord(tier="15", wave=200, notes="")
        merged, changed = merge_edits(original, {"wave": 250, "tier": "15", "notes": ""})
        self.assertEqual(changed, ["wave"])
        self.assertEqual(merged.wave, 250)
        self.assertEqual(original.wave, 200)

    def test_plus_tier_edit_switches_to_tournament(self) -> None:
        merged, changed = merge_edits(RunRecord(tier="14"), {"tier": "14+"})
        self.assertEqual(changed, ["tier"])
        self.assertEqual(merged.type, "Tournament")

    def test_internal_fields_are_ignored(self) -> None:
        merged, changed = merge_edits(RunRecord(run_id="a"), {"run_id": "b", "bogus": 1})
        self.assertEqual(changed, [])
        self.assertEqual(merged.run_id, "a")


if __name__ == "__main__":
    unittest.main()
