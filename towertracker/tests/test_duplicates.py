import unittest

from towertracker.core.duplicates import dedupe_runs, find_duplicate, run_fingerprint
from towertracker.core.models import RunRecord

CANDIDATE = {"tier": 15, "wave": 200, "duration": "1h0m0s", "coins": "5M"}


def _stored(run_id: str, **overrides):
    run = {"tier": "15", "wave": 200, "duration": "1h0m0s", "coins": 5000000, "runId": run_id}
    run.update(overrides)
    return run


class FindDuplicateTests(unittest.TestCase):
    def test_loose_numeric_match(self) -> None:
        match = find_duplicate(CANDIDATE, [_stored("abc")])
        self.assertTrue(match.is_duplicate)
        self.assertEqual(match.matched_run_id, "abc")

    def test_coin_mismatch_breaks_match(self) -> None:
        match = find_duplicate(CANDIDATE, [_stored("abc", coins="5.1M")])
        self.assertFalse(match.is_duplicate)
        self.assertIsNone(match.matched_run_id)

    def test_each_fingerprint_field_matters(self) -> None:
        for overrides in ({"tier": "16"}, {"wave": 201}, {"duration": "1h0m1s"}):
            match = find_duplicate(CANDIDATE, [_stored("abc", **overrides)])
            self.assertFalse(match.is_duplicate, overrides)

    def test_cells_dice_and_killer_are_ignored(self) -> None:
        stored = _stored("abc", cells="9K", dice="12", killedBy="Boss")
        self.assertTrue(find_duplicate(CANDIDATE, [stored]).is_duplicate)

    def test_duration_is_compared_normalized(self) -> None:
        candidate = dict(CANDIDATE, duration="1h")
        self.assertTrue(find_duplicate(candidate, [_stored("abc")]).is_duplicate)

    def test_first_match_wins(self) -> None:
        history = [_stored("other", wave=5), _stored("first"), _stored("second")]
        self.assertEqual(find_duplicate(CANDIDATE, history).matched_run_id, "first")

    def test_unrelated_order_does_not_matter(self) -> None:
        unrelated = [_stored("a", wave=1), _stored("b", tier="3"), _stored("c", coins="1B")]
        target = _stored("hit")
        for history in (unrelated + [target], [target] + unrelated, unrelated[:1] + [target] + unrelated[1:]):
            self.assertEqual(find_duplicate(CANDIDATE, history).matched_run_id, "hit")

    def test_repeated_calls_agree(self) -> None:
        history = [_stored("abc")]
        self.assertEqual(find_duplicate(CANDIDATE, history), find_duplicate(CANDIDATE, history))

    def test_runs_without_id_are_skipped(self) -> None:
        history = [_stored("abc")]
        del history[0]["runId"]
        self.assertFalse(find_duplicate(CANDIDATE, history).is_duplicate)

    def test_records_and_empty_history(self) -> None:
        candidate = RunRecord(tier="15+", wave=200, duration="1h0m0s", coins="5M")
        existing = RunRecord(tier="15", wave="200", duration="1h0m0s", coins="5000000", run_id="abc")
        self.assertEqual(find_duplicate(candidate, [existing]).matched_run_id, "abc")
        self.assertFalse(find_duplicate(candidate, []).is_duplicate)


class DedupeTests(unittest.TestCase):
    def test_batch_and_existing_repeats_are_split_out(self) -> None:
        first = {"tier": 10, "wave": 1000, "roundDuration": "2h0m0s", "totalCoins": "1T", "type": "Farming"}
        second = {"tier": 11, "wave": 900, "roundDuration": "1h0m0s", "totalCoins": "2T", "type": "Farming"}
        unique, duplicates = dedupe_runs([first, dict(first), second], existing=[dict(second, runId="x")])
        self.assertEqual(len(unique), 1)
        self.assertEqual(unique[0].tier, "10")
        self.assertEqual(len(duplicates), 2)

    def test_fingerprint_ignores_amount_formatting(self) -> None:
        left = {"tier": 10, "wave": 5, "totalCoins": "1000000"}
        right = {"tier": "10", "wave": "5", "totalCoins": "1M"}
        self.assertEqual(run_fingerprint(left), run_fingerprint(right))


if __name__ == "__main__":
    unittest.main()
