import unittest

from towertracker.core.roles import parse_role_thresholds, role_for_count, role_threshold


class RoleTests(unittest.TestCase):
    def test_role_threshold(self) -> None:
        self.assertEqual(role_threshold("Run Tracker"), 1)
        self.assertEqual(role_threshold("10 Runs Tracked"), 10)
        self.assertEqual(role_threshold(" 1 run tracked "), 1)
        self.assertIsNone(role_threshold("Moderator"))

    def test_highest_reached_role_wins(self) -> None:
        thresholds = parse_role_thresholds(
            [(1, "Run Tracker"), (2, "Moderator"), (3, "50 Runs Tracked"), (4, "10 Runs Tracked")]
        )
        self.assertEqual(thresholds, [(50, 3), (10, 4), (1, 1)])
        self.assertEqual(role_for_count(thresholds, 0), None)
        self.assertEqual(role_for_count(thresholds, 1), 1)
        self.assertEqual(role_for_count(thresholds, 49), 4)
        self.assertEqual(role_for_count(thresholds, 50), 3)


if __name__ == "__main__":
    unittest.main()
