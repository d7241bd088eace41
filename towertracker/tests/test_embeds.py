import unittest

from towertracker.bot.embeds import build_embed, build_share_embed, share_fields
from towertracker.core.models import RunRecord, Screenshot, UserSettings
from towertracker.core.notation import HourlyRates
from towertracker.core.workflow import Prompt, PromptKind

RUN = RunRecord(tier="12", wave=900, duration="2h0m0s", coins="2T", cells="1K", dice="50", notes="pb")
RATES = HourlyRates(coins="1T", cells="500", dice="25")


class ShareFieldTests(unittest.TestCase):
    def test_settings_filter_fields(self) -> None:
        settings = UserSettings(include_cells=False, include_dice_per_hour=False, include_notes=False)
        names = [name for name, _ in share_fields(RUN, RATES, settings)]
        self.assertEqual(names, ["Tier", "Wave", "Duration", "Coins", "Dice", "Coins/Hour", "Cells/Hour"])

    def test_share_embed_screenshot_needs_opt_in(self) -> None:
        shot = Screenshot(url="https://cdn/x.png")
        prompt = Prompt(PromptKind.SHARE, "Share", run=RUN, rates=RATES, screenshot=shot, settings=UserSettings())
        self.assertIsNone(build_share_embed(prompt, "player").image.url)

        prompt.settings = UserSettings(include_screenshot=True)
        embed = build_share_embed(prompt, "player")
        self.assertEqual(embed.image.url, "https://cdn/x.png")
        self.assertEqual(embed.author.name, "player")


class PromptEmbedTests(unittest.TestCase):
    def test_manual_field_shows_step_and_current_value(self) -> None:
        prompt = Prompt(PromptKind.MANUAL_FIELD, "Manual Entry: Tier", current_value="15", step=(1, 3))
        embed = build_embed(prompt)
        self.assertEqual(embed.fields[0].value, "15")
        self.assertEqual(embed.footer.text, "Step 1 of 3")

    def test_review_lists_changes_and_notice(self) -> None:
        prompt = Prompt(
            PromptKind.REVIEW,
            "Review Run Data",
            "Check it",
            run=RUN,
            rates=RATES,
            changed_fields=["wave"],
            notice="Saved",
        )
        embed = build_embed(prompt)
        self.assertIn("**Saved**", embed.description)
        self.assertEqual(embed.footer.text, "Changed: Wave")
        self.assertIn("Coins/Hour", [field.name for field in embed.fields])

    def test_review_shows_entry_method(self) -> None:
        prompt = Prompt(PromptKind.REVIEW, "Review Run Data", run=RUN, entry_method="Pasted")
        fields = {field.name: field.value for field in build_embed(prompt).fields}
        self.assertEqual(fields["Entry Method"], "Pasted")

    def test_share_settings_lists_shown_and_hidden(self) -> None:
        settings = UserSettings(include_notes=False)
        embed = build_embed(Prompt(PromptKind.SHARE_SETTINGS, "Share Settings", settings=settings))
        self.assertEqual(embed.fields[0].name, "Shown")
        self.assertNotIn("Notes", embed.fields[0].value)
        self.assertEqual(embed.fields[1].value, "Notes, Screenshot")

    def test_run_list_has_one_field_per_run(self) -> None:
        older = RunRecord(tier="9", wave=100, type="Farming", date="10/1/25", time="10:00:00")
        embed = build_embed(Prompt(PromptKind.RUN_LIST, "Recent Runs", runs=[RUN, older]))
        self.assertEqual(len(embed.fields), 2)
        self.assertEqual(embed.fields[1].name, "Farming run, 10/1/25 10:00:00")
        self.assertTrue(embed.fields[0].value.startswith("Tier 12 | Wave 900 | 2h0m0s"))


if __name__ == "__main__":
    unittest.main()
