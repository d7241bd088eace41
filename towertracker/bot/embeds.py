from typing import List, Optional, Tuple

import discord

from ..core.aliases import FIELD_LABELS
from ..core.models import RunRecord, UserSettings
from ..core.notation import HourlyRates
from ..core.workflow import Prompt, PromptKind

COLORS = {
    PromptKind.MAIN_MENU: discord.Color.blurple(),
    PromptKind.UPLOAD: discord.Color.blue(),
    PromptKind.PASTE: discord.Color.blue(),
    PromptKind.MANUAL_FIELD: discord.Color.blue(),
    PromptKind.REVIEW: discord.Color.gold(),
    PromptKind.FIELD_SELECT: discord.Color.gold(),
    PromptKind.EDIT_FIELD: discord.Color.gold(),
    PromptKind.SUBMIT_FAILED: discord.Color.red(),
    PromptKind.SUCCESS: discord.Color.green(),
    PromptKind.SHARE: discord.Color.green(),
    PromptKind.SETTINGS: discord.Color.dark_grey(),
    PromptKind.SHARE_SETTINGS: discord.Color.dark_grey(),
    PromptKind.RUN_LIST: discord.Color.blurple(),
    PromptKind.CANCELLED: discord.Color.dark_grey(),
    PromptKind.TIMED_OUT: discord.Color.dark_grey(),
    PromptKind.SESSION_LOST: discord.Color.dark_grey(),
    PromptKind.ERROR: discord.Color.red(),
}

# (field, settings flag) pairs in display order; rates come after amounts.
_SHARE_FIELDS = [
    ("tier", "include_tier"),
    ("wave", "include_wave"),
    ("duration", "include_duration"),
    ("coins", "include_coins"),
    ("cells", "include_cells"),
    ("dice", "include_dice"),
]
_SHARE_RATES = [
    ("Coins/Hour", "coins", "include_coins_per_hour"),
    ("Cells/Hour", "cells", "include_cells_per_hour"),
    ("Dice/Hour", "dice", "include_dice_per_hour"),
]
SHARE_ELEMENTS = [
    ("Tier", "include_tier"),
    ("Wave", "include_wave"),
    ("Duration", "include_duration"),
    ("Total Coins", "include_coins"),
    ("Total Cells", "include_cells"),
    ("Total Dice", "include_dice"),
    ("Coins per Hour", "include_coins_per_hour"),
    ("Cells per Hour", "include_cells_per_hour"),
    ("Dice per Hour", "include_dice_per_hour"),
    ("Notes", "include_notes"),
    ("Screenshot", "include_screenshot"),
]
_REVIEW_FIELDS = ["type", "tier", "wave", "duration", "coins", "cells", "dice", "killed_by", "date", "time"]


def _display(value) -> str:
    text = "" if value is None else str(value)
    return text or "-"


def run_fields(run: RunRecord, rates: Optional[HourlyRates] = None) -> List[Tuple[str, str]]:
    fields = [(FIELD_LABELS[name], _display(run.get(name))) for name in _REVIEW_FIELDS]
    if rates is not None:
        fields.append(("Coins/Hour", rates.coins))
        fields.append(("Cells/Hour", rates.cells))
        fields.append(("Dice/Hour", rates.dice))
    if run.notes:
        fields.append((FIELD_LABELS["notes"], run.notes))
    return fields


def run_summary(run: RunRecord) -> str:
    return (
        f"Tier {run.tier} | Wave {run.wave} | {run.duration} | "
        f"Coins {run.coins} | Cells {run.cells} | Dice {run.dice} | Killed by {run.killed_by}"
    )


def share_fields(run: RunRecord, rates: Optional[HourlyRates], settings: UserSettings) -> List[Tuple[str, str]]:
    fields = [
        (FIELD_LABELS[name], _display(run.get(name)))
        for name, flag in _SHARE_FIELDS
        if getattr(settings, flag)
    ]
    if rates is not None:
        fields.extend(
            (label, getattr(rates, attr))
            for label, attr, flag in _SHARE_RATES
            if getattr(settings, flag)
        )
    if run.notes and settings.include_notes:
        fields.append((FIELD_LABELS["notes"], run.notes))
    return fields


def _add_fields(embed: discord.Embed, fields: List[Tuple[str, str]]) -> None:
    for name, value in fields:
        embed.add_field(name=name, value=value[:1024], inline=name != FIELD_LABELS["notes"])


def build_embed(prompt: Prompt) -> discord.Embed:
    description = prompt.description
    if prompt.notice:
        description = f"{description}\n\n**{prompt.notice}**" if description else f"**{prompt.notice}**"
    embed = discord.Embed(
        title=prompt.title,
        description=description[:4096],
        color=COLORS.get(prompt.kind, discord.Color.default()),
    )

    if prompt.kind in {PromptKind.MANUAL_FIELD, PromptKind.EDIT_FIELD}:
        if prompt.current_value not in (None, ""):
            embed.add_field(name="Current Value", value=str(prompt.current_value)[:1024], inline=False)
        if prompt.step:
            embed.set_footer(text=f"Step {prompt.step[0]} of {prompt.step[1]}")
        return embed

    if prompt.kind is PromptKind.SETTINGS and prompt.settings is not None:
        settings = prompt.settings
        embed.add_field(name="Scan Language", value=settings.scan_language)
        embed.add_field(name="Timezone", value=settings.timezone)
        embed.add_field(name="Default Run Type", value=settings.default_run_type)
        embed.add_field(name="Decimal Separator", value=settings.decimal_preference)
        embed.add_field(name="Detect Duplicates", value="On" if settings.auto_detect_duplicates else "Off")
        embed.add_field(name="Confirm Before Submit", value="On" if settings.confirm_before_submit else "Off")
        return embed

    if prompt.kind is PromptKind.SHARE_SETTINGS and prompt.settings is not None:
        shown = [label for label, flag in SHARE_ELEMENTS if getattr(prompt.settings, flag)]
        hidden = [label for label, flag in SHARE_ELEMENTS if not getattr(prompt.settings, flag)]
        embed.add_field(name="Shown", value=", ".join(shown) or "Nothing", inline=False)
        embed.add_field(name="Hidden", value=", ".join(hidden) or "Nothing", inline=False)
        return embed

    if prompt.kind is PromptKind.RUN_LIST:
        for run in prompt.runs:
            title = f"{run.type} run, {run.date} {run.time}".strip()
            embed.add_field(name=title, value=run_summary(run), inline=False)
        return embed

    if prompt.kind is PromptKind.MAIN_MENU:
        if prompt.run is not None:
            embed.set_footer(text=f"Last run: Tier {prompt.run.tier}, Wave {prompt.run.wave}")
        return embed

    if prompt.run is not None and prompt.kind in {
        PromptKind.REVIEW,
        PromptKind.FIELD_SELECT,
        PromptKind.SUBMIT_FAILED,
        PromptKind.SUCCESS,
    }:
        _add_fields(embed, run_fields(prompt.run, prompt.rates))
        if prompt.entry_method:
            embed.add_field(name="Entry Method", value=prompt.entry_method)
        if prompt.changed_fields:
            changed = ", ".join(FIELD_LABELS.get(name, name) for name in prompt.changed_fields)
            embed.set_footer(text=f"Changed: {changed}")
        elif prompt.is_duplicate:
            embed.set_footer(text="Possible duplicate of an existing run")
    return embed


def build_share_embed(prompt: Prompt, author_name: str, avatar_url: Optional[str] = None) -> discord.Embed:
    run = prompt.run or RunRecord()
    settings = prompt.settings or UserSettings()
    embed = discord.Embed(
        title=f"{run.type} Run",
        color=COLORS[PromptKind.SHARE],
    )
    embed.set_author(name=author_name, icon_url=avatar_url)
    _add_fields(embed, share_fields(run, prompt.rates, settings))
    if run.killed_by:
        embed.set_footer(text=f"Killed by {run.killed_by}")
    if settings.include_screenshot and prompt.screenshot is not None and prompt.screenshot.url:
        embed.set_image(url=prompt.screenshot.url)
    return embed


def build_rates_embed(duration: str, rates: HourlyRates) -> discord.Embed:
    embed = discord.Embed(title="Hourly Rates", description=f"Over {duration}", color=discord.Color.blurple())
    embed.add_field(name="Coins/Hour", value=rates.coins)
    embed.add_field(name="Cells/Hour", value=rates.cells)
    embed.add_field(name="Dice/Hour", value=rates.dice)
    return embed
