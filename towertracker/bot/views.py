import logging
from typing import Any, Dict, Optional, Tuple

import discord

from ..core.aliases import FIELD_LABELS, LANGUAGE_DECIMALS, TIMEZONES
from ..core.events import Destination, EventBus
from ..core.models import RunType
from ..core.workflow import Action, FlowEvent, Prompt, PromptKind
from .embeds import SHARE_ELEMENTS

logger = logging.getLogger(__name__)

ACTION_BUTTONS: Dict[Action, Tuple[str, discord.ButtonStyle]] = {
    Action.START_UPLOAD: ("Upload Screenshot", discord.ButtonStyle.primary),
    Action.START_PASTE: ("Paste Report", discord.ButtonStyle.primary),
    Action.START_MANUAL: ("Manual Entry", discord.ButtonStyle.secondary),
    Action.EDIT_LAST: ("Edit Last Run", discord.ButtonStyle.secondary),
    Action.REMOVE_LAST: ("Remove Last Run", discord.ButtonStyle.danger),
    Action.VIEW_RUNS: ("View Runs", discord.ButtonStyle.secondary),
    Action.OPEN_MENU: ("Back", discord.ButtonStyle.secondary),
    Action.PASTE_TEXT: ("Paste Text", discord.ButtonStyle.primary),
    Action.SUBMIT_FIELD: ("Enter Value", discord.ButtonStyle.primary),
    Action.ACCEPT: ("Submit", discord.ButtonStyle.success),
    Action.EDIT: ("Edit", discord.ButtonStyle.secondary),
    Action.SET_NOTE: ("Add Note", discord.ButtonStyle.secondary),
    Action.RETRY: ("Retry", discord.ButtonStyle.primary),
    Action.SHARE: ("Share", discord.ButtonStyle.primary),
    Action.EDIT_SUBMITTED: ("Edit Run", discord.ButtonStyle.secondary),
    Action.START_ANOTHER: ("Track Another", discord.ButtonStyle.secondary),
    Action.MAIN_MENU: ("Main Menu", discord.ButtonStyle.secondary),
    Action.BACK: ("Back", discord.ButtonStyle.secondary),
    Action.CLOSE: ("Close", discord.ButtonStyle.secondary),
    Action.CANCEL: ("Cancel", discord.ButtonStyle.danger),
}
TEXT_ACTIONS = frozenset({Action.PASTE_TEXT, Action.SUBMIT_FIELD, Action.SET_NOTE})
DECIMAL_CHOICES = ["Period (.)", "Comma (,)"]


class ValueModal(discord.ui.Modal):
    """Collects one typed value and forwards it to the flow."""

    def __init__(self, flow_view: "FlowView", action: Action) -> None:
        prompt = flow_view.prompt
        super().__init__(title=prompt.title[:45] or "Run Tracker")
        self.flow_view = flow_view
        self.action = action

        if action is Action.PASTE_TEXT:
            label, style, default, required = "Battle Report", discord.TextStyle.paragraph, None, True
        elif action is Action.SET_NOTE:
            notes = prompt.run.notes if prompt.run is not None else ""
            label, style, default, required = "Notes", discord.TextStyle.paragraph, notes or None, False
        else:
            name = prompt.field or ""
            label = FIELD_LABELS.get(name, "Value")
            style = discord.TextStyle.paragraph if name == "notes" else discord.TextStyle.short
            current = prompt.current_value
            default = str(current) if current not in (None, "") else None
            required = name not in {"notes", "date", "time"}

        self.value_input = discord.ui.TextInput(
            label=label,
            style=style,
            default=default,
            required=required,
            max_length=4000,
        )
        self.add_item(self.value_input)

    async def on_submit(self, interaction: discord.Interaction) -> None:
        await interaction.response.defer()
        self.flow_view.send(interaction, FlowEvent(self.action, text=self.value_input.value))


class FlowView(discord.ui.View):
    """Buttons and menus for one prompt of a tracker flow.

    Nothing here changes flow state directly; every interaction is
    published to the flow's handlers on the event bus.
    """

    def __init__(self, bus: EventBus, flow_id: str, owner_id: int, prompt: Prompt) -> None:
        super().__init__(timeout=None)
        self.bus = bus
        self.flow_id = flow_id
        self.owner_id = owner_id
        self.prompt = prompt
        self._build()

    async def interaction_check(self, interaction: discord.Interaction) -> bool:
        if interaction.user.id == self.owner_id:
            return True
        await interaction.response.send_message(
            "This tracker belongs to someone else. Use /track to start your own.",
            ephemeral=True,
        )
        return False

    def send(self, interaction: Optional[discord.Interaction], event: FlowEvent) -> None:
        self.bus.publish_dispatch(self.flow_id, "action", interaction, event)

    def navigate(self, interaction: discord.Interaction, destination: Destination) -> None:
        self.bus.publish_navigate(self.flow_id, destination, interaction)

    def change_settings(self, interaction: discord.Interaction, **changes: Any) -> None:
        self.bus.publish_dispatch(self.flow_id, "settings", interaction, changes)

    def _build(self) -> None:
        prompt = self.prompt
        if prompt.closes_flow or prompt.kind is PromptKind.SESSION_LOST:
            return
        if prompt.kind is PromptKind.SETTINGS:
            self._build_settings()
            return
        if prompt.kind is PromptKind.SHARE_SETTINGS:
            self._build_share_settings()
            return

        if prompt.kind is PromptKind.FIELD_SELECT and Action.SELECT_FIELDS in prompt.actions:
            self.add_item(self._field_select())
        elif Action.SELECT_TYPE in prompt.actions and prompt.options:
            self.add_item(self._type_select())

        for action in prompt.actions:
            if action not in ACTION_BUTTONS:
                continue
            if action is Action.OPEN_MENU and prompt.kind is PromptKind.MAIN_MENU:
                continue
            if action is Action.SUBMIT_FIELD and (prompt.field is None or prompt.field == "type"):
                continue
            label, style = ACTION_BUTTONS[action]
            self.add_item(self._action_button(action, label, style))

        if prompt.kind is PromptKind.MAIN_MENU:
            self.add_item(self._nav_button("Settings", discord.ButtonStyle.secondary, Destination.SETTINGS))

    def _action_button(self, action: Action, label: str, style: discord.ButtonStyle) -> discord.ui.Button:
        button = discord.ui.Button(label=label, style=style)

        async def callback(interaction: discord.Interaction) -> None:
            if action in TEXT_ACTIONS:
                await interaction.response.send_modal(ValueModal(self, action))
                return
            await interaction.response.defer()
            self.send(interaction, FlowEvent(action))

        button.callback = callback
        return button

    def _type_select(self) -> discord.ui.Select:
        current = self.prompt.run.type if self.prompt.run is not None else None
        select = discord.ui.Select(
            placeholder="Run type",
            options=[
                discord.SelectOption(label=option, value=option, default=option == current)
                for option in self.prompt.options
            ],
        )

        async def callback(interaction: discord.Interaction) -> None:
            await interaction.response.defer()
            self.send(interaction, FlowEvent(Action.SELECT_TYPE, value=select.values[0]))

        select.callback = callback
        return select

    def _field_select(self) -> discord.ui.Select:
        options = [
            discord.SelectOption(label=FIELD_LABELS.get(name, name), value=name)
            for name in self.prompt.options
        ]
        select = discord.ui.Select(
            placeholder="Fields to edit",
            options=options,
            min_values=1,
            max_values=len(options),
        )

        async def callback(interaction: discord.Interaction) -> None:
            await interaction.response.defer()
            self.send(interaction, FlowEvent(Action.SELECT_FIELDS, values=list(select.values)))

        select.callback = callback
        return select

    def _settings_select(self, placeholder: str, name: str, choices, current: str) -> discord.ui.Select:
        select = discord.ui.Select(
            placeholder=placeholder,
            options=[
                discord.SelectOption(label=choice, value=choice, default=choice == current)
                for choice in choices
            ],
        )

        async def callback(interaction: discord.Interaction) -> None:
            await interaction.response.defer()
            self.change_settings(interaction, **{name: select.values[0]})

        select.callback = callback
        return select

    def _toggle_button(self, label: str, name: str, enabled: bool) -> discord.ui.Button:
        button = discord.ui.Button(
            label=f"{label}: {'On' if enabled else 'Off'}",
            style=discord.ButtonStyle.success if enabled else discord.ButtonStyle.secondary,
        )

        async def callback(interaction: discord.Interaction) -> None:
            await interaction.response.defer()
            self.change_settings(interaction, **{name: not enabled})

        button.callback = callback
        return button

    def _nav_button(self, label: str, style: discord.ButtonStyle, destination: Destination) -> discord.ui.Button:
        button = discord.ui.Button(label=label, style=style)

        async def callback(interaction: discord.Interaction) -> None:
            await interaction.response.defer()
            self.navigate(interaction, destination)

        button.callback = callback
        return button

    def _build_settings(self) -> None:
        settings = self.prompt.settings
        if settings is None:
            return
        self.add_item(
            self._settings_select("Scan language", "scan_language", LANGUAGE_DECIMALS, settings.scan_language)
        )
        self.add_item(self._settings_select("Timezone", "timezone", TIMEZONES, settings.timezone))
        self.add_item(
            self._settings_select(
                "Default run type",
                "default_run_type",
                [run_type.value for run_type in RunType],
                settings.default_run_type,
            )
        )
        self.add_item(
            self._settings_select(
                "Decimal separator", "decimal_preference", DECIMAL_CHOICES, settings.decimal_preference
            )
        )
        self.add_item(
            self._toggle_button("Detect Duplicates", "auto_detect_duplicates", settings.auto_detect_duplicates)
        )
        self.add_item(
            self._toggle_button("Confirm Before Submit", "confirm_before_submit", settings.confirm_before_submit)
        )
        self.add_item(self._nav_button("Share Settings", discord.ButtonStyle.primary, Destination.SHARE_SETTINGS))
        self.add_item(self._nav_button("Back", discord.ButtonStyle.secondary, Destination.MAIN_MENU))
        self.add_item(self._nav_button("Cancel", discord.ButtonStyle.danger, Destination.CANCEL))

    def _build_share_settings(self) -> None:
        settings = self.prompt.settings
        if settings is None:
            return
        elements = [(label, flag) for label, flag in SHARE_ELEMENTS if flag in self.prompt.options]
        select = discord.ui.Select(
            placeholder="Elements to include when sharing",
            options=[
                discord.SelectOption(label=label, value=flag, default=getattr(settings, flag))
                for label, flag in elements
            ],
            min_values=0,
            max_values=len(elements),
        )

        async def callback(interaction: discord.Interaction) -> None:
            await interaction.response.defer()
            chosen = set(select.values)
            self.change_settings(interaction, **{flag: flag in chosen for _, flag in elements})

        select.callback = callback
        self.add_item(select)
        self.add_item(self._nav_button("Back", discord.ButtonStyle.secondary, Destination.SETTINGS))
        self.add_item(self._nav_button("Cancel", discord.ButtonStyle.danger, Destination.CANCEL))
