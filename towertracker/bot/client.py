import logging
import uuid
from pathlib import Path
from typing import Any, Dict, Optional

import discord
from discord import app_commands
from discord.ext import commands, tasks

from ..core.backend import BackendError, RunBackend
from ..core.config import AppConfig
from ..core.events import Destination, EventBus, FlowHandlers, Subscription
from ..core.models import Screenshot, Session, Stage, UserSettings
from ..core.notation import calculate_hourly_rates, normalize_duration
from ..core.roles import parse_role_thresholds, role_for_count
from ..core.workflow import Action, FlowEvent, FlowMachine, Prompt, PromptKind
from .embeds import build_embed, build_rates_embed, build_share_embed
from .views import FlowView

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".webp")


async def _post_to_channel(bot: commands.Bot, channel_id: int, content: Optional[str] = None, **kwargs) -> None:
    if not channel_id:
        return
    channel = bot.get_channel(channel_id)
    if channel is None:
        logger.warning("Log channel %s not found", channel_id)
        return
    try:
        await channel.send(content, **kwargs)
    except (discord.Forbidden, discord.HTTPException) as exc:
        logger.warning("Could not post to channel %s: %s", channel_id, exc)


class DiscordRoleNotifier:
    """Keeps a member's run-count milestone role in step with their total."""

    def __init__(self, bot: commands.Bot, guild_id: int, success_channel_id: int = 0) -> None:
        self.bot = bot
        self.guild_id = guild_id
        self.success_channel_id = success_channel_id

    async def run_count_changed(self, user_id: str, username: str, run_count: int) -> None:
        guild = self.bot.get_guild(self.guild_id) if self.guild_id else None
        if guild is None:
            return
        member = guild.get_member(int(user_id))
        if member is None:
            try:
                member = await guild.fetch_member(int(user_id))
            except (discord.NotFound, discord.HTTPException):
                logger.info("User %s is not a member of guild %s", user_id, self.guild_id)
                return

        thresholds = parse_role_thresholds((role.id, role.name) for role in guild.roles)
        target_id = role_for_count(thresholds, run_count)
        milestone_ids = {role_id for _, role_id in thresholds}
        stale = [role for role in member.roles if role.id in milestone_ids and role.id != target_id]
        target = guild.get_role(target_id) if target_id else None

        try:
            if stale:
                await member.remove_roles(*stale, reason="Run count milestone changed")
            if target is not None and target not in member.roles:
                await member.add_roles(target, reason=f"Tracked {run_count} runs")
                logger.info("Gave %s the %s role", username, target.name)
                await _post_to_channel(
                    self.bot,
                    self.success_channel_id,
                    f"{member.mention} reached **{target.name}**!",
                )
        except (discord.Forbidden, discord.HTTPException) as exc:
            logger.warning("Could not update roles for %s: %s", username, exc)


class TrackerFlow:
    """The Discord side of one /track invocation.

    Owns the flow's message and renders every prompt the machine returns
    onto it. Subscribed to the event bus under its flow id.
    """

    def __init__(
        self,
        bot: commands.Bot,
        machine: FlowMachine,
        bus: EventBus,
        cfg: AppConfig,
        user: discord.abc.User,
        flow_id: str,
        interaction: discord.Interaction,
    ) -> None:
        self.bot = bot
        self.machine = machine
        self.bus = bus
        self.cfg = cfg
        self.user = user
        self.user_id = user.id
        self.flow_id = flow_id
        self.interaction = interaction
        self.channel = interaction.channel
        self.subscription: Optional[Subscription] = None
        self.handlers = FlowHandlers(
            navigate=self.on_navigate,
            error=self.on_error,
            dispatch={"action": self.on_action, "settings": self.on_settings},
        )

    async def on_action(self, context: Any, event: FlowEvent) -> None:
        prompt = await self.machine.handle(self.user_id, event)
        await self.render(context, prompt)

    async def on_settings(self, context: Any, changes: Dict[str, Any]) -> None:
        prompt = await self.machine.update_settings(self.user_id, **changes)
        await self.render(context, prompt)

    async def on_navigate(self, destination: Destination, context: Any) -> None:
        if destination is Destination.SETTINGS:
            prompt = await self.machine.show_settings(self.user_id)
        elif destination is Destination.SHARE_SETTINGS:
            prompt = await self.machine.show_share_settings(self.user_id)
        elif destination is Destination.CANCEL:
            prompt = await self.machine.handle(self.user_id, FlowEvent(Action.CANCEL))
        else:
            prompt = await self.machine.go_to_menu(self.user_id)
        await self.render(context, prompt)

    async def on_error(self, exc: BaseException, context: Any) -> None:
        prompt = await self.machine.abort(self.user_id, exc)
        await _post_to_channel(
            self.bot,
            self.cfg.error_log_channel_id,
            f"Tracker error for {self.user} in flow {self.flow_id}: {exc!r}",
        )
        await self.render(context, prompt)

    async def render(self, context: Any, prompt: Prompt) -> None:
        if isinstance(context, discord.Interaction):
            self.interaction = context

        view = None
        if not prompt.closes_flow and prompt.kind is not PromptKind.SESSION_LOST:
            view = FlowView(self.bus, self.flow_id, self.user_id, prompt)
        try:
            await self.interaction.edit_original_response(embed=build_embed(prompt), view=view)
        except discord.NotFound:
            logger.info("Tracker message for flow %s is gone", self.flow_id)
        except discord.HTTPException as exc:
            logger.warning("Could not update tracker message for flow %s: %s", self.flow_id, exc)

        if prompt.kind is PromptKind.SHARE:
            await self._share(prompt)
        elif prompt.kind is PromptKind.SUCCESS and prompt.run is not None:
            await _post_to_channel(
                self.bot,
                self.cfg.success_log_channel_id,
                f"{self.user} logged a Tier {prompt.run.tier} run to wave {prompt.run.wave}.",
            )
        if prompt.closes_flow or prompt.kind is PromptKind.SESSION_LOST:
            self.close()

    async def _share(self, prompt: Prompt) -> None:
        if self.channel is None:
            return
        avatar = self.user.display_avatar.url if hasattr(self.user, "display_avatar") else None
        embed = build_share_embed(prompt, getattr(self.user, "display_name", str(self.user)), avatar)
        try:
            await self.channel.send(embed=embed)
        except (discord.Forbidden, discord.HTTPException) as exc:
            logger.warning("Could not share run for %s: %s", self.user, exc)

    def close(self) -> None:
        if self.subscription is not None:
            self.subscription.close()
        self.bot.tracker_flows.pop(self.flow_id, None)


def build_bot(
    cfg: AppConfig,
    machine: FlowMachine,
    bus: EventBus,
    intents: Optional[discord.Intents] = None,
    migration_source: Optional[RunBackend] = None,
    data_dir: Optional[Path] = None,
) -> commands.Bot:
    intents = intents or discord.Intents.default()
    intents.message_content = True
    intents.members = True
    bot = commands.Bot(command_prefix="!", intents=intents)
    flows: Dict[str, TrackerFlow] = {}
    setattr(bot, "tracker_machine", machine)
    setattr(bot, "tracker_bus", bus)
    setattr(bot, "tracker_flows", flows)

    if machine.notifier is None and cfg.guild_id:
        machine.notifier = DiscordRoleNotifier(bot, cfg.guild_id, cfg.success_log_channel_id)

    async def on_flow_timeout(session: Session, prompt: Prompt) -> None:
        flow = flows.get(session.flow_id)
        if flow is not None:
            await flow.render(None, prompt)

    machine.on_timeout = on_flow_timeout

    @tasks.loop(seconds=max(cfg.session_sweep_interval, 1))
    async def sweep_sessions() -> None:
        for session in machine.sweep():
            flow = flows.get(session.flow_id)
            if flow is not None:
                await flow.render(None, machine.close(session, Stage.TIMED_OUT))

    @bot.event
    async def on_ready() -> None:
        logger.info("Run tracker connected as %s", bot.user)
        try:
            synced = await bot.tree.sync()
            logger.info("Synced %d commands", len(synced))
        except discord.HTTPException as exc:
            logger.exception("Failed to sync commands: %s", exc)
        if not sweep_sessions.is_running():
            sweep_sessions.start()

    @bot.event
    async def on_message(message: discord.Message) -> None:
        if message.author.bot:
            return
        session = machine.store.get(message.author.id)
        if session is None or session.flow_id not in flows:
            return

        if session.stage is Stage.AWAITING_UPLOAD and message.attachments:
            attachment = next(
                (item for item in message.attachments if item.filename.lower().endswith(IMAGE_EXTENSIONS)),
                None,
            )
            if attachment is None:
                return
            try:
                data = await attachment.read()
            except discord.HTTPException as exc:
                logger.warning("Could not download %s: %s", attachment.filename, exc)
                return
            event = FlowEvent(
                Action.ATTACH_SCREENSHOT,
                attachment=Screenshot(url=attachment.url, filename=attachment.filename, data=data),
            )
        elif session.stage is Stage.AWAITING_PASTE and message.content.strip():
            event = FlowEvent(Action.PASTE_TEXT, text=message.content)
        else:
            return

        bus.publish_dispatch(session.flow_id, "action", message, event)
        if event.action is Action.PASTE_TEXT:
            try:
                await message.delete()
            except (discord.Forbidden, discord.NotFound, discord.HTTPException):
                logger.debug("Could not delete pasted report from %s", message.author)

    @app_commands.command(name="track", description="Log a run of The Tower")
    async def track(interaction: discord.Interaction) -> None:
        user = interaction.user
        for stale in [flow for flow in flows.values() if flow.user_id == user.id]:
            stale.close()
        flow_id = uuid.uuid4().hex
        prompt = await machine.start(user.id, getattr(user, "display_name", str(user)), flow_id)

        flow = TrackerFlow(bot, machine, bus, cfg, user, flow_id, interaction)
        flow.subscription = bus.subscribe(flow_id, flow.handlers)
        flows[flow_id] = flow
        machine.add_close_callback(user.id, flow.subscription.close)

        await interaction.response.send_message(
            embed=build_embed(prompt),
            view=FlowView(bus, flow_id, user.id, prompt),
            ephemeral=True,
        )

    @app_commands.command(name="cph", description="Work out coins, cells and dice per hour")
    @app_commands.describe(
        duration="Run length, e.g. 2h30m or 2:30:00",
        coins="Coins earned, e.g. 1.5T",
        cells="Cells earned",
        dice="Reroll dice earned",
    )
    async def cph(
        interaction: discord.Interaction,
        duration: str,
        coins: str,
        cells: str = "0",
        dice: str = "0",
    ) -> None:
        try:
            settings = await machine.backend.get_user_settings(str(interaction.user.id))
        except BackendError as exc:
            logger.info("Using default settings for /cph: %s", exc)
            settings = UserSettings()
        rates = calculate_hourly_rates(duration, coins, cells, dice, settings.decimal_separator)
        await interaction.response.send_message(
            embed=build_rates_embed(normalize_duration(duration), rates),
            ephemeral=True,
        )

    @app_commands.command(name="migrate", description="Copy a member's spreadsheet runs into the tracker")
    @app_commands.describe(member="The member whose runs should be migrated")
    @app_commands.default_permissions(manage_guild=True)
    async def migrate(interaction: discord.Interaction, member: discord.User) -> None:
        if migration_source is None:
            await interaction.response.send_message(
                "No spreadsheet tracker is set up to migrate from.", ephemeral=True
            )
            return
        await interaction.response.defer(ephemeral=True)
        try:
            result = await machine.migrate_runs(member.id, member.name, migration_source)
        except BackendError as exc:
            logger.warning("Migration failed for %s: %s", member, exc)
            embed = discord.Embed(
                title="Migration Failed",
                description=f"Migration for {member.mention} failed: {exc}",
                color=discord.Color.red(),
            )
        else:
            embed = discord.Embed(
                title="Migration Complete",
                description=(
                    f"Migration for {member.mention} is complete. "
                    f"Imported {result.imported}, skipped {result.skipped} already tracked, "
                    f"{result.failed} failed."
                ),
                color=discord.Color.green() if not result.failed else discord.Color.gold(),
            )
        await interaction.followup.send(embed=embed, ephemeral=True)

    @app_commands.command(name="killer_alias", description="Teach the tracker another name for an enemy")
    @app_commands.describe(alias="The text the screenshot reader produces", enemy="The enemy it stands for")
    @app_commands.default_permissions(manage_guild=True)
    async def killer_alias(interaction: discord.Interaction, alias: str, enemy: str) -> None:
        try:
            canonical = machine.killer_corrector.add_alias(alias, enemy, data_dir)
        except ValueError as exc:
            await interaction.response.send_message(str(exc), ephemeral=True)
            return
        except OSError as exc:
            logger.warning("Could not save killer alias %r: %s", alias, exc)
            await interaction.response.send_message(f"Couldn't save that alias: {exc}", ephemeral=True)
            return
        logger.info("%s mapped killer alias %r to %s", interaction.user, alias, canonical)
        await interaction.response.send_message(
            f"From now on **{alias.strip()}** will be read as **{canonical}**.", ephemeral=True
        )

    bot.tree.add_command(track)
    bot.tree.add_command(cph)
    bot.tree.add_command(migrate)
    bot.tree.add_command(killer_alias)
    return bot
