import asyncio
from typing import List, Literal, Optional

import discord
from red_commons.logging import getLogger
from redbot.core import Config, checks, commands
from redbot.core.bot import Red
from redbot.core.utils.chat_formatting import box, pagify

from .formatting import format_attribution
from .ledger import InviteLedger, InviteRecord
from .reconciler import AttributionResult, InviteFetchError
from .router import EventRouter, InviteCreate, InviteDelete, LedgerResync, MemberAdd

RequestType = Literal["discord_deleted_user", "owner", "user", "user_strict"]

log = getLogger("red.BeeHive.invitelog")


class GuildInviteSource:
    """Reads invites and the vanity code of a guild through discord.py."""

    def __init__(self, bot: Red):
        self.bot = bot

    async def fetch_invites(self, guild_id: int) -> List[InviteRecord]:
        guild = self.bot.get_guild(guild_id)
        if guild is None:
            raise InviteFetchError(f"guild {guild_id} is not available")
        try:
            invites = await guild.invites()
        except discord.HTTPException as e:
            raise InviteFetchError(f"fetching invites of {guild_id} failed: {e}") from e
        return [
            InviteRecord(
                code=invite.code,
                uses=invite.uses or 0,
                inviter_id=invite.inviter.id if invite.inviter else None,
            )
            for invite in invites
        ]

    def vanity_url_code(self, guild_id: int) -> Optional[str]:
        guild = self.bot.get_guild(guild_id)
        if guild is None:
            return None
        return guild.vanity_url_code


class ChannelNotifier:
    """Posts attribution lines to the configured log channel without pinging anyone."""

    def __init__(self, bot: Red, channel_id: int):
        self.bot = bot
        self.channel_id = channel_id

    async def notify(self, event: MemberAdd, result: AttributionResult) -> None:
        text = format_attribution(event.user_id, result)
        if text is None:
            return
        channel = self.bot.get_channel(self.channel_id)
        if channel is None:
            log.error("Log channel %s is not available", self.channel_id)
            return
        try:
            await channel.send(text, allowed_mentions=discord.AllowedMentions.none())
        except discord.HTTPException as e:
            log.error("Could not post to log channel %s: %s", self.channel_id, e)


class InviteLog(commands.Cog):
    """
    Log which invite link every new member joined through.

    Invite use counts are kept in memory and compared against a fresh
    invite list on every join. Nothing is stored across restarts.
    """

    __author__ = ["BeeHive"]
    __version__ = "1.0.0"

    def __init__(self, bot: Red):
        self.bot = bot
        self.config = Config.get_conf(self, identifier=0xBEE1A7E1, force_registration=True)
        self.config.register_global(guild_id=None, channel_id=None)
        self.source = GuildInviteSource(bot)
        self._router: Optional[EventRouter] = None
        self._guild_id: Optional[int] = None
        self._start_task: Optional[asyncio.Task] = None
        self._tracking_lock = asyncio.Lock()

    def format_help_for_context(self, ctx: commands.Context) -> str:
        pre_processed = super().format_help_for_context(ctx)
        return f"{pre_processed}\n\nCog Version: {self.__version__}"

    async def red_delete_data_for_user(self, *, requester: RequestType, user_id: int) -> None:
        # No end user data is stored
        return

    async def cog_load(self):
        self._start_task = self.bot.loop.create_task(self._start_tracking())

    async def cog_unload(self):
        if self._start_task is not None:
            self._start_task.cancel()
        async with self._tracking_lock:
            await self._stop_tracking()

    async def _start_tracking(self):
        await self.bot.wait_until_red_ready()
        # One restart at a time, otherwise an older router could be orphaned.
        async with self._tracking_lock:
            await self._restart_tracking()

    async def _restart_tracking(self):
        await self._stop_tracking()
        guild_id = await self.config.guild_id()
        channel_id = await self.config.channel_id()
        if guild_id is None or channel_id is None:
            log.info("Invite logging is not configured")
            return

        ledger = InviteLedger()
        try:
            ledger.initialize(await self.source.fetch_invites(guild_id))
        except InviteFetchError:
            log.exception("Could not load the initial invite list, invite logging is off")
            return

        self._guild_id = guild_id
        self._router = EventRouter(ledger, self.source, ChannelNotifier(self.bot, channel_id))
        self._router.start()
        log.info("Tracking %s invites in %s", len(ledger), guild_id)

    async def _stop_tracking(self):
        router, self._router = self._router, None
        self._guild_id = None
        if router is not None:
            await router.stop()
            router.ledger.clear()
            log.info("Invite logging stopped")

    def _submit(self, guild: Optional[discord.Guild], event: object):
        if self._router is None or guild is None or guild.id != self._guild_id:
            return
        self._router.submit(event)

    @commands.Cog.listener()
    async def on_invite_create(self, invite: discord.Invite):
        inviter_id = invite.inviter.id if invite.inviter else None
        self._submit(invite.guild, InviteCreate(code=invite.code, inviter_id=inviter_id))

    @commands.Cog.listener()
    async def on_invite_delete(self, invite: discord.Invite):
        self._submit(invite.guild, InviteDelete(code=invite.code))

    @commands.Cog.listener()
    async def on_member_join(self, member: discord.Member):
        self._submit(member.guild, MemberAdd(guild_id=member.guild.id, user_id=member.id))

    @commands.group()
    @commands.guild_only()
    @checks.admin_or_permissions(manage_guild=True)
    async def invitelog(self, ctx: commands.Context):
        """Invite logging settings."""

    @invitelog.command(name="channel")
    async def invitelog_channel(self, ctx: commands.Context, channel: discord.TextChannel):
        """
        Log joins of this server to a channel.

        Only one server is tracked at a time. Running this in another
        server moves tracking there.
        """
        await self.config.guild_id.set(ctx.guild.id)
        await self.config.channel_id.set(channel.id)
        if self._start_task is not None:
            self._start_task.cancel()
        async with ctx.typing():
            await self._start_tracking()
        if self._router is None:
            await ctx.send("Settings saved, but I could not read this server's invites. Do I have **Manage Server**?")
            return
        await ctx.send(f"Joins will be logged to {channel.mention}. Tracking {len(self._router.ledger)} invites.")

    @invitelog.command(name="disable")
    async def invitelog_disable(self, ctx: commands.Context):
        """Stop logging joins."""
        await self.config.guild_id.clear()
        await self.config.channel_id.clear()
        async with self._tracking_lock:
            await self._stop_tracking()
        await ctx.send("Invite logging disabled.")

    @invitelog.command(name="resync")
    async def invitelog_resync(self, ctx: commands.Context):
        """Reload the invite list from Discord."""
        if self._router is None or ctx.guild.id != self._guild_id:
            await ctx.send("Invite logging is not running in this server.")
            return
        self._router.submit(LedgerResync(guild_id=ctx.guild.id))
        await ctx.send("Invite list resync queued.")

    @invitelog.command(name="ledger")
    async def invitelog_ledger(self, ctx: commands.Context):
        """Show the tracked invites and their use counts."""
        if self._router is None or ctx.guild.id != self._guild_id:
            await ctx.send("Invite logging is not running in this server.")
            return
        lines = []
        for record in self._router.ledger:
            inviter = record.inviter_id if record.inviter_id is not None else "-"
            lines.append(f"{record.code:<16} {record.uses:>6}  {inviter}")
        if not lines:
            await ctx.send("No invites are tracked.")
            return
        header = f"{'code':<16} {'uses':>6}  inviter"
        for page in pagify("\n".join([header] + lines)):
            await ctx.send(box(page))

    @invitelog.command(name="settings")
    async def invitelog_settings(self, ctx: commands.Context):
        """Show the current invite logging settings."""
        guild_id = await self.config.guild_id()
        channel_id = await self.config.channel_id()
        embed = discord.Embed(title="Invite logging", color=0xfffffe)
        embed.add_field(name="Server", value=str(guild_id) if guild_id else "Not set", inline=False)
        embed.add_field(name="Channel", value=f"<#{channel_id}>" if channel_id else "Not set", inline=False)
        embed.add_field(name="Running", value="Yes" if self._router is not None else "No", inline=False)
        await ctx.send(embed=embed)
