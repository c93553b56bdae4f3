##############################
# Purpose: Support tickets
#          Users pick a category from the ticket menu and get a private
#          channel under the configured ticket category. Staff can notify
#          the owner by DM or close the ticket, which deletes the channel
#          after a short delay.
##############################

import asyncio
import logging
import re

import discord
from discord.ext import commands

from .common import (ERROR_REPLY_LIFETIME, Emojis, LoggedView, Strings,
                     discard_message, handle_error, is_staff, staff_only)
from .deferred import channel_key
from .store import TICKET_CLOSING

log = logging.getLogger(__name__)

# Delay between the closing notice and the channel deletion, in seconds
TICKET_DELETE_DELAY = 5

TICKET_SELECT_ID = "ticket_category_select"
TICKET_NOTIFY_ID = "ticket_notify"
TICKET_CLOSE_ID = "ticket_close"

TICKET_TYPES = {
    "general": ("General Support", Emojis.speech_balloon,
                "Questions about the community or the bot"),
    "purchase": ("Purchase/Order Issue", Emojis.shopping_cart,
                 "Payments, orders and deliveries"),
    "bug": ("Bug/Technical Issue", Emojis.bug,
            "Something is broken or not working"),
    "other": ("Other Question", Emojis.question,
              "Anything else"),
}

TOPIC_OWNER_PATTERN = re.compile(r"UserID:(\d+)")


def make_topic(owner_id, ticket_type):
    return "UserID:%s | Type: %s" % (owner_id, ticket_label(ticket_type))


def owner_from_topic(topic):
    """Return the owner id encoded in a ticket topic, or None."""
    match = TOPIC_OWNER_PATTERN.search(topic or "")
    if match is None:
        return None
    return int(match.group(1))


def ticket_label(ticket_type):
    if ticket_type in TICKET_TYPES:
        return TICKET_TYPES[ticket_type][0]
    return ticket_type


##############################
# Purpose: Class representing basic information of a ticket
#          Can be used to create the starting message embed and the
#          audit log embeds.
##############################
class Ticket():
    def __init__(self, number, ticket_type, owner, staff, channel=None):
        self.number = number
        self.type = ticket_type
        self.owner = owner
        self.staff = staff
        self.channel = channel

    @property
    def name(self):
        return "ticket-%04d" % (self.number % 10000)

    def to_embed(self, color):
        staff = self.staff.mention if self.staff is not None else "the staff"
        embed = discord.Embed.from_dict({
            "title": "%s Ticket %d: %s" % (Emojis.ticket, self.number,
                                          ticket_label(self.type)),
            "color": color,
            "description": "Thanks for reaching out, %s. Describe your issue "
                           "and %s will be with you shortly."
                           % (self.owner.mention, staff),
        })
        embed.add_field(name="Ticket owner", value=self.owner.mention,
                        inline=True)
        embed.add_field(name="Category", value=ticket_label(self.type),
                        inline=True)
        return embed

    def to_log_embed(self, log_prefix, color, additional_fields=()):
        embed = discord.Embed.from_dict({
            "title": "%s: Ticket %d" % (log_prefix, self.number),
            "color": color,
        })
        embed.add_field(name="Category", value=ticket_label(self.type),
                        inline=True)
        embed.add_field(name="Ticket owner", value=self.owner.mention,
                        inline=True)
        for name, value in additional_fields:
            embed.add_field(name=name, value=value, inline=True)
        embed.timestamp = discord.utils.utcnow()
        return embed


class FakeMember():
    """Stands in for a ticket owner who can no longer be fetched."""

    def __init__(self, id):
        self.name = "(user that left)"
        self.id = id
        self.mention = f"<@{id}>"
        self.bot = False

    def __str__(self):
        return self.name


class TicketCategorySelect(discord.ui.Select):
    def __init__(self, cog):
        options = [discord.SelectOption(label=label, value=value, emoji=emoji,
                                        description=description)
                   for value, (label, emoji, description)
                   in TICKET_TYPES.items()]
        super().__init__(placeholder="Select a ticket category",
                         min_values=1, max_values=1, options=options,
                         custom_id=TICKET_SELECT_ID)
        self.cog = cog

    async def callback(self, interaction):
        await self.cog.create_ticket(interaction, self.values[0])


class TicketMenuView(LoggedView):
    def __init__(self, cog):
        super().__init__(timeout=None)
        self.add_item(TicketCategorySelect(cog))


class TicketControlsView(LoggedView):
    def __init__(self, cog):
        super().__init__(timeout=None)
        self.cog = cog

    @discord.ui.button(label="Notify", style=discord.ButtonStyle.secondary,
                       emoji=Emojis.bell, custom_id=TICKET_NOTIFY_ID)
    async def notify(self, interaction, button):
        await self.cog.notify_owner(interaction)

    @discord.ui.button(label="Close", style=discord.ButtonStyle.danger,
                       emoji=Emojis.lock, custom_id=TICKET_CLOSE_ID)
    async def close(self, interaction, button):
        await self.cog.close_ticket(interaction)


class TicketCog(commands.Cog):
    def __init__(self, bot, config, store, deferred):
        self.bot = bot
        self.config = config
        self.store = store
        self.deferred = deferred
        self._create_lock = asyncio.Lock()

    ###########################################################################
    ## Commands
    ###########################################################################

    @commands.command()
    @staff_only()
    async def ticketpanel(self, ctx):
        await discard_message(ctx.message)

        embed = discord.Embed.from_dict({
            "title": "Support Tickets",
            "color": self.config.embed_color,
            "description": "Need help? Select a category below and a "
                           "private ticket channel will be created for you.",
        })
        for label, emoji, description in TICKET_TYPES.values():
            embed.add_field(name="%s %s" % (emoji, label), value=description,
                            inline=False)
        if self.config.thumbnail_url:
            embed.set_thumbnail(url=self.config.thumbnail_url)

        await ctx.send(embed=embed, view=TicketMenuView(self))

    @ticketpanel.error
    async def ticketpanel_error(self, ctx, error):
        error_handlers = {
            commands.MissingRole: lambda: self._send_temporary(ctx),
        }
        await handle_error(ctx, error, error_handlers)

    async def _send_temporary(self, ctx):
        reply = await ctx.send(Strings.no_permission)
        self.deferred.delete_message_later(reply, ERROR_REPLY_LIFETIME)

    ###########################################################################
    ## Ticket creation
    ###########################################################################

    async def create_ticket(self, interaction, ticket_type):
        if ticket_type not in TICKET_TYPES:
            await interaction.response.send_message(
                "%s Unknown ticket category." % Emojis.x, ephemeral=True)
            return

        await interaction.response.defer(ephemeral=True, thinking=True)

        guild = interaction.guild
        user = interaction.user
        category = guild.get_channel(self.config.ticket_category_id)
        if not isinstance(category, discord.CategoryChannel):
            log.error("Ticket category %s not found",
                      self.config.ticket_category_id)
            await interaction.followup.send(
                "%s The ticket category is not configured correctly. "
                "Please contact the staff." % Emojis.x, ephemeral=True)
            return

        async with self._create_lock:
            existing = await self.find_existing_ticket(guild, category, user)
            if existing is not None:
                await interaction.followup.send(
                    "%s You already have an open ticket: %s"
                    % (Emojis.warning, existing.mention), ephemeral=True)
                return

            staff_role = guild.get_role(self.config.staff_role_id)
            overwrites = {
                guild.default_role:
                    discord.PermissionOverwrite(view_channel=False),
                guild.me:
                    discord.PermissionOverwrite(view_channel=True,
                                                send_messages=True),
                user:
                    discord.PermissionOverwrite(view_channel=True,
                                                send_messages=True,
                                                attach_files=True),
            }
            if staff_role is not None:
                overwrites[staff_role] = discord.PermissionOverwrite(
                    view_channel=True, send_messages=True)
            else:
                log.warning("Staff role %s not found, ticket will only be "
                            "visible to its owner", self.config.staff_role_id)

            number = await self.store.next_ticket_number()
            ticket = Ticket(number, ticket_type, user, staff_role)
            try:
                channel = await guild.create_text_channel(
                    ticket.name,
                    category=category,
                    overwrites=overwrites,
                    topic=make_topic(user.id, ticket_type),
                    reason="Ticket opened by %s" % user)
            except discord.HTTPException as e:
                log.error("Could not create ticket channel for %s: %s", user, e)
                await interaction.followup.send(
                    "%s Could not create your ticket channel. Please contact "
                    "the staff." % Emojis.warning, ephemeral=True)
                return

            ticket.channel = channel
            await self.store.add_ticket(channel.id, user.id, category.id,
                                        ticket_type, number)

        log.info("Created %s for %s (%s)", channel.name, user, ticket_type)

        mentions = user.mention
        if staff_role is not None:
            mentions += " " + staff_role.mention
        try:
            await channel.send(mentions,
                               embed=ticket.to_embed(self.config.embed_color),
                               view=TicketControlsView(self))
        except discord.HTTPException as e:
            log.error("Could not post the intro message in %s: %s",
                      channel.name, e)

        await interaction.followup.send(
            "%s Your ticket has been created: %s"
            % (Emojis.white_check_mark, channel.mention), ephemeral=True)
        await self.post_log(ticket.to_log_embed("Created", 0x00FF00,
                                                [("Channel", channel.mention)]))

    async def find_existing_ticket(self, guild, category, user):
        """Return the user's open ticket channel in the category, or None."""
        channel_id = await self.store.find_open_ticket(user.id, category.id)
        if channel_id is not None:
            channel = guild.get_channel(channel_id)
            if channel is not None:
                return channel
            log.info("Dropping ticket record for missing channel %s",
                     channel_id)
            await self.store.remove_ticket(channel_id)

        # Tickets without a record are recognized by their topic
        for channel in category.text_channels:
            if owner_from_topic(channel.topic) != user.id:
                continue
            if await self.store.get_ticket(channel.id) is None:
                return channel
        return None

    async def ticket_owner_id(self, channel):
        record = await self.store.get_ticket(channel.id)
        if record is not None:
            return int(record["ownerId"])
        return owner_from_topic(getattr(channel, "topic", None))

    async def _load_ticket(self, channel):
        record = await self.store.get_ticket(channel.id)
        owner_id = await self.ticket_owner_id(channel)
        if owner_id is None:
            return None
        owner = channel.guild.get_member(owner_id)
        if owner is None:
            try:
                owner = await self.bot.fetch_user(owner_id)
            except discord.HTTPException as e:
                log.debug("Could not fetch ticket owner %s: %s", owner_id, e)
                owner = FakeMember(owner_id)
        staff = channel.guild.get_role(self.config.staff_role_id)
        if record is not None:
            return Ticket(record["number"], record["type"], owner, staff,
                          channel)
        return Ticket(0, "unknown", owner, staff, channel)

    ###########################################################################
    ## Staff controls
    ###########################################################################

    async def notify_owner(self, interaction):
        if not is_staff(interaction.user, self.config.staff_role_id):
            await interaction.response.send_message(Strings.staff_only,
                                                    ephemeral=True)
            return

        channel = interaction.channel
        owner_id = await self.ticket_owner_id(channel)
        if owner_id is None:
            await interaction.response.send_message(
                "%s Could not find the owner of this ticket." % Emojis.x,
                ephemeral=True)
            return

        await interaction.response.defer(ephemeral=True, thinking=True)
        embed = discord.Embed.from_dict({
            "title": "%s Your ticket needs your attention" % Emojis.bell,
            "color": self.config.embed_color,
            "description": "A staff member is waiting for your reply in %s "
                           "on **%s**." % (channel.mention, channel.guild.name),
        })
        try:
            owner = await self.bot.fetch_user(owner_id)
            await owner.send(embed=embed)
        except discord.HTTPException as e:
            log.warning("Could not notify ticket owner %s: %s", owner_id, e)
            await interaction.followup.send(
                "%s Could not send a DM to <@%s>. Their DMs may be disabled."
                % (Emojis.warning, owner_id), ephemeral=True)
            return

        await interaction.followup.send(
            "%s The ticket owner has been notified." % Emojis.white_check_mark,
            ephemeral=True)
        ticket = await self._load_ticket(channel)
        if ticket is not None:
            await self.post_log(ticket.to_log_embed(
                "Notified", 0x00FFFF,
                [("Notified by", interaction.user.mention)]))

    async def close_ticket(self, interaction):
        if not is_staff(interaction.user, self.config.staff_role_id):
            await interaction.response.send_message(Strings.staff_only,
                                                    ephemeral=True)
            return

        channel = interaction.channel
        # Only local lookups before the interaction is answered
        if await self.ticket_owner_id(channel) is None:
            await interaction.response.send_message(
                "%s This channel is not a ticket." % Emojis.x, ephemeral=True)
            return
        if self.deferred.pending(channel_key(channel.id)):
            await interaction.response.send_message(
                "%s This ticket is already closing." % Emojis.warning,
                ephemeral=True)
            return

        embed = discord.Embed.from_dict({
            "title": "Ticket closed",
            "color": 0xFFFF00,
            "description": "This ticket was closed by %s and will be deleted "
                           "in %d seconds."
                           % (interaction.user.mention, TICKET_DELETE_DELAY),
        })
        await interaction.response.send_message(embed=embed)

        await self.store.set_ticket_status(channel.id, TICKET_CLOSING)
        self.deferred.schedule(channel_key(channel.id), TICKET_DELETE_DELAY,
                               self.delete_ticket_channel, channel)

        ticket = await self._load_ticket(channel)
        if not isinstance(ticket.owner, FakeMember):
            try:
                await ticket.owner.send(
                    "%s Your ticket **%s** on **%s** has been closed by the "
                    "staff." % (Emojis.lock, channel.name, channel.guild.name))
            except discord.HTTPException as e:
                log.info("Could not DM ticket owner %s: %s", ticket.owner, e)

        log.info("%s closed %s", interaction.user, channel.name)
        await self.post_log(ticket.to_log_embed(
            "Closed", 0xFF5E00, [("Closed by", interaction.user.mention)]))

    async def delete_ticket_channel(self, channel):
        try:
            await channel.delete(reason="Ticket closed")
        except discord.HTTPException as e:
            log.error("Could not delete ticket channel %s: %s",
                      channel.name, e)
            return
        await self.store.remove_ticket(channel.id)
        log.info("Deleted ticket channel %s", channel.name)

    async def post_log(self, embed):
        channel_id = self.config.ticket_log_channel_id
        if channel_id is None:
            return
        channel = self.bot.get_channel(channel_id)
        if channel is None:
            log.warning("Ticket log channel %s not found", channel_id)
            return
        try:
            await channel.send(embed=embed)
        except discord.HTTPException as e:
            log.warning("Could not post ticket log: %s", e)

    ###########################################################################
    ## Events
    ###########################################################################

    @commands.Cog.listener()
    async def on_guild_channel_delete(self, channel):
        self.deferred.cancel(channel_key(channel.id))
        await self.store.remove_ticket(channel.id)
