##############################
# Purpose: Feedback collection
#          Staff grant users an allowance with !allow and post a panel with
#          !feedback. The panel button opens a form; accepted submissions are
#          posted to the log channel, stored, and consume one allowance.
##############################

import logging
from datetime import datetime

import discord
from discord.ext import commands

from .common import (ERROR_REPLY_LIFETIME, Emojis, InvalidAmountError,
                     LoggedView, Strings, discard_message, handle_error,
                     reply_ephemeral, send_usage_help, staff_only)
from .deferred import message_key
from .store import feedback_record

log = logging.getLogger(__name__)

# Lifetime of the !allow confirmation, in seconds
GRANT_REPLY_LIFETIME = 1

FEEDBACK_BUTTON_ID = "feedback_create"
FEEDBACK_MODAL_ID = "feedback_modal"

NOT_ALLOWED = "%s You are not allowed to submit feedback, or you have used " \
              "all your available feedbacks.\nAsk a staff member to use " \
              "`!allow @you <amount>`." % Emojis.x
BAD_RATING = "%s Rating must be a number from **1** to **5**. " \
             "Please submit the form again." % Emojis.x


def parse_rating(text):
    """Return the rating as an int in 1..5, or None if it is not one."""
    text = (text or "").strip()
    if text not in ("1", "2", "3", "4", "5"):
        return None
    return int(text)


def detect_platform(member):
    for platform, attr in (("Mobile", "mobile_status"),
                           ("Desktop", "desktop_status"),
                           ("Web", "web_status")):
        status = getattr(member, attr, None)
        if isinstance(status, discord.Status) \
                and status != discord.Status.offline:
            return platform
    return "Unknown"


class FeedbackPanelView(LoggedView):
    def __init__(self, cog):
        super().__init__(timeout=None)
        self.cog = cog

    @discord.ui.button(label="Create Feedback", style=discord.ButtonStyle.primary,
                       emoji=Emojis.memo, custom_id=FEEDBACK_BUTTON_ID)
    async def create_feedback(self, interaction, button):
        await self.cog.open_form(interaction)


class FeedbackModal(discord.ui.Modal, title="Create Feedback"):
    rating = discord.ui.TextInput(label="Rating (1-5)",
                                  style=discord.TextStyle.short,
                                  custom_id="rating_input",
                                  min_length=1, max_length=1, required=True)
    comment = discord.ui.TextInput(label="Comment (optional)",
                                   style=discord.TextStyle.paragraph,
                                   custom_id="comment_input",
                                   required=False, max_length=1000)

    def __init__(self, cog):
        super().__init__(custom_id=FEEDBACK_MODAL_ID)
        self.cog = cog

    async def on_submit(self, interaction):
        await self.cog.submit(interaction, self.rating.value,
                              self.comment.value)

    async def on_error(self, interaction, error):
        log.error("Error in feedback form", exc_info=error)
        try:
            await reply_ephemeral(interaction, Strings.unknown_error)
        except discord.HTTPException as e:
            log.debug("Could not report the error to the user: %s", e)


class FeedbackCog(commands.Cog):
    def __init__(self, bot, config, store, deferred):
        self.bot = bot
        self.config = config
        self.store = store
        self.deferred = deferred

    ###########################################################################
    ## Commands
    ###########################################################################

    @commands.command()
    @staff_only()
    async def allow(self, ctx, member: discord.Member, amount: int):
        await discard_message(ctx.message)
        if amount < 1:
            raise InvalidAmountError()

        await self.store.set_allowance(member.id, amount)
        log.info("%s granted %s %d feedback(s)", ctx.author, member, amount)

        reply = await ctx.send("%s **%s** is now allowed to submit **%d** "
                               "feedback(s)." % (Emojis.white_check_mark,
                                                 member, amount))
        self.deferred.delete_message_later(reply, GRANT_REPLY_LIFETIME)

    @allow.error
    async def allow_error(self, ctx, error):
        await discard_message(ctx.message)
        error_handlers = {
            commands.MissingRole: lambda:
            self._send_temporary(ctx, Strings.no_permission),
            InvalidAmountError: lambda:
            self._send_temporary(ctx, "%s Amount must be a positive number."
                                 % Emojis.x),
            commands.MissingRequiredArgument: lambda:
            self._send_temporary(ctx, None, "allow", "@USER AMOUNT"),
            commands.BadArgument: lambda:
            self._send_temporary(ctx, None, "allow", "@USER AMOUNT"),
        }
        await handle_error(ctx, error, error_handlers)

    @commands.command()
    @staff_only()
    async def feedback(self, ctx):
        await discard_message(ctx.message)

        embed = discord.Embed.from_dict({
            "title": "Feedback Panel",
            "color": self.config.embed_color,
            "description": "Click the button below to open a form and "
                           "submit your feedback.\n\nOnly users who have "
                           "been allowed via `!allow` can submit feedback.",
        })
        embed.set_footer(text="Requested by %s" % ctx.author)
        embed.timestamp = discord.utils.utcnow()
        if self.config.thumbnail_url:
            embed.set_thumbnail(url=self.config.thumbnail_url)

        await ctx.send(embed=embed, view=FeedbackPanelView(self))

    @feedback.error
    async def feedback_error(self, ctx, error):
        error_handlers = {
            commands.MissingRole: lambda:
            self._send_temporary(ctx, Strings.no_permission),
            discord.HTTPException: lambda:
            ctx.send("%s Something went wrong while creating the feedback "
                     "panel." % Emojis.warning),
        }
        if isinstance(error, commands.CommandInvokeError):
            error = error.original
        await handle_error(ctx, error, error_handlers)

    async def _send_temporary(self, ctx, text, function_name=None,
                              argument_structure=None):
        if text is None:
            reply = await send_usage_help(ctx, function_name,
                                          argument_structure)
        else:
            reply = await ctx.send(text)
        self.deferred.delete_message_later(reply, ERROR_REPLY_LIFETIME)

    ###########################################################################
    ## Panel button and form
    ###########################################################################

    async def open_form(self, interaction):
        remaining = await self.store.get_allowance(interaction.user.id)
        if remaining <= 0:
            await interaction.response.send_message(NOT_ALLOWED, ephemeral=True)
            return
        await interaction.response.send_modal(FeedbackModal(self))

    async def submit(self, interaction, rating_text, comment):
        rating = parse_rating(rating_text)
        if rating is None:
            await interaction.response.send_message(BAD_RATING, ephemeral=True)
            return

        user = interaction.user

        # The allowance may have been used up since the form was opened
        remaining = await self.store.get_allowance(user.id)
        if remaining <= 0:
            await interaction.response.send_message(NOT_ALLOWED, ephemeral=True)
            return

        comment = (comment or "").strip()
        # Interaction payloads carry no client status, the cached member does
        member = None
        if interaction.guild is not None:
            member = interaction.guild.get_member(user.id)
        platform = detect_platform(member or user)
        try:
            sent = await self.post_log(user, rating, comment, platform)
            record = feedback_record(
                user.id, user.name, rating, comment, platform,
                message_id=sent.id if sent else None,
                channel_id=sent.channel.id if sent else None)
            await self.store.add_feedback(record)
            left = await self.store.decrement_allowance(user.id)
        except (discord.HTTPException, OSError):
            log.exception("Error saving feedback from %s", user)
            await interaction.response.send_message(
                "%s Something went wrong while saving your feedback."
                % Emojis.warning, ephemeral=True)
            return

        log.info("Stored feedback from %s (%d/5), %d left", user, rating, left)
        await interaction.response.send_message(
            "%s Your feedback has been submitted. Thank you!\n"
            "You have **%d** feedback(s) remaining."
            % (Emojis.white_check_mark, left), ephemeral=True)

    async def post_log(self, user, rating, comment, platform):
        """Post the feedback embed to the log channel.

        Returns the sent message, or None if the channel is unavailable or
        the send failed.
        """
        channel_id = self.config.log_channel_id
        channel = self.bot.get_channel(channel_id)
        if channel is None:
            try:
                channel = await self.bot.fetch_channel(channel_id)
            except discord.HTTPException as e:
                log.error("Feedback log channel %s could not be fetched: %s",
                          channel_id, e)
                return None

        if not isinstance(channel, discord.abc.Messageable):
            log.error("Feedback log channel %s is not text-based", channel_id)
            return None

        submitted = datetime.now(self.config.tz)
        embed = discord.Embed.from_dict({
            "title": "New Feedback Submitted",
            "color": 0x22C55E,
        })
        embed.add_field(name="User", value="%s (ID: %s)" % (user.name, user.id),
                        inline=False)
        embed.add_field(name="Rating", value="%d/5 %s" % (rating, Emojis.star),
                        inline=True)
        embed.add_field(name="Platform", value=platform, inline=True)
        embed.add_field(name="Comment",
                        value=comment or "*No comment provided*", inline=False)
        embed.set_footer(text=submitted.strftime("%b %d, %Y %I:%M %p %Z"))
        embed.timestamp = submitted

        try:
            return await channel.send(embed=embed)
        except discord.HTTPException as e:
            log.error("Could not post feedback to channel %s: %s",
                      channel_id, e)
            return None

    ###########################################################################
    ## Events
    ###########################################################################

    @commands.Cog.listener()
    async def on_raw_message_delete(self, payload):
        self.deferred.cancel(message_key(payload.message_id))
        if payload.channel_id != self.config.log_channel_id:
            return
        await self.store.remove_feedback_by_message_id(payload.message_id)
