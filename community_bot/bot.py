##############################
# Purpose: The bot itself
#          Wires the cogs, the persistent views and the web server together
#          and handles the plain "ping" message.
##############################

import logging

import discord
from discord.ext import commands

from .common import Emojis
from .deferred import DeferredTasks
from .feedback import FeedbackCog, FeedbackPanelView
from .tickets import TicketCog, TicketControlsView, TicketMenuView
from .web import start_webserver

log = logging.getLogger(__name__)

BOT_DESCRIPTION = "Community feedback and support ticket bot"


class CommunityBot(commands.Bot):
    def __init__(self, config, store):
        intents = discord.Intents.default()
        intents.message_content = True
        intents.members = True
        intents.presences = True
        super().__init__(command_prefix=config.command_prefix,
                         description=BOT_DESCRIPTION,
                         intents=intents,
                         case_insensitive=True,
                         help_command=None)
        self.config = config
        self.store = store
        self.deferred = DeferredTasks()
        self.web_runner = None

    async def setup_hook(self):
        feedback = FeedbackCog(self, self.config, self.store, self.deferred)
        tickets = TicketCog(self, self.config, self.store, self.deferred)
        await self.add_cog(feedback)
        await self.add_cog(tickets)

        # Buttons and menus posted before a restart keep working
        self.add_view(FeedbackPanelView(feedback))
        self.add_view(TicketMenuView(tickets))
        self.add_view(TicketControlsView(tickets))

        self.web_runner = await start_webserver(self.store, self.config)

    async def close(self):
        self.deferred.cancel_all()
        if self.web_runner is not None:
            await self.web_runner.cleanup()
            self.web_runner = None
        await super().close()

    async def on_ready(self):
        log.info("Logged in as %s (%s)", self.user, self.user.id)

    async def on_message(self, message):
        if message.author.bot or message.guild is None:
            return

        if message.content.strip().lower() == "ping":
            await message.reply("Pong! %s" % Emojis.ping_pong)
            return

        await self.process_commands(message)

    async def on_command_error(self, ctx, error):
        if isinstance(error, commands.CommandNotFound):
            return
        # Commands with their own error handler have already replied
        if ctx.command is not None and ctx.command.has_error_handler():
            return
        log.error("Error in command %s", ctx.command, exc_info=error)
