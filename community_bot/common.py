###############################################################################
## Utility functions and classes shared by the cogs
###############################################################################

import logging

import discord
from discord.ext import commands

log = logging.getLogger(__name__)

# Lifetime of usage/permission replies to text commands, in seconds
ERROR_REPLY_LIFETIME = 5


class Emojis():
    envelope_with_arrow = b'\xf0\x9f\x93\xa9'.decode()
    lock = b'\xf0\x9f\x94\x92'.decode()
    bell = b'\xf0\x9f\x94\x94'.decode()
    white_check_mark = b'\xe2\x9c\x85'.decode()
    x = b'\xe2\x9d\x8c'.decode()
    warning = b'\xe2\x9a\xa0\xef\xb8\x8f'.decode()
    ping_pong = b'\xf0\x9f\x8f\x93'.decode()
    star = b'\xe2\xad\x90'.decode()
    memo = b'\xf0\x9f\x93\x9d'.decode()
    ticket = b'\xf0\x9f\x8e\xab'.decode()
    speech_balloon = b'\xf0\x9f\x92\xac'.decode()
    shopping_cart = b'\xf0\x9f\x9b\x92'.decode()
    bug = b'\xf0\x9f\x90\x9b'.decode()
    question = b'\xe2\x9d\x93'.decode()


class Strings():
    no_permission = "%s You don't have permission to use this command." \
                    % Emojis.x
    staff_only = "%s Only staff can use this button." % Emojis.x
    unknown_error = "%s Something went wrong. Tell someone from the staff " \
                    "team to check the logs." % Emojis.warning


class InvalidAmountError(commands.CommandError):
    pass


def is_staff(member, staff_role_id):
    return any(role.id == staff_role_id
               for role in getattr(member, "roles", ()))


def staff_only():
    """Command check against the staff role of the cog's config."""
    async def predicate(ctx):
        role_id = ctx.cog.config.staff_role_id
        if not is_staff(ctx.author, role_id):
            raise commands.MissingRole(role_id)
        return True
    return commands.check(predicate)


async def handle_error(ctx, error, error_handlers):
    for error_type, handler in error_handlers.items():
        if isinstance(error, error_type):
            await handler()
            return

    await send_error_unknown(ctx)
    raise error


def send_error_unknown(ctx):
    return ctx.send(Strings.unknown_error)


def send_usage_help(ctx, function_name, argument_structure):
    return ctx.send("Usage: `%s%s %s`"
                    % (ctx.prefix or "", function_name, argument_structure))


async def discard_message(message):
    try:
        await message.delete()
    except discord.HTTPException as e:
        log.debug("Could not delete message %s: %s", message.id, e)


async def reply_ephemeral(interaction, content=None, **kwargs):
    if interaction.response.is_done():
        await interaction.followup.send(content, ephemeral=True, **kwargs)
    else:
        await interaction.response.send_message(content, ephemeral=True,
                                                **kwargs)


class LoggedView(discord.ui.View):
    """View whose callback failures are logged and reported to the user."""

    async def on_error(self, interaction, error, item):
        log.error("Error in %s (%s)", type(self).__name__,
                  getattr(item, "custom_id", item), exc_info=error)
        try:
            await reply_ephemeral(interaction, Strings.unknown_error)
        except discord.HTTPException as e:
            log.debug("Could not report the error to the user: %s", e)
