import asyncio
from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

from community_bot.common import Strings
from community_bot.deferred import channel_key
from community_bot.store import TICKET_CLOSING, TICKET_OPEN
from community_bot.tickets import (FakeMember, Ticket, TicketCog,
                                   TicketMenuView, make_topic,
                                   owner_from_topic)

from .conftest import (STAFF_ROLE_ID, TICKET_CATEGORY_ID, http_error,
                       make_interaction, make_member)

OWNER_ID = 42
TICKET_CHANNEL_ID = 900


def make_channel(id, name, topic=None, guild=None):
    channel = MagicMock(spec=discord.TextChannel)
    channel.id = id
    channel.name = name
    channel.mention = f"<#{id}>"
    channel.topic = topic
    channel.guild = guild
    channel.send = AsyncMock()
    channel.delete = AsyncMock()
    return channel


@pytest.fixture
def owner():
    return make_member(OWNER_ID, "alice")


@pytest.fixture
def staff():
    return make_member(1, "mod", roles=[STAFF_ROLE_ID])


@pytest.fixture
def guild(owner):
    guild = MagicMock()
    guild.name = "Community"
    guild.channels = {}

    category = MagicMock(spec=discord.CategoryChannel)
    category.id = TICKET_CATEGORY_ID
    category.text_channels = []
    guild.category = category
    guild.channels[TICKET_CATEGORY_ID] = category

    staff_role = MagicMock()
    staff_role.id = STAFF_ROLE_ID
    staff_role.mention = f"<@&{STAFF_ROLE_ID}>"
    guild.get_role = MagicMock(return_value=staff_role)
    guild.get_channel = MagicMock(side_effect=guild.channels.get)
    guild.get_member = MagicMock(
        side_effect=lambda id: owner if id == OWNER_ID else None)

    async def create_text_channel(name, **kwargs):
        await asyncio.sleep(0)
        channel = make_channel(TICKET_CHANNEL_ID, name, kwargs.get("topic"),
                               guild)
        guild.channels[channel.id] = channel
        return channel
    guild.create_text_channel = AsyncMock(side_effect=create_text_channel)
    return guild


@pytest.fixture
def bot(owner):
    bot = MagicMock()
    bot.fetch_user = AsyncMock(return_value=owner)
    return bot


@pytest.fixture
def cog(bot, config, store, deferred):
    return TicketCog(bot, config, store, deferred)


def test_topic_round_trip():
    topic = make_topic(OWNER_ID, "bug")
    assert topic == "UserID:42 | Type: Bug/Technical Issue"
    assert owner_from_topic(topic) == OWNER_ID


@pytest.mark.parametrize("topic", [None, "", "no owner here", "UserID:abc"])
def test_topic_without_owner(topic):
    assert owner_from_topic(topic) is None


def test_ticket_channel_name():
    ticket = Ticket(12345, "general", FakeMember(1), None)
    assert ticket.name == "ticket-2345"


@pytest.mark.asyncio
async def test_menu_offers_fixed_categories(cog):
    select = TicketMenuView(cog).children[0]
    assert [o.label for o in select.options] == [
        "General Support", "Purchase/Order Issue", "Bug/Technical Issue",
        "Other Question"]


@pytest.mark.asyncio
async def test_create_ticket(cog, store, guild, owner):
    interaction = make_interaction(owner, guild)
    await cog.create_ticket(interaction, "purchase")

    guild.create_text_channel.assert_awaited_once()
    call = guild.create_text_channel.await_args
    assert call.args[0] == "ticket-0001"
    assert call.kwargs["category"] is guild.category
    assert call.kwargs["topic"] == "UserID:42 | Type: Purchase/Order Issue"
    overwrites = call.kwargs["overwrites"]
    assert overwrites[guild.default_role].view_channel is False
    assert overwrites[owner].view_channel is True

    record = await store.get_ticket(TICKET_CHANNEL_ID)
    assert record["ownerId"] == str(OWNER_ID)
    assert record["status"] == TICKET_OPEN
    assert record["type"] == "purchase"

    channel = guild.channels[TICKET_CHANNEL_ID]
    intro = channel.send.await_args
    assert owner.mention in intro.args[0]
    assert f"<@&{STAFF_ROLE_ID}>" in intro.args[0]
    assert [c.custom_id for c in intro.kwargs["view"].children] == [
        "ticket_notify", "ticket_close"]

    reply = interaction.followup.send.await_args
    assert channel.mention in reply.args[0]


@pytest.mark.asyncio
async def test_second_ticket_points_to_existing_one(cog, guild, owner):
    await cog.create_ticket(make_interaction(owner, guild), "general")

    interaction = make_interaction(owner, guild)
    await cog.create_ticket(interaction, "bug")

    assert guild.create_text_channel.await_count == 1
    reply = interaction.followup.send.await_args.args[0]
    assert "already have an open ticket" in reply
    assert f"<#{TICKET_CHANNEL_ID}>" in reply


@pytest.mark.asyncio
async def test_ticket_found_by_topic(cog, guild, owner):
    legacy = make_channel(777, "ticket-legacy",
                          "UserID:42 | Type: Other Question", guild)
    guild.category.text_channels = [legacy]

    interaction = make_interaction(owner, guild)
    await cog.create_ticket(interaction, "general")

    guild.create_text_channel.assert_not_awaited()
    assert legacy.mention in interaction.followup.send.await_args.args[0]


@pytest.mark.asyncio
async def test_other_users_ticket_does_not_block(cog, guild, owner):
    other = make_channel(777, "ticket-other", "UserID:4200 | Type: Other",
                         guild)
    guild.category.text_channels = [other]

    await cog.create_ticket(make_interaction(owner, guild), "general")

    guild.create_text_channel.assert_awaited_once()


@pytest.mark.asyncio
async def test_stale_ticket_record_is_dropped(cog, store, guild, owner):
    await store.add_ticket(901, OWNER_ID, TICKET_CATEGORY_ID, "bug", 1)

    await cog.create_ticket(make_interaction(owner, guild), "general")

    assert await store.get_ticket(901) is None
    guild.create_text_channel.assert_awaited_once()


@pytest.mark.asyncio
async def test_missing_category_is_reported(cog, guild, owner):
    del guild.channels[TICKET_CATEGORY_ID]
    interaction = make_interaction(owner, guild)

    await cog.create_ticket(interaction, "general")

    guild.create_text_channel.assert_not_awaited()
    assert "not configured" in interaction.followup.send.await_args.args[0]


async def open_ticket(cog, guild, owner):
    await cog.create_ticket(make_interaction(owner, guild), "general")
    return guild.channels[TICKET_CHANNEL_ID]


@pytest.mark.asyncio
@pytest.mark.parametrize("action", ["notify_owner", "close_ticket"])
async def test_controls_are_staff_only(cog, store, guild, owner, action):
    channel = await open_ticket(cog, guild, owner)
    interaction = make_interaction(owner, guild, channel)

    await getattr(cog, action)(interaction)

    interaction.response.send_message.assert_awaited_once_with(
        Strings.staff_only, ephemeral=True)
    owner.send.assert_not_awaited()
    assert (await store.get_ticket(channel.id))["status"] == TICKET_OPEN


@pytest.mark.asyncio
async def test_notify_sends_dm(cog, bot, guild, owner, staff):
    channel = await open_ticket(cog, guild, owner)
    interaction = make_interaction(staff, guild, channel)

    await cog.notify_owner(interaction)

    bot.fetch_user.assert_awaited_once_with(OWNER_ID)
    owner.send.assert_awaited_once()
    assert "notified" in interaction.followup.send.await_args.args[0]


@pytest.mark.asyncio
async def test_notify_uses_topic_without_record(cog, bot, guild, owner,
                                                staff):
    channel = make_channel(777, "ticket-legacy", make_topic(OWNER_ID, "bug"),
                           guild)
    await cog.notify_owner(make_interaction(staff, guild, channel))
    bot.fetch_user.assert_awaited_once_with(OWNER_ID)


@pytest.mark.asyncio
async def test_notify_reports_blocked_dms(cog, store, guild, owner, staff):
    channel = await open_ticket(cog, guild, owner)
    owner.send = AsyncMock(side_effect=http_error(discord.Forbidden, 403))
    interaction = make_interaction(staff, guild, channel)

    await cog.notify_owner(interaction)

    assert "Could not send a DM" in interaction.followup.send.await_args.args[0]
    assert (await store.get_ticket(channel.id))["status"] == TICKET_OPEN


@pytest.mark.asyncio
async def test_close_schedules_deletion(cog, store, deferred, guild, owner,
                                        staff):
    channel = await open_ticket(cog, guild, owner)
    interaction = make_interaction(staff, guild, channel)

    await cog.close_ticket(interaction)

    embed = interaction.response.send_message.await_args.kwargs["embed"]
    assert embed.title == "Ticket closed"
    assert (await store.get_ticket(channel.id))["status"] == TICKET_CLOSING
    assert deferred.pending(channel_key(channel.id))
    owner.send.assert_awaited_once()
    channel.delete.assert_not_awaited()

    # A closing ticket does not block a new one
    second = make_interaction(owner, guild)
    guild.create_text_channel.reset_mock()
    await cog.create_ticket(second, "other")
    guild.create_text_channel.assert_awaited_once()
    deferred.cancel_all()


@pytest.mark.asyncio
async def test_closed_ticket_is_deleted_after_delay(cog, store, guild, owner,
                                                    staff, monkeypatch):
    monkeypatch.setattr("community_bot.tickets.TICKET_DELETE_DELAY", 0)
    channel = await open_ticket(cog, guild, owner)

    await cog.close_ticket(make_interaction(staff, guild, channel))
    await asyncio.sleep(0.05)

    channel.delete.assert_awaited_once()
    assert await store.get_ticket(channel.id) is None


@pytest.mark.asyncio
async def test_close_survives_blocked_dm(cog, deferred, guild, owner, staff):
    channel = await open_ticket(cog, guild, owner)
    owner.send = AsyncMock(side_effect=http_error(discord.Forbidden, 403))

    await cog.close_ticket(make_interaction(staff, guild, channel))

    assert deferred.pending(channel_key(channel.id))
    deferred.cancel_all()


@pytest.mark.asyncio
async def test_channel_deleted_early_cancels_deletion(cog, store, deferred,
                                                      guild, owner, staff):
    channel = await open_ticket(cog, guild, owner)
    await cog.close_ticket(make_interaction(staff, guild, channel))

    await cog.on_guild_channel_delete(channel)

    assert not deferred.pending(channel_key(channel.id))
    assert await store.get_ticket(channel.id) is None
    await asyncio.sleep(0)
    channel.delete.assert_not_awaited()


@pytest.mark.asyncio
async def test_concurrent_requests_create_one_ticket(cog, guild, owner):
    first = make_interaction(owner, guild)
    second = make_interaction(owner, guild)

    await asyncio.gather(cog.create_ticket(first, "general"),
                         cog.create_ticket(second, "bug"))

    assert guild.create_text_channel.await_count == 1
    assert "created" in first.followup.send.await_args.args[0]
    assert "already have an open ticket" \
        in second.followup.send.await_args.args[0]


@pytest.mark.asyncio
async def test_close_answers_before_fetching_owner(cog, bot, deferred, guild,
                                                   owner, staff):
    channel = await open_ticket(cog, guild, owner)
    guild.get_member = MagicMock(return_value=None)
    calls = []
    interaction = make_interaction(staff, guild, channel)
    interaction.response.send_message = AsyncMock(
        side_effect=lambda *a, **kw: calls.append("response"))
    bot.fetch_user = AsyncMock(
        side_effect=lambda id: calls.append("fetch") or owner)

    await cog.close_ticket(interaction)

    assert calls == ["response", "fetch"]
    owner.send.assert_awaited_once()
    deferred.cancel_all()


@pytest.mark.asyncio
async def test_close_outside_ticket_is_rejected(cog, deferred, guild, staff):
    channel = make_channel(555, "general-chat", None, guild)
    interaction = make_interaction(staff, guild, channel)

    await cog.close_ticket(interaction)

    assert "not a ticket" \
        in interaction.response.send_message.await_args.args[0]
    assert not deferred.pending(channel_key(555))
