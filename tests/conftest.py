from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

from community_bot.config import Config
from community_bot.deferred import DeferredTasks
from community_bot.store import Store

STAFF_ROLE_ID = 10
LOG_CHANNEL_ID = 20
TICKET_CATEGORY_ID = 30


def http_error(cls, status, text="error"):
    response = MagicMock(status=status, reason=text)
    return cls(response, text)


def make_member(id, name="user", roles=()):
    member = MagicMock()
    member.id = id
    member.name = name
    member.mention = f"<@{id}>"
    member.bot = False
    member.roles = [MagicMock(id=role_id) for role_id in roles]
    member.send = AsyncMock()
    for attr in ("mobile_status", "desktop_status", "web_status"):
        setattr(member, attr, discord.Status.offline)
    return member


def make_interaction(user, guild=None, channel=None):
    interaction = MagicMock()
    interaction.user = user
    interaction.guild = guild
    interaction.channel = channel
    interaction.response.send_message = AsyncMock()
    interaction.response.send_modal = AsyncMock()
    interaction.response.defer = AsyncMock()
    interaction.response.is_done = MagicMock(return_value=False)
    interaction.followup.send = AsyncMock()
    return interaction


@pytest.fixture
def config(tmp_path):
    return Config(token="token",
                  staff_role_id=STAFF_ROLE_ID,
                  log_channel_id=LOG_CHANNEL_ID,
                  ticket_category_id=TICKET_CATEGORY_ID,
                  data_file=str(tmp_path / "feedback.json"),
                  public_dir=str(tmp_path / "public"))


@pytest.fixture
def store(config):
    return Store(config.data_file)


@pytest.fixture
def deferred():
    return DeferredTasks()
