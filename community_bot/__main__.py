#!/usr/bin/env python3

import logging
import sys

import discord

from .bot import CommunityBot
from .config import ConfigError, load_config
from .store import Store


def main():
    try:
        config = load_config()
    except ConfigError as e:
        print("Invalid configuration: %s" % e, file=sys.stderr)
        return 1

    discord.utils.setup_logging(level=logging.getLevelName(config.log_level))
    bot = CommunityBot(config, Store(config.data_file))
    bot.run(config.token, log_handler=None)
    return 0


if __name__ == "__main__":
    sys.exit(main())
