##############################
# Purpose: Loads the bot configuration once at startup.
#          The resulting Config is immutable and handed to every component
#          that needs it.
##############################

import json
import os
import os.path
from dataclasses import dataclass

import pytz
from dotenv import load_dotenv

DEFAULT_CONFIG_PATH = "config.json"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigError(Exception):
    pass


@dataclass(frozen=True)
class Config:
    token: str
    staff_role_id: int
    log_channel_id: int
    ticket_category_id: int
    ticket_log_channel_id: int = None
    command_prefix: str = "!"
    embed_color: int = 0x5865F2
    thumbnail_url: str = None
    port: int = 3000
    data_file: str = "feedback.json"
    public_dir: str = "public"
    display_timezone: str = "UTC"
    log_level: str = "INFO"

    @property
    def tz(self):
        return pytz.timezone(self.display_timezone)


def load_config(path=None, environ=None):
    """Build a Config from defaults, a JSON file and the environment.

    Environment variables win over the file: BOT_TOKEN, PORT and LOG_LEVEL.
    """
    if environ is None:
        load_dotenv()
        environ = os.environ
    path = path or environ.get("BOT_CONFIG", DEFAULT_CONFIG_PATH)

    raw = {}
    if os.path.isfile(path):
        with open(path, "r", encoding="utf-8") as f:
            try:
                raw = json.load(f)
            except json.JSONDecodeError as e:
                raise ConfigError("%s is not valid JSON: %s" % (path, e))

    if environ.get("BOT_TOKEN"):
        raw["token"] = environ["BOT_TOKEN"]
    if environ.get("PORT"):
        raw["port"] = environ["PORT"]
    if environ.get("LOG_LEVEL"):
        raw["log_level"] = environ["LOG_LEVEL"]

    if not raw.get("token"):
        raise ConfigError("token is missing (set it in %s or BOT_TOKEN)" % path)

    values = {
        "token": raw["token"],
        "staff_role_id": _snowflake(raw, "staff_role_id"),
        "log_channel_id": _snowflake(raw, "log_channel_id"),
        "ticket_category_id": _snowflake(raw, "ticket_category_id"),
        "ticket_log_channel_id": _snowflake(raw, "ticket_log_channel_id",
                                            required=False),
        "command_prefix": raw.get("command_prefix", "!"),
        "embed_color": _color(raw.get("embed_color", 0x5865F2)),
        "thumbnail_url": raw.get("thumbnail_url") or None,
        "port": _port(raw.get("port", 3000)),
        "data_file": raw.get("data_file", "feedback.json"),
        "public_dir": raw.get("public_dir", "public"),
        "display_timezone": _timezone(raw.get("display_timezone", "UTC")),
        "log_level": _log_level(raw.get("log_level", "INFO")),
    }
    return Config(**values)


def _snowflake(raw, key, required=True):
    value = raw.get(key)
    if value in (None, ""):
        if required:
            raise ConfigError("%s is missing" % key)
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError("%s must be a numeric id, got %r" % (key, value))


def _color(value):
    if isinstance(value, int):
        return value
    try:
        return int(str(value).lstrip("#"), 16)
    except ValueError:
        raise ConfigError("embed_color must be an int or #RRGGBB, got %r"
                          % value)


def _port(value):
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ConfigError("port must be a number, got %r" % value)
    if not 0 < port < 65536:
        raise ConfigError("port out of range: %d" % port)
    return port


def _log_level(value):
    level = str(value).upper()
    if level not in LOG_LEVELS:
        raise ConfigError("log_level must be one of %s, got %r"
                          % (", ".join(LOG_LEVELS), value))
    return level


def _timezone(name):
    try:
        pytz.timezone(name)
    except pytz.UnknownTimeZoneError:
        raise ConfigError("display_timezone is unknown: %r" % name)
    return name
