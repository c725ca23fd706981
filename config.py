import os
import urllib.parse
from dotenv import load_dotenv

load_dotenv()


def _csv(value: str) -> list:
    return [v.strip() for v in (value or "").split(",")]


# Twitch identity / OAuth2 implicit grant
TWITCH_CLIENT_ID = (os.getenv("TWITCH_CLIENT_ID") or "").strip()
TWITCH_USERNAME = (os.getenv("TWITCH_USERNAME") or "").strip().lower()
TWITCH_CALLBACK_URL = (os.getenv("TWITCH_CALLBACK_URL", "http://localhost:4827") or "").strip()
TWITCH_SCOPES = os.getenv("TWITCH_SCOPES", "chat:read chat:edit user:manage:whispers").strip()
TWITCH_FORCE_VERIFY = os.getenv("TWITCH_FORCE_VERIFY", "false").strip().lower() == "true"

# Chat
_channels = os.getenv("TWITCH_CHANNELS")
TWITCH_CHANNELS = [c.lstrip("#").lower() for c in _csv(_channels)] if _channels else []

# Who may trigger !spgsend / !spgstatus; the channel owners by default
_operators = os.getenv("TWITCH_OPERATORS")
TWITCH_OPERATORS = [o.lower() for o in (_csv(_operators) if _operators else TWITCH_CHANNELS) if o]

# Key distribution
USERNAMES_FILE = (os.getenv("USERNAMES_FILE", "usernames.txt") or "").strip()
KEYS_FILE = (os.getenv("KEYS_FILE", "keys.txt") or "").strip()
MESSAGE_TEMPLATE = os.getenv("MESSAGE_TEMPLATE", "Your code: <STEAM_KEY>")
MESSAGE_PLACEHOLDER = "<STEAM_KEY>"
SEND_DELAY_SECONDS = os.getenv("SEND_DELAY_SECONDS", "20")
STARTUP_DELAY_SECONDS = 5


def send_delay() -> float:
    return float(SEND_DELAY_SECONDS)


def validate_config() -> list:
    """Return a message for every missing or invalid setting (empty when the config is usable)."""
    errors = []

    if not TWITCH_CLIENT_ID:
        errors.append('The bot config is missing the "TWITCH_CLIENT_ID" value')
    if not TWITCH_CALLBACK_URL:
        errors.append('The bot config is missing the "TWITCH_CALLBACK_URL" value')
    elif not urllib.parse.urlsplit(TWITCH_CALLBACK_URL).hostname:
        errors.append(f'The "TWITCH_CALLBACK_URL" value "{TWITCH_CALLBACK_URL}" has no host')
    if not TWITCH_SCOPES:
        errors.append('The bot config is missing the "TWITCH_SCOPES" value')
    if not TWITCH_USERNAME:
        errors.append('The bot config is missing the "TWITCH_USERNAME" value')

    if TWITCH_CHANNELS:
        for index, channel in enumerate(TWITCH_CHANNELS):
            if not channel:
                errors.append(f"The channel value at position {index + 1} appears to be invalid or empty")
    else:
        errors.append("The bot config is missing all channels information")

    if not KEYS_FILE:
        errors.append('The bot config is missing the "KEYS_FILE" path')
    if not USERNAMES_FILE:
        errors.append('The bot config is missing the "USERNAMES_FILE" path')
    if MESSAGE_PLACEHOLDER not in (MESSAGE_TEMPLATE or ""):
        errors.append(f'The "MESSAGE_TEMPLATE" value must contain the {MESSAGE_PLACEHOLDER} placeholder')

    try:
        if send_delay() < 0:
            errors.append('The "SEND_DELAY_SECONDS" value cannot be negative')
    except (TypeError, ValueError):
        errors.append(f'The "SEND_DELAY_SECONDS" value "{SEND_DELAY_SECONDS}" is not a number')

    return errors
