"""Configuration: environment settings and account loading."""

from channel_discovery.config.settings import Settings, get_settings
from channel_discovery.config.accounts import load_accounts, parse_accounts

__all__ = ["Settings", "get_settings", "load_accounts", "parse_accounts"]
