"""
Account loading from environment variables.

Accounts are declared as numbered session entries, optionally paired with a
username for a readable account name:

    API_ID=12345
    API_HASH=abcdef...
    SESSION_STRING_PARSER_1="1BVts..."
    USERNAME_PARSER_1="@crawler_one"
    SESSION_STRING_PARSER_2="1BVts..."

Values come from the process environment layered over the .env file.
"""

import os
import re
from collections.abc import Mapping
from pathlib import Path

from dotenv import dotenv_values

from channel_discovery.accounts.schemas import Account

SESSION_KEY_PREFIX = "SESSION_STRING_"
USERNAME_KEY_PREFIX = "USERNAME_"


def _natural_key(key: str) -> list:
    """Sort key placing SESSION_STRING_PARSER_2 before SESSION_STRING_PARSER_10."""
    return [int(part) if part.isdigit() else part for part in re.split(r"(\d+)", key)]


def read_environment(env_file: str | Path | None = ".env") -> dict[str, str]:
    """
    Merge the .env file (if present) with the process environment.

    Process environment wins over the file, matching pydantic-settings.
    """
    merged: dict[str, str] = {}
    if env_file is not None and Path(env_file).is_file():
        merged.update({k: v for k, v in dotenv_values(env_file).items() if v is not None})
    merged.update(os.environ)
    return merged


def parse_accounts(
    environ: Mapping[str, str],
    prefix: str | None = None,
    api_id: int | None = None,
    api_hash: str | None = None,
) -> list[Account]:
    """
    Build the account list from an environment mapping.

    Args:
        environ: Environment variables (e.g. from read_environment())
        prefix: Only keep SESSION_STRING_<prefix>_* entries (None = all)
        api_id: Provider API id (default: API_ID from environ)
        api_hash: Provider API hash (default: API_HASH from environ)

    Returns:
        Accounts with a non-empty session, in numeric order of their keys
    """
    if api_id is None:
        api_id = int(environ.get("API_ID") or 0)
    if api_hash is None:
        api_hash = environ.get("API_HASH", "")

    wanted = f"{SESSION_KEY_PREFIX}{prefix}_" if prefix else SESSION_KEY_PREFIX

    accounts = []
    seen_names: set[str] = set()
    for key in sorted(environ, key=_natural_key):
        value = (environ[key] or "").strip()
        if not key.startswith(wanted) or not value:
            continue

        suffix = key[len(SESSION_KEY_PREFIX):]
        username = (environ.get(f"{USERNAME_KEY_PREFIX}{suffix}") or "").strip().lstrip("@")
        name = username or f"Account_{suffix}"
        if name in seen_names:
            name = f"{name}_{suffix}"
        seen_names.add(name)

        accounts.append(
            Account(
                name=name,
                session=value,
                api_id=api_id,
                api_hash=api_hash,
                session_key=key,
            )
        )

    return accounts


def load_accounts(
    prefix: str | None = None,
    env_file: str | Path | None = ".env",
    api_id: int | None = None,
    api_hash: str | None = None,
) -> list[Account]:
    """Load accounts from the .env file and process environment."""
    return parse_accounts(
        read_environment(env_file),
        prefix=prefix,
        api_id=api_id,
        api_hash=api_hash,
    )
