"""Utility helpers for database connection configuration."""

from __future__ import annotations

import os

from fitbit_sync.domain.exceptions import DestinationAuthError


def get_database_url() -> str:
    """Return the configured PostgreSQL connection URL.

    Preference is given to the ``DATABASE_URL`` environment variable so that
    command invocations can override configuration at runtime. If it is not
    present, the value constructed from the ``POSTGRES_*`` settings is used.
    """

    env_url = os.getenv("DATABASE_URL")
    if env_url:
        return env_url

    from fitbit_sync.config.config import settings

    settings_url = settings.DATABASE_URL
    if settings_url:
        return settings_url

    raise DestinationAuthError(
        "Database connection information is missing. Set the DATABASE_URL "
        "environment variable or configure the POSTGRES_* variables."
    )
