"""Supabase client initialization."""

from functools import lru_cache

from supabase import Client, create_client

from scribe.core.config import get_settings
from scribe.core.errors import ConfigurationError


@lru_cache(maxsize=1)
def get_supabase() -> Client:
    """
    Get Supabase client instance (cached singleton).

    Returns:
        Supabase client configured with service role key

    Raises:
        ConfigurationError: If credentials are missing or the client cannot be created
    """
    settings = get_settings()
    if not settings.SUPABASE_URL or not settings.SUPABASE_SERVICE_ROLE_KEY:
        raise ConfigurationError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")

    try:
        return create_client(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_ROLE_KEY)
    except Exception as e:
        raise ConfigurationError(f"Failed to initialize Supabase client: {e}") from e
