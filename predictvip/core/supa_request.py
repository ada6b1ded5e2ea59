"""
Supabase client management for the record store.

The service role client bypasses Row Level Security, so every subscription
write it makes goes through the guarded transitions in the state machine.
"""

from typing import Tuple
from supabase import create_client, Client
import structlog

from predictvip.core.settings import settings

logger = structlog.get_logger(__name__)


def _get_supabase_config() -> Tuple[str, str]:
    """
    Retrieve Supabase connection details from settings and ensure they exist.
    """
    url = settings.supabase_url
    service_key = settings.supabase_service_role_key

    missing = [
        name
        for name, value in (
            ("SUPABASE_URL", url),
            ("SUPABASE_SERVICE_ROLE_KEY", service_key),
        )
        if not value
    ]

    if missing:
        joined = ", ".join(missing)
        raise RuntimeError(
            f"Supabase configuration missing required values: {joined}. "
            "Ensure .env is populated or environment variables are set."
        )

    return url, service_key


def service_client() -> Client:
    """
    Create a service role Supabase client for record store operations.

    Returns:
        Supabase client with service role permissions
    """
    url, service_key = _get_supabase_config()

    client = create_client(url, service_key)

    logger.debug("Created service role Supabase client")
    return client
