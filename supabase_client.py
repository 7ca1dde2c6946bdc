"""
Supabase Client Configuration

Lazily initializes the Supabase client used for the graph store and
authentication. Nothing talks to Supabase until the client is first requested.
"""

# Standard library
import logging
import os
from typing import Optional

# Third-party
from dotenv import load_dotenv
from supabase import Client, create_client

logger = logging.getLogger(__name__)

# config.env sits next to this module
load_dotenv(dotenv_path=os.path.join(os.path.dirname(__file__), "config.env"))

supabase: Optional[Client] = None
_initialized = False


def init_supabase() -> Optional[Client]:
    """
    Create the Supabase client from SUPABASE_URL / SUPABASE_KEY.

    Returns:
        The client, or None when credentials are missing or creation fails.
    """
    global supabase, _initialized

    _initialized = True
    url = os.getenv("SUPABASE_URL")
    key = os.getenv("SUPABASE_KEY")

    if not url or not key:
        logger.warning("SUPABASE_URL or SUPABASE_KEY not found - database features disabled")
        supabase = None
        return None

    try:
        supabase = create_client(url, key)
        logger.info("Supabase client ready (%s)", url)
    except Exception as e:
        logger.error("Supabase client creation failed: %s", e)
        supabase = None
    return supabase


def get_supabase() -> Optional[Client]:
    """Return the cached client, initializing it on first access."""
    if not _initialized:
        return init_supabase()
    return supabase


def reset_supabase_for_tests() -> None:
    """Drop the cached client so the next access re-reads the environment."""
    global supabase, _initialized
    supabase = None
    _initialized = False
