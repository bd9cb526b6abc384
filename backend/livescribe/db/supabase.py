"""
Supabase client factory.

The client is created lazily so processes configured for in-memory stores never
need Supabase credentials.
"""

import logging
from threading import Lock

from livescribe.core.config import SUPABASE_KEY, SUPABASE_URL

logger = logging.getLogger("livescribe.db.supabase")

_client = None
_client_lock = Lock()


def get_supabase_client():
    global _client
    with _client_lock:
        if _client is not None:
            return _client
        if not SUPABASE_URL or not SUPABASE_KEY:
            raise RuntimeError("Supabase storage requires SUPABASE_URL and SUPABASE_KEY")

        from supabase import create_client

        _client = create_client(SUPABASE_URL, SUPABASE_KEY)
        logger.info("Supabase client created for %s", SUPABASE_URL)
        return _client
