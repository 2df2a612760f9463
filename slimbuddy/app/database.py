"""
Process-wide supabase-py client.

Route handlers receive it through the ``get_db`` dependency; tests override
that dependency rather than touching this module.
"""
import asyncio
import logging
import os
import random
import time
from typing import Callable, NamedTuple, Optional, TypeVar

from supabase import Client, ClientOptions, create_client

from .logging_config import DatabaseError

logger = logging.getLogger(__name__)

T = TypeVar("T")

PROBE_TABLE = "connect_keys"


class SupabaseSettings(NamedTuple):
    url: str
    key: str

    @classmethod
    def from_env(cls) -> "SupabaseSettings":
        # Service role key: backend writes bypass row level security
        return cls(
            os.environ.get("SUPABASE_URL", "").rstrip("/"),
            os.environ.get("SUPABASE_KEY") or os.environ.get("SUPABASE_SERVICE_ROLE_KEY", ""),
        )

    @property
    def configured(self) -> bool:
        return bool(self.url and self.key)


def with_retries(call: Callable[[], T], attempts: int = 3, base_delay: float = 0.15) -> T:
    """Run ``call``, retrying failures with exponential backoff plus jitter"""
    for attempt in range(attempts):
        try:
            return call()
        except Exception as e:
            if attempt == attempts - 1:
                raise
            delay = base_delay * 2 ** attempt + random.random() * 0.05
            logger.warning(f"Supabase call failed ({e}), retrying in {delay:.2f}s")
            time.sleep(delay)


class SB:
    """Lazily created supabase client shared by every request"""
    _client: Optional[Client] = None
    _lock = asyncio.Lock()

    @classmethod
    async def client(cls) -> Client:
        if cls._client is not None:
            return cls._client
        async with cls._lock:
            if cls._client is None:
                cls._client = cls._connect(SupabaseSettings.from_env())
        return cls._client

    @staticmethod
    def _connect(settings: SupabaseSettings) -> Client:
        if not settings.configured:
            raise DatabaseError("connect", "SUPABASE_URL and SUPABASE_KEY must be set")
        client = create_client(
            settings.url, settings.key,
            options=ClientOptions(auto_refresh_token=False, persist_session=False)
        )
        logger.info("Supabase client initialized")
        return client

    @classmethod
    async def ping(cls) -> bool:
        """One-row read of the connect_keys table"""
        try:
            client = await cls.client()
            result = with_retries(lambda: client.table(PROBE_TABLE).select("id").limit(1).execute())
        except Exception as e:
            logger.error(f"Supabase probe failed: {e}")
            return False
        return result.data is not None

    @classmethod
    async def dispose(cls):
        cls._client = None
        logger.info("Supabase client disposed")
