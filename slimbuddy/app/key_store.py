"""
Persistence for connect keys.

The service only needs four operations, so anything that provides them can
stand in for Supabase (tests use an in-memory store).
"""
from datetime import datetime
from typing import Callable, Optional, Protocol

from postgrest.exceptions import APIError
from supabase import Client

from .logging_config import KeyConflict, StoreUnavailable
from .schemas import ConnectKeyRecord

UNIQUE_VIOLATION = "23505"

KEY_COLUMNS = "id, user_id, key_hash, created_at, expires_at, active, revoked, last_used_at, label"


class KeyStore(Protocol):
    def revoke_active_keys(self, owner_user_id: str) -> int: ...

    def insert_key(self, record: ConnectKeyRecord) -> str: ...

    def find_by_hash(self, key_hash: str) -> Optional[ConnectKeyRecord]: ...

    def touch_last_used(self, key_hash: str, at: datetime) -> None: ...


class SupabaseKeyStore:
    """KeyStore backed by the ``connect_keys`` table"""

    table_name = "connect_keys"

    def __init__(self, client: Client):
        self.client = client

    def _table(self):
        return self.client.table(self.table_name)

    def _run(self, operation: str, query: Callable):
        try:
            return query()
        except APIError as e:
            if e.code == UNIQUE_VIOLATION:
                raise KeyConflict(operation, e.message or "duplicate active key") from e
            raise StoreUnavailable(operation, e.message or str(e)) from e
        except Exception as e:
            raise StoreUnavailable(operation, str(e)) from e

    def revoke_active_keys(self, owner_user_id: str) -> int:
        result = self._run("revoke", lambda: self._table()
                           .update({"revoked": True})
                           .eq("user_id", owner_user_id)
                           .eq("active", True)
                           .eq("revoked", False)
                           .execute())
        return len(result.data or [])

    def insert_key(self, record: ConnectKeyRecord) -> str:
        payload = record.model_dump(mode="json", exclude_none=True)
        result = self._run("insert", lambda: self._table().insert(payload).execute())
        if not result.data:
            raise StoreUnavailable("insert", "no row returned for connect key")
        return str(result.data[0]["id"])

    def find_by_hash(self, key_hash: str) -> Optional[ConnectKeyRecord]:
        result = self._run("select", lambda: self._table()
                           .select(KEY_COLUMNS)
                           .eq("key_hash", key_hash)
                           .limit(1)
                           .execute())
        rows = result.data or []
        if not rows:
            return None
        return ConnectKeyRecord.model_validate(rows[0])

    def touch_last_used(self, key_hash: str, at: datetime) -> None:
        self._run("touch", lambda: self._table()
                  .update({"last_used_at": at.isoformat()})
                  .eq("key_hash", key_hash)
                  .execute())
