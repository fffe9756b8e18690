"""
Remote Backend

The sync engine only talks to the remote store through `RemoteBackend`:
select / insert / update / delete against a table plus the identity of the
signed-in principal. `SupabaseBackend` implements it over PostgREST and
GoTrue with httpx; `InMemoryBackend` is a complete in-process stand-in with
row ownership checks, used for local-only mode, scripts and tests.

Remote failures are mapped onto a small taxonomy. Two codes matter to the
sync engine: permission denied (the row belongs to someone else, drop the
mutation) and relation missing (backend not provisioned, degrade to local
defaults).
"""
import asyncio
import copy
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Set, Tuple

import httpx

from churchbooks.logging_config import get_logger

logger = get_logger(__name__)


PERMISSION_DENIED = "42501"
RELATION_MISSING = "42P01"
SCHEMA_CACHE_MISS = "PGRST205"
DUPLICATE_KEY = "23505"


# ===== ERRORS =====

class RemoteError(Exception):
    """Base class for failures reported by, or on the way to, the remote backend"""

    def __init__(self, message: str, code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code


class PermissionDeniedError(RemoteError):
    pass


class RelationMissingError(RemoteError):
    pass


class AuthenticationError(RemoteError):
    pass


class RemoteUnavailableError(RemoteError):
    """Network failure or timeout; the call may succeed later"""
    pass


class DuplicateRecordError(RemoteError):
    pass


def classify_error(status_code: Optional[int], body: Any) -> RemoteError:
    """Turn a PostgREST error response into the matching RemoteError subclass"""
    body = body if isinstance(body, dict) else {}
    code = body.get("code")
    message = body.get("message") or body.get("msg") or f"Remote request failed with status {status_code}"

    if code == PERMISSION_DENIED:
        return PermissionDeniedError(message, code, status_code)
    if code in (RELATION_MISSING, SCHEMA_CACHE_MISS):
        return RelationMissingError(message, code, status_code)
    if code == DUPLICATE_KEY or status_code == 409:
        return DuplicateRecordError(message, code, status_code)
    if status_code in (401, 403):
        return AuthenticationError(message, code, status_code)
    if status_code is not None and status_code >= 500:
        return RemoteUnavailableError(message, code, status_code)
    return RemoteError(message, code, status_code)


# ===== BACKEND CONTRACT =====

class RemoteBackend(ABC):
    """Operations the sync engine needs from the remote store"""

    @abstractmethod
    async def get_current_principal(self) -> Optional[str]:
        """Id of the signed-in user, or None when nobody is signed in"""

    @abstractmethod
    async def select(self, table: str, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Rows of `table` matching every equality filter; dotted keys filter on a joined table"""

    @abstractmethod
    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def update(self, table: str, row: Dict[str, Any], match_id: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def delete(self, table: str, match_id: str) -> None:
        pass

    async def ping(self) -> bool:
        """Whether the backend is reachable"""
        return True

    async def aclose(self) -> None:
        pass


# ===== SUPABASE =====

# (table, joined table) -> PostgREST embed used for ownership filters
EMBED_HINTS: Dict[Tuple[str, str], str] = {
    ("transactions", "accounts"): "accounts!transactions_account_id_fkey",
}


class SupabaseBackend(RemoteBackend):
    """PostgREST + GoTrue client for a Supabase project"""

    def __init__(self, url: str, anon_key: str, access_token: Optional[str] = None,
                 timeout: float = 30.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url.rstrip("/")
        self.anon_key = anon_key
        self.access_token = access_token
        self._client = client or httpx.AsyncClient(base_url=self.url, timeout=timeout)

    def set_access_token(self, access_token: Optional[str]) -> None:
        self.access_token = access_token

    def _headers(self, prefer: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "apikey": self.anon_key,
            "Authorization": f"Bearer {self.access_token or self.anon_key}",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.RequestError as e:
            raise RemoteUnavailableError(f"Could not reach remote backend: {e}") from e

        if response.is_error:
            try:
                body = response.json()
            except ValueError:
                body = {"message": response.text}
            raise classify_error(response.status_code, body)
        return response

    async def get_current_principal(self) -> Optional[str]:
        if not self.access_token:
            return None
        try:
            response = await self._request("GET", "/auth/v1/user", headers=self._headers())
        except RemoteError as e:
            if e.status_code in (401, 403):
                raise AuthenticationError(e.message, e.code, e.status_code) from e
            raise
        return response.json().get("id")

    def _select_params(self, table: str, filters: Dict[str, Any]) -> Dict[str, str]:
        select = ["*"]
        params: Dict[str, str] = {}
        for key, value in filters.items():
            if "." in key:
                joined, column = key.split(".", 1)
                embed = EMBED_HINTS.get((table, joined), joined)
                # e.g. accounts!transactions_account_id_fkey!inner(user_id)
                select.append(f"{embed}!inner({column})")
            params[key] = f"eq.{value}"
        params["select"] = ",".join(select)
        return params

    async def select(self, table: str, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        filters = filters or {}
        params = self._select_params(table, filters)
        response = await self._request("GET", f"/rest/v1/{table}", params=params, headers=self._headers())

        joined = {key.split(".", 1)[0] for key in filters if "." in key}
        rows = response.json()
        # Embedded join columns only served the filter
        return [{k: v for k, v in row.items() if k not in joined} for row in rows]

    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._request(
            "POST", f"/rest/v1/{table}", json=row, headers=self._headers("return=representation")
        )
        rows = response.json()
        return rows[0] if rows else row

    async def update(self, table: str, row: Dict[str, Any], match_id: str) -> Dict[str, Any]:
        response = await self._request(
            "PATCH", f"/rest/v1/{table}", params={"id": f"eq.{match_id}"}, json=row,
            headers=self._headers("return=representation"),
        )
        rows = response.json()
        return rows[0] if rows else row

    async def delete(self, table: str, match_id: str) -> None:
        await self._request("DELETE", f"/rest/v1/{table}", params={"id": f"eq.{match_id}"}, headers=self._headers())

    async def ping(self) -> bool:
        try:
            response = await self._client.get("/rest/v1/", headers=self._headers())
        except httpx.RequestError:
            return False
        return response.status_code < 500

    async def aclose(self) -> None:
        await self._client.aclose()


# ===== IN-PROCESS BACKEND =====

class InMemoryBackend(RemoteBackend):
    """
    Remote store kept in process memory.

    Enforces the same row ownership the hosted policies do: accounts and
    categories belong to `user_id`, transactions to the owner of their
    account, and shared categories (no owner) are readable by everyone.
    Failures can be injected per table and operation.
    """

    OWNED_TABLES = ("accounts", "categories")

    def __init__(self, principal: Optional[str] = None):
        self.principal = principal
        self.tables: Dict[str, Dict[str, Dict[str, Any]]] = {
            "accounts": {}, "categories": {}, "transactions": {},
        }
        self.missing_tables: Set[str] = set()
        self.online = True
        self.calls: List[Tuple[str, str, Optional[str]]] = []
        self._failures: Dict[Tuple[str, str], List[RemoteError]] = {}

    # ===== TEST HOOKS =====

    def fail_next(self, operation: str, table: str, error: RemoteError, times: int = 1) -> None:
        self._failures.setdefault((operation, table), []).extend([error] * times)

    def seed(self, table: str, *rows: Dict[str, Any]) -> None:
        for row in rows:
            self.tables.setdefault(table, {})[row["id"]] = copy.deepcopy(row)

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return [copy.deepcopy(row) for row in self.tables.get(table, {}).values()]

    def calls_for(self, operation: str, table: Optional[str] = None) -> List[Tuple[str, str, Optional[str]]]:
        return [call for call in self.calls if call[0] == operation and (table is None or call[1] == table)]

    # ===== INTERNALS =====

    async def _enter(self, operation: str, table: str, record_id: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
        # Every remote call is a suspension point
        await asyncio.sleep(0)
        self.calls.append((operation, table, record_id))

        if not self.online:
            raise RemoteUnavailableError("Remote backend is offline")

        pending = self._failures.get((operation, table))
        if pending:
            raise pending.pop(0)

        if table in self.missing_tables:
            raise RelationMissingError(f'relation "public.{table}" does not exist', RELATION_MISSING, 404)
        return self.tables.setdefault(table, {})

    def _owner_of(self, table: str, row: Dict[str, Any]) -> Optional[str]:
        if table in self.OWNED_TABLES:
            return row.get("user_id")
        if table == "transactions":
            account = self.tables["accounts"].get(row.get("account_id"))
            return account.get("user_id") if account else None
        return None

    def _check_write(self, table: str, row: Dict[str, Any]) -> None:
        if self.principal is None:
            raise AuthenticationError("Not signed in", status_code=401)
        if self._owner_of(table, row) != self.principal:
            raise PermissionDeniedError(
                f'new row violates row-level security policy for table "{table}"', PERMISSION_DENIED, 403
            )

    def _visible(self, table: str, row: Dict[str, Any]) -> bool:
        if table == "categories" and row.get("user_id") is None:
            return True
        return self.principal is not None and self._owner_of(table, row) == self.principal

    # ===== BACKEND CONTRACT =====

    async def get_current_principal(self) -> Optional[str]:
        await asyncio.sleep(0)
        if not self.online:
            raise RemoteUnavailableError("Remote backend is offline")
        return self.principal

    async def select(self, table: str, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        rows = await self._enter("select", table)
        results = []
        for row in rows.values():
            if not self._visible(table, row):
                continue
            if all(self._matches(table, row, key, value) for key, value in (filters or {}).items()):
                results.append(copy.deepcopy(row))
        return results

    def _matches(self, table: str, row: Dict[str, Any], key: str, value: Any) -> bool:
        if "." not in key:
            return row.get(key) == value
        joined, column = key.split(".", 1)
        if (table, joined) == ("transactions", "accounts"):
            account = self.tables["accounts"].get(row.get("account_id"))
            return account is not None and account.get(column) == value
        return False

    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        rows = await self._enter("insert", table, row.get("id"))
        self._check_write(table, row)
        if row["id"] in rows:
            raise DuplicateRecordError(
                f'duplicate key value violates unique constraint "{table}_pkey"', DUPLICATE_KEY, 409
            )
        rows[row["id"]] = copy.deepcopy(row)
        return copy.deepcopy(row)

    async def update(self, table: str, row: Dict[str, Any], match_id: str) -> Dict[str, Any]:
        rows = await self._enter("update", table, match_id)
        existing = rows.get(match_id)
        if existing is None:
            # PostgREST updates nothing and reports no error
            return row
        self._check_write(table, existing)
        merged = {**existing, **row}
        self._check_write(table, merged)
        rows[match_id] = copy.deepcopy(merged)
        return copy.deepcopy(merged)

    async def delete(self, table: str, match_id: str) -> None:
        rows = await self._enter("delete", table, match_id)
        existing = rows.get(match_id)
        if existing is None:
            return
        self._check_write(table, existing)
        del rows[match_id]

        # Mirror the remote foreign keys
        if table == "accounts":
            for txn_id, txn in list(self.tables["transactions"].items()):
                if txn.get("account_id") == match_id:
                    del self.tables["transactions"][txn_id]
                elif txn.get("target_account_id") == match_id:
                    txn["target_account_id"] = None
        elif table == "categories":
            for txn in self.tables["transactions"].values():
                if txn.get("category_id") == match_id:
                    txn["category_id"] = None

    async def ping(self) -> bool:
        await asyncio.sleep(0)
        return self.online
