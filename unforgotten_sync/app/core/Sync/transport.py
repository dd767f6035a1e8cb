# Sync/transport.py
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import httpx
from loguru import logger

from unforgotten_sync.app.core.DB_Management.Local_Store_DB import ENTITY_TABLES
from unforgotten_sync.app.core.Utils.Utils import entity_key, format_timestamp

from .exceptions import NetworkError, RemoteError, TransportError

# Tables that carry no account_id column and are scoped through their owning profile.
PROFILE_SCOPED_TYPES = frozenset({"important_account"})

# Tables without an updated_at column on the server.
CREATED_ONLY_TYPES = frozenset({"profile_connection"})

# Ids per `id=in.(...)` request, keeps the query string well under URL limits.
FETCH_CHUNK_SIZE = 100


def remote_table(entity_type) -> str:
    key = entity_key(entity_type)
    try:
        return ENTITY_TABLES[key]['table']
    except KeyError:
        raise ValueError(f"Unknown entity type: {key}") from None


class RemoteClient(ABC):
    """Abstract base class for the remote store. Transport only, no merge logic."""

    @abstractmethod
    async def list(self, entity_type, account_id: str, since: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """
        Fetches the records of one entity type for an account.

        Args:
            entity_type: Entity type to fetch.
            account_id: Owning account.
            since: Only records with updated_at strictly after this instant.
                   If None, fetch everything (full pull).

        Returns:
            Raw records, oldest updated_at first.

        Raises:
            TransportError: If fetching fails.
        """
        pass

    async def list_versions(self, entity_type, account_id: str) -> List[Dict[str, Any]]:
        """
        Every id the server holds for an account with its current updated_at.

        Incremental pulls compare this manifest with the local store to find
        rows deleted remotely and rows whose updated_at moved backwards past
        the cursor (edits made offline and uploaded late).
        """
        records = await self.list(entity_type, account_id, since=None)
        return [{"id": r.get('id'), "updated_at": r.get('updated_at') or r.get('created_at')} for r in records]

    async def fetch(self, entity_type, account_id: str, ids: Sequence[str]) -> List[Dict[str, Any]]:
        """Full records for the given ids. Ids the server doesn't have are left out."""
        wanted = {str(i) for i in ids}
        if not wanted:
            return []
        return [r for r in await self.list(entity_type, account_id, since=None) if str(r.get('id')) in wanted]

    @abstractmethod
    async def create(self, entity_type, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Inserts a record and returns the stored server version. RemoteError(status_code=409) on a duplicate id."""
        pass

    @abstractmethod
    async def update(self, entity_type, entity_id: str, payload: Dict[str, Any],
                     if_older_than: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Updates a record.

        Args:
            if_older_than: Only write when the server copy's updated_at is strictly
                before this instant.

        Raises:
            RemoteError: status_code=404 if the row doesn't exist remotely or the
                condition did not hold.
        """
        pass

    @abstractmethod
    async def delete(self, entity_type, entity_id: str) -> None:
        """Idempotent delete. A missing row counts as success."""
        pass

    async def aclose(self):
        pass


class HttpRemoteClient(RemoteClient):
    """RemoteClient for a PostgREST-style REST endpoint (`/rest/v1/<table>`)."""

    def __init__(self, base_url: str, api_key: Optional[str] = None, access_token: Optional[str] = None,
                 timeout: float = 30.0, rest_path: str = "rest/v1", client: Optional[httpx.AsyncClient] = None):
        if not base_url.endswith('/'):
            base_url += '/'
        self.base_url = base_url
        self.rest_path = rest_path.strip('/')
        self.api_key = api_key
        self.access_token = access_token
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None
        logger.info(f"HTTP remote client initialized for URL: {self.base_url}")

    def _get_headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
        token = self.access_token or self.api_key
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def set_access_token(self, token: Optional[str]):
        self.access_token = token

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self._client

    def _url(self, entity_type) -> str:
        return f"{self.base_url}{self.rest_path}/{remote_table(entity_type)}"

    @staticmethod
    def _stamp_column(key: str) -> str:
        return "created_at" if key in CREATED_ONLY_TYPES else "updated_at"

    @staticmethod
    def _scoped(key: str, account_id: str, columns: str) -> Dict[str, str]:
        """select + account filter for one table."""
        if key == "account":
            return {"select": columns, "id": f"eq.{account_id}"}
        if key in PROFILE_SCOPED_TYPES:
            return {"select": f"{columns},profiles!inner(account_id)", "profiles.account_id": f"eq.{account_id}"}
        return {"select": columns, "account_id": f"eq.{account_id}"}

    @staticmethod
    def _outgoing(key: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if key in PROFILE_SCOPED_TYPES:
            return {k: v for k, v in payload.items() if k != 'account_id'}
        return payload

    @staticmethod
    def _incoming(key: str, payload: Dict[str, Any], body: Dict[str, Any]) -> Dict[str, Any]:
        # representation of a profile-scoped row has no account_id to decode against
        if key in PROFILE_SCOPED_TYPES and not body.get('account_id') and payload.get('account_id'):
            return {**body, "account_id": payload['account_id']}
        return body

    async def _request(self, method: str, entity_type, *, params=None, json=None, headers=None,
                       entity_id: Optional[str] = None) -> httpx.Response:
        key = entity_key(entity_type)
        request_headers = self._get_headers()
        if headers:
            request_headers.update(headers)
        try:
            response = await self.client.request(method, self._url(entity_type), params=params, json=json,
                                                 headers=request_headers)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.error(f"{method} {key} failed with HTTP {status}: {e.response.text[:300]}")
            raise RemoteError(f"Remote {method} failed with HTTP {status}", status_code=status,
                              entity_type=key, entity_id=entity_id) from e
        except httpx.RequestError as e:
            logger.error(f"HTTP request failed during {method} {key}: {e}")
            raise NetworkError(f"Failed to reach remote: {e}", entity_type=key, entity_id=entity_id) from e

    @staticmethod
    def _json(response: httpx.Response, key: str) -> Any:
        try:
            return response.json()
        except ValueError as e:
            logger.error(f"Failed to decode JSON response for {key}: {e}")
            raise TransportError(f"Invalid JSON response received: {e}", entity_type=key) from e

    def _rows(self, response: httpx.Response, key: str) -> List[Dict[str, Any]]:
        records = self._json(response, key)
        if not isinstance(records, list):
            raise TransportError(f"Invalid response format from list: expected list, got {type(records)}",
                                 entity_type=key)
        return records

    def _single(self, response: httpx.Response, key: str, entity_id: Optional[str]) -> Dict[str, Any]:
        body = self._json(response, key)
        if isinstance(body, list):
            if not body:
                raise RemoteError("Remote returned no row", status_code=404, entity_type=key, entity_id=entity_id)
            body = body[0]
        if not isinstance(body, dict):
            raise TransportError(f"Invalid response format: expected object, got {type(body)}",
                                 entity_type=key, entity_id=entity_id)
        return body

    async def list(self, entity_type, account_id: str, since: Optional[datetime] = None) -> List[Dict[str, Any]]:
        key = entity_key(entity_type)
        stamp = self._stamp_column(key)
        params = {**self._scoped(key, account_id, "*"), "order": f"{stamp}.asc"}
        if since is not None:
            params[stamp] = f"gt.{format_timestamp(since)}"
        logger.debug(f"Fetching {key} for account {account_id} with params: {params}")
        response = await self._request("GET", entity_type, params=params)
        records = self._rows(response, key)
        logger.info(f"Fetched {len(records)} remote {key} record(s) for account {account_id}.")
        return records

    async def list_versions(self, entity_type, account_id: str) -> List[Dict[str, Any]]:
        key = entity_key(entity_type)
        stamp = self._stamp_column(key)
        params = self._scoped(key, account_id, f"id,{stamp}")
        response = await self._request("GET", entity_type, params=params)
        versions = [{"id": r.get('id'), "updated_at": r.get(stamp)} for r in self._rows(response, key)]
        logger.debug(f"Remote holds {len(versions)} {key} row(s) for account {account_id}")
        return versions

    async def fetch(self, entity_type, account_id: str, ids: Sequence[str]) -> List[Dict[str, Any]]:
        key = entity_key(entity_type)
        ids = [str(i) for i in ids]
        records: List[Dict[str, Any]] = []
        for start in range(0, len(ids), FETCH_CHUNK_SIZE):
            chunk = ids[start:start + FETCH_CHUNK_SIZE]
            params = {**self._scoped(key, account_id, "*"), "id": f"in.({','.join(chunk)})"}
            response = await self._request("GET", entity_type, params=params)
            records.extend(self._rows(response, key))
        logger.debug(f"Fetched {len(records)} of {len(ids)} requested {key} row(s)")
        return records

    async def create(self, entity_type, payload: Dict[str, Any]) -> Dict[str, Any]:
        key = entity_key(entity_type)
        response = await self._request("POST", entity_type, json=self._outgoing(key, payload),
                                       entity_id=payload.get('id'), headers={"Prefer": "return=representation"})
        return self._incoming(key, payload, self._single(response, key, payload.get('id')))

    async def update(self, entity_type, entity_id: str, payload: Dict[str, Any],
                     if_older_than: Optional[datetime] = None) -> Dict[str, Any]:
        key = entity_key(entity_type)
        params = {"id": f"eq.{entity_id}"}
        if if_older_than is not None and key not in CREATED_ONLY_TYPES:
            params["updated_at"] = f"lt.{format_timestamp(if_older_than)}"
        response = await self._request("PATCH", entity_type, params=params, json=self._outgoing(key, payload),
                                       entity_id=entity_id, headers={"Prefer": "return=representation"})
        # PostgREST answers 200 with [] when the filter matched nothing
        return self._incoming(key, payload, self._single(response, key, entity_id))

    async def delete(self, entity_type, entity_id: str) -> None:
        try:
            await self._request("DELETE", entity_type, params={"id": f"eq.{entity_id}"}, entity_id=entity_id)
        except RemoteError as e:
            if e.is_not_found:
                logger.debug(f"Remote {entity_key(entity_type)} {entity_id} already gone. Success (idempotent).")
                return
            raise

    async def aclose(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
