"""Remote backend contract and implementations.

The remote store holds the same tables as the local store, keyed by the same
ids, plus an object store for evidence files. Every query is scoped to the
authenticated owner. Backends raise `TransientRemoteError` for failures that
may clear up on their own (network, 5xx, rate limiting) and
`RemoteRejectedError` when the server refuses the request outright.
"""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

import httpx

from vshield.clock import Clock, SystemClock
from vshield.config import DEFAULT_BUCKET, RemoteConfig
from vshield.errors import RemoteError, RemoteRejectedError, TransientRemoteError
from vshield.storage.interfaces import RowDict

logger = logging.getLogger(__name__)


class RemoteBackendInterface(ABC):
    """Abstract interface for the authoritative shared store."""

    owner_id: str

    @abstractmethod
    async def upsert(self, table: str, row: RowDict) -> RowDict:
        """Insert or replace a row keyed by its id.

        Returns the row as stored by the server, including the server's
        `updated_at` for tables that have one.
        """

    @abstractmethod
    async def fetch(
        self,
        table: str,
        owner_id: str | None = None,
        parent_field: str | None = None,
        parent_ids: Iterable[str] | None = None,
    ) -> list[RowDict]:
        """Fetch rows, filtered either by owner or by parent ids."""

    @abstractmethod
    async def upload(self, key: str, path: str | Path, content_type: str) -> str:
        """Upload a file to object storage and return its remote URI."""

    @abstractmethod
    async def ping(self) -> bool:
        """Whether the backend can be reached right now. Never raises."""

    async def close(self) -> None:
        """Release network resources."""


class InMemoryRemoteBackend(RemoteBackendInterface):
    """
    Remote backend held in process memory, for development and tests.

    The server clock stamps `updated_at` on every upsert to a table that has
    that column. Failures can be injected per table and row.
    """

    def __init__(self, owner_id: str = "owner-1", clock: Optional[Clock] = None, bucket: str = DEFAULT_BUCKET):
        self.owner_id = owner_id
        self.clock = clock or SystemClock()
        self.bucket = bucket
        self.tables: dict[str, dict[str, RowDict]] = defaultdict(dict)
        self.objects: dict[str, bytes] = {}
        self.uploads: list[str] = []
        self.upserts: list[tuple[str, str]] = []
        self.reachable = True
        self.before_upsert: Optional[Callable[[str, RowDict], None]] = None
        self._upsert_failures: dict[tuple[str, str | None], RemoteError] = {}
        self._fetch_failures: dict[str, RemoteError] = {}

    def fail_upsert(self, table: str, row_id: str | None = None, error: RemoteError | None = None) -> None:
        """Make upserts to `table` (or to one row of it) raise `error` until cleared."""
        self._upsert_failures[(table, row_id)] = error or TransientRemoteError(f"injected failure for {table}")

    def fail_fetch(self, table: str, error: RemoteError | None = None) -> None:
        self._fetch_failures[table] = error or TransientRemoteError(f"injected failure for {table}")

    def clear_failures(self) -> None:
        self._upsert_failures.clear()
        self._fetch_failures.clear()

    def put_row(self, table: str, row: RowDict) -> RowDict:
        """Place a row directly on the server, as another device would."""
        stored = copy.deepcopy(row)
        self.tables[table][stored["id"]] = stored
        return copy.deepcopy(stored)

    def _check_reachable(self) -> None:
        if not self.reachable:
            raise TransientRemoteError("remote backend unreachable")

    async def upsert(self, table: str, row: RowDict) -> RowDict:
        self._check_reachable()
        if self.before_upsert is not None:
            self.before_upsert(table, row)
        error = self._upsert_failures.get((table, row["id"])) or self._upsert_failures.get((table, None))
        if error is not None:
            raise error
        stored = copy.deepcopy(row)
        if "updated_at" in stored:
            stored["updated_at"] = self.clock.now().isoformat(timespec="microseconds")
        self.tables[table][stored["id"]] = stored
        self.upserts.append((table, stored["id"]))
        return copy.deepcopy(stored)

    async def fetch(
        self,
        table: str,
        owner_id: str | None = None,
        parent_field: str | None = None,
        parent_ids: Iterable[str] | None = None,
    ) -> list[RowDict]:
        self._check_reachable()
        if table in self._fetch_failures:
            raise self._fetch_failures[table]
        rows = list(self.tables.get(table, {}).values())
        if owner_id is not None:
            rows = [r for r in rows if r.get("owner_id") == owner_id]
        if parent_field is not None:
            wanted = set(parent_ids or ())
            rows = [r for r in rows if r.get(parent_field) in wanted]
        return copy.deepcopy(rows)

    async def upload(self, key: str, path: str | Path, content_type: str) -> str:
        self._check_reachable()
        self.objects[key] = await asyncio.to_thread(Path(path).read_bytes)
        self.uploads.append(key)
        return f"{self.bucket}/{key}"

    async def ping(self) -> bool:
        return self.reachable


class HttpRemoteBackend(RemoteBackendInterface):
    """
    Remote backend speaking PostgREST for rows and the storage REST API for files.

    Example:
        ```python
        async with HttpRemoteBackend.from_config(config.remote) as remote:
            rows = await remote.fetch("projects", owner_id=remote.owner_id)
        ```
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        owner_id: str,
        access_token: str | None = None,
        bucket: str = DEFAULT_BUCKET,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.owner_id = owner_id
        self.bucket = bucket
        headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {access_token or api_key}",
        }
        self.client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: RemoteConfig, transport: httpx.AsyncBaseTransport | None = None) -> "HttpRemoteBackend":
        if not config.base_url or not config.api_key or not config.owner_id:
            raise ValueError("Remote sync needs base_url, api_key and owner_id")
        return cls(
            base_url=config.base_url,
            api_key=config.api_key,
            owner_id=config.owner_id,
            access_token=config.access_token,
            bucket=config.bucket,
            timeout=config.timeout_seconds,
            transport=transport,
        )

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise TransientRemoteError(f"{method} {url} failed: {e}") from e
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientRemoteError(f"{method} {url} returned {response.status_code}")
        if response.status_code >= 400:
            raise RemoteRejectedError(
                f"{method} {url} rejected with {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response

    @staticmethod
    def _json(response: httpx.Response, *expected: type) -> Any:
        where = f"{response.request.method} {response.request.url}"
        try:
            body = response.json()
        except ValueError as e:
            raise TransientRemoteError(f"{where} returned a non-JSON body") from e
        if not isinstance(body, expected):
            raise TransientRemoteError(f"{where} returned an unexpected JSON {type(body).__name__}")
        return body

    async def upsert(self, table: str, row: RowDict) -> RowDict:
        response = await self._request(
            "POST",
            f"/rest/v1/{table}",
            params={"on_conflict": "id"},
            json=row,
            headers={"Prefer": "resolution=merge-duplicates,return=representation"},
        )
        body = self._json(response, list, dict)
        if isinstance(body, list):
            body = body[0] if body else row
        if not isinstance(body, dict):
            raise TransientRemoteError(f"Upsert into {table} returned a malformed row")
        return body

    async def fetch(
        self,
        table: str,
        owner_id: str | None = None,
        parent_field: str | None = None,
        parent_ids: Iterable[str] | None = None,
    ) -> list[RowDict]:
        params = {"select": "*"}
        if owner_id is not None:
            params["owner_id"] = f"eq.{owner_id}"
        if parent_field is not None:
            ids = list(parent_ids or ())
            if not ids:
                return []
            params[parent_field] = f"in.({','.join(ids)})"
        response = await self._request("GET", f"/rest/v1/{table}", params=params)
        return [row for row in self._json(response, list) if isinstance(row, dict)]

    async def upload(self, key: str, path: str | Path, content_type: str) -> str:
        data = await asyncio.to_thread(Path(path).read_bytes)
        await self._request(
            "POST",
            f"/storage/v1/object/{self.bucket}/{key}",
            content=data,
            headers={"Content-Type": content_type, "x-upsert": "true"},
        )
        logger.debug("Uploaded %d bytes to %s/%s", len(data), self.bucket, key)
        return f"{self.bucket}/{key}"

    async def ping(self) -> bool:
        try:
            await self.client.get("/rest/v1/")
        except httpx.TransportError as e:
            logger.debug("Remote ping failed: %s", e)
            return False
        return True

    async def close(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> "HttpRemoteBackend":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
