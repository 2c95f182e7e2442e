"""Async client for the PostgREST-style table store.

Provides ``StoreClient`` for table-scoped reads and writes, and a module-level
``get_client()`` helper that returns a lazily-initialised singleton instance.

Tables used by the importer:
============================

  compliance_frameworks       - unique on (code)
  compliance_requirements     - unique on (framework_id, requirement_code)
  requirement_controls_map    - requirement <-> control links
  requirement_risks_map       - requirement <-> risk links
  risks                       - searched by title, minimal inserts only
  controls                    - searched by title, minimal inserts only
  control_sets                - parent of controls
  business_units, users       - read-only lookups for enrichment

Request shapes (PostgREST):

  GET    /<table>?select=a,b&col=eq.v&title=ilike.*q*&order=c.desc&limit=n
  POST   /<table>                                  - insert
  POST   /<table>?on_conflict=a,b                  - upsert (merge duplicates)
  PATCH  /<table>?col=eq.v                         - update
  DELETE /<table>?col=eq.v                         - delete
"""

import asyncio
import logging
from typing import Any

import httpx

from grc_importer.config import load_settings
from grc_importer.errors import PersistenceError

logger = logging.getLogger(__name__)

Row = dict[str, Any]


def _filter_params(filters: dict[str, Any] | None) -> dict[str, str]:
    """Translate ``{"col": value}`` into PostgREST ``eq`` filters."""
    params: dict[str, str] = {}
    for column, value in (filters or {}).items():
        if value is None:
            params[column] = "is.null"
        elif isinstance(value, bool):
            params[column] = f"is.{str(value).lower()}"
        else:
            params[column] = f"eq.{value}"
    return params


class StoreClient:
    """Async HTTP client for the table store.

    Wraps ``httpx.AsyncClient`` with:

    - ``apikey`` and Bearer headers on every request
    - Retries with exponential backoff for reads
    - Conversion of HTTP and network errors to ``PersistenceError``

    Attributes:
        base_url: Table API base URL (e.g. ``http://localhost:54321/rest/v1``).
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 30.0,
        max_retries: int = 3,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Create a new client.

        Args:
            base_url: Table API base URL.
            api_key: Key sent in the ``apikey`` and ``Authorization`` headers.
            timeout: HTTP request timeout in seconds.
            max_retries: Max number of attempts for reads on network errors.
            http_client: Optional pre-built httpx client (used in tests).
        """
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._max_retries = max_retries
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    def _headers(self, prefer: str | None = None) -> dict[str, str]:
        headers = {
            "apikey": self._api_key,
            "Authorization": f"Bearer {self._api_key}",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _handle_response(self, table: str, response: httpx.Response) -> list[Row]:
        """Raise ``PersistenceError`` for error responses; otherwise return rows.

        Args:
            table: Table the request targeted, for the error message.
            response: The httpx response to inspect.

        Returns:
            The affected rows (an empty list for bodies without content).

        Raises:
            PersistenceError: For any HTTP error status code or a non-JSON body.
        """
        if response.is_error:
            detail = response.text[:200]
            try:
                body = response.json()
                detail = body.get("message") or body.get("hint") or body.get("details") or detail
            except Exception:
                pass
            raise PersistenceError(f"Store error {response.status_code} on {table}: {detail}")
        if not response.content:
            return []
        try:
            data = response.json()
        except ValueError as exc:
            raise PersistenceError(f"Store returned a non-JSON body for {table}: {exc}") from exc
        return data if isinstance(data, list) else [data]

    async def select(
        self,
        table: str,
        *,
        columns: str = "*",
        filters: dict[str, Any] | None = None,
        ilike: dict[str, str] | None = None,
        order: str | None = None,
        limit: int | None = None,
    ) -> list[Row]:
        """Read rows from a table.

        Args:
            table: Table name.
            columns: Comma-separated column list.
            filters: Equality filters.
            ilike: Case-insensitive pattern filters; ``*`` is the wildcard
                (``{"title": "*access*"}`` matches a substring).
            order: PostgREST order clause (e.g. ``created_at.desc``).
            limit: Maximum number of rows.

        Returns:
            Matching rows.

        Raises:
            PersistenceError: On HTTP error or repeated network failure.
        """
        params = {"select": columns, **_filter_params(filters)}
        for column, pattern in (ilike or {}).items():
            params[column] = f"ilike.{pattern}"
        if order:
            params["order"] = order
        if limit is not None:
            params["limit"] = str(limit)

        for attempt in range(max(1, self._max_retries)):
            try:
                response = await self._http.get(
                    f"{self.base_url}/{table}",
                    headers=self._headers(),
                    params=params,
                )
                return self._handle_response(table, response)
            except PersistenceError:
                raise
            except httpx.HTTPError as exc:
                if attempt >= self._max_retries - 1:
                    raise PersistenceError(f"Network error reading {table}: {exc}") from exc
                await asyncio.sleep(2**attempt)
        raise PersistenceError(
            f"Failed to read {table} after {self._max_retries} attempts"
        )  # pragma: no cover

    async def select_one(self, table: str, **kwargs: Any) -> Row | None:
        """Return the first matching row, or ``None``."""
        rows = await self.select(table, limit=1, **kwargs)
        return rows[0] if rows else None

    async def insert(self, table: str, values: Row) -> Row:
        """Insert one row and return it as stored.

        Raises:
            PersistenceError: On HTTP error or network failure.
        """
        try:
            response = await self._http.post(
                f"{self.base_url}/{table}",
                headers=self._headers("return=representation"),
                json=values,
            )
        except httpx.HTTPError as exc:
            raise PersistenceError(f"Network error writing {table}: {exc}") from exc
        rows = self._handle_response(table, response)
        return rows[0] if rows else values

    async def update(self, table: str, filters: dict[str, Any], values: Row) -> list[Row]:
        """Update rows matching ``filters`` and return them.

        Raises:
            PersistenceError: On HTTP error or network failure, or when called
                without filters.
        """
        if not filters:
            raise PersistenceError(f"Refusing unfiltered update on {table}")
        try:
            response = await self._http.patch(
                f"{self.base_url}/{table}",
                headers=self._headers("return=representation"),
                params=_filter_params(filters),
                json=values,
            )
        except httpx.HTTPError as exc:
            raise PersistenceError(f"Network error writing {table}: {exc}") from exc
        return self._handle_response(table, response)

    async def upsert(self, table: str, values: Row, on_conflict: list[str]) -> Row:
        """Insert or update one row keyed on ``on_conflict``.

        Args:
            table: Table name.
            values: Row values.
            on_conflict: Columns of the unique constraint to merge on. Required;
                an upsert without a conflict target inserts duplicates.

        Raises:
            PersistenceError: On HTTP error, network failure or a missing
                conflict target.
        """
        if not on_conflict:
            raise PersistenceError(f"Upsert on {table} requires an explicit conflict key")
        try:
            response = await self._http.post(
                f"{self.base_url}/{table}",
                headers=self._headers("resolution=merge-duplicates,return=representation"),
                params={"on_conflict": ",".join(on_conflict)},
                json=values,
            )
        except httpx.HTTPError as exc:
            raise PersistenceError(f"Network error writing {table}: {exc}") from exc
        rows = self._handle_response(table, response)
        return rows[0] if rows else values

    async def delete(self, table: str, filters: dict[str, Any]) -> list[Row]:
        """Delete rows matching ``filters``.

        Raises:
            PersistenceError: On HTTP error or network failure, or when called
                without filters.
        """
        if not filters:
            raise PersistenceError(f"Refusing unfiltered delete on {table}")
        try:
            response = await self._http.delete(
                f"{self.base_url}/{table}",
                headers=self._headers("return=representation"),
                params=_filter_params(filters),
            )
        except httpx.HTTPError as exc:
            raise PersistenceError(f"Network error writing {table}: {exc}") from exc
        return self._handle_response(table, response)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._http.aclose()


# Module-level singleton, lazily initialised on first call to get_client()
_client: StoreClient | None = None
_client_lock = asyncio.Lock()


async def get_client() -> StoreClient:
    """Return the shared ``StoreClient`` instance.

    Initialises the client from environment variables (``GRC_IMPORTER_*``) on
    the first call. Subsequent calls return the same cached instance.
    """
    global _client
    if _client is None:
        async with _client_lock:
            if _client is None:
                settings = load_settings()
                _client = StoreClient(
                    base_url=settings.store_url,
                    api_key=settings.api_key,
                    timeout=settings.request_timeout,
                    max_retries=settings.max_retries,
                )
    return _client
