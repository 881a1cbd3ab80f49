"""PostgREST client for the ``failure_modes`` table.

Builds PostgREST query strings (``eq``, ``ilike``, ``cs``, ``or``, ``order``,
``limit``/``offset``) and maps every failure onto the error taxonomy in
``src.resilience.errors``. One short-lived ``httpx.AsyncClient`` is used per
request.
"""

import logging
import time

import httpx

from src.config import Settings
from src.failure_modes.models import DEFAULT_PAGE_SIZE, FailureMode, FailureModeSearchParams
from src.observability.metrics import REMOTE_REQUEST_DURATION, REMOTE_REQUESTS_TOTAL
from src.resilience.errors import (
    PGRST_NOT_FOUND,
    PermanentRemoteError,
    RemoteError,
    classify_response,
    classify_transport_error,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 15.0
ORDER_CATEGORY_MODE = "category.asc,mode.asc"
SINGLE_OBJECT_ACCEPT = "application/vnd.pgrst.object+json"


def _quote(value: str) -> str:
    """Double-quote a value for use inside a PostgREST ``or=(...)`` list."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def text_search_filter(search: str) -> str:
    """Disjunction: mode contains ``search`` (case-insensitive) OR tags contain it."""
    return f"(mode.ilike.{_quote(f'*{search}*')},tags.cs.{{{_quote(search)}}})"


def tags_filter(tags: list[str]) -> str:
    """Disjunction of tag-containment clauses, one per tag."""
    clauses = ",".join(f"tags.cs.{{{_quote(tag)}}}" for tag in tags)
    return f"({clauses})"


class FailureModeTable:
    """Async access to the remote failure-mode table."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        table: str = "failure_modes",
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.table = table
        self.timeout = timeout
        self._api_key = api_key

    @classmethod
    def from_settings(cls, settings: Settings) -> "FailureModeTable":
        return cls(
            settings.supabase_url,
            settings.supabase_anon_key,
            table=settings.failure_modes_table,
            timeout=settings.request_timeout_seconds,
        )

    @property
    def rest_url(self) -> str:
        return f"{self.base_url}/rest/v1/"

    @property
    def table_url(self) -> str:
        return f"{self.base_url}/rest/v1/{self.table}"

    def auth_headers(self) -> dict[str, str]:
        return {
            "apikey": self._api_key,
            "Authorization": f"Bearer {self._api_key}",
            "Accept": "application/json",
        }

    # --- HTTP helper ---

    async def _request(
        self,
        method: str,
        operation: str,
        *,
        params: dict[str, str] | None = None,
        json: dict[str, object] | None = None,
        headers: dict[str, str] | None = None,
        message: str = "Failed to fetch failure modes",
    ) -> object:
        """Send one request and return the decoded JSON body.

        Raises:
            TransientRemoteError: Network failure, timeout, 5xx, 429 or PostgREST timeout.
            PermanentRemoteError: Any other error status or an undecodable body.
        """
        request_headers = self.auth_headers()
        if headers:
            request_headers.update(headers)

        start = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(
                    method, self.table_url, params=params, json=json, headers=request_headers
                )
        except httpx.HTTPError as exc:
            REMOTE_REQUESTS_TOTAL.labels(operation=operation, status="error").inc()
            raise classify_transport_error(exc, message) from exc
        finally:
            REMOTE_REQUEST_DURATION.labels(operation=operation).observe(time.monotonic() - start)

        if response.status_code >= 400:
            REMOTE_REQUESTS_TOTAL.labels(operation=operation, status="error").inc()
            try:
                body: object = response.json()
            except ValueError:
                body = None
            error = classify_response(response.status_code, body, message)
            logger.debug(
                "Remote %s failed: status=%s code=%s detail=%s",
                operation,
                error.status,
                error.code,
                error.detail,
            )
            raise error

        REMOTE_REQUESTS_TOTAL.labels(operation=operation, status="success").inc()
        try:
            return response.json()
        except ValueError as exc:
            raise PermanentRemoteError(message, status=response.status_code, detail="Malformed JSON body") from exc

    async def _select(self, operation: str, params: dict[str, str], message: str) -> list[FailureMode]:
        data = await self._request("GET", operation, params=params, message=message)
        if data is None:
            return []
        if not isinstance(data, list):
            raise PermanentRemoteError(message, detail="Expected a JSON array")
        return data  # pyright: ignore[reportUnknownVariableType]

    # --- Queries ---

    async def search(self, params: FailureModeSearchParams) -> list[FailureMode]:
        """Filtered, ordered, paginated search."""
        query: dict[str, str] = {"select": "*", "order": ORDER_CATEGORY_MODE}
        if params.category:
            query["category"] = f"eq.{params.category}"
        if params.search:
            query["or"] = text_search_filter(params.search)
        if params.limit:
            query["limit"] = str(params.limit)
        if params.offset:
            query["offset"] = str(params.offset)
            query["limit"] = str(params.limit or DEFAULT_PAGE_SIZE)
        return await self._select("search", query, "Failed to search failure modes")

    async def suggest(self, text: str, limit: int) -> list[FailureMode]:
        """Autocomplete lookup ordered by mode."""
        query = {
            "select": "*",
            "or": text_search_filter(text),
            "order": "mode.asc",
            "limit": str(limit),
        }
        return await self._select("suggest", query, "Failed to fetch failure mode suggestions")

    async def list_all(self) -> list[FailureMode]:
        query = {"select": "*", "order": ORDER_CATEGORY_MODE}
        return await self._select("list_all", query, "Failed to fetch failure modes")

    async def list_by_category(self, category: str) -> list[FailureMode]:
        query = {"select": "*", "category": f"eq.{category}", "order": "mode.asc"}
        return await self._select("list_by_category", query, "Failed to fetch failure modes by category")

    async def list_by_tags(self, tags: list[str]) -> list[FailureMode]:
        query = {"select": "*", "or": tags_filter(tags), "order": ORDER_CATEGORY_MODE}
        return await self._select("list_by_tags", query, "Failed to fetch failure modes by tags")

    async def list_categories(self) -> list[str]:
        """Distinct categories, sorted."""
        query = {"select": "category", "order": "category.asc"}
        rows = await self._select("list_categories", query, "Failed to fetch failure mode categories")
        return sorted({row["category"] for row in rows})

    async def get_by_id(self, failure_mode_id: str) -> FailureMode | None:
        """Single-record lookup. Returns None when no row matches."""
        try:
            data = await self._request(
                "GET",
                "get_by_id",
                params={"select": "*", "id": f"eq.{failure_mode_id}"},
                headers={"Accept": SINGLE_OBJECT_ACCEPT},
                message="Failed to fetch failure mode",
            )
        except RemoteError as exc:
            if exc.code == PGRST_NOT_FOUND:
                return None
            raise
        if not isinstance(data, dict):
            raise PermanentRemoteError("Failed to fetch failure mode", detail="Expected a JSON object")
        return data  # type: ignore[return-value]  # pyright: ignore[reportReturnType]

    async def insert(self, payload: dict[str, object]) -> FailureMode:
        """Insert one row and return the stored representation."""
        data = await self._request(
            "POST",
            "insert",
            params={"select": "*"},
            json=payload,
            headers={"Accept": SINGLE_OBJECT_ACCEPT, "Prefer": "return=representation"},
            message="Failed to add custom failure mode",
        )
        if not isinstance(data, dict):
            raise PermanentRemoteError("Failed to add custom failure mode", detail="Expected a JSON object")
        return data  # type: ignore[return-value]  # pyright: ignore[reportReturnType]
