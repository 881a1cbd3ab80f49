"""Integration tests for the PostgREST table client with mocked HTTP responses."""

from typing import Any

import httpx
import pytest
import respx

from src.failure_modes.models import FailureModeSearchParams
from src.failure_modes.remote import FailureModeTable, tags_filter, text_search_filter
from src.resilience.errors import PermanentRemoteError, TransientRemoteError

BASE_URL = "http://supabase.test"
TABLE_URL = f"{BASE_URL}/rest/v1/failure_modes"


@pytest.fixture
def table() -> FailureModeTable:
    return FailureModeTable(BASE_URL, "anon-test-key")


class TestFilters:
    def test_text_search_filter(self) -> None:
        assert text_search_filter("loose") == '(mode.ilike."*loose*",tags.cs.{"loose"})'

    def test_text_search_filter_escapes_quotes(self) -> None:
        assert '\\"' in text_search_filter('5" bolt')

    def test_tags_filter(self) -> None:
        assert tags_filter(["a", "b"]) == '(tags.cs.{"a"},tags.cs.{"b"})'


class TestFromSettings:
    def test_uses_settings(self, mock_settings: Any) -> None:
        table = FailureModeTable.from_settings(mock_settings)
        assert table.table_url == TABLE_URL
        assert table.rest_url == f"{BASE_URL}/rest/v1/"


@pytest.mark.integration
class TestSearch:
    @respx.mock
    async def test_sends_filters_and_auth(self, table: FailureModeTable, sample_modes: list[Any]) -> None:
        route = respx.get(TABLE_URL).mock(return_value=httpx.Response(200, json=sample_modes[:1]))

        result = await table.search(FailureModeSearchParams(search="loose", category="Assembly", limit=5))

        assert result == sample_modes[:1]
        request = route.calls.last.request
        params = request.url.params
        assert params["select"] == "*"
        assert params["category"] == "eq.Assembly"
        assert params["or"] == text_search_filter("loose")
        assert params["order"] == "category.asc,mode.asc"
        assert params["limit"] == "5"
        assert "offset" not in params
        assert request.headers["apikey"] == "anon-test-key"
        assert request.headers["authorization"] == "Bearer anon-test-key"

    @respx.mock
    async def test_offset_defaults_page_size(self, table: FailureModeTable) -> None:
        route = respx.get(TABLE_URL).mock(return_value=httpx.Response(200, json=[]))
        await table.search(FailureModeSearchParams(offset=40))
        params = route.calls.last.request.url.params
        assert params["offset"] == "40"
        assert params["limit"] == "20"

    @respx.mock
    async def test_no_filters(self, table: FailureModeTable) -> None:
        route = respx.get(TABLE_URL).mock(return_value=httpx.Response(200, json=[]))
        assert await table.search(FailureModeSearchParams()) == []
        params = route.calls.last.request.url.params
        assert "category" not in params
        assert "or" not in params
        assert "limit" not in params

    @respx.mock
    async def test_null_body_is_empty(self, table: FailureModeTable) -> None:
        respx.get(TABLE_URL).mock(return_value=httpx.Response(200, content=b"null"))
        assert await table.search(FailureModeSearchParams()) == []

    @respx.mock
    async def test_empty_body_is_permanent(self, table: FailureModeTable) -> None:
        respx.get(TABLE_URL).mock(return_value=httpx.Response(200, content=b""))
        with pytest.raises(PermanentRemoteError) as exc_info:
            await table.search(FailureModeSearchParams())
        assert exc_info.value.detail == "Malformed JSON body"

    @respx.mock
    async def test_server_error_is_transient(self, table: FailureModeTable) -> None:
        respx.get(TABLE_URL).mock(
            return_value=httpx.Response(503, json={"code": "PGRST000", "message": "db down"})
        )
        with pytest.raises(TransientRemoteError) as exc_info:
            await table.search(FailureModeSearchParams())
        assert exc_info.value.status == 503
        assert exc_info.value.code == "PGRST000"
        assert "db down" not in str(exc_info.value)

    @respx.mock
    async def test_rate_limited_is_transient(self, table: FailureModeTable) -> None:
        respx.get(TABLE_URL).mock(return_value=httpx.Response(429, text="slow down"))
        with pytest.raises(TransientRemoteError):
            await table.search(FailureModeSearchParams())

    @respx.mock
    async def test_bad_request_is_permanent(self, table: FailureModeTable) -> None:
        respx.get(TABLE_URL).mock(
            return_value=httpx.Response(400, json={"code": "PGRST100", "message": "parse error"})
        )
        with pytest.raises(PermanentRemoteError) as exc_info:
            await table.search(FailureModeSearchParams(search="x"))
        assert exc_info.value.code == "PGRST100"

    @respx.mock
    async def test_connection_refused_is_transient(self, table: FailureModeTable) -> None:
        respx.get(TABLE_URL).mock(side_effect=httpx.ConnectError("Connection refused"))
        with pytest.raises(TransientRemoteError):
            await table.search(FailureModeSearchParams())

    @respx.mock
    async def test_malformed_json_is_permanent(self, table: FailureModeTable) -> None:
        respx.get(TABLE_URL).mock(return_value=httpx.Response(200, text="<html>"))
        with pytest.raises(PermanentRemoteError):
            await table.search(FailureModeSearchParams())

    @respx.mock
    async def test_object_instead_of_array_is_permanent(self, table: FailureModeTable) -> None:
        respx.get(TABLE_URL).mock(return_value=httpx.Response(200, json={"id": "x"}))
        with pytest.raises(PermanentRemoteError):
            await table.search(FailureModeSearchParams())


@pytest.mark.integration
class TestOtherQueries:
    @respx.mock
    async def test_suggest(self, table: FailureModeTable) -> None:
        route = respx.get(TABLE_URL).mock(return_value=httpx.Response(200, json=[]))
        await table.suggest("wear", 7)
        params = route.calls.last.request.url.params
        assert params["or"] == text_search_filter("wear")
        assert params["order"] == "mode.asc"
        assert params["limit"] == "7"

    @respx.mock
    async def test_list_by_category(self, table: FailureModeTable) -> None:
        route = respx.get(TABLE_URL).mock(return_value=httpx.Response(200, json=[]))
        await table.list_by_category("Assembly")
        params = route.calls.last.request.url.params
        assert params["category"] == "eq.Assembly"
        assert params["order"] == "mode.asc"

    @respx.mock
    async def test_list_categories_distinct_sorted(self, table: FailureModeTable) -> None:
        route = respx.get(TABLE_URL).mock(
            return_value=httpx.Response(
                200, json=[{"category": "Machining"}, {"category": "Assembly"}, {"category": "Machining"}]
            )
        )
        assert await table.list_categories() == ["Assembly", "Machining"]
        assert route.calls.last.request.url.params["select"] == "category"

    @respx.mock
    async def test_list_by_tags(self, table: FailureModeTable) -> None:
        route = respx.get(TABLE_URL).mock(return_value=httpx.Response(200, json=[]))
        await table.list_by_tags(["tool", "safety"])
        assert route.calls.last.request.url.params["or"] == tags_filter(["tool", "safety"])

    @respx.mock
    async def test_get_by_id_found(self, table: FailureModeTable, sample_modes: list[Any]) -> None:
        route = respx.get(TABLE_URL).mock(return_value=httpx.Response(200, json=sample_modes[0]))
        assert await table.get_by_id("fm-1") == sample_modes[0]
        request = route.calls.last.request
        assert request.url.params["id"] == "eq.fm-1"
        assert request.headers["accept"] == "application/vnd.pgrst.object+json"

    @respx.mock
    async def test_get_by_id_not_found(self, table: FailureModeTable) -> None:
        respx.get(TABLE_URL).mock(
            return_value=httpx.Response(
                406, json={"code": "PGRST116", "message": "JSON object requested, multiple (or no) rows returned"}
            )
        )
        assert await table.get_by_id("missing") is None

    @respx.mock
    async def test_get_by_id_other_error_raises(self, table: FailureModeTable) -> None:
        respx.get(TABLE_URL).mock(return_value=httpx.Response(500, json={"message": "boom"}))
        with pytest.raises(TransientRemoteError):
            await table.get_by_id("fm-1")

    @respx.mock
    async def test_insert(self, table: FailureModeTable, sample_modes: list[Any]) -> None:
        route = respx.post(TABLE_URL).mock(return_value=httpx.Response(201, json=sample_modes[0]))
        payload: dict[str, object] = {"category": "Assembly", "mode": "Loose Connection"}
        assert await table.insert(payload) == sample_modes[0]
        request = route.calls.last.request
        assert request.headers["prefer"] == "return=representation"
        assert b"Loose Connection" in request.content

    @respx.mock
    async def test_insert_conflict_is_permanent(self, table: FailureModeTable) -> None:
        respx.post(TABLE_URL).mock(return_value=httpx.Response(409, json={"code": "23505"}))
        with pytest.raises(PermanentRemoteError, match="Failed to add custom failure mode"):
            await table.insert({"category": "A", "mode": "B"})
