import json

import pytest
import respx
from httpx import Response

from mapagent.map_api import MapApiClient
from mapagent.schemas import ToolCall
from mapagent.tools import ToolValidationError, UnknownToolError, build_default_registry


BASE = "http://map.test"


def _search_handler(known):
    def handler(request):
        query = request.url.params.get("q")
        if query in known:
            return Response(
                200,
                json={"data": [{"name": query, "coordinates": {"latitude": 35.6, "longitude": 139.7}}]},
            )
        return Response(200, json={"data": []})

    return handler


@pytest.mark.asyncio
async def test_batch_create_never_short_circuits():
    api = MapApiClient(BASE, api_key="secret")
    registry = build_default_registry(api)
    captured = []
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get(f"{BASE}/api/search").mock(side_effect=_search_handler({"Senso-ji"}))

            def create_handler(request):
                body = json.loads(request.content.decode("utf-8"))
                captured.append({"body": body, "auth": request.headers.get("Authorization")})
                return Response(201, json={"id": "m-b", "title": body["title"]})

            respx_mock.post(f"{BASE}/api/markers").mock(side_effect=create_handler)
            result = await registry.run(
                ToolCall(
                    tool="create_marker_v2",
                    arguments={
                        "places": [
                            {"name": "Nowhere Shrine", "iconType": "culture"},
                            {"name": "Senso-ji", "iconType": "culture", "content": "Oldest temple"},
                        ]
                    },
                )
            )
    finally:
        await api.close()

    assert result.ok
    assert result.result["type"] == "batch"
    first, second = result.result["results"]
    assert first == {"error": "Place not found: Nowhere Shrine", "place": "Nowhere Shrine"}
    assert second["id"] == "m-b"
    assert len(captured) == 1
    assert captured[0]["auth"] == "Bearer secret"
    assert captured[0]["body"]["coordinates"] == {"latitude": 35.6, "longitude": 139.7}
    assert captured[0]["body"]["content"] == "Oldest temple"


@pytest.mark.asyncio
async def test_single_marker_defaults_icon_type_and_accepts_title_alias():
    api = MapApiClient(BASE)
    registry = build_default_registry(api)
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get(f"{BASE}/api/search").mock(side_effect=_search_handler({"Shibuya Crossing"}))

            def create_handler(request):
                captured["body"] = json.loads(request.content.decode("utf-8"))
                captured["auth"] = request.headers.get("Authorization")
                return Response(201, json={"id": "m1"})

            respx_mock.post(f"{BASE}/api/markers").mock(side_effect=create_handler)
            result = await registry.execute("create_marker_v2", {"title": "Shibuya Crossing"})
    finally:
        await api.close()

    assert result == {"id": "m1"}
    assert captured["body"]["iconType"] == "location"
    assert captured["auth"] is None


@pytest.mark.asyncio
async def test_empty_chain_fails_before_any_network_call():
    api = MapApiClient(BASE)
    registry = build_default_registry(api)
    try:
        with respx.mock(assert_all_called=False) as respx_mock:
            route = respx_mock.post(f"{BASE}/api/chains").mock(return_value=Response(201, json={"id": "c1"}))
            with pytest.raises(ToolValidationError):
                await registry.execute("create_travel_chain", {"markerIds": [], "chainName": "Day 1"})
            result = await registry.run(ToolCall(tool="create_travel_chain", arguments={"markerIds": []}))
            assert not route.called
    finally:
        await api.close()

    assert not result.ok
    assert "markerIds" in result.error


@pytest.mark.asyncio
async def test_chain_payload_uses_default_name():
    api = MapApiClient(BASE)
    registry = build_default_registry(api)
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["body"] = json.loads(request.content.decode("utf-8"))
                return Response(201, json={"id": "c1"})

            respx_mock.post(f"{BASE}/api/chains").mock(side_effect=handler)
            await registry.execute("create_travel_chain", {"markerIds": ["m1", "m2"]})
    finally:
        await api.close()

    assert captured["body"] == {"markerIds": ["m1", "m2"], "name": "Unnamed itinerary", "description": ""}


@pytest.mark.asyncio
async def test_update_marker_requires_marker_id():
    api = MapApiClient(BASE)
    registry = build_default_registry(api)
    try:
        result = await registry.run(ToolCall(tool="update_marker_content", arguments={"title": "x"}))
    finally:
        await api.close()
    assert result.error == "Missing required parameter: markerId"


@pytest.mark.asyncio
async def test_update_marker_sends_put():
    api = MapApiClient(BASE)
    registry = build_default_registry(api)
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["body"] = json.loads(request.content.decode("utf-8"))
                return Response(200, json={"id": "m1"})

            respx_mock.put(f"{BASE}/api/markers/m1").mock(side_effect=handler)
            await registry.execute(
                "update_marker_content",
                {"markerId": "m1", "title": "Tokyo Tower", "markdownContent": "## Tickets"},
            )
    finally:
        await api.close()
    assert captured["body"] == {"title": "Tokyo Tower", "markdownContent": "## Tickets"}


@pytest.mark.asyncio
async def test_invalid_icon_type_is_a_validation_error():
    api = MapApiClient(BASE)
    registry = build_default_registry(api)
    try:
        with respx.mock(assert_all_called=False) as respx_mock:
            route = respx_mock.get(f"{BASE}/api/search").mock(return_value=Response(200, json={"data": []}))
            result = await registry.run(
                ToolCall(tool="create_marker_v2", arguments={"name": "Ueno Park", "iconType": "volcano"})
            )
            assert not route.called
    finally:
        await api.close()
    assert "Invalid iconType" in result.error


@pytest.mark.asyncio
async def test_downstream_error_becomes_tool_result_error():
    api = MapApiClient(BASE)
    registry = build_default_registry(api)
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get(f"{BASE}/api/markers/m9").mock(return_value=Response(500, json={"error": "boom"}))
            result = await registry.run(ToolCall(tool="get_marker", arguments={"markerId": "m9"}))
    finally:
        await api.close()
    assert not result.ok
    assert "500" in result.error
    assert "boom" in result.error


@pytest.mark.asyncio
async def test_unknown_tool():
    api = MapApiClient(BASE)
    registry = build_default_registry(api)
    try:
        with pytest.raises(UnknownToolError):
            await registry.execute("delete_everything", {})
        result = await registry.run(ToolCall(tool="delete_everything"))
    finally:
        await api.close()
    assert result.error == "Unknown tool: delete_everything"


@pytest.mark.asyncio
async def test_search_sends_locale_parameters():
    api = MapApiClient(BASE, language="en", country="US")
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["params"] = dict(request.url.params)
                return Response(200, json={"data": [{"name": "Central Park"}]})

            respx_mock.get(f"{BASE}/api/search").mock(side_effect=handler)
            results = await api.search_places("Central Park", limit=3)
    finally:
        await api.close()
    assert results == [{"name": "Central Park"}]
    assert captured["params"] == {"q": "Central Park", "limit": "3", "language": "en", "country": "US"}


def test_definitions_list_every_tool():
    registry = build_default_registry(object())
    names = [d["name"] for d in registry.definitions()]
    assert names == [
        "create_marker_v2",
        "update_marker_content",
        "create_travel_chain",
        "search_places",
        "get_marker",
    ]
