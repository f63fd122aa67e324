import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from .schemas import ICON_TYPES, ToolCall, ToolResult


logger = logging.getLogger("uvicorn.error")

ToolHandler = Callable[[Dict[str, Any]], Awaitable[Any]]


class ToolError(RuntimeError):
    """Recoverable tool failure; folded into the conversation as a ToolResult error."""


class ToolValidationError(ToolError):
    pass


class UnknownToolError(ToolError):
    pass


class ToolTransportError(ToolError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class ToolSpec:
    name: str
    description: str
    parameters: Dict[str, Any]
    handler: ToolHandler


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: Dict[str, ToolSpec] = {}

    def register(
        self,
        name: str,
        handler: ToolHandler,
        description: str = "",
        parameters: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._tools[name] = ToolSpec(name, description, parameters or {"type": "object"}, handler)

    def definitions(self) -> List[Dict[str, Any]]:
        return [
            {"name": spec.name, "description": spec.description, "parameters": spec.parameters}
            for spec in self._tools.values()
        ]

    async def execute(self, name: str, args: Optional[Dict[str, Any]] = None) -> Any:
        spec = self._tools.get(name)
        if spec is None:
            raise UnknownToolError(f"Unknown tool: {name}")
        return await spec.handler(dict(args or {}))

    async def run(self, call: ToolCall) -> ToolResult:
        """Execute a call and fold recoverable failures into a ToolResult."""
        logger.info("Tool call %s %s", call.tool, json.dumps(call.arguments, ensure_ascii=False))
        try:
            result = await self.execute(call.tool, call.arguments)
        except ToolError as exc:
            logger.info("Tool %s failed: %s", call.tool, exc)
            return ToolResult(tool=call.tool, error=str(exc))
        except httpx.HTTPError as exc:
            logger.info("Tool %s transport failure: %s", call.tool, exc)
            return ToolResult(tool=call.tool, error=f"API request failed: {exc}")
        logger.info("Tool %s succeeded", call.tool)
        return ToolResult(tool=call.tool, result={} if result is None else result)


def _require_str(args: Dict[str, Any], key: str, *aliases: str) -> str:
    for candidate in (key, *aliases):
        value = args.get(candidate)
        if isinstance(value, str) and value.strip():
            return value.strip()
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
    raise ToolValidationError(f"Missing required parameter: {key}")


def _optional_str(args: Dict[str, Any], key: str, *aliases: str) -> Optional[str]:
    for candidate in (key, *aliases):
        value = args.get(candidate)
        if isinstance(value, str):
            return value
    return None


def _icon_type(value: Any, default: Optional[str] = None) -> str:
    icon = value if isinstance(value, str) and value.strip() else default
    if not icon:
        raise ToolValidationError("Missing required parameter: iconType")
    icon = icon.strip()
    if icon not in ICON_TYPES:
        raise ToolValidationError(
            f"Invalid iconType '{icon}'; expected one of: {', '.join(sorted(ICON_TYPES))}"
        )
    return icon


MARKER_PLACE_SCHEMA = {
    "type": "object",
    "properties": {
        "name": {"type": "string"},
        "iconType": {"type": "string", "enum": sorted(ICON_TYPES)},
        "content": {"type": "string"},
    },
    "required": ["name", "iconType"],
}


def build_default_registry(api: Any) -> ToolRegistry:
    """Register the marker tools against a map API client."""
    registry = ToolRegistry()

    async def create_marker_v2(args: Dict[str, Any]) -> Any:
        places = args.get("places")
        if places is None:
            places = args.get("markers")
        if places is not None:
            if not isinstance(places, list) or not places:
                raise ToolValidationError("places must be a non-empty list")
            results: List[Dict[str, Any]] = []
            for place in places:
                label = place.get("name") or place.get("title") if isinstance(place, dict) else None
                try:
                    if not isinstance(place, dict):
                        raise ToolValidationError("Each place must be an object")
                    name = _require_str(place, "name", "title")
                    icon = _icon_type(place.get("iconType"))
                    content = _optional_str(place, "content", "description") or ""
                    results.append(await api.create_marker_from_place_name(name, icon, content))
                except ToolError as exc:
                    results.append({"error": str(exc), "place": label})
            return {"type": "batch", "results": results}
        name = _require_str(args, "name", "title")
        icon = _icon_type(args.get("iconType"), default="location")
        content = _optional_str(args, "content", "description") or ""
        return await api.create_marker_from_place_name(name, icon, content)

    async def update_marker_content(args: Dict[str, Any]) -> Any:
        marker_id = _require_str(args, "markerId")
        return await api.update_marker_content(
            marker_id,
            title=_optional_str(args, "title"),
            header_image=_optional_str(args, "headerImage"),
            markdown_content=_optional_str(args, "markdownContent", "content"),
        )

    async def create_travel_chain(args: Dict[str, Any]) -> Any:
        marker_ids = args.get("markerIds")
        if not isinstance(marker_ids, list) or not marker_ids:
            raise ToolValidationError("markerIds must be a non-empty list")
        cleaned = [str(mid) for mid in marker_ids if mid not in (None, "")]
        if not cleaned:
            raise ToolValidationError("markerIds must be a non-empty list")
        name = _optional_str(args, "chainName", "name") or "Unnamed itinerary"
        description = _optional_str(args, "description") or ""
        return await api.create_chain(cleaned, name, description)

    async def search_places(args: Dict[str, Any]) -> Any:
        query = _require_str(args, "query", "q", "name")
        limit = args.get("limit")
        limit = limit if isinstance(limit, int) and limit > 0 else 5
        return {"results": await api.search_places(query, limit=limit)}

    async def get_marker(args: Dict[str, Any]) -> Any:
        return await api.get_marker(_require_str(args, "markerId"))

    registry.register(
        "create_marker_v2",
        create_marker_v2,
        "Create markers from place names; coordinates are resolved by place search. "
        "Pass one place (name, iconType, content) or a batch under 'places'.",
        {
            "type": "object",
            "properties": {
                "name": {"type": "string"},
                "iconType": {"type": "string", "enum": sorted(ICON_TYPES)},
                "content": {"type": "string"},
                "places": {"type": "array", "items": MARKER_PLACE_SCHEMA},
            },
        },
    )
    registry.register(
        "update_marker_content",
        update_marker_content,
        "Update a marker's title, header image or markdown details.",
        {
            "type": "object",
            "properties": {
                "markerId": {"type": "string"},
                "title": {"type": "string"},
                "headerImage": {"type": "string"},
                "markdownContent": {"type": "string"},
            },
            "required": ["markerId"],
        },
    )
    registry.register(
        "create_travel_chain",
        create_travel_chain,
        "Link existing markers, in order, into a named itinerary chain.",
        {
            "type": "object",
            "properties": {
                "markerIds": {"type": "array", "items": {"type": "string"}, "minItems": 1},
                "chainName": {"type": "string"},
                "description": {"type": "string"},
            },
            "required": ["markerIds"],
        },
    )
    registry.register(
        "search_places",
        search_places,
        "Search places by name.",
        {
            "type": "object",
            "properties": {"query": {"type": "string"}, "limit": {"type": "integer"}},
            "required": ["query"],
        },
    )
    registry.register(
        "get_marker",
        get_marker,
        "Fetch one marker by id.",
        {
            "type": "object",
            "properties": {"markerId": {"type": "string"}},
            "required": ["markerId"],
        },
    )
    return registry
