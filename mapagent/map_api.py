import logging
from typing import Any, Dict, List, Optional

import httpx

from .tools import ToolError, ToolTransportError


logger = logging.getLogger("uvicorn.error")


class MapApiClient:
    """REST client for the map backend (markers, chains, place search)."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        language: str = "zh-CN",
        country: str = "JP",
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.language = language
        self.country = country
        self.timeout = timeout
        self.client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=16, max_keepalive_connections=8),
        )

    def set_timeout(self, timeout: float) -> None:
        self.timeout = timeout
        self.client.timeout = httpx.Timeout(timeout)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self.base_url}{path}"
        try:
            resp = await self.client.request(method, url, headers=self._headers(), **kwargs)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail: Any
            try:
                detail = exc.response.json()
            except ValueError:
                detail = exc.response.text
            if isinstance(detail, dict):
                detail = detail.get("error") or detail.get("message") or detail
            raise ToolTransportError(
                f"API request failed: {exc.response.status_code} {detail}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.RequestError as exc:
            raise ToolTransportError(f"API request failed: {exc}") from exc
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as exc:
            raise ToolTransportError("API returned invalid JSON", status_code=resp.status_code) from exc

    async def search_places(self, query: str, limit: int = 1) -> List[Dict[str, Any]]:
        params = {
            "q": query,
            "limit": limit,
            "language": self.language,
            "country": self.country,
        }
        data = await self._request("GET", "/api/search", params=params)
        results = data.get("data") if isinstance(data, dict) else None
        return results if isinstance(results, list) else []

    async def create_marker(
        self,
        coordinates: Dict[str, float],
        title: str,
        icon_type: str,
        content: str = "",
    ) -> Dict[str, Any]:
        body = {
            "coordinates": coordinates,
            "title": title,
            "iconType": icon_type,
            "content": content,
        }
        return await self._request("POST", "/api/markers", json=body)

    async def create_marker_from_place_name(
        self,
        name: str,
        icon_type: str,
        content: str = "",
    ) -> Dict[str, Any]:
        results = await self.search_places(name, limit=1)
        if not results:
            raise ToolError(f"Place not found: {name}")
        place = results[0]
        coords = place.get("coordinates") or {}
        if "latitude" not in coords or "longitude" not in coords:
            raise ToolError(f"Place has no coordinates: {name}")
        logger.info("Resolved place %s -> %s", name, coords)
        return await self.create_marker(
            {"latitude": coords["latitude"], "longitude": coords["longitude"]},
            place.get("name") or name,
            icon_type,
            content,
        )

    async def update_marker_content(
        self,
        marker_id: str,
        title: Optional[str] = None,
        header_image: Optional[str] = None,
        markdown_content: Optional[str] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {}
        if title is not None:
            body["title"] = title
        if header_image is not None:
            body["headerImage"] = header_image
        if markdown_content is not None:
            body["markdownContent"] = markdown_content
        return await self._request("PUT", f"/api/markers/{marker_id}", json=body)

    async def get_marker(self, marker_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/api/markers/{marker_id}")

    async def create_chain(
        self,
        marker_ids: List[str],
        name: str,
        description: str = "",
    ) -> Dict[str, Any]:
        body = {"markerIds": marker_ids, "name": name, "description": description}
        return await self._request("POST", "/api/chains", json=body)

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
