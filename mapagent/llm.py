import json
import logging
from typing import Any, AsyncGenerator, Dict, List, Optional

import httpx


logger = logging.getLogger("uvicorn.error")

ALLOWED_ROLES = {"system", "user", "assistant"}
_DNS_ERROR_HINTS = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo",
    "temporary failure in name resolution",
    "no address associated",
)


class LLMError(RuntimeError):
    """Base class for failures talking to the model endpoint."""


class LLMConnectionError(LLMError):
    pass


class LLMResolutionError(LLMError):
    pass


class LLMTimeoutError(LLMError):
    pass


class LLMResponseError(LLMError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class LLMEmptyResponseError(LLMError):
    pass


class OllamaClient:
    """Client for the Ollama chat API (newline-delimited JSON streaming)."""

    def __init__(self, base_url: str, model: str, timeout: float = 60.0):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.client = httpx.AsyncClient(timeout=timeout)

    def set_timeout(self, timeout: float) -> None:
        self.timeout = timeout
        self.client.timeout = httpx.Timeout(timeout)

    def _sanitize_messages(self, messages: Any) -> List[Dict[str, str]]:
        if not isinstance(messages, list):
            return []
        sanitized: List[Dict[str, str]] = []
        for msg in messages:
            if hasattr(msg, "model_dump"):
                msg = msg.model_dump()
            if not isinstance(msg, dict):
                continue
            role = msg.get("role")
            if role not in ALLOWED_ROLES:
                continue
            content = msg.get("content")
            if not isinstance(content, str) or not content.strip():
                continue
            sanitized.append({"role": role, "content": content})
        return sanitized

    def _payload(self, messages: Any, model: Optional[str], stream: bool) -> Dict[str, Any]:
        cleaned = self._sanitize_messages(messages)
        if not cleaned:
            raise ValueError("messages must include at least one non-empty entry")
        return {"model": model or self.model, "messages": cleaned, "stream": stream}

    def _translate_error(self, exc: Exception) -> LLMError:
        if isinstance(exc, LLMError):
            return exc
        if isinstance(exc, httpx.TimeoutException):
            return LLMTimeoutError("Ollama request timed out; check that the service is healthy.")
        if isinstance(exc, httpx.ConnectError):
            detail = str(exc).lower()
            if any(hint in detail for hint in _DNS_ERROR_HINTS):
                return LLMResolutionError(
                    f"Cannot resolve the Ollama host ({self.base_url}); check the network configuration."
                )
            return LLMConnectionError(f"Cannot connect to Ollama ({self.base_url}); is the service running?")
        if isinstance(exc, httpx.HTTPStatusError):
            status = exc.response.status_code
            return LLMResponseError(f"Ollama returned HTTP {status}", status_code=status)
        return LLMError(f"AI service error: {exc}")

    async def stream_chat(
        self,
        messages: List[Any],
        model: Optional[str] = None,
    ) -> AsyncGenerator[str, None]:
        payload = self._payload(messages, model, stream=True)
        url = f"{self.base_url}/api/chat"
        produced = False
        try:
            async with self.client.stream("POST", url, json=payload) as response:
                if response.status_code >= 400:
                    await response.aread()
                    response.raise_for_status()
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        data = json.loads(line)
                    except ValueError:
                        continue
                    if not isinstance(data, dict):
                        continue
                    content = (data.get("message") or {}).get("content")
                    if content:
                        produced = True
                        yield content
                    if data.get("done"):
                        break
        except (httpx.HTTPError, LLMError) as exc:
            error = self._translate_error(exc)
            logger.warning("Ollama stream failed: %s", error)
            raise error from exc
        if not produced:
            raise LLMEmptyResponseError("Ollama returned an empty response.")

    async def chat(self, messages: List[Any], model: Optional[str] = None) -> str:
        payload = self._payload(messages, model, stream=False)
        url = f"{self.base_url}/api/chat"
        try:
            resp = await self.client.post(url, json=payload)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            error = self._translate_error(exc)
            logger.warning("Ollama chat failed: %s", error)
            raise error from exc
        try:
            data = resp.json()
        except ValueError as exc:
            raise LLMResponseError("Ollama returned invalid JSON", status_code=resp.status_code) from exc
        content = ((data or {}).get("message") or {}).get("content") or ""
        if not content:
            raise LLMEmptyResponseError("Ollama returned an empty response.")
        return content

    async def list_models(self) -> List[str]:
        resp = await self.client.get(f"{self.base_url}/api/tags", timeout=10.0)
        resp.raise_for_status()
        data = resp.json()
        return [m.get("name") for m in data.get("models", []) if m.get("name")]

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
