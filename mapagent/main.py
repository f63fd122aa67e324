import asyncio
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse

from .config import AppSettings, CONFIG_PATH, load_settings, save_settings
from .conversation_store import (
    ConversationStore,
    InMemoryConversationStore,
    SqliteConversationStore,
    new_session_id,
)
from .llm import LLMError, OllamaClient
from .map_api import MapApiClient
from .orchestrator import ToolCallingLoop
from .plan_executor import PlanExecutor
from .planner import PlanNotProduced, PlanRejected, generate_plan, stream_plan, validate_plan
from .schemas import (
    ChatStreamRequest,
    ClearHistoryRequest,
    PlanExecuteRequest,
    PlanRequest,
    StatsAction,
    ToolCall,
    ToolCallRequest,
)
from .stats import UsageStats
from .tools import ToolRegistry, build_default_registry


logger = logging.getLogger("uvicorn.error")

SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive"}
PLAN_TERMINAL_EVENTS = {"plan_completed", "plan_failed", "plan_cancelled", "plan_rejected"}


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_llm(request: Request) -> OllamaClient:
    return request.app.state.llm


def get_map_api(request: Request) -> MapApiClient:
    return request.app.state.map_api


def get_registry(request: Request) -> ToolRegistry:
    return request.app.state.registry


def get_store(request: Request) -> ConversationStore:
    return request.app.state.store


def get_stats(request: Request) -> UsageStats:
    return request.app.state.stats


def get_plan_executors(request: Request) -> Dict[str, PlanExecutor]:
    return request.app.state.plan_executors


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n"


def build_loop(app: FastAPI) -> ToolCallingLoop:
    settings: AppSettings = app.state.settings
    return ToolCallingLoop(
        app.state.llm,
        app.state.registry,
        app.state.store,
        max_iterations=settings.max_iterations,
        single_tool_per_turn=settings.single_tool_per_turn,
        stop_stream_on_tool_call=settings.stop_stream_on_tool_call,
        report_malformed_tool_calls=settings.report_malformed_tool_calls,
        stats=app.state.stats,
    )


def build_store(settings: AppSettings) -> ConversationStore:
    if settings.conversation_backend == "sqlite":
        return SqliteConversationStore(settings.database_path, ttl_s=settings.conversation_ttl_s)
    return InMemoryConversationStore(ttl_s=settings.conversation_ttl_s)


router = APIRouter()


@router.get("/health")
async def health(settings: AppSettings = Depends(get_settings), llm: OllamaClient = Depends(get_llm)):
    try:
        models = await llm.list_models()
        ollama = {"ok": True, "models": models, "model_available": settings.ollama_model in models}
    except Exception as exc:
        ollama = {"ok": False, "error": str(exc)}
    return {
        "status": "ok",
        "ollama_url": settings.ollama_base_url,
        "model": settings.ollama_model,
        "map_api_url": settings.map_api_base_url,
        "ollama": ollama,
    }


@router.post("/chat/stream")
async def chat_stream(payload: ChatStreamRequest, request: Request):
    message = (payload.message or "").strip()
    if not message:
        raise HTTPException(status_code=400, detail="Message is required.")
    session_id = payload.session_id or new_session_id()
    loop = build_loop(request.app)

    async def event_generator():
        try:
            async for event in loop.run(session_id, message, clear_history=payload.clear_history):
                yield sse_format(event)
        except asyncio.CancelledError:
            logger.info("Client disconnected from session %s", session_id)

    headers = {**SSE_HEADERS, "X-Session-Id": session_id}
    return StreamingResponse(event_generator(), media_type="text/event-stream", headers=headers)


@router.post("/chat/clear")
async def clear_history(
    payload: ClearHistoryRequest,
    store: ConversationStore = Depends(get_store),
    stats: UsageStats = Depends(get_stats),
):
    if not payload.session_id:
        raise HTTPException(status_code=400, detail="sessionId is required.")
    cleared = await store.delete(payload.session_id)
    if cleared:
        stats.record("conversation_ended")
    return {"success": True, "sessionId": payload.session_id, "cleared": cleared}


@router.get("/chat/history/{session_id}")
async def chat_history(session_id: str, store: ConversationStore = Depends(get_store)):
    convo = await store.get(session_id)
    if convo is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {
        "sessionId": session_id,
        "messages": convo.history(),
        "state": convo.state.model_dump(),
    }


@router.get("/tools")
async def list_tools(registry: ToolRegistry = Depends(get_registry)):
    return {"tools": registry.definitions()}


@router.post("/tools/call")
async def call_tool(
    payload: ToolCallRequest,
    registry: ToolRegistry = Depends(get_registry),
    stats: UsageStats = Depends(get_stats),
):
    if not payload.tool_name:
        raise HTTPException(status_code=400, detail="toolName is required.")
    result = await registry.run(ToolCall(tool=payload.tool_name, arguments=payload.arguments))
    stats.record("tool_call_success" if result.ok else "tool_call_failed")
    if result.ok:
        return {"success": True, "tool": result.tool, "result": result.result}
    return {"success": False, "tool": result.tool, "error": result.error}


@router.post("/api/ai/plan")
async def create_plan(
    payload: PlanRequest,
    llm: OllamaClient = Depends(get_llm),
    store: ConversationStore = Depends(get_store),
):
    if not (payload.message or "").strip():
        raise HTTPException(status_code=400, detail="Message is required.")
    try:
        plan = await generate_plan(llm, store, payload.conversation_id, payload.message)
    except PlanRejected as exc:
        raise HTTPException(status_code=422, detail={"error": "Plan rejected", "errors": exc.errors})
    except PlanNotProduced as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    except LLMError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return {"plan": plan.model_dump()}


@router.get("/api/ai/plan")
async def stream_plan_route(
    message: str = "",
    conversationId: Optional[str] = None,
    llm: OllamaClient = Depends(get_llm),
    store: ConversationStore = Depends(get_store),
):
    if not message.strip():
        raise HTTPException(status_code=400, detail="Message is required.")

    async def event_generator():
        try:
            async for event in stream_plan(llm, store, conversationId, message):
                yield sse_format(event)
            yield "data: [DONE]\n\n"
        except asyncio.CancelledError:
            pass

    return StreamingResponse(event_generator(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.post("/api/ai/plan/execute")
async def execute_plan(
    payload: PlanExecuteRequest,
    map_api: MapApiClient = Depends(get_map_api),
    executors: Dict[str, PlanExecutor] = Depends(get_plan_executors),
):
    plan = payload.plan
    errors = validate_plan(plan)
    if errors:
        raise HTTPException(status_code=422, detail={"error": "Plan rejected", "errors": errors})
    if plan.plan_id in executors:
        raise HTTPException(status_code=409, detail="Plan is already executing")

    queue: asyncio.Queue = asyncio.Queue()

    async def on_event(event: Dict[str, Any]) -> None:
        await queue.put(event)

    executor = PlanExecutor(plan, map_api, on_event, pause_on_error=payload.pause_on_error)
    executors[plan.plan_id] = executor

    async def runner() -> None:
        try:
            await executor.run()
        except Exception as exc:
            logger.exception("Plan %s crashed", plan.plan_id)
            await queue.put({"type": "plan_failed", "error": str(exc), "progress": executor.progress()})
        finally:
            executors.pop(plan.plan_id, None)

    task = asyncio.create_task(runner())

    async def event_generator():
        try:
            while True:
                ev = await queue.get()
                yield sse_format(ev)
                if ev.get("type") in PLAN_TERMINAL_EVENTS:
                    break
            await task
        except asyncio.CancelledError:
            executor.cancel()

    return StreamingResponse(event_generator(), media_type="text/event-stream", headers=SSE_HEADERS)


def _get_executor(plan_id: str, executors: Dict[str, PlanExecutor]) -> PlanExecutor:
    executor = executors.get(plan_id)
    if executor is None:
        raise HTTPException(status_code=404, detail="Plan execution not found")
    return executor


@router.post("/api/ai/plan/{plan_id}/pause")
async def pause_plan(plan_id: str, executors: Dict[str, PlanExecutor] = Depends(get_plan_executors)):
    executor = _get_executor(plan_id, executors)
    return {"ok": executor.pause(), "progress": executor.progress()}


@router.post("/api/ai/plan/{plan_id}/resume")
async def resume_plan(plan_id: str, executors: Dict[str, PlanExecutor] = Depends(get_plan_executors)):
    executor = _get_executor(plan_id, executors)
    return {"ok": executor.resume(), "progress": executor.progress()}


@router.post("/api/ai/plan/{plan_id}/cancel")
async def cancel_plan(plan_id: str, executors: Dict[str, PlanExecutor] = Depends(get_plan_executors)):
    executor = _get_executor(plan_id, executors)
    return {"ok": executor.cancel(), "progress": executor.progress()}


@router.get("/api/ai/stats")
async def get_stats_route(stats: UsageStats = Depends(get_stats), store: ConversationStore = Depends(get_store)):
    return {**stats.snapshot(), "storedConversations": await store.count()}


@router.post("/api/ai/stats")
async def update_stats_route(payload: StatsAction, stats: UsageStats = Depends(get_stats)):
    try:
        stats.record(payload.action, payload.data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"success": True, "stats": stats.snapshot()}


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    llm: OllamaClient = Depends(get_llm),
    map_api: MapApiClient = Depends(get_map_api),
    config_path: Path = Depends(get_config_path),
):
    body = await request.json()
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Settings payload must be an object.")
    if body.get("map_api_key") == "********":
        body.pop("map_api_key")
    try:
        new_settings = AppSettings(**{**settings.model_dump(), **body})
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    save_settings(new_settings, config_path=config_path)
    request.app.state.settings = new_settings
    llm.base_url = new_settings.ollama_base_url.rstrip("/")
    llm.model = new_settings.ollama_model
    map_api.base_url = new_settings.map_api_base_url.rstrip("/")
    map_api.api_key = new_settings.map_api_key
    map_api.language = new_settings.search_language
    map_api.country = new_settings.search_country
    llm.set_timeout(new_settings.llm_timeout_s)
    map_api.set_timeout(new_settings.map_api_timeout_s)
    return {"ok": True, "settings": new_settings.to_safe_dict()}


def create_app(
    settings: AppSettings,
    *,
    llm: Optional[OllamaClient] = None,
    map_api: Optional[MapApiClient] = None,
    store: Optional[ConversationStore] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.store.init()
        try:
            yield
        finally:
            await app.state.llm.close()
            await app.state.map_api.close()

    app = FastAPI(title="Map Agent Tool-Calling Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.llm = llm or OllamaClient(
        settings.ollama_base_url, settings.ollama_model, timeout=settings.llm_timeout_s
    )
    app.state.map_api = map_api or MapApiClient(
        settings.map_api_base_url,
        api_key=settings.map_api_key,
        timeout=settings.map_api_timeout_s,
        language=settings.search_language,
        country=settings.search_country,
    )
    app.state.registry = build_default_registry(app.state.map_api)
    app.state.store = store or build_store(settings)
    app.state.stats = UsageStats()
    app.state.plan_executors = {}
    app.state.config_path = config_path or CONFIG_PATH
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("MAPAGENT_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "mapagent.main:app",
            host=getattr(settings, "host", "0.0.0.0"),
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
