import logging
import time
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from .agents import PLAN_SYSTEM
from .conversation_store import Conversation, ConversationStore, new_session_id
from .llm import LLMError
from .parsing import TagStreamFilter, extract_plan_payload, strip_think
from .schemas import ICON_TYPES, ExecutionPlan, ExecutionStep


logger = logging.getLogger("uvicorn.error")

REQUIRED_PARAMS: Dict[str, Tuple[str, ...]] = {
    "create_marker": ("name", "iconType"),
    "update_marker": ("markerId", "markdownContent"),
    "create_chain": ("markerIds",),
    "search_place": ("query",),
}
TOOL_TO_STEP = {
    "create_marker_v2": "create_marker",
    "update_marker_content": "update_marker",
    "create_travel_chain": "create_chain",
    "search_places": "search_place",
}


class PlanRejected(ValueError):
    def __init__(self, errors: List[str]):
        super().__init__("; ".join(errors) or "plan rejected")
        self.errors = errors


class PlanNotProduced(RuntimeError):
    pass


def new_plan_id() -> str:
    return f"plan_{int(time.time() * 1000)}"


def _marker_params(place: Dict[str, Any]) -> Dict[str, Any]:
    params: Dict[str, Any] = {
        "name": place.get("name") or place.get("title"),
        "iconType": place.get("iconType"),
        "content": place.get("content") or place.get("description") or "",
    }
    for key in ("day", "group"):
        if place.get(key) is not None:
            params[key] = place[key]
    return params


def _matches_filter(params: Dict[str, Any], marker_filter: Dict[str, Any]) -> bool:
    for key in ("day", "group"):
        if marker_filter.get(key) is not None and params.get(key) != marker_filter[key]:
            return False
    return True


def _drafts_from_tool_calls(tool_calls: List[Any], errors: List[str]) -> List[Dict[str, Any]]:
    drafts: List[Dict[str, Any]] = []
    marker_ids: List[str] = []
    for index, call in enumerate(tool_calls, start=1):
        if not isinstance(call, dict):
            errors.append(f"Tool call {index} is not an object")
            continue
        name = call.get("name") or call.get("tool")
        args = call.get("args") or call.get("arguments") or {}
        if not isinstance(args, dict):
            args = {}
        step_id = f"step_{index}"
        if name == "create_marker_v2":
            places = args.get("places") or args.get("markers")
            if isinstance(places, list):
                for place_index, place in enumerate(places, start=1):
                    place = place if isinstance(place, dict) else {}
                    marker_step = f"{step_id}_marker_{place_index}"
                    params = _marker_params(place)
                    drafts.append(
                        {
                            "id": marker_step,
                            "type": "create_marker",
                            "params": params,
                            "dependencies": [],
                            "description": f"Create marker: {params.get('name')}",
                        }
                    )
                    marker_ids.append(marker_step)
            else:
                params = _marker_params(args)
                drafts.append(
                    {
                        "id": step_id,
                        "type": "create_marker",
                        "params": params,
                        "dependencies": [],
                        "description": f"Create marker: {params.get('name')}",
                    }
                )
                marker_ids.append(step_id)
        elif name == "update_marker_content":
            markdown = args.get("markdownContent") or args.get("content")
            drafts.append(
                {
                    "id": step_id,
                    "type": "update_marker",
                    "params": {
                        "markerId": args.get("markerId"),
                        "title": args.get("title"),
                        "markdownContent": markdown,
                    },
                    "dependencies": [],
                    "description": f"Update marker: {args.get('title') or args.get('markerId')}",
                }
            )
        elif name == "create_travel_chain":
            targets = list(marker_ids)
            marker_filter = args.get("markerFilter")
            if isinstance(marker_filter, dict):
                by_id = {d["id"]: d for d in drafts}
                targets = [mid for mid in marker_ids if _matches_filter(by_id[mid]["params"], marker_filter)]
            explicit = args.get("markerIds")
            params = {
                "markerIds": explicit if isinstance(explicit, list) and explicit else targets,
                "chainName": args.get("chainName") or args.get("name") or "Unnamed itinerary",
                "description": args.get("description") or "",
            }
            if isinstance(marker_filter, dict):
                params["markerFilter"] = marker_filter
            drafts.append(
                {
                    "id": step_id,
                    "type": "create_chain",
                    "params": params,
                    "dependencies": targets,
                    "description": f"Create itinerary: {params['chainName']}",
                }
            )
        elif name == "search_places":
            drafts.append(
                {
                    "id": step_id,
                    "type": "search_place",
                    "params": {"query": args.get("query") or args.get("name")},
                    "dependencies": [],
                    "description": f"Search: {args.get('query') or args.get('name')}",
                }
            )
        else:
            errors.append(f"Tool call {index} uses unsupported tool: {name}")
    return drafts


def _drafts_from_steps(raw_steps: List[Any], errors: List[str]) -> List[Dict[str, Any]]:
    drafts: List[Dict[str, Any]] = []
    for index, raw in enumerate(raw_steps, start=1):
        if not isinstance(raw, dict):
            errors.append(f"Step {index} is not an object")
            continue
        step_type = raw.get("type")
        if not isinstance(step_type, str) or step_type not in REQUIRED_PARAMS:
            errors.append(f"Step {raw.get('id') or index} has unknown type: {step_type}")
            continue
        deps = raw.get("dependencies") or raw.get("depends_on") or []
        drafts.append(
            {
                "id": str(raw.get("id") or f"step_{index}"),
                "type": step_type,
                "params": raw.get("params") if isinstance(raw.get("params"), dict) else {},
                "dependencies": [str(d) for d in deps] if isinstance(deps, list) else [],
                "description": raw.get("description") or "",
            }
        )
    return drafts


def compile_plan(payload: Dict[str, Any]) -> ExecutionPlan:
    """Turn a model plan payload into an ExecutionPlan with index-based dependencies.

    Unresolvable dependency ids are kept out of the step and recorded in
    ``compile_errors`` so validation rejects the plan.
    """
    errors: List[str] = []
    if isinstance(payload.get("steps"), list):
        drafts = _drafts_from_steps(payload["steps"], errors)
    elif isinstance(payload.get("toolCalls"), list):
        drafts = _drafts_from_tool_calls(payload["toolCalls"], errors)
    else:
        drafts = []
        errors.append("Plan has neither steps nor toolCalls")

    index_by_id: Dict[str, int] = {}
    for idx, draft in enumerate(drafts):
        if draft["id"] in index_by_id:
            errors.append(f"Duplicate step id: {draft['id']}")
            continue
        index_by_id[draft["id"]] = idx

    steps: List[ExecutionStep] = []
    for draft in drafts:
        depends_on: List[int] = []
        for dep in draft["dependencies"]:
            if dep in index_by_id:
                depends_on.append(index_by_id[dep])
            else:
                errors.append(f"Step {draft['id']} depends on unknown step {dep}")
        steps.append(
            ExecutionStep(
                step_id=draft["id"],
                type=draft["type"],
                params=draft["params"],
                depends_on=depends_on,
                description=draft["description"],
            )
        )
    return ExecutionPlan(
        plan_id=str(payload.get("id") or new_plan_id()),
        title=str(payload.get("title") or "Untitled plan"),
        description=str(payload.get("description") or ""),
        steps=steps,
        created_at=datetime.utcnow().isoformat() + "Z",
        compile_errors=errors,
    )


def validate_plan(plan: ExecutionPlan) -> List[str]:
    errors = list(plan.compile_errors)
    if not plan.steps:
        errors.append("Plan has no steps")
    for idx, step in enumerate(plan.steps):
        for dep in step.depends_on:
            if dep < 0 or dep >= len(plan.steps):
                errors.append(f"Step {step.step_id} depends on missing step index {dep}")
            elif dep >= idx:
                errors.append(f"Step {step.step_id} depends on later step {plan.steps[dep].step_id}")
        required = REQUIRED_PARAMS.get(step.type, ())
        missing = [key for key in required if step.params.get(key) in (None, "")]
        if missing:
            errors.append(f"Step {step.step_id} is missing required parameters: {', '.join(missing)}")
            continue
        icon = step.params.get("iconType")
        if step.type == "create_marker" and (not isinstance(icon, str) or icon not in ICON_TYPES):
            errors.append(f"Step {step.step_id} has invalid iconType: {step.params['iconType']}")
        if step.type == "create_chain":
            marker_ids = step.params["markerIds"]
            if not isinstance(marker_ids, list) or not marker_ids:
                errors.append(f"Step {step.step_id} needs a non-empty markerIds list")
    return errors


def ensure_valid(plan: ExecutionPlan) -> ExecutionPlan:
    errors = validate_plan(plan)
    if errors:
        logger.warning("Rejected plan %s: %s", plan.plan_id, errors)
        raise PlanRejected(errors)
    return plan


def plan_from_response(text: str) -> ExecutionPlan:
    payload = extract_plan_payload(strip_think(text))
    if payload is None:
        raise PlanNotProduced("The model did not produce a plan.")
    return ensure_valid(compile_plan(payload))


async def _load_planning_conversation(store: ConversationStore, session_id: str, message: str) -> Conversation:
    convo = await store.get(session_id)
    if convo is None:
        convo = Conversation.start(session_id, PLAN_SYSTEM)
    convo.append("user", message)
    await store.set(convo)
    return convo


async def generate_plan(
    llm: Any,
    store: ConversationStore,
    session_id: Optional[str],
    message: str,
) -> ExecutionPlan:
    """Run one buffered completion and compile the plan it contains."""
    session_id = session_id or new_session_id()
    convo = await _load_planning_conversation(store, session_id, message)
    text = await llm.chat(convo.messages)
    convo.append("assistant", text)
    await store.set(convo)
    return plan_from_response(text)


async def stream_plan(
    llm: Any,
    store: ConversationStore,
    session_id: Optional[str],
    message: str,
) -> AsyncIterator[Dict[str, Any]]:
    session_id = session_id or new_session_id()
    convo = await _load_planning_conversation(store, session_id, message)
    tag_filter = TagStreamFilter()
    buffer = ""
    try:
        async for chunk in llm.stream_chat(convo.messages):
            buffer += chunk
            for kind, text in tag_filter.feed(chunk):
                if kind == "text" and text:
                    yield {"type": "chunk", "content": text, "conversationId": session_id}
        for kind, text in tag_filter.flush():
            if kind == "text" and text:
                yield {"type": "chunk", "content": text, "conversationId": session_id}
    except LLMError as exc:
        yield {"type": "error", "error": str(exc), "conversationId": session_id}
        return
    convo.append("assistant", buffer)
    await store.set(convo)
    try:
        plan = plan_from_response(buffer)
    except PlanRejected as exc:
        yield {"type": "error", "error": str(exc), "errors": exc.errors, "conversationId": session_id}
        return
    except PlanNotProduced as exc:
        yield {"type": "error", "error": str(exc), "conversationId": session_id}
        return
    yield {"type": "plan", "plan": plan.model_dump(), "conversationId": session_id}
