import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from .planner import validate_plan
from .schemas import ExecutionPlan, ExecutionResult, ExecutionStep, PlanStatus
from .tools import ToolError


logger = logging.getLogger("uvicorn.error")

ProgressCallback = Callable[[Dict[str, Any]], Awaitable[None]]
STEP_REF_PREFIXES = ("step_", "marker_")


def _utc_iso() -> str:
    return datetime.utcnow().isoformat() + "Z"


class PlanExecutor:
    """Runs a validated plan step by step against the map API.

    Steps run strictly in order. A step only runs when every dependency has a
    successful result. Pause and cancel are honoured between steps.
    """

    def __init__(
        self,
        plan: ExecutionPlan,
        api: Any,
        on_event: Optional[ProgressCallback] = None,
        *,
        pause_on_error: bool = False,
    ) -> None:
        self.plan = plan
        self.api = api
        self.on_event = on_event
        self.pause_on_error = pause_on_error
        self.status: PlanStatus = "pending"
        self.results: Dict[int, ExecutionResult] = {}
        self.current_index: Optional[int] = None
        self.error: Optional[str] = None
        self.started_at: Optional[str] = None
        self.completed_at: Optional[str] = None
        self._resume = asyncio.Event()
        self._resume.set()
        self._cancelled = False

    async def _emit(self, event_type: str, payload: Optional[Dict[str, Any]] = None) -> None:
        if not self.on_event:
            return
        try:
            await self.on_event({"type": event_type, **(payload or {}), "progress": self.progress()})
        except Exception:
            logger.debug("Plan progress callback failed", exc_info=True)

    def progress(self) -> Dict[str, Any]:
        current_step = None
        if self.current_index is not None and self.current_index < len(self.plan.steps):
            current_step = self.plan.steps[self.current_index].step_id
        return {
            "planId": self.plan.plan_id,
            "status": self.status,
            "currentStep": (self.current_index + 1) if self.current_index is not None else 0,
            "totalSteps": len(self.plan.steps),
            "currentStepId": current_step,
            "completedSteps": [r.model_dump() for _, r in sorted(self.results.items())],
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "error": self.error,
        }

    def pause(self) -> bool:
        if self.status != "running":
            return False
        self.status = "paused"
        self._resume.clear()
        return True

    def resume(self) -> bool:
        if self.status != "paused":
            return False
        self.status = "running"
        self._resume.set()
        return True

    def cancel(self) -> bool:
        if self.status in ("completed", "failed", "rejected", "cancelled"):
            return False
        self._cancelled = True
        self._resume.set()
        return True

    async def _wait_if_paused(self) -> None:
        if not self._resume.is_set():
            await self._emit("paused")
            await self._resume.wait()
            if not self._cancelled:
                await self._emit("resumed")

    def _unmet_dependencies(self, step: ExecutionStep) -> List[str]:
        unmet = []
        for dep in step.depends_on:
            result = self.results.get(dep)
            if result is None or not result.success:
                unmet.append(self.plan.steps[dep].step_id)
        return unmet

    def _resolve_marker_ref(self, ref: Any) -> str:
        ref = str(ref)
        if not ref.startswith(STEP_REF_PREFIXES):
            return ref
        idx = self.plan.index_of(ref)
        result = self.results.get(idx) if idx is not None else None
        data = result.data if result and result.success else None
        if not isinstance(data, dict) or not data.get("id"):
            raise ToolError(f"Cannot resolve marker id: step {ref} did not succeed")
        return str(data["id"])

    def _collect_marker_ids(self, marker_filter: Optional[Dict[str, Any]]) -> List[str]:
        ids: List[str] = []
        for idx, result in sorted(self.results.items()):
            step = self.plan.steps[idx]
            if step.type != "create_marker" or not result.success:
                continue
            if marker_filter:
                if any(
                    marker_filter.get(key) is not None and step.params.get(key) != marker_filter[key]
                    for key in ("day", "group")
                ):
                    continue
            if isinstance(result.data, dict) and result.data.get("id"):
                ids.append(str(result.data["id"]))
        return ids

    async def _dispatch(self, step: ExecutionStep) -> Any:
        params = step.params
        if step.type == "create_marker":
            return await self.api.create_marker_from_place_name(
                params["name"], params["iconType"], params.get("content") or ""
            )
        if step.type == "update_marker":
            return await self.api.update_marker_content(
                self._resolve_marker_ref(params["markerId"]),
                title=params.get("title"),
                markdown_content=params.get("markdownContent"),
            )
        if step.type == "create_chain":
            refs = params.get("markerIds")
            if isinstance(refs, list) and refs:
                marker_ids = [self._resolve_marker_ref(ref) for ref in refs]
            else:
                marker_ids = self._collect_marker_ids(params.get("markerFilter"))
            if not marker_ids:
                raise ToolError("No marker ids available for the itinerary")
            return await self.api.create_chain(
                marker_ids, params.get("chainName") or "Unnamed itinerary", params.get("description") or ""
            )
        if step.type == "search_place":
            return {"results": await self.api.search_places(params["query"], limit=5)}
        raise ToolError(f"Unknown step type: {step.type}")

    async def _execute_step(self, index: int, step: ExecutionStep) -> ExecutionResult:
        started = time.monotonic()
        try:
            data = await self._dispatch(step)
            return ExecutionResult(
                step_index=index,
                step_id=step.step_id,
                success=True,
                data=data,
                executed_at=_utc_iso(),
                duration_ms=int((time.monotonic() - started) * 1000),
            )
        except (ToolError, httpx.HTTPError) as exc:
            return ExecutionResult(
                step_index=index,
                step_id=step.step_id,
                success=False,
                error=str(exc),
                executed_at=_utc_iso(),
                duration_ms=int((time.monotonic() - started) * 1000),
            )

    def _finish(self, status: PlanStatus, error: Optional[str] = None) -> None:
        self.status = status
        self.error = error
        self.current_index = None
        self.completed_at = _utc_iso()

    async def run(self) -> List[ExecutionResult]:
        errors = validate_plan(self.plan)
        if errors:
            logger.warning("Refusing to execute plan %s: %s", self.plan.plan_id, errors)
            self._finish("rejected", "; ".join(errors))
            await self._emit("plan_rejected", {"errors": errors})
            return []

        self.status = "running"
        self.started_at = _utc_iso()
        await self._emit("plan_started", {"title": self.plan.title})
        for index, step in enumerate(self.plan.steps):
            await self._wait_if_paused()
            if self._cancelled:
                self._finish("cancelled", "Execution cancelled by user")
                await self._emit("plan_cancelled")
                return self.ordered_results()
            self.current_index = index
            unmet = self._unmet_dependencies(step)
            if unmet:
                message = f"Step {step.step_id} has unmet dependencies: {', '.join(unmet)}"
                self._finish("failed", message)
                await self._emit("plan_failed", {"error": message})
                return self.ordered_results()

            await self._emit("step_started", {"stepId": step.step_id, "description": step.description})
            result = await self._execute_step(index, step)
            self.results[index] = result
            await self._emit("step_completed", {"stepId": step.step_id, "result": result.model_dump()})

            if not result.success and self.pause_on_error and not self._cancelled:
                logger.info("Pausing plan %s after failed step %s", self.plan.plan_id, step.step_id)
                self.status = "paused"
                self._resume.clear()

        await self._wait_if_paused()
        if self._cancelled:
            self._finish("cancelled", "Execution cancelled by user")
            await self._emit("plan_cancelled")
            return self.ordered_results()
        self._finish("completed")
        await self._emit("plan_completed")
        return self.ordered_results()

    def ordered_results(self) -> List[ExecutionResult]:
        return [result for _, result in sorted(self.results.items())]
