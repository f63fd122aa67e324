import logging
import time
from contextlib import aclosing
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol

from .agents import TOOL_LOOP_SYSTEM
from .conversation_store import Conversation, ConversationStore, new_session_id
from .llm import LLMError
from .parsing import ParsedResponse, ResponseParser, TaggedResponseParser, has_completion_sentinel
from .schemas import ToolCall, ToolResult
from .stats import UsageStats
from .tools import ToolRegistry


logger = logging.getLogger("uvicorn.error")

MAX_MALFORMED_RETRIES = 2


class TokenSource(Protocol):
    def stream_chat(self, messages: List[Any]) -> AsyncIterator[str]:
        ...


class ToolCallingLoop:
    """Stream a model turn, run the tool call it asks for, fold the result back, repeat."""

    def __init__(
        self,
        token_source: TokenSource,
        registry: ToolRegistry,
        store: ConversationStore,
        *,
        parser: Optional[ResponseParser] = None,
        system_prompt: str = TOOL_LOOP_SYSTEM,
        max_iterations: int = 10,
        completion_predicate: Callable[[str], bool] = has_completion_sentinel,
        single_tool_per_turn: bool = True,
        stop_stream_on_tool_call: bool = True,
        report_malformed_tool_calls: bool = False,
        stats: Optional[UsageStats] = None,
    ):
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self.token_source = token_source
        self.registry = registry
        self.store = store
        self.parser = parser or TaggedResponseParser()
        self.system_prompt = system_prompt
        self.max_iterations = max_iterations
        self.completion_predicate = completion_predicate
        self.single_tool_per_turn = single_tool_per_turn
        self.stop_stream_on_tool_call = stop_stream_on_tool_call
        self.report_malformed_tool_calls = report_malformed_tool_calls
        self.stats = stats

    def _record(self, action: str, data: Optional[Dict[str, Any]] = None) -> None:
        if self.stats is not None:
            self.stats.record(action, data)

    async def _load(self, session_id: str, clear_history: bool) -> Conversation:
        if clear_history:
            await self.store.delete(session_id)
        convo = await self.store.get(session_id)
        if convo is None:
            convo = Conversation.start(session_id, self.system_prompt)
            self._record("conversation_created")
        return convo

    def _select_calls(self, convo: Conversation, parsed: ParsedResponse) -> List[ToolCall]:
        fresh = [c for c in parsed.tool_calls if not (c.uuid and c.uuid in convo.executed_tool_ids)]
        if self.single_tool_per_turn:
            return fresh[:1]
        return fresh

    async def run(
        self,
        session_id: Optional[str],
        message: str,
        clear_history: bool = False,
    ) -> AsyncIterator[Dict[str, Any]]:
        session_id = session_id or new_session_id()
        convo = await self._load(session_id, clear_history)
        convo.append("user", message)
        self._record("message_sent")
        await self.store.set(convo)

        started = time.monotonic()
        final_text = ""
        reason = "max_iterations"
        iterations = 0
        malformed_streak = 0
        try:
            for iteration in range(1, self.max_iterations + 1):
                iterations = iteration
                buffer = ""
                async with aclosing(self.token_source.stream_chat(convo.messages)) as stream:
                    async for chunk in stream:
                        buffer += chunk
                        yield {"type": "chunk", "content": chunk}
                        if (
                            self.stop_stream_on_tool_call
                            and self.parser.has_complete_block(buffer)
                            and self.parser.parse(buffer).tool_calls
                        ):
                            break

                parsed = self.parser.parse(buffer)
                final_text = parsed.visible_text
                calls = self._select_calls(convo, parsed)

                if not calls:
                    if (
                        self.report_malformed_tool_calls
                        and parsed.block_closed
                        and parsed.malformed
                        and not parsed.tool_calls
                    ):
                        malformed_streak += 1
                        if malformed_streak > MAX_MALFORMED_RETRIES:
                            convo.append("assistant", buffer)
                            reason = "malformed_limit"
                            break
                        logger.info("Asking the model to repair %d malformed tool call(s)", len(parsed.malformed))
                        convo.fold_malformed(buffer, "\n".join(parsed.malformed))
                        await self.store.set(convo)
                        if iteration < self.max_iterations:
                            yield {"type": "waiting_ai_response", "message": "Waiting for a corrected tool call..."}
                        continue
                    convo.append("assistant", buffer)
                    if self.completion_predicate(buffer):
                        yield {"type": "task_completed", "message": "Task completed"}
                        reason = "completed"
                    elif parsed.tool_calls:
                        reason = "no_new_tool_calls"
                    else:
                        reason = "answered"
                    break

                malformed_streak = 0
                convo.state.has_pending_tool_call = True
                results: List[ToolResult] = []
                for call in calls:
                    yield {
                        "type": "tool_executing",
                        "message": f"Executing tool: {call.tool}",
                        "tools": [call.tool],
                    }
                    result = await self.registry.run(call)
                    if call.uuid:
                        convo.executed_tool_ids.add(call.uuid)
                    if result.ok:
                        self._record("tool_call_success")
                        yield {"type": "tool_call", "tool": call.tool, "result": result.result}
                    else:
                        self._record("tool_call_failed")
                        yield {"type": "tool_error", "tool": call.tool, "error": result.error}
                    results.append(result)
                convo.fold_tool_results(buffer, results)
                await self.store.set(convo)

                if self.completion_predicate(buffer):
                    yield {"type": "task_completed", "message": "Task completed"}
                    reason = "completed"
                    break
                if iteration < self.max_iterations:
                    yield {"type": "waiting_ai_response", "message": "Waiting for the AI to continue..."}
        except LLMError as exc:
            await self.store.set(convo)
            yield {"type": "error", "error": str(exc), "session_id": session_id}
            return
        except Exception as exc:
            logger.exception("Tool-calling loop failed for session %s", session_id)
            await self.store.set(convo)
            yield {"type": "error", "error": f"Orchestration failed: {exc}", "session_id": session_id}
            return

        if reason == "max_iterations":
            logger.warning("Session %s hit the iteration cap (%d)", session_id, self.max_iterations)
        await self.store.set(convo)
        self._record("response_time", {"responseTime": int((time.monotonic() - started) * 1000)})
        yield {
            "type": "done",
            "response": final_text,
            "session_id": session_id,
            "iterations": iterations,
            "reason": reason,
        }
