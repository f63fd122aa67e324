import json

import pytest

from mapagent.agents import TOOL_LOOP_SYSTEM
from mapagent.conversation_store import InMemoryConversationStore
from mapagent.llm import LLMConnectionError
from mapagent.orchestrator import ToolCallingLoop
from mapagent.parsing import ParsedResponse
from mapagent.schemas import ToolCall
from mapagent.stats import UsageStats
from mapagent.tools import build_default_registry
from tests.fakes import FakeMapApi, FakeTokenSource


def _execute(tool, arguments=None, uuid=None):
    call = {"tool": tool}
    if arguments is not None:
        call["arguments"] = arguments
    if uuid:
        call["uuid"] = uuid
    return f"<execute>\n{json.dumps(call, ensure_ascii=False)}\n</execute>"


def _make_loop(llm, map_api=None, store=None, **kwargs):
    map_api = map_api or FakeMapApi()
    store = store or InMemoryConversationStore()
    loop = ToolCallingLoop(llm, build_default_registry(map_api), store, **kwargs)
    return loop, map_api, store


async def _run(loop, session_id="s1", message="Plan a day in Tokyo", **kwargs):
    return [event async for event in loop.run(session_id, message, **kwargs)]


def _types(events):
    return [e["type"] for e in events if e["type"] != "chunk"]


@pytest.mark.asyncio
async def test_tool_call_then_completion():
    llm = FakeTokenSource(
        [
            ["<think>Tokyo Tower first</think>\n", _execute("create_marker_v2", {"name": "Tokyo Tower", "iconType": "landmark"})],
            "Created the marker.\n✅ 任务已完成",
        ]
    )
    loop, map_api, store = _make_loop(llm)
    events = await _run(loop)

    assert _types(events) == ["tool_executing", "tool_call", "waiting_ai_response", "task_completed", "done"]
    tool_call = next(e for e in events if e["type"] == "tool_call")
    assert tool_call["tool"] == "create_marker_v2"
    assert tool_call["result"]["id"] == "m1"
    done = events[-1]
    assert done["reason"] == "completed"
    assert done["iterations"] == 2
    assert done["session_id"] == "s1"
    assert "✅ 任务已完成" in done["response"]

    convo = await store.get("s1")
    roles = [m.role for m in convo.messages]
    assert roles == ["system", "user", "assistant", "user", "assistant"]
    assert convo.messages[0].content == TOOL_LOOP_SYSTEM
    assert "工具调用成功 (create_marker_v2)" in convo.messages[3].content
    assert "请基于此结果继续下一步操作" in convo.messages[3].content
    assert convo.state.tool_call_index == 1
    # The second model call sees the folded tool result last.
    assert llm.calls[1][-1]["content"] == convo.messages[3].content


@pytest.mark.asyncio
async def test_chunks_are_forwarded_verbatim():
    llm = FakeTokenSource([["Hel", "lo ", "there"]])
    loop, _, _ = _make_loop(llm)
    events = await _run(loop)
    assert [e["content"] for e in events if e["type"] == "chunk"] == ["Hel", "lo ", "there"]
    assert events[-1]["reason"] == "answered"


@pytest.mark.asyncio
async def test_only_first_call_in_block_is_executed():
    block = (
        "<execute>\n"
        '{"tool": "create_marker_v2", "arguments": {"name": "Senso-ji", "iconType": "culture"}}\n'
        '{"tool": "create_marker_v2", "arguments": {"name": "Ueno Park", "iconType": "park"}}\n'
        "</execute>"
    )
    llm = FakeTokenSource([block, "Done for now."])
    loop, map_api, _ = _make_loop(llm)
    events = await _run(loop)

    assert map_api.calls == [("create_marker", "Senso-ji", "culture")]
    assert [e["tools"] for e in events if e["type"] == "tool_executing"] == [["create_marker_v2"]]
    assert events[-1]["reason"] == "answered"


@pytest.mark.asyncio
async def test_multi_call_configuration_runs_every_call():
    block = (
        "<execute>\n"
        '{"tool": "create_marker_v2", "arguments": {"name": "Senso-ji", "iconType": "culture"}}\n'
        '{"tool": "create_marker_v2", "arguments": {"name": "Ueno Park", "iconType": "park"}}\n'
        "</execute>"
    )
    llm = FakeTokenSource([block, "Done."])
    loop, map_api, store = _make_loop(llm, single_tool_per_turn=False)
    await _run(loop)

    assert [c[1] for c in map_api.calls] == ["Senso-ji", "Ueno Park"]
    folded = (await store.get("s1")).messages[3].content
    assert folded.startswith("🔧 工具返回结果")
    assert "Senso-ji" in folded and "Ueno Park" in folded


@pytest.mark.asyncio
async def test_tool_error_is_folded_and_loop_continues():
    llm = FakeTokenSource(
        [
            _execute("create_travel_chain", {"markerIds": [], "chainName": "Day 1"}),
            "The chain needs markers first; nothing else to do.",
        ]
    )
    stats = UsageStats()
    loop, map_api, store = _make_loop(llm, stats=stats)
    events = await _run(loop)

    error_event = next(e for e in events if e["type"] == "tool_error")
    assert error_event["tool"] == "create_travel_chain"
    assert "markerIds must be a non-empty list" in error_event["error"]
    assert map_api.calls == []

    convo = await store.get("s1")
    folded = convo.messages[3]
    assert folded.role == "user"
    assert "markerIds must be a non-empty list" in folded.content
    assert len(llm.calls) == 2
    assert llm.calls[1][-1] == {"role": "user", "content": folded.content}
    assert events[-1]["type"] == "done"
    assert events[-1]["reason"] == "answered"
    assert stats.failed_tool_calls == 1


@pytest.mark.asyncio
async def test_iteration_cap_stops_the_loop():
    llm = FakeTokenSource([_execute("get_marker", {"markerId": "m1"})])
    map_api = FakeMapApi()
    map_api.markers["m1"] = {"id": "m1", "title": "Tokyo Tower"}
    loop, _, _ = _make_loop(llm, map_api=map_api, max_iterations=10)
    events = await _run(loop)

    assert len(llm.calls) == 10
    assert len([e for e in events if e["type"] == "tool_call"]) == 10
    assert len([e for e in events if e["type"] == "waiting_ai_response"]) == 9
    done = events[-1]
    assert done["type"] == "done"
    assert done["reason"] == "max_iterations"
    assert done["iterations"] == 10


@pytest.mark.asyncio
async def test_llm_failure_emits_single_error_event():
    llm = FakeTokenSource(error=LLMConnectionError("Cannot connect to Ollama"))
    loop, _, store = _make_loop(llm)
    events = await _run(loop)

    assert events == [{"type": "error", "error": "Cannot connect to Ollama", "session_id": "s1"}]
    convo = await store.get("s1")
    assert [m.role for m in convo.messages] == ["system", "user"]


@pytest.mark.asyncio
async def test_stream_stops_once_block_is_closed():
    llm = FakeTokenSource(
        [
            [
                "<execute>",
                '{"tool": "search_places", "arguments": {"query": "Kyoto"}}',
                "</execute>",
                "model keeps talking",
                "and talking",
            ],
            "ok",
        ]
    )
    loop, _, store = _make_loop(llm)
    events = await _run(loop)

    first_turn_chunks = []
    for event in events:
        if event["type"] == "tool_executing":
            break
        first_turn_chunks.append(event["content"])
    assert first_turn_chunks[-1] == "</execute>"
    assert "model keeps talking" not in "".join(first_turn_chunks)
    assert "model keeps talking" not in (await store.get("s1")).messages[2].content


@pytest.mark.asyncio
async def test_full_stream_is_read_when_early_stop_is_disabled():
    llm = FakeTokenSource([["<execute>", '{"tool": "search_places", "arguments": {"query": "Kyoto"}}', "</execute>", " tail"], "ok"])
    loop, _, _ = _make_loop(llm, stop_stream_on_tool_call=False)
    events = await _run(loop)
    chunks = [e["content"] for e in events if e["type"] == "chunk"]
    assert " tail" in chunks


@pytest.mark.asyncio
async def test_sentinel_after_tool_call_completes_the_task():
    llm = FakeTokenSource(
        [_execute("search_places", {"query": "Nara Park"}) + "\n✅ 任务已完成", "should not be requested"]
    )
    loop, _, _ = _make_loop(llm, stop_stream_on_tool_call=False)
    events = await _run(loop)
    assert _types(events) == ["tool_executing", "tool_call", "task_completed", "done"]
    assert len(llm.calls) == 1


@pytest.mark.asyncio
async def test_repeated_uuid_is_not_executed_twice():
    block = _execute("search_places", {"query": "Nara"}, uuid="call-1")
    llm = FakeTokenSource([block, block])
    loop, map_api, _ = _make_loop(llm)
    events = await _run(loop)
    assert map_api.call_names() == ["search_places"]
    assert events[-1]["reason"] == "no_new_tool_calls"


@pytest.mark.asyncio
async def test_malformed_json_is_silently_treated_as_plain_answer():
    llm = FakeTokenSource(['<execute>{"tool": "create_marker_v2", arguments: oops}</execute>'])
    loop, map_api, _ = _make_loop(llm)
    events = await _run(loop)
    assert map_api.calls == []
    assert len(llm.calls) == 1
    assert events[-1]["reason"] == "answered"


@pytest.mark.asyncio
async def test_malformed_json_can_be_reported_back_to_the_model():
    llm = FakeTokenSource(
        ['<execute>{"tool": "create_marker_v2", arguments: oops}</execute>', "Sorry, here is my answer."]
    )
    loop, _, store = _make_loop(llm, report_malformed_tool_calls=True)
    events = await _run(loop)
    assert len(llm.calls) == 2
    correction = (await store.get("s1")).messages[3]
    assert correction.role == "user"
    assert "arguments: oops" in correction.content
    assert events[-1]["reason"] == "answered"


@pytest.mark.asyncio
async def test_repeated_malformed_output_hits_retry_limit():
    llm = FakeTokenSource(['<execute>{"tool": broken}</execute>'])
    loop, _, _ = _make_loop(llm, report_malformed_tool_calls=True)
    events = await _run(loop)
    assert events[-1]["reason"] == "malformed_limit"
    assert len(llm.calls) == 3


@pytest.mark.asyncio
async def test_history_persists_across_turns_and_can_be_cleared():
    llm = FakeTokenSource(["First answer.", "Second answer.", "Fresh answer."])
    stats = UsageStats()
    loop, _, store = _make_loop(llm, stats=stats)
    await _run(loop, message="one")
    await _run(loop, message="two")
    assert [m.content for m in (await store.get("s1")).messages[1:]] == ["one", "First answer.", "two", "Second answer."]

    await _run(loop, message="three", clear_history=True)
    convo = await store.get("s1")
    assert [m.content for m in convo.messages[1:]] == ["three", "Fresh answer."]
    assert stats.total_conversations == 2
    assert stats.total_messages == 3


@pytest.mark.asyncio
async def test_missing_session_id_generates_one():
    loop, _, store = _make_loop(FakeTokenSource(["Hi."]))
    events = [e async for e in loop.run(None, "hello")]
    session_id = events[-1]["session_id"]
    assert session_id.startswith("session_")
    assert await store.get(session_id) is not None


def test_max_iterations_must_be_positive():
    with pytest.raises(ValueError):
        ToolCallingLoop(FakeTokenSource(), build_default_registry(FakeMapApi()), InMemoryConversationStore(), max_iterations=0)


class JsonOnlyParser:
    def has_complete_block(self, text):
        return False

    def parse(self, text):
        try:
            data = json.loads(text)
        except ValueError:
            return ParsedResponse(visible_text=text)
        call = ToolCall(tool=data["tool"], arguments=data.get("arguments") or {})
        return ParsedResponse(tool_calls=[call], has_execute_block=True, block_closed=True)


@pytest.mark.asyncio
async def test_parser_strategy_is_pluggable():
    llm = FakeTokenSource([json.dumps({"tool": "get_marker", "arguments": {"markerId": "m1"}}), "Tokyo Tower is marked."])
    map_api = FakeMapApi()
    map_api.markers["m1"] = {"id": "m1", "title": "Tokyo Tower"}
    loop, _, _ = _make_loop(llm, map_api=map_api, parser=JsonOnlyParser())
    events = await _run(loop)

    assert _types(events) == ["tool_executing", "tool_call", "waiting_ai_response", "done"]
    assert events[-1]["reason"] == "answered"
    assert events[-1]["response"] == "Tokyo Tower is marked."
