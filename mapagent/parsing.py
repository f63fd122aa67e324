"""Parsing of tagged model output: <think>, <execute>, <plan> and the completion sentinel."""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Protocol, Tuple

from .schemas import ToolCall


logger = logging.getLogger("uvicorn.error")

EXECUTE_OPEN = "<execute>"
EXECUTE_CLOSE = "</execute>"
THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"
PLAN_OPEN = "<plan>"
PLAN_CLOSE = "</plan>"

_EXECUTE_RE = re.compile(r"<execute>(.*?)</execute>", re.DOTALL)
_EXECUTE_OPEN_RE = re.compile(r"<execute>(.*?)(?=</execute>|<think>|✅\s*任务已完成|\Z)", re.DOTALL)
_EXECUTE_SECTION_RE = re.compile(r"<execute>.*?(?:</execute>|\Z)", re.DOTALL)
_THINK_RE = re.compile(r"<think>.*?</think>", re.DOTALL | re.IGNORECASE)
_THINK_TAIL_RE = re.compile(r"<think>.*\Z", re.DOTALL | re.IGNORECASE)
_PLAN_RE = re.compile(r"<plan>(.*?)</plan>", re.DOTALL | re.IGNORECASE)
_COMPLETION_RE = re.compile(r"^✅\s*任务已完成", re.MULTILINE)


@dataclass
class ParsedResponse:
    tool_calls: List[ToolCall] = field(default_factory=list)
    malformed: List[str] = field(default_factory=list)
    has_execute_block: bool = False
    block_closed: bool = False
    completed: bool = False
    visible_text: str = ""


class ResponseParser(Protocol):
    def parse(self, text: str) -> ParsedResponse:
        ...

    def has_complete_block(self, text: str) -> bool:
        ...


def iter_json_objects(text: str) -> Iterator[str]:
    """Yield balanced top-level {...} substrings in order of appearance.

    Braces inside JSON string literals are ignored, so nested objects and
    values such as "{not a brace}" do not end a candidate early.
    """
    depth = 0
    start = -1
    in_str = False
    escaped = False
    for idx, ch in enumerate(text):
        if in_str:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            if depth > 0:
                in_str = True
            continue
        if ch == "{":
            if depth == 0:
                start = idx
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0 and start >= 0:
                yield text[start : idx + 1]
                start = -1


def strip_think(text: str) -> str:
    cleaned = _THINK_RE.sub("", text or "")
    cleaned = _THINK_TAIL_RE.sub("", cleaned)
    return cleaned.strip()


def strip_execute(text: str) -> str:
    return _EXECUTE_SECTION_RE.sub("", text or "")


def has_completion_sentinel(text: str) -> bool:
    """True when a line (outside any execute section) starts with the sentinel."""
    return bool(_COMPLETION_RE.search(strip_execute(text)))


def extract_execute_section(text: str) -> Tuple[Optional[str], bool]:
    """Return (section, closed) for the first execute block, or (None, False).

    An unterminated block is captured up to the next closing tag, <think>,
    completion sentinel or end of input.
    """
    match = _EXECUTE_RE.search(text or "")
    if match:
        return match.group(1), True
    match = _EXECUTE_OPEN_RE.search(text or "")
    if match:
        return match.group(1), False
    return None, False


def extract_plan_payload(text: str) -> Optional[Dict[str, Any]]:
    match = _PLAN_RE.search(text or "")
    if not match:
        return None
    body = match.group(1).strip()
    try:
        data = json.loads(body)
    except ValueError:
        data = None
        for candidate in iter_json_objects(body):
            try:
                data = json.loads(candidate)
                break
            except ValueError:
                continue
    return data if isinstance(data, dict) else None


class TaggedResponseParser:
    """Extracts {"tool", "arguments"} objects from an <execute> block."""

    def has_complete_block(self, text: str) -> bool:
        open_idx = (text or "").find(EXECUTE_OPEN)
        return open_idx >= 0 and text.find(EXECUTE_CLOSE, open_idx) >= 0

    def parse_tool_calls(self, section: str) -> Tuple[List[ToolCall], List[str]]:
        calls: List[ToolCall] = []
        malformed: List[str] = []
        for candidate in iter_json_objects(section):
            try:
                data = json.loads(candidate)
            except ValueError as exc:
                logger.debug("Skipping malformed tool call JSON: %s", exc)
                malformed.append(candidate)
                continue
            if not isinstance(data, dict) or not data.get("tool"):
                logger.debug("Skipping JSON object without a tool name")
                malformed.append(candidate)
                continue
            args = data.get("arguments")
            if not isinstance(args, dict):
                args = {}
            uuid = data.get("uuid")
            calls.append(
                ToolCall(
                    tool=str(data["tool"]),
                    arguments=args,
                    uuid=str(uuid) if uuid else None,
                )
            )
        return calls, malformed

    def parse(self, text: str) -> ParsedResponse:
        text = text or ""
        section, closed = extract_execute_section(text)
        parsed = ParsedResponse(
            has_execute_block=section is not None,
            block_closed=closed,
            completed=has_completion_sentinel(text),
            visible_text=strip_think(strip_execute(text)),
        )
        if section is None:
            return parsed
        parsed.tool_calls, parsed.malformed = self.parse_tool_calls(section)
        return parsed


class TagStreamFilter:
    """Incrementally split streamed text into text / think / plan segments.

    A short tail is held back between feeds so tags split across chunk
    boundaries are still recognised.
    """

    _TAGS = {
        "text": (
            (re.compile(re.escape(THINK_OPEN), re.IGNORECASE), "think"),
            (re.compile(re.escape(PLAN_OPEN), re.IGNORECASE), "plan"),
        ),
        "think": ((re.compile(re.escape(THINK_CLOSE), re.IGNORECASE), "text"),),
        "plan": ((re.compile(re.escape(PLAN_CLOSE), re.IGNORECASE), "text"),),
    }
    OVERLAP = max(len(THINK_CLOSE), len(PLAN_CLOSE)) - 1

    def __init__(self) -> None:
        self.mode = "text"
        self.buf = ""

    def feed(self, chunk: str) -> List[Tuple[str, str]]:
        segments: List[Tuple[str, str]] = []
        if not chunk:
            return segments
        self.buf += chunk
        while True:
            hit: Optional[Tuple[int, int, str]] = None
            for pattern, next_mode in self._TAGS[self.mode]:
                match = pattern.search(self.buf)
                if match and (hit is None or match.start() < hit[0]):
                    hit = (match.start(), match.end(), next_mode)
            if hit is None:
                if len(self.buf) > self.OVERLAP:
                    emit = self.buf[: -self.OVERLAP]
                    segments.append((self.mode, emit))
                    self.buf = self.buf[-self.OVERLAP :]
                break
            idx, end, next_mode = hit
            if idx:
                segments.append((self.mode, self.buf[:idx]))
            self.buf = self.buf[end:]
            self.mode = next_mode
        return segments

    def flush(self) -> List[Tuple[str, str]]:
        if not self.buf:
            return []
        segments = [(self.mode, self.buf)]
        self.buf = ""
        return segments
