import json
import random
import string
import time
from typing import Callable, Dict, List, Optional, Protocol, Set

import aiosqlite
from pydantic import BaseModel, Field

from .agents import (
    MALFORMED_TOOL_CALL_TEMPLATE,
    TOOL_BATCH_FOOTER,
    TOOL_BATCH_HEADER,
    TOOL_ERROR_TEMPLATE,
    TOOL_SUCCESS_TEMPLATE,
)
from .schemas import ChatMessage, ExecutionState, ToolResult


_BASE36 = string.digits + string.ascii_lowercase
PRUNE_INTERVAL_S = 60.0


def new_session_id() -> str:
    suffix = "".join(random.choice(_BASE36) for _ in range(9))
    return f"session_{int(time.time() * 1000)}_{suffix}"


def format_tool_result(result: ToolResult) -> str:
    if result.ok:
        payload = json.dumps(result.result, ensure_ascii=False, indent=2)
        return TOOL_SUCCESS_TEMPLATE.format(tool=result.tool, payload=payload)
    return TOOL_ERROR_TEMPLATE.format(tool=result.tool, error=result.error)


def format_tool_results(results: List[ToolResult]) -> str:
    if len(results) == 1:
        return format_tool_result(results[0])
    lines = []
    for result in results:
        if result.ok:
            lines.append(f"✅ {result.tool}: {json.dumps(result.result, ensure_ascii=False)}")
        else:
            lines.append(f"❌ {result.tool}: {result.error}")
    return TOOL_BATCH_HEADER + "\n\n".join(lines) + TOOL_BATCH_FOOTER


class Conversation(BaseModel):
    """Append-only message history for one session; messages[0] is the system prompt."""

    session_id: str
    messages: List[ChatMessage] = Field(default_factory=list)
    state: ExecutionState = Field(default_factory=ExecutionState)
    executed_tool_ids: Set[str] = Field(default_factory=set)
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)

    @classmethod
    def start(cls, session_id: str, system_prompt: str) -> "Conversation":
        return cls(session_id=session_id, messages=[ChatMessage(role="system", content=system_prompt)])

    def append(self, role: str, content: str) -> ChatMessage:
        msg = ChatMessage(role=role, content=content)
        self.messages.append(msg)
        self.updated_at = time.time()
        return msg

    def fold_tool_results(self, assistant_text: str, results: List[ToolResult]) -> ChatMessage:
        """Record the assistant turn and the synthetic user message carrying tool output."""
        self.append("assistant", assistant_text)
        content = format_tool_results(results)
        self.state.has_pending_tool_call = False
        self.state.current_tool_response = content
        self.state.tool_call_index += len(results)
        return self.append("user", content)

    def fold_malformed(self, assistant_text: str, raw: str) -> ChatMessage:
        self.append("assistant", assistant_text)
        return self.append("user", MALFORMED_TOOL_CALL_TEMPLATE.format(raw=raw))

    def history(self) -> List[Dict[str, str]]:
        return [m.model_dump() for m in self.messages]


class ConversationStore(Protocol):
    async def get(self, session_id: str) -> Optional[Conversation]:
        ...

    async def set(self, conversation: Conversation) -> None:
        ...

    async def delete(self, session_id: str) -> bool:
        ...

    async def prune(self) -> int:
        ...

    async def count(self) -> int:
        ...


class InMemoryConversationStore:
    """Process-local store with TTL eviction on access, on prune() and periodically on set()."""

    def __init__(
        self,
        ttl_s: Optional[float] = 24 * 60 * 60,
        clock: Callable[[], float] = time.monotonic,
        prune_interval_s: float = PRUNE_INTERVAL_S,
    ):
        self.ttl_s = ttl_s
        self.clock = clock
        self.prune_interval_s = prune_interval_s
        self._last_pruned = clock()
        self._items: Dict[str, Conversation] = {}
        self._touched: Dict[str, float] = {}

    def _expired(self, session_id: str) -> bool:
        if not self.ttl_s:
            return False
        touched = self._touched.get(session_id)
        return touched is not None and self.clock() - touched > self.ttl_s

    async def init(self) -> None:
        return None

    async def get(self, session_id: str) -> Optional[Conversation]:
        if self._expired(session_id):
            await self.delete(session_id)
            return None
        return self._items.get(session_id)

    async def set(self, conversation: Conversation) -> None:
        self._items[conversation.session_id] = conversation
        self._touched[conversation.session_id] = self.clock()
        if self.clock() - self._last_pruned >= self.prune_interval_s:
            await self.prune()

    async def delete(self, session_id: str) -> bool:
        self._touched.pop(session_id, None)
        return self._items.pop(session_id, None) is not None

    async def prune(self) -> int:
        expired = [sid for sid in list(self._items) if self._expired(sid)]
        self._last_pruned = self.clock()
        for sid in expired:
            await self.delete(sid)
        return len(expired)

    async def count(self) -> int:
        await self.prune()
        return len(self._items)


class SqliteConversationStore:
    def __init__(
        self,
        path: str,
        ttl_s: Optional[float] = 24 * 60 * 60,
        prune_interval_s: float = PRUNE_INTERVAL_S,
    ):
        self.path = path
        self.ttl_s = ttl_s
        self.prune_interval_s = prune_interval_s
        self._last_pruned = time.time()

    def _cutoff(self) -> Optional[float]:
        return time.time() - self.ttl_s if self.ttl_s else None

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS conversations(
                    session_id TEXT PRIMARY KEY,
                    payload_json TEXT,
                    created_at REAL,
                    updated_at REAL
                );
                CREATE INDEX IF NOT EXISTS idx_conversations_updated ON conversations(updated_at);
                """
            )
            await db.commit()

    async def get(self, session_id: str) -> Optional[Conversation]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT payload_json, updated_at FROM conversations WHERE session_id=?",
                (session_id,),
            ) as cur:
                row = await cur.fetchone()
        if not row:
            return None
        cutoff = self._cutoff()
        if cutoff is not None and row["updated_at"] < cutoff:
            await self.delete(session_id)
            return None
        return Conversation.model_validate_json(row["payload_json"])

    async def set(self, conversation: Conversation) -> None:
        now = time.time()
        conversation.updated_at = now
        async with aiosqlite.connect(self.path) as db:
            await db.execute(
                "INSERT OR REPLACE INTO conversations(session_id, payload_json, created_at, updated_at) VALUES (?,?,?,?)",
                (conversation.session_id, conversation.model_dump_json(), conversation.created_at, now),
            )
            cutoff = self._cutoff()
            if cutoff is not None and now - self._last_pruned >= self.prune_interval_s:
                self._last_pruned = now
                await db.execute("DELETE FROM conversations WHERE updated_at < ?", (cutoff,))
            await db.commit()

    async def delete(self, session_id: str) -> bool:
        async with aiosqlite.connect(self.path) as db:
            cur = await db.execute("DELETE FROM conversations WHERE session_id=?", (session_id,))
            await db.commit()
            return cur.rowcount > 0

    async def prune(self) -> int:
        cutoff = self._cutoff()
        if cutoff is None:
            return 0
        self._last_pruned = time.time()
        async with aiosqlite.connect(self.path) as db:
            cur = await db.execute("DELETE FROM conversations WHERE updated_at < ?", (cutoff,))
            await db.commit()
            return cur.rowcount

    async def count(self) -> int:
        await self.prune()
        async with aiosqlite.connect(self.path) as db:
            async with db.execute("SELECT COUNT(*) FROM conversations") as cur:
                row = await cur.fetchone()
        return int(row[0]) if row else 0
