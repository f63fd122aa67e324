import time
from datetime import datetime
from typing import Any, Dict, Optional


STATS_ACTIONS = {
    "conversation_created",
    "conversation_ended",
    "message_sent",
    "tool_call_success",
    "tool_call_failed",
    "response_time",
    "reset",
}


def utc_now() -> str:
    return datetime.utcnow().isoformat() + "Z"


class UsageStats:
    """In-process usage counters for the agent endpoints."""

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.total_conversations = 0
        self.active_conversations = 0
        self.total_messages = 0
        self.total_tool_calls = 0
        self.successful_tool_calls = 0
        self.failed_tool_calls = 0
        self.average_response_time = 0.0
        self.last_reset_time = utc_now()
        self._reset_monotonic = time.monotonic()

    def record(self, action: str, data: Optional[Dict[str, Any]] = None) -> None:
        if action not in STATS_ACTIONS:
            raise ValueError(f"Unknown stats action: {action}")
        if action == "conversation_created":
            self.total_conversations += 1
            self.active_conversations += 1
        elif action == "conversation_ended":
            self.active_conversations = max(0, self.active_conversations - 1)
        elif action == "message_sent":
            self.total_messages += 1
        elif action == "tool_call_success":
            self.total_tool_calls += 1
            self.successful_tool_calls += 1
        elif action == "tool_call_failed":
            self.total_tool_calls += 1
            self.failed_tool_calls += 1
        elif action == "response_time":
            value = (data or {}).get("responseTime") or 0
            try:
                value = float(value)
            except (TypeError, ValueError):
                value = 0.0
            # Exponential moving average with weight 1/2.
            self.average_response_time = (self.average_response_time + value) / 2
        elif action == "reset":
            self.reset()

    def snapshot(self) -> Dict[str, Any]:
        rate = 0.0
        if self.total_tool_calls:
            rate = self.successful_tool_calls / self.total_tool_calls * 100
        return {
            "totalConversations": self.total_conversations,
            "activeConversations": self.active_conversations,
            "totalMessages": self.total_messages,
            "totalToolCalls": self.total_tool_calls,
            "successfulToolCalls": self.successful_tool_calls,
            "failedToolCalls": self.failed_tool_calls,
            "averageResponseTime": self.average_response_time,
            "lastResetTime": self.last_reset_time,
            "successRate": f"{rate:.2f}%",
            "uptime": int((time.monotonic() - self._reset_monotonic) * 1000),
        }
