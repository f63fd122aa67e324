import argparse
import json
import sys
from typing import Any, Dict, List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:3001"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _print_event(event: Dict[str, Any]) -> None:
    kind = event.get("type")
    if kind == "chunk":
        print(event.get("content", ""), end="", flush=True)
    elif kind == "tool_executing":
        print(f"\n[tool] {', '.join(event.get('tools') or [])} ...")
    elif kind == "tool_call":
        print(f"[tool] {event.get('tool')} ok: {json.dumps(event.get('result'), ensure_ascii=False)[:400]}")
    elif kind == "tool_error":
        print(f"[tool] {event.get('tool')} failed: {event.get('error')}")
    elif kind == "task_completed":
        print("\n[done] task completed")
    elif kind == "done":
        print(f"\n[session {event.get('session_id')}] {event.get('reason')} after {event.get('iterations')} iteration(s)")
    elif kind == "error":
        print(f"\n[error] {event.get('error')}")


def run_chat(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    payload = {"message": args.message, "sessionId": args.session, "clearHistory": args.clear}
    failed = False
    with httpx.Client(timeout=None) as client:
        with client.stream("POST", _join_url(base, "/chat/stream"), json=payload) as resp:
            if resp.status_code >= 400:
                resp.read()
                print(f"Chat request failed: HTTP {resp.status_code} {resp.text}")
                return 1
            for line in resp.iter_lines():
                if not line.startswith("data:"):
                    continue
                try:
                    event = json.loads(line[len("data:"):].strip())
                except ValueError:
                    continue
                if event.get("type") == "error":
                    failed = True
                _print_event(event)
    return 1 if failed else 0


def run_clear(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.post(_join_url(base, "/chat/clear"), json={"sessionId": args.session}, timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to clear history: HTTP {resp.status_code}")
            return 1
        data = resp.json()
    print("Cleared." if data.get("cleared") else "No stored history for that session.")
    return 0


def run_tools(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.get(_join_url(base, "/tools"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to list tools: HTTP {resp.status_code}")
            return 1
        tools = resp.json().get("tools") or []
    for tool in tools:
        print(f"- {tool.get('name')}: {tool.get('description')}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Map agent CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    chat = subparsers.add_parser("chat", help="Send a message and stream the agent's work")
    chat.add_argument("message", help="Message for the agent")
    chat.add_argument("--session", default=None, help="Session id to continue")
    chat.add_argument("--clear", action="store_true", help="Clear the session history first")

    clear = subparsers.add_parser("clear", help="Clear a session's history")
    clear.add_argument("--session", required=True, help="Session id")

    subparsers.add_parser("tools", help="List available tools")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "chat":
        return run_chat(args)
    if args.command == "clear":
        return run_clear(args)
    if args.command == "tools":
        return run_tools(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
