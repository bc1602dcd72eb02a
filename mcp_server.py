"""MCP server for OpenClaw Mission Control.

Exposes the mission-control HTTP endpoints as read-only MCP tools so AI clients
can inspect the live pipeline stage, workforce, activity log and the approvals
waiting on an operator.
"""

from __future__ import annotations

import json
import os
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from mcp.server.fastmcp import FastMCP

BASE_URL = os.environ.get("MISSION_CONTROL_BASE_URL", "http://127.0.0.1:8888").rstrip("/")
REQUEST_TIMEOUT_SEC = float(os.environ.get("MISSION_CONTROL_MCP_TIMEOUT_SEC", "10"))

mcp = FastMCP("openclaw-mission-control")


def _failure(error: str, details: str, status_code: int | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"ok": False, "base_url": BASE_URL, "error": error, "details": details}
    if status_code is not None:
        payload["status_code"] = status_code
    return payload


def _fetch_json(path: str) -> dict[str, Any]:
    request = Request(url=f"{BASE_URL}{path}", method="GET")
    try:
        with urlopen(request, timeout=REQUEST_TIMEOUT_SEC) as response:
            charset = response.headers.get_content_charset() or "utf-8"
            body = response.read().decode(charset)
            return {
                "ok": True,
                "base_url": BASE_URL,
                "status_code": int(response.status),
                "data": json.loads(body) if body else {},
            }
    except HTTPError as exc:
        try:
            details = exc.read().decode("utf-8", errors="replace")
        except Exception:
            details = ""
        return _failure(f"HTTP error {exc.code}", details or str(exc.reason or ""), status_code=int(exc.code))
    except URLError as exc:
        return _failure("Connection error", str(exc.reason))
    except json.JSONDecodeError as exc:
        return _failure("Invalid JSON response", str(exc))
    except OSError as exc:
        return _failure("Unexpected error", str(exc))


@mcp.tool()
def observatory_ready() -> dict[str, Any]:
    """Return log-file presence and gateway connectivity from /ready."""
    return _fetch_json("/ready")


@mcp.tool()
def observatory_state(include_activity: bool = True) -> dict[str, Any]:
    """Return the full live snapshot from /state, optionally without the activity log."""
    payload = _fetch_json("/state")
    if payload.get("ok") and not include_activity and isinstance(payload.get("data"), dict):
        payload["data"].pop("activity", None)
    return payload


@mcp.tool()
def pending_approvals() -> dict[str, Any]:
    """Return approvals waiting on an operator decision, most recent first."""
    return _fetch_json("/approvals")


@mcp.tool()
def activity_log(agent: str = "") -> dict[str, Any]:
    """Return recent tool activity, optionally filtered to one agent."""
    payload = _fetch_json("/state")
    if not payload.get("ok"):
        return payload
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    rows = data.get("activity") if isinstance(data.get("activity"), list) else []
    wanted = agent.strip().lower()
    if wanted:
        rows = [row for row in rows if str(row.get("user", "")).lower() == wanted]
    return {"ok": True, "base_url": BASE_URL, "data": {"activity": rows, "stage": data.get("pipeline", {}).get("stage")}}


if __name__ == "__main__":
    mcp.run()
