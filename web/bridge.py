"""
WebSocket bridge between a browser client and its AgentRuntime.

Inbound JSON messages:
    {"type": "submit", "text": ..., "images": [...], "task_id": ..., "project_id": ...}
    {"type": "abort", "task_id": ...}
    {"type": "confirm", "id": ..., "approved": true, "remember": false}
    {"type": "config", "model": ..., "endpoint": ..., "api_key": ..., "max_tokens": ...}
    {"type": "status"}

Every runtime notification is forwarded as ``AgentEvent.to_dict()``.
"""

import asyncio
import json
import logging
import uuid
from typing import Any, Dict, Optional, Set

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from runtime.core import AgentRuntime
from runtime.events import AgentEvent
from runtime.registry import TaskBusy
from web.state import _WSRef, get_manager

logger = logging.getLogger(__name__)

router = APIRouter()


async def _run_submit(runtime: AgentRuntime, data: Dict[str, Any], wsr: _WSRef) -> None:
    try:
        await runtime.submit(
            data.get("text", ""),
            images=data.get("images") or None,
            task_id=data.get("task_id") or None,
            project_id=data.get("project_id") or None,
        )
    except TaskBusy as e:
        await wsr.send_json({"type": "error", "content": str(e), "data": {"task_id": e.task_id, "busy": True}})
    except ValueError as e:
        await wsr.send_json({"type": "error", "content": str(e)})
    except Exception as e:
        logger.exception("Submission failed")
        await wsr.send_json({"type": "error", "content": f"Internal error: {e}"})


def _config_payload(runtime: AgentRuntime) -> Dict[str, Any]:
    rc = runtime.runtime_config
    return {
        "model_id": rc.model_id,
        "max_tokens": rc.max_tokens,
        "endpoint_url": rc.endpoint_url,
        "has_api_key": bool(rc.api_key),
    }


@router.websocket("/ws")
async def websocket_endpoint(ws: WebSocket, session_id: Optional[str] = None):
    await ws.accept()
    sid = session_id or uuid.uuid4().hex[:12]
    runtime = get_manager().get_or_create(sid)
    wsr = _WSRef(ws)
    running: Set[asyncio.Task] = set()

    async def forward(event: AgentEvent) -> None:
        await wsr.send_json(event.to_dict())

    runtime.add_listener(forward)
    await wsr.send_json({
        "type": "init",
        "session_id": sid,
        "data": {**_config_payload(runtime), "folders": runtime.folders.paths()},
    })
    logger.info(f"WS connected (session {sid})")

    try:
        while True:
            raw = await ws.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                await wsr.send_json({"type": "error", "content": "Invalid JSON"})
                continue
            if not isinstance(data, dict):
                await wsr.send_json({"type": "error", "content": "Expected a JSON object"})
                continue

            msg_type = data.get("type", "")

            if msg_type == "submit":
                task = asyncio.ensure_future(_run_submit(runtime, data, wsr))
                running.add(task)
                task.add_done_callback(running.discard)
                continue

            if msg_type == "abort":
                await runtime.abort(data.get("task_id") or None)
                continue

            if msg_type == "confirm":
                ok = runtime.respond_to_confirmation(
                    str(data.get("id", "")),
                    bool(data.get("approved")),
                    bool(data.get("remember")),
                )
                if not ok:
                    await wsr.send_json({
                        "type": "error",
                        "content": f"Unknown or already answered confirmation: {data.get('id')}",
                    })
                continue

            if msg_type == "config":
                try:
                    runtime.update_runtime_config(
                        model=data.get("model"),
                        endpoint=data.get("endpoint"),
                        api_key=data.get("api_key"),
                        max_tokens=data.get("max_tokens"),
                    )
                except (TypeError, ValueError) as e:
                    await wsr.send_json({"type": "error", "content": f"Invalid config: {e}"})
                    continue
                await wsr.send_json({"type": "config", "data": _config_payload(runtime)})
                continue

            if msg_type == "status":
                await wsr.send_json({"type": "status", "data": runtime.status()})
                continue

            await wsr.send_json({"type": "error", "content": f"Unknown message type: {msg_type!r}"})

    except WebSocketDisconnect:
        # Running tasks keep going; the idle sweep reclaims the runtime later.
        logger.info(f"WS disconnected (session {sid}); {len(running)} submission(s) still running")
    finally:
        runtime.remove_listener(forward)
        wsr.ws = None
