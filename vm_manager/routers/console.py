"""Log tail, live console stream and command endpoints."""

import logging

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse

from vm_manager.auth import require_api_key
from vm_manager.dispatcher import CommandDispatcher
from vm_manager.log_relay import LogRelay
from vm_manager.models import CommandRequest
from vm_manager.state import get_dispatcher, get_log_relay

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/servers", tags=["console"], dependencies=[Depends(require_api_key)])


@router.get("/{container_id}/logs")
async def get_logs(
    container_id: str,
    tail: int = Query(100, ge=1, le=10000),
    raw: bool = False,
    relay: LogRelay = Depends(get_log_relay),
):
    """Last ``tail`` log lines, filtered to informational lines unless ``raw``."""
    logs = await relay.tail(container_id, lines=tail, raw=raw)
    return {"logs": logs, "containerId": container_id}


@router.get("/{container_id}/console")
async def console_stream(container_id: str, relay: LogRelay = Depends(get_log_relay)):
    """Live server-sent-event stream of the container's output.

    Each event is ``data: {"type": "connected"|"log"|"error", "message": ...}``.
    """
    return StreamingResponse(
        relay.stream(container_id),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.post("/{container_id}/command")
async def send_command(
    container_id: str,
    request: CommandRequest,
    dispatcher: CommandDispatcher = Depends(get_dispatcher),
):
    """Deliver a command to the server.

    Console commands are best-effort: ``confirmed`` is only true when the
    delivery path returned output.
    """
    logger.info(f"Command for {container_id}: {request.command}")
    result = await dispatcher.dispatch(container_id, request.command)
    return {
        "output": result.output,
        "command": request.command,
        "containerId": container_id,
        "method": result.method,
        "delivered": result.delivered,
        "confirmed": result.confirmed,
    }
