import asyncio
import json
import logging

from fastapi import APIRouter, HTTPException, Query, Request, WebSocket
from starlette.websockets import WebSocketState

from livescribe.core.config import AUDIO_TARGET_SAMPLE_RATE
from livescribe.core.logger import log_event
from livescribe.errors import NoActiveConversation, ProviderUnavailable
from livescribe.runtime import get_runtime
from livescribe.schemas import AudioAcceptedResponse, ConversationStatusResponse

logger = logging.getLogger("livescribe.api.conversations")

router = APIRouter()


@router.post("/api/conversations/{conversation_id}/start", response_model=ConversationStatusResponse)
async def start_conversation(conversation_id: str):
    coordinator = get_runtime().coordinator
    try:
        await coordinator.start_conversation(conversation_id)
    except ProviderUnavailable as exc:
        raise HTTPException(status_code=503, detail=exc.message)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return coordinator.status(conversation_id)


@router.post("/api/conversations/{conversation_id}/stop")
async def stop_conversation(conversation_id: str):
    ended = await get_runtime().coordinator.end_conversation(conversation_id)
    if not ended:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"conversation_id": conversation_id, "status": "ended"}


@router.get("/api/conversations/{conversation_id}", response_model=ConversationStatusResponse)
async def conversation_status(conversation_id: str):
    snapshot = get_runtime().coordinator.status(conversation_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return snapshot


@router.post("/api/conversations/{conversation_id}/audio", status_code=202, response_model=AudioAcceptedResponse)
async def submit_audio(
    conversation_id: str,
    request: Request,
    sample_rate: int = Query(default=AUDIO_TARGET_SAMPLE_RATE, gt=0),
    channels: int = Query(default=1, gt=0),
):
    payload = await request.body()
    try:
        delivered = get_runtime().coordinator.submit_audio(conversation_id, payload, sample_rate, channels)
    except NoActiveConversation as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return {"conversation_id": conversation_id, "delivered": delivered}


@router.websocket("/ws/conversations/{conversation_id}/audio")
async def conversation_audio_ws(
    websocket: WebSocket,
    conversation_id: str,
    sample_rate: int = AUDIO_TARGET_SAMPLE_RATE,
    channels: int = 1,
):
    runtime = get_runtime()
    coordinator = runtime.coordinator
    await websocket.accept()

    if sample_rate <= 0 or channels <= 0:
        await websocket.send_json({"type": "error", "code": "invalid_audio_format"})
        await websocket.close(code=1003)
        return

    owns_conversation = coordinator.registry.active_pipeline(conversation_id) is None
    try:
        await coordinator.start_conversation(conversation_id)
    except ProviderUnavailable as exc:
        await websocket.send_json({"type": "error", "code": exc.code, "message": exc.message})
        await websocket.close(code=1011)
        return

    queue = runtime.bus.subscribe(conversation_id)
    log_event("conversation_ws", "connected", conversation_id, owns_conversation=owns_conversation)

    async def forward_events():
        while True:
            payload = await queue.get()
            if websocket.client_state != WebSocketState.CONNECTED:
                return
            await websocket.send_json(payload)
            if payload.get("type") == "terminal_failure":
                return

    async def receive_audio():
        while True:
            msg = await websocket.receive()
            if msg["type"] == "websocket.disconnect":
                return
            if msg.get("bytes"):
                try:
                    coordinator.submit_audio(conversation_id, msg["bytes"], sample_rate, channels)
                except NoActiveConversation:
                    await websocket.send_json({"type": "error", "code": "no_active_conversation"})
                    return
                continue
            if msg.get("text"):
                try:
                    payload = json.loads(msg["text"])
                except ValueError:
                    payload = None
                if not isinstance(payload, dict):
                    logger.warning("WS text frame ignored | conversation_id=%s", conversation_id)
                    continue
                if str(payload.get("type") or "").lower() == "stop":
                    return

    tasks = [asyncio.create_task(forward_events()), asyncio.create_task(receive_audio())]
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            if task.exception() is not None:
                logger.warning("WS task ended with error | conversation_id=%s err=%s", conversation_id, task.exception())
    finally:
        runtime.bus.unsubscribe(conversation_id, queue)
        if owns_conversation:
            await coordinator.end_conversation(conversation_id)
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.close()
        log_event("conversation_ws", "disconnected", conversation_id)
