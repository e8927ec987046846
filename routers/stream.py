"""
WebSocket relay between browser clients and the Ditto streaming server.
Client messages are validated before they go upstream; rendered frames come back untouched.
"""

import asyncio
import json
import logging

import websockets
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState
from websockets.exceptions import WebSocketException

from config import DITTO_WS_URL
from errors import StreamProtocolError
from stream import TERMINAL_EVENTS, parse_client_message, parse_server_message

router = APIRouter(tags=["stream"])


def connect_upstream(url: str = DITTO_WS_URL):
    return websockets.connect(url)


async def _send_error(websocket: WebSocket, message: str):
    if websocket.client_state == WebSocketState.CONNECTED:
        await websocket.send_json({"type": "error", "message": message})


async def _client_to_upstream(websocket: WebSocket, upstream):
    while True:
        try:
            raw = await websocket.receive_text()
        except WebSocketDisconnect:
            logging.info("🔌 Avatar stream client disconnected")
            return
        try:
            message = parse_client_message(raw)
        except StreamProtocolError as e:
            await _send_error(websocket, e.message)
            continue
        await upstream.send(json.dumps(message))


async def _upstream_to_client(websocket: WebSocket, upstream):
    async for raw in upstream:
        text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
        await websocket.send_text(text)
        try:
            event = parse_server_message(text)
        except StreamProtocolError:
            continue
        if isinstance(event, TERMINAL_EVENTS):
            return


async def _relay(websocket: WebSocket, upstream):
    tasks = [
        asyncio.create_task(_client_to_upstream(websocket, upstream)),
        asyncio.create_task(_upstream_to_client(websocket, upstream)),
    ]
    done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)
    for task in done:
        task.result()


@router.websocket("/avatar-stream")
async def avatar_stream(websocket: WebSocket):
    """Relays one avatar stream until Ditto completes or either side goes away."""
    await websocket.accept()
    logging.info("🔌 Avatar stream client connected")
    try:
        async with connect_upstream() as upstream:
            await _relay(websocket, upstream)
    except (OSError, asyncio.TimeoutError, WebSocketException) as e:
        logging.error(f"❌ Ditto stream failed: {e}")
        await _send_error(websocket, f"Ditto stream failed: {e}")
    finally:
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.close()
