# routers/websocket_router.py — Real-time collaboration endpoint
import os
import json
import uuid
import logging
from datetime import datetime, timezone
from typing import Dict, Set, Optional, Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Request

from auth import AuthService
from collaboration import Peer

router = APIRouter(tags=["WebSocket"])
logger = logging.getLogger("berthwise.ws")

WS_MAX_MESSAGE_BYTES = int(os.getenv("WS_MAX_MESSAGE_BYTES", str(5 * 1024 * 1024)))


class ConnectionHub:
    """Socket registry and room membership; delivers JSON event frames"""

    def __init__(self):
        self._sockets: Dict[str, WebSocket] = {}
        self._rooms: Dict[str, Set[str]] = {}  # room -> {socket_ids}
        self.on_dead_socket = None  # async callable(socket_id), set at app creation

    def register(self, socket_id: str, websocket: WebSocket):
        self._sockets[socket_id] = websocket

    def unregister(self, socket_id: str):
        self._sockets.pop(socket_id, None)
        for room in list(self._rooms.keys()):
            self._rooms[room].discard(socket_id)
            if not self._rooms[room]:
                del self._rooms[room]

    def join(self, socket_id: str, room: str):
        self._rooms.setdefault(room, set()).add(socket_id)

    def leave(self, socket_id: str, room: str):
        if room in self._rooms:
            self._rooms[room].discard(socket_id)
            if not self._rooms[room]:
                del self._rooms[room]

    def is_connected(self, socket_id: str) -> bool:
        return socket_id in self._sockets

    def members(self, room: str) -> Set[str]:
        return set(self._rooms.get(room, set()))

    async def send_to(self, socket_id: str, event: str, payload: Dict[str, Any]):
        ws = self._sockets.get(socket_id)
        if ws is None:
            return
        try:
            await ws.send_json({"type": event, **payload})
        except Exception as e:
            logger.warning(f"WS send failed to {socket_id[:8]}: {e}")
            await self._drop(socket_id)

    async def broadcast(self, room: str, event: str, payload: Dict[str, Any], exclude: Optional[str] = None):
        for socket_id in list(self._rooms.get(room, set())):
            if socket_id == exclude:
                continue
            await self.send_to(socket_id, event, payload)

    async def _drop(self, socket_id: str):
        if socket_id not in self._sockets:
            return
        self.unregister(socket_id)
        if self.on_dead_socket:
            await self.on_dead_socket(socket_id)

    def get_stats(self) -> dict:
        return {
            "total_connections": len(self._sockets),
            "rooms": len(self._rooms),
        }


def _extract_token(websocket: WebSocket) -> Optional[str]:
    token = websocket.query_params.get("token")
    if token:
        return token
    auth_header = websocket.headers.get("authorization", "")
    if auth_header.lower().startswith("bearer "):
        return auth_header[7:].strip()
    return None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.websocket("/ws/collaboration")
async def collaboration_endpoint(websocket: WebSocket):
    """Video-room signaling and collaborative form editing"""
    hub: ConnectionHub = websocket.app.state.hub
    collaboration = websocket.app.state.collaboration

    # Authenticate before accepting
    claims = AuthService.decode_access_token(_extract_token(websocket))
    if not claims:
        await websocket.close(code=4001, reason="Authentication failed")
        return
    user = await collaboration.store.load_user(claims)
    if not user:
        await websocket.close(code=4001, reason="User not found or inactive")
        return

    await websocket.accept()
    peer = Peer(socket_id=str(uuid.uuid4()), user=user)
    hub.register(peer.socket_id, websocket)
    logger.info(f"WS connected: {user.email} ({peer.socket_id[:8]})")

    await hub.send_to(peer.socket_id, "connected", {
        "socketId": peer.socket_id,
        "userId": user.id,
        "userName": peer.user_name,
        "timestamp": _now(),
    })

    try:
        while True:
            raw = await websocket.receive_text()
            if len(raw.encode("utf-8")) > WS_MAX_MESSAGE_BYTES:
                await hub.send_to(peer.socket_id, "form:error", {
                    "code": "PAYLOAD_TOO_LARGE",
                    "message": f"Message exceeds {WS_MAX_MESSAGE_BYTES} bytes",
                })
                continue
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                logger.debug(f"WS {peer.socket_id[:8]} sent non-JSON frame")
                continue
            if not isinstance(frame, dict):
                continue

            event = frame.pop("type", "")
            if event == "ping":
                await hub.send_to(peer.socket_id, "pong", {"timestamp": _now()})
            elif not await collaboration.dispatch(peer, event, frame):
                logger.debug(f"WS {peer.socket_id[:8]} sent unknown event {event!r}")

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
    finally:
        # Always runs: a dead-socket drop may already have cleaned up, and
        # disconnect is safe to repeat
        hub.unregister(peer.socket_id)
        await collaboration.disconnect(peer.socket_id)
        logger.info(f"WS disconnected: {user.email} ({peer.socket_id[:8]})")


@router.get("/ws/stats")
async def websocket_stats(request: Request):
    """Connection, room and lock counts"""
    return {
        **request.app.state.hub.get_stats(),
        **request.app.state.collaboration.get_stats(),
    }
