# collaboration.py — In-memory collaboration sessions for work orders
#
# Two room families per work order:
#   "wo-<id>"    video presence + WebRTC signaling relay
#   "form-<id>"  collaborative editing of the inspection form
#
# All room, lock and reverse-index state lives on one CollaborationManager
# instance created at app start. Nothing here is durable; persisted data
# goes through the store bridge. Map reads and the writes that depend on
# them never straddle an await, so lock acquisition is atomic on the
# event loop.
import logging
from functools import partial
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from sqlalchemy import select

from auth import CurrentUser, AuthService
from database import get_db_context
from errors import AppError, Forbidden, ValidationError
from models import User, UserRole, utcnow
from permissions import can_view, can_write
from work_forms import WorkFormService, normalise_field, stored_value

logger = logging.getLogger("berthwise.ws")

VIDEO_ROOM_PREFIX = "wo-"
FORM_ROOM_PREFIX = "form-"

SIGNAL_EVENTS = {
    "signal:offer": "offer",
    "signal:answer": "answer",
    "signal:ice-candidate": "candidate",
}


def video_room(work_order_id: str) -> str:
    return f"{VIDEO_ROOM_PREFIX}{work_order_id}"


def form_room(work_order_id: str) -> str:
    return f"{FORM_ROOM_PREFIX}{work_order_id}"


def lock_key(entry_id: str, field_name: str) -> str:
    return f"{entry_id}:{field_name}"


@dataclass
class Peer:
    """One authenticated real-time connection"""
    socket_id: str
    user: CurrentUser

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def user_name(self) -> str:
        return self.user.display_name or self.user.email


@dataclass
class Participant:
    socket_id: str
    user_id: str
    user_name: str
    joined_at: datetime = field(default_factory=utcnow)


@dataclass
class FieldLock:
    entry_id: str
    field: str
    user_id: str
    user_name: str
    socket_id: str
    locked_at: datetime = field(default_factory=utcnow)

    def describe(self) -> Dict[str, str]:
        return {
            "entryId": self.entry_id,
            "field": self.field,
            "userId": self.user_id,
            "userName": self.user_name,
        }


def _require(payload: Dict[str, Any], *keys: str) -> Tuple[Any, ...]:
    missing = [k for k in keys if payload.get(k) in (None, "")]
    if missing:
        raise ValidationError(f"Missing {', '.join(missing)}", details={"missing": missing})
    return tuple(payload[k] for k in keys)


# ============================================================
# SESSION MANAGER
# ============================================================

class CollaborationManager:
    """Presence, field locks and relays for every open work order.

    `transport` delivers events (join/leave/send_to/broadcast); `store`
    answers access questions and persists form changes.
    """

    def __init__(self, transport, store):
        self.transport = transport
        self.store = store
        self._rooms: Dict[str, Dict[str, Participant]] = {}
        self._form_locks: Dict[str, Dict[str, FieldLock]] = {}
        self._socket_form_rooms: Dict[str, Set[str]] = {}
        self._form_writers: Set[Tuple[str, str]] = set()

        # event -> (handler, error event)
        self._handlers: Dict[str, Tuple[Callable, str]] = {
            "room:join": (self.join_video_room, "room:error"),
            "room:leave": (self.leave_video_room, "room:error"),
            "room:status": (self.send_room_status, "room:error"),
            "signal:offer": (partial(self.relay_signal, event="signal:offer"), "room:error"),
            "signal:answer": (partial(self.relay_signal, event="signal:answer"), "room:error"),
            "signal:ice-candidate": (partial(self.relay_signal, event="signal:ice-candidate"), "room:error"),
            "form:join": (self.join_form, "form:error"),
            "form:leave": (self.leave_form, "form:error"),
            "form:lock": (self.lock_field, "form:error"),
            "form:unlock": (self.unlock_field, "form:error"),
            "form:update": (self.update_field, "form:error"),
            "form:screenshot": (self.add_screenshot, "form:error"),
            "form:screenshot-remove": (self.remove_screenshot, "form:error"),
            "form:complete": (self.complete_entry, "form:error"),
        }

    def handles(self, event: str) -> bool:
        return event in self._handlers

    async def dispatch(self, peer: Peer, event: str, payload: Dict[str, Any]) -> bool:
        """Run the handler for one inbound event.

        Errors are reported to the offending connection only and never
        propagate to the connection loop. Returns False for unknown events.
        """
        entry = self._handlers.get(event)
        if entry is None:
            return False
        handler, error_event = entry
        try:
            await handler(peer, payload)
        except AppError as e:
            await self.transport.send_to(peer.socket_id, error_event, {"code": e.code, "message": e.message})
        except Exception:
            logger.exception(f"Unhandled error in {event} from {peer.socket_id[:8]}")
            await self.transport.send_to(
                peer.socket_id, error_event, {"code": "INTERNAL_ERROR", "message": "Internal server error"},
            )
        return True

    # ── Video rooms ──────────────────────────────────────────

    def room_status(self, work_order_id: str) -> Dict[str, Any]:
        room = self._rooms.get(video_room(work_order_id), {})
        return {
            "workOrderId": work_order_id,
            "count": len(room),
            "participants": [{"userId": p.user_id, "userName": p.user_name} for p in room.values()],
            "isActive": len(room) > 0,
        }

    async def _broadcast_count(self, work_order_id: str) -> None:
        count = len(self._rooms.get(video_room(work_order_id), {}))
        payload = {"workOrderId": work_order_id, "count": count}
        # Form collaborators see live video presence without joining video
        await self.transport.broadcast(video_room(work_order_id), "room:count", payload)
        await self.transport.broadcast(form_room(work_order_id), "room:count", payload)

    async def join_video_room(self, peer: Peer, payload: Dict[str, Any]) -> None:
        (work_order_id,) = _require(payload, "workOrderId")
        if not await self.store.has_access(work_order_id, peer.user):
            raise Forbidden("Access denied")
        if not self._still_connected(peer):
            return

        room_id = video_room(work_order_id)
        self.transport.join(peer.socket_id, room_id)
        room = self._rooms.setdefault(room_id, {})
        room[peer.socket_id] = Participant(peer.socket_id, peer.user_id, peer.user_name)
        others = [
            {"socketId": p.socket_id, "userId": p.user_id, "userName": p.user_name}
            for p in room.values() if p.socket_id != peer.socket_id
        ]
        count = len(room)

        await self.transport.broadcast(
            room_id, "peer:joined",
            {"socketId": peer.socket_id, "userId": peer.user_id, "userName": peer.user_name},
            exclude=peer.socket_id,
        )
        await self.transport.send_to(
            peer.socket_id, "room:state", {"roomId": room_id, "participants": others, "count": count},
        )
        await self._broadcast_count(work_order_id)
        logger.info(f"{peer.user_name} joined video room {room_id} ({count} present)")

    async def leave_video_room(self, peer: Peer, payload: Dict[str, Any]) -> None:
        (work_order_id,) = _require(payload, "workOrderId")
        await self._leave_video(peer.socket_id, work_order_id)

    async def _leave_video(self, socket_id: str, work_order_id: str) -> None:
        room_id = video_room(work_order_id)
        room = self._rooms.get(room_id)
        if not room or socket_id not in room:
            return
        del room[socket_id]
        if not room:
            del self._rooms[room_id]
        self.transport.leave(socket_id, room_id)

        await self.transport.broadcast(room_id, "peer:left", {"socketId": socket_id}, exclude=socket_id)
        await self._broadcast_count(work_order_id)

    async def send_room_status(self, peer: Peer, payload: Dict[str, Any]) -> None:
        (work_order_id,) = _require(payload, "workOrderId")
        if not await self.store.has_access(work_order_id, peer.user):
            raise Forbidden("Access denied")
        await self.transport.send_to(peer.socket_id, "room:status", self.room_status(work_order_id))

    def _shares_video_room(self, socket_a: str, socket_b: str) -> bool:
        return any(socket_a in room and socket_b in room for room in self._rooms.values())

    async def relay_signal(self, peer: Peer, payload: Dict[str, Any], event: str = "signal:offer") -> None:
        """Forward WebRTC negotiation metadata to one peer, unread."""
        body_key = SIGNAL_EVENTS[event]
        (target,) = _require(payload, "targetSocketId")
        if not self._shares_video_room(peer.socket_id, target):
            logger.debug(f"Dropped {event} from {peer.socket_id[:8]}: no shared room with {str(target)[:8]}")
            return
        await self.transport.send_to(target, event, {
            "fromSocketId": peer.socket_id,
            "userId": peer.user_id,
            "userName": peer.user_name,
            body_key: payload.get(body_key),
        })

    # ── Form rooms ───────────────────────────────────────────

    def _ensure_in_form(self, peer: Peer, work_order_id: str, write: bool = True) -> None:
        if work_order_id not in self._socket_form_rooms.get(peer.socket_id, ()):
            raise Forbidden("Join the form room first", code="NOT_IN_ROOM")
        if write and (peer.socket_id, work_order_id) not in self._form_writers:
            raise Forbidden("Insufficient permissions")

    async def _persist(self, peer: Peer, failure_code: str, operation):
        """Await a store call; any failure is reported to the sender under failure_code.

        Returns (ok, result).
        """
        try:
            return True, await operation
        except AppError as e:
            message = e.message
        except Exception:
            logger.exception(f"Store call failed for {peer.socket_id[:8]} ({failure_code})")
            message = "Internal server error"
        await self.transport.send_to(peer.socket_id, "form:error", {"code": failure_code, "message": message})
        return False, None

    def _still_connected(self, peer: Peer) -> bool:
        # The socket may have been dropped while a store call was awaited
        if self.transport.is_connected(peer.socket_id):
            return True
        logger.debug(f"Ignoring join from closed connection {peer.socket_id[:8]}")
        return False

    async def join_form(self, peer: Peer, payload: Dict[str, Any]) -> None:
        (work_order_id,) = _require(payload, "workOrderId")
        if not await self.store.has_access(work_order_id, peer.user):
            raise Forbidden("Access denied")
        writable = await self.store.can_write(work_order_id, peer.user)
        if not self._still_connected(peer):
            return

        self.transport.join(peer.socket_id, form_room(work_order_id))
        self._socket_form_rooms.setdefault(peer.socket_id, set()).add(work_order_id)
        if writable:
            self._form_writers.add((peer.socket_id, work_order_id))

        locks = self._form_locks.get(work_order_id)
        if locks:
            await self.transport.send_to(peer.socket_id, "form:lock-state", {
                "workOrderId": work_order_id,
                "locks": [lock.describe() for lock in locks.values()],
            })
        logger.info(f"{peer.user_name} joined form room {form_room(work_order_id)}")

    async def leave_form(self, peer: Peer, payload: Dict[str, Any]) -> None:
        (work_order_id,) = _require(payload, "workOrderId")
        await self._leave_form(peer.socket_id, work_order_id)

    async def _leave_form(self, socket_id: str, work_order_id: str) -> None:
        room_id = form_room(work_order_id)
        self.transport.leave(socket_id, room_id)

        released: List[FieldLock] = []
        locks = self._form_locks.get(work_order_id)
        if locks:
            for key, lock in list(locks.items()):
                if lock.socket_id == socket_id:
                    released.append(locks.pop(key))
            if not locks:
                del self._form_locks[work_order_id]

        tracked = self._socket_form_rooms.get(socket_id)
        if tracked is not None:
            tracked.discard(work_order_id)
            if not tracked:
                del self._socket_form_rooms[socket_id]
        self._form_writers.discard((socket_id, work_order_id))

        for lock in released:
            await self.transport.broadcast(room_id, "form:unlocked", {
                "workOrderId": work_order_id, "entryId": lock.entry_id, "field": lock.field,
            })

    async def lock_field(self, peer: Peer, payload: Dict[str, Any]) -> None:
        work_order_id, entry_id, field_name = _require(payload, "workOrderId", "entryId", "field")
        self._ensure_in_form(peer, work_order_id)

        locks = self._form_locks.setdefault(work_order_id, {})
        key = lock_key(entry_id, field_name)
        existing = locks.get(key)
        if existing and existing.socket_id != peer.socket_id:
            await self.transport.send_to(peer.socket_id, "form:lock-denied", {
                "entryId": entry_id,
                "field": field_name,
                "lockedBy": {"userId": existing.user_id, "userName": existing.user_name},
            })
            return

        locks[key] = FieldLock(entry_id, field_name, peer.user_id, peer.user_name, peer.socket_id)
        await self.transport.broadcast(form_room(work_order_id), "form:locked", {
            "workOrderId": work_order_id,
            "entryId": entry_id,
            "field": field_name,
            "userId": peer.user_id,
            "userName": peer.user_name,
        })

    async def unlock_field(self, peer: Peer, payload: Dict[str, Any]) -> None:
        work_order_id, entry_id, field_name = _require(payload, "workOrderId", "entryId", "field")
        locks = self._form_locks.get(work_order_id)
        if not locks:
            return
        key = lock_key(entry_id, field_name)
        lock = locks.get(key)
        if not lock or lock.socket_id != peer.socket_id:
            return
        del locks[key]
        if not locks:
            del self._form_locks[work_order_id]
        await self.transport.broadcast(form_room(work_order_id), "form:unlocked", {
            "workOrderId": work_order_id, "entryId": entry_id, "field": field_name,
        })

    async def update_field(self, peer: Peer, payload: Dict[str, Any]) -> None:
        work_order_id, entry_id, field_name = _require(payload, "workOrderId", "entryId", "field")
        self._ensure_in_form(peer, work_order_id)
        ok, stored = await self._persist(peer, "UPDATE_FAILED", self.store.update_field(
            work_order_id, entry_id, field_name, payload.get("value"), peer.user,
        ))
        if not ok:
            return

        # Peers get the column name and the value as persisted
        column, value = stored
        await self.transport.broadcast(form_room(work_order_id), "form:updated", {
            "workOrderId": work_order_id,
            "entryId": entry_id,
            "field": column,
            "value": value,
            "userId": peer.user_id,
        }, exclude=peer.socket_id)

    async def add_screenshot(self, peer: Peer, payload: Dict[str, Any]) -> None:
        work_order_id, entry_id, data_url = _require(payload, "workOrderId", "entryId", "dataUrl")
        self._ensure_in_form(peer, work_order_id)
        ok, attachments = await self._persist(peer, "SCREENSHOT_FAILED", self.store.add_screenshot(
            work_order_id, entry_id, data_url, peer.user,
        ))
        if not ok:
            return

        # Sender included: attachment ids are assigned server-side
        await self.transport.broadcast(form_room(work_order_id), "form:screenshot-added", {
            "workOrderId": work_order_id,
            "entryId": entry_id,
            "attachments": attachments,
            "userId": peer.user_id,
        })

    async def remove_screenshot(self, peer: Peer, payload: Dict[str, Any]) -> None:
        work_order_id, entry_id = _require(payload, "workOrderId", "entryId")
        self._ensure_in_form(peer, work_order_id)
        index = payload.get("index")
        if isinstance(index, bool) or not isinstance(index, int):
            raise ValidationError("index must be an integer")
        ok, attachments = await self._persist(peer, "SCREENSHOT_FAILED", self.store.remove_screenshot(
            work_order_id, entry_id, index, peer.user,
        ))
        if not ok:
            return

        await self.transport.broadcast(form_room(work_order_id), "form:screenshot-removed", {
            "workOrderId": work_order_id,
            "entryId": entry_id,
            "attachments": attachments,
            "userId": peer.user_id,
        })

    async def complete_entry(self, peer: Peer, payload: Dict[str, Any]) -> None:
        work_order_id, entry_id = _require(payload, "workOrderId", "entryId")
        self._ensure_in_form(peer, work_order_id)
        ok, _ = await self._persist(peer, "COMPLETE_FAILED", self.store.update_field(
            work_order_id, entry_id, "status", "COMPLETED", peer.user,
        ))
        if not ok:
            return

        # Every lock on the entry goes, whoever holds it
        locks = self._form_locks.get(work_order_id)
        if locks:
            for key in [k for k, lock in locks.items() if lock.entry_id == entry_id]:
                del locks[key]
            if not locks:
                del self._form_locks[work_order_id]

        await self.transport.broadcast(form_room(work_order_id), "form:completed", {
            "workOrderId": work_order_id, "entryId": entry_id, "userId": peer.user_id,
        })

    # ── Connection lifecycle ─────────────────────────────────

    async def disconnect(self, socket_id: str) -> None:
        """Drop every presence entry and lock owned by the connection."""
        video_ids = [
            room_id[len(VIDEO_ROOM_PREFIX):]
            for room_id, room in self._rooms.items() if socket_id in room
        ]
        for work_order_id in video_ids:
            await self._leave_video(socket_id, work_order_id)

        for work_order_id in list(self._socket_form_rooms.get(socket_id, ())):
            await self._leave_form(socket_id, work_order_id)
        self._socket_form_rooms.pop(socket_id, None)

    # ── Introspection ────────────────────────────────────────

    def locks_for(self, work_order_id: str) -> Dict[str, FieldLock]:
        return dict(self._form_locks.get(work_order_id, {}))

    def participants(self, work_order_id: str) -> Dict[str, Participant]:
        return dict(self._rooms.get(video_room(work_order_id), {}))

    def form_rooms_of(self, socket_id: str) -> Set[str]:
        return set(self._socket_form_rooms.get(socket_id, ()))

    def get_stats(self) -> Dict[str, int]:
        return {
            "video_rooms": len(self._rooms),
            "video_participants": sum(len(r) for r in self._rooms.values()),
            "form_sessions": len(self._socket_form_rooms),
            "locked_fields": sum(len(l) for l in self._form_locks.values()),
        }


# ============================================================
# STORE BRIDGE
# ============================================================

class StoreBridge:
    """Durable-store operations used by the collaboration layer.

    Each call runs in its own short transaction.
    """

    def __init__(self, session_factory=None):
        self.session_factory = session_factory

    async def load_user(self, claims: Dict[str, Any]) -> Optional[CurrentUser]:
        async with get_db_context(self.session_factory) as db:
            result = await db.execute(select(User).where(User.id == claims["sub"]))
            user = result.scalar_one_or_none()
        if not user or not user.is_active or user.deleted_at is not None:
            return None
        role = user.role.value if isinstance(user.role, UserRole) else user.role
        return CurrentUser(
            id=user.id,
            email=user.email,
            display_name=user.display_name or "",
            organisation_id=user.organisation_id,
            role=role,
            is_active=user.is_active,
            permissions=AuthService.get_user_permissions(role),
        )

    async def has_access(self, work_order_id: str, user: CurrentUser) -> bool:
        async with get_db_context(self.session_factory) as db:
            return await can_view(
                db, work_order_id, user.id, user.organisation_id,
                include_org_scope=user.has_scope("work_orders:view", "work_orders:edit"),
            )

    async def can_write(self, work_order_id: str, user: CurrentUser) -> bool:
        async with get_db_context(self.session_factory) as db:
            return await can_write(db, work_order_id, user)

    async def update_field(
        self, work_order_id: str, entry_id: str, field_name: str, value: Any, user: CurrentUser,
    ) -> Tuple[str, Any]:
        """Persist one field; returns (column, stored value)"""
        column = normalise_field(field_name)
        async with get_db_context(self.session_factory) as db:
            entry = await WorkFormService.update_field(db, entry_id, column, value, user.id, work_order_id=work_order_id)
            return column, stored_value(entry, column)

    async def add_screenshot(self, work_order_id: str, entry_id: str, data_url: str, user: CurrentUser) -> List[str]:
        async with get_db_context(self.session_factory) as db:
            entry = await WorkFormService.add_screenshot(db, entry_id, data_url, user.id, work_order_id=work_order_id)
            return list(entry.attachments or [])

    async def remove_screenshot(self, work_order_id: str, entry_id: str, index: int, user: CurrentUser) -> List[str]:
        async with get_db_context(self.session_factory) as db:
            entry = await WorkFormService.remove_screenshot(db, entry_id, index, work_order_id=work_order_id)
            return list(entry.attachments or [])
