"""
WebSocket Broadcaster

Relays pipeline events from the bus to connected dashboard clients.

- every pipeline event goes to ALL connected sockets
- events that carry a jobId are ALSO sent to sockets subscribed to that job
  (subscribed clients therefore receive those events twice)

Bus handlers may run on worker threads. They never touch sockets: they
hand the message to the server event loop, where a single pump task sends
messages in publish order.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Literal, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from services.bus.bus import Event, EventBus, EventDefinition


logger = logging.getLogger(__name__)


class ClientMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["subscribe:jobs", "unsubscribe:jobs", "ping"]
    job_ids: Optional[List[str]] = Field(None, alias="jobIds")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class WebSocketBroadcaster:
    def __init__(self, bus: EventBus, events: Iterable[EventDefinition], strip_prefix: str = ""):
        self.bus = bus
        self.events = list(events)
        self.strip_prefix = strip_prefix

        self.connections: Set[WebSocket] = set()
        self.subscriptions: Dict[str, Set[WebSocket]] = defaultdict(set)

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._outbox: Optional[asyncio.Queue] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._unsubscribers: List = []

    # -----------------------------
    # Lifecycle
    # -----------------------------
    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._outbox = asyncio.Queue()
        self._pump_task = asyncio.create_task(self._pump())
        self._unsubscribers = [self.bus.subscribe(definition, self._on_event) for definition in self.events]
        logger.info("WebSocket broadcaster started", extra={"events": len(self.events)})

    async def stop(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

        if self._pump_task is not None:
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
            self._pump_task = None

        for websocket in list(self.connections):
            try:
                await websocket.close()
            except RuntimeError:
                pass
            self.disconnect(websocket)
        self._loop = None

    # -----------------------------
    # Connections
    # -----------------------------
    async def handle(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self.connections.add(websocket)
        logger.info("WebSocket connected", extra={"connections": len(self.connections)})

        await self._send(
            websocket,
            "connection:established",
            {"message": "Connected to comment analysis updates", "stats": self.get_stats()},
        )

        try:
            while True:
                raw = await websocket.receive_text()
                await self._handle_message(websocket, raw)
        except WebSocketDisconnect:
            pass
        finally:
            self.disconnect(websocket)

    def disconnect(self, websocket: WebSocket) -> None:
        self.connections.discard(websocket)
        for job_id in list(self.subscriptions):
            subscribers = self.subscriptions[job_id]
            subscribers.discard(websocket)
            if not subscribers:
                del self.subscriptions[job_id]
        logger.info("WebSocket disconnected", extra={"connections": len(self.connections)})

    def get_stats(self) -> Dict[str, Any]:
        return {
            "totalConnections": len(self.connections),
            "totalSubscriptions": len(self.subscriptions),
            "subscriptionDetails": [
                {"jobId": job_id, "subscribers": len(sockets)} for job_id, sockets in self.subscriptions.items()
            ],
        }

    async def _handle_message(self, websocket: WebSocket, raw: str) -> None:
        try:
            msg = ClientMessage.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError):
            await self._send(websocket, "error", {"message": "Invalid message format"})
            return

        if msg.type == "subscribe:jobs":
            job_ids = msg.job_ids or []
            for job_id in job_ids:
                self.subscriptions[job_id].add(websocket)
            await self._send(websocket, "subscription:confirmed", {"jobIds": job_ids})

        elif msg.type == "unsubscribe:jobs":
            if msg.job_ids is None:
                job_ids = [job_id for job_id, sockets in self.subscriptions.items() if websocket in sockets]
            else:
                job_ids = msg.job_ids
            for job_id in job_ids:
                subscribers = self.subscriptions.get(job_id)
                if subscribers is None:
                    continue
                subscribers.discard(websocket)
                if not subscribers:
                    del self.subscriptions[job_id]
            await self._send(websocket, "unsubscription:confirmed", {"jobIds": job_ids})

        else:
            await self._send(websocket, "pong", {"stats": self.get_stats()})

    # -----------------------------
    # Delivery
    # -----------------------------
    def _on_event(self, evt: Event) -> None:
        loop = self._loop
        if loop is None or self._outbox is None:
            return

        payload = evt.properties.model_dump(mode="json", by_alias=True)
        message = {
            "type": evt.type[len(self.strip_prefix):] if evt.type.startswith(self.strip_prefix) else evt.type,
            "timestamp": payload.get("timestamp") or _now_iso(),
            "data": payload,
        }
        item = (message, payload.get("jobId"))

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is loop:
            self._outbox.put_nowait(item)
        else:
            loop.call_soon_threadsafe(self._outbox.put_nowait, item)

    async def _pump(self) -> None:
        while True:
            message, job_id = await self._outbox.get()
            await self.broadcast(message)
            if job_id is not None:
                await self.send_to_job(str(job_id), message)

    async def broadcast(self, message: Dict[str, Any]) -> None:
        await self._send_many(list(self.connections), message)

    async def send_to_job(self, job_id: str, message: Dict[str, Any]) -> None:
        await self._send_many(list(self.subscriptions.get(job_id, ())), message)

    async def _send_many(self, sockets: List[WebSocket], message: Dict[str, Any]) -> None:
        dead = []
        for websocket in sockets:
            try:
                await websocket.send_json(message)
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.warning("WebSocket send failed", extra={"error": str(e)})
                dead.append(websocket)
        for websocket in dead:
            self.disconnect(websocket)

    async def _send(self, websocket: WebSocket, type: str, data: Dict[str, Any]) -> None:
        await websocket.send_json({"type": type, "timestamp": _now_iso(), "data": data})
