# notifications.py - Best-effort notification fan-out for board activity
# Request handlers only enqueue; worker tasks started with the app deliver
# each event independently to the notification service (or the log).

import os
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

import httpx

logger = logging.getLogger("board-service.notifications")

NOTI_SERVICE_URL = os.getenv("NOTI_SERVICE_URL", "")
INTERNAL_API_KEY = os.getenv("INTERNAL_API_KEY", "")
NOTI_TIMEOUT_SECONDS = float(os.getenv("NOTI_TIMEOUT_SECONDS", "5"))
NOTI_QUEUE_SIZE = int(os.getenv("NOTI_QUEUE_SIZE", "1000"))
NOTI_WORKERS = int(os.getenv("NOTI_WORKERS", "2"))
NOTI_DRAIN_TIMEOUT_SECONDS = float(os.getenv("NOTI_DRAIN_TIMEOUT_SECONDS", "10"))

RESOURCE_TYPE_BOARD = "board"
PREVIEW_LIMIT = 100


class NotificationType(str, Enum):
    BOARD_ASSIGNED = "BOARD_ASSIGNED"
    BOARD_PARTICIPANT_ADDED = "BOARD_PARTICIPANT_ADDED"
    BOARD_UPDATED = "BOARD_UPDATED"
    BOARD_COMMENT_ADDED = "BOARD_COMMENT_ADDED"


class NotificationDeliveryError(Exception):
    pass


@dataclass
class NotificationEvent:
    type: NotificationType
    actor_id: str
    target_user_id: str
    workspace_id: Optional[str]
    resource_type: str
    resource_id: str
    resource_name: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "actorId": self.actor_id,
            "targetUserId": self.target_user_id,
            "workspaceId": self.workspace_id,
            "resourceType": self.resource_type,
            "resourceId": self.resource_id,
            "resourceName": self.resource_name,
            "metadata": self.metadata,
        }


@dataclass
class NotificationResource:
    """What a batch of notifications is about"""
    resource_id: str
    resource_name: str
    workspace_id: Optional[str]
    resource_type: str = RESOURCE_TYPE_BOARD
    metadata: Dict[str, Any] = field(default_factory=dict)


def truncate_preview(text: Optional[str], limit: int = PREVIEW_LIMIT) -> str:
    text = text or ""
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def compute_targets(assignee_id: Optional[str], participant_ids: Optional[Iterable[str]], actor_id: Optional[str]) -> List[str]:
    """Assignee plus participants, first-seen order, never the actor"""
    candidates = [assignee_id] + list(participant_ids or [])
    return _without_actor(candidates, actor_id)


def _without_actor(candidates: Iterable[Optional[str]], actor_id: Optional[str]) -> List[str]:
    targets: List[str] = []
    seen = set()
    for user_id in candidates:
        if not user_id or user_id == actor_id or user_id in seen:
            continue
        seen.add(user_id)
        targets.append(user_id)
    return targets


# ============================================================
# SINKS
# ============================================================

class NotificationSink:
    async def send(self, event: NotificationEvent) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class HttpNotificationSink(NotificationSink):
    """POSTs events to the notification service's internal endpoint"""

    def __init__(self, base_url: str, api_key: str = "", timeout: float = NOTI_TIMEOUT_SECONDS,
                 client: Optional[httpx.AsyncClient] = None):
        self.endpoint = f"{base_url.rstrip('/')}/api/internal/notifications"
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def send(self, event: NotificationEvent) -> None:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["x-internal-api-key"] = self.api_key
        try:
            resp = await self._client.post(self.endpoint, json=event.to_dict(), headers=headers)
        except httpx.HTTPError as e:
            raise NotificationDeliveryError(f"failed to send notification: {e}") from e
        if resp.status_code >= 400:
            raise NotificationDeliveryError(f"notification service returned status {resp.status_code}")

    async def close(self) -> None:
        await self._client.aclose()


class LoggingNotificationSink(NotificationSink):

    async def send(self, event: NotificationEvent) -> None:
        logger.info(
            f"Notification {event.type.value} -> {event.target_user_id} "
            f"({event.resource_type}:{event.resource_id})"
        )


def build_default_sink() -> NotificationSink:
    if NOTI_SERVICE_URL:
        return HttpNotificationSink(NOTI_SERVICE_URL, INTERNAL_API_KEY, NOTI_TIMEOUT_SECONDS)
    logger.warning("NOTI_SERVICE_URL not set; notifications will only be logged")
    return LoggingNotificationSink()


# ============================================================
# DISPATCHER
# ============================================================

class NotificationDispatcher:
    """Bounded queue drained by a fixed pool of worker tasks"""

    def __init__(self, sink: NotificationSink, max_queue_size: int = NOTI_QUEUE_SIZE,
                 workers: int = NOTI_WORKERS, log: Optional[logging.Logger] = None):
        self.sink = sink
        self.max_queue_size = max_queue_size
        self.worker_count = max(1, workers)
        self.log = log or logger
        self._queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []
        self._running = False
        self.delivered = 0
        self.failed = 0
        self.dropped = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize() if self._queue else 0

    async def start(self) -> None:
        if self._running:
            return
        self._queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"notification-worker-{i}")
            for i in range(self.worker_count)
        ]
        self._running = True
        self.log.info(f"Notification dispatcher started ({self.worker_count} workers, queue={self.max_queue_size})")

    def submit(self, event: NotificationEvent) -> bool:
        """Enqueue without blocking; returns False when the event was dropped"""
        if not self._running or self._queue is None:
            self.dropped += 1
            self.log.warning(f"Dispatcher not running, dropping {event.type.value} for {event.target_user_id}")
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            self.log.warning(f"Notification queue full, dropping {event.type.value} for {event.target_user_id}")
            return False
        return True

    async def _worker(self, index: int) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.sink.send(event)
                self.delivered += 1
            except Exception as e:
                self.failed += 1
                self.log.warning(
                    f"Failed to deliver {event.type.value} to {event.target_user_id} "
                    f"(worker {index}): {e}"
                )
            finally:
                self._queue.task_done()

    async def drain(self, timeout: float = NOTI_DRAIN_TIMEOUT_SECONDS) -> bool:
        """Wait until every queued event was handled; False on timeout"""
        if self._queue is None:
            return True
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def shutdown(self, timeout: float = NOTI_DRAIN_TIMEOUT_SECONDS) -> None:
        if not self._running:
            return
        self._running = False
        if not await self.drain(timeout):
            self.log.warning(f"Notification drain timed out; {self.queue_depth} events not delivered")
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        await self.sink.close()
        self.log.info(
            f"Notification dispatcher stopped (delivered={self.delivered} failed={self.failed} dropped={self.dropped})"
        )


# ============================================================
# FAN-OUT
# ============================================================

class NotificationFanout:
    """Turns one board change into one event per interested user"""

    def __init__(self, dispatcher: Optional[NotificationDispatcher], log: Optional[logging.Logger] = None):
        self.dispatcher = dispatcher
        self.log = log or logger

    def notify(
        self,
        kind: NotificationType,
        resource: NotificationResource,
        actor_id: str,
        candidates: Iterable[Optional[str]],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Submit one event per candidate except the actor; returns how many were queued"""
        if self.dispatcher is None:
            return 0
        try:
            targets = _without_actor(candidates, actor_id)
            if not targets:
                return 0

            payload = dict(resource.metadata)
            payload.update(metadata or {})
            queued = 0
            for target in targets:
                event = NotificationEvent(
                    type=kind,
                    actor_id=actor_id,
                    target_user_id=target,
                    workspace_id=resource.workspace_id,
                    resource_type=resource.resource_type,
                    resource_id=resource.resource_id,
                    resource_name=resource.resource_name,
                    metadata=dict(payload),
                )
                if self.dispatcher.submit(event):
                    queued += 1
            return queued
        except Exception as e:
            self.log.error(f"Notification fan-out failed for {kind.value} on {resource.resource_id}: {e}")
            return 0
