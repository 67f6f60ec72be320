from __future__ import annotations
import asyncio
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Protocol, Set

from app.core.config import settings
from app.core.serialization import HEARTBEAT, NotificationEvent, format_sse, utcnow
from app.infra.store import NotificationStore

logger = logging.getLogger("core.notifications")


class Transport(Protocol):
    closed: bool

    async def write(self, chunk: str) -> None: ...

    def close(self) -> None: ...

    def add_close_callback(self, cb) -> None: ...


class NotificationManagerClosed(Exception):
    pass


@dataclass(eq=False)
class Subscriber:
    transport: Transport
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    alive: bool = True


class NotificationManager:
    """Fans notifications out to every connected admin stream.

    One instance per process, built by the app factory. ``subscribe`` and
    ``notify`` may be called from any thread; ``publish`` and ``heartbeat``
    run on the loop captured by ``start``.
    """

    def __init__(
        self,
        store: Optional[NotificationStore] = None,
        heartbeat_seconds: Optional[float] = None,
        persist_timeout: Optional[float] = None,
        write_timeout: Optional[float] = None,
        shutdown_grace: Optional[float] = None,
    ) -> None:
        self.store = store
        self.heartbeat_seconds = heartbeat_seconds or settings.NOTIFY_HEARTBEAT_SECONDS
        self.persist_timeout = persist_timeout or settings.NOTIFY_PERSIST_TIMEOUT_SECONDS
        self.write_timeout = write_timeout or settings.NOTIFY_WRITE_TIMEOUT_SECONDS
        self.shutdown_grace = shutdown_grace or settings.NOTIFY_SHUTDOWN_GRACE_SECONDS

        self._subscribers: Dict[str, Subscriber] = {}
        self._lock = threading.Lock()
        # serializes publishes so each subscriber sees them in processing order
        self._publish_lock = asyncio.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._pending: Set[asyncio.Future] = set()
        # _closed refuses new subscribers and notify calls; _stopped refuses publishes
        self._closed = False
        self._stopped = False

    # -------- lifecycle --------
    def start(self) -> None:
        if self._heartbeat_task is not None:
            return
        if self._closed:
            raise NotificationManagerClosed("notification manager was shut down")
        self._loop = asyncio.get_running_loop()
        self._heartbeat_task = self._loop.create_task(self._heartbeat_loop())
        logger.info(
            "Notification heartbeat started every %.1fs", self.heartbeat_seconds
        )

    @property
    def running(self) -> bool:
        return self._heartbeat_task is not None and not self._closed

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    async def shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        await self._drain()
        self._stopped = True

        with self._lock:
            remaining = list(self._subscribers.values())
            self._subscribers.clear()
        for sub in remaining:
            sub.alive = False
            sub.transport.close()
        logger.info(
            "Notification manager stopped", extra={"subscribers": len(remaining)}
        )

    async def _drain(self) -> None:
        """Wait for publishes queued before shutdown, bounded by the grace period."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.shutdown_grace
        # run publishes handed over from worker threads just before shutdown
        await asyncio.sleep(0)
        if self._pending:
            _, not_done = await asyncio.wait(set(self._pending), timeout=self.shutdown_grace)
            if not_done:
                logger.warning(
                    "Shutdown grace period expired with %d publishes pending", len(not_done)
                )
                return
        # direct publish() callers are not tracked; wait for the one holding the lock
        try:
            await asyncio.wait_for(
                self._publish_lock.acquire(), max(deadline - loop.time(), 0)
            )
        except asyncio.TimeoutError:
            logger.warning("Shutdown grace period expired with a publish in flight")
        else:
            self._publish_lock.release()

    # -------- subscribers --------
    def subscribe(self, transport: Transport) -> Subscriber:
        sub = Subscriber(transport=transport)
        with self._lock:
            if self._closed:
                raise NotificationManagerClosed("notification manager was shut down")
            self._subscribers[sub.id] = sub
            count = len(self._subscribers)
        transport.add_close_callback(lambda: self._remove(sub))
        logger.info(
            "Subscriber connected",
            extra={"subscriber_id": sub.id, "subscribers": count},
        )
        return sub

    def _remove(self, sub: Subscriber) -> None:
        with self._lock:
            removed = self._subscribers.pop(sub.id, None)
            count = len(self._subscribers)
        sub.alive = False
        if removed is not None:
            logger.info(
                "Subscriber removed",
                extra={"subscriber_id": sub.id, "subscribers": count},
            )

    def _snapshot(self) -> List[Subscriber]:
        with self._lock:
            return list(self._subscribers.values())

    async def _deliver(self, sub: Subscriber, chunk: str) -> bool:
        try:
            await asyncio.wait_for(sub.transport.write(chunk), self.write_timeout)
            return True
        except Exception as e:
            logger.info(
                "Dropping subscriber after failed write: %r",
                e,
                extra={"subscriber_id": sub.id},
            )
            return False

    async def _broadcast(self, chunk: str) -> int:
        subs = [s for s in self._snapshot() if s.alive]
        if not subs:
            return 0
        results = await asyncio.gather(*(self._deliver(s, chunk) for s in subs))
        delivered = 0
        for sub, ok in zip(subs, results):
            if ok:
                delivered += 1
                continue
            self._remove(sub)
            # ends the response stream; the close callback is a no-op by now
            sub.transport.close()
        return delivered

    # -------- publishing --------
    async def _persist(self, event: NotificationEvent) -> NotificationEvent:
        if self.store is None:
            return event
        try:
            new_id, created_at = await asyncio.wait_for(
                asyncio.to_thread(self.store.append, event), self.persist_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Notification store timed out after %.1fs; broadcasting without id",
                self.persist_timeout,
            )
            return event
        except Exception:
            logger.exception("Failed to store notification; broadcasting without id")
            return event
        return event.with_id(new_id, created_at)

    async def publish(self, event: NotificationEvent) -> None:
        if self._stopped:
            logger.warning("Notification dropped, manager is shut down", extra={"event": event.name})
            return
        async with self._publish_lock:
            stored = await self._persist(event)
            delivered = await self._broadcast(format_sse(stored.to_message()))
        logger.info(
            "Notification broadcast",
            extra={
                "event": stored.name,
                "notification_id": stored.id,
                "subscribers": delivered,
            },
        )

    async def heartbeat(self) -> None:
        await self._broadcast(HEARTBEAT)

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_seconds)
            try:
                await self.heartbeat()
            except Exception:
                logger.exception("heartbeat failed")

    def notify(
        self,
        name: str,
        icon: str,
        notif: str,
        path: str,
        created_at: Optional[datetime] = None,
    ) -> None:
        """Fire-and-forget publish, safe to call from the loop or a worker thread."""
        event = NotificationEvent(
            name=name, icon=icon, notif=notif, path=path, created_at=created_at or utcnow()
        )
        loop = self._loop
        if loop is None or self._closed or loop.is_closed():
            logger.warning("Notification dropped, manager not running", extra={"event": name})
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._schedule(event)
        else:
            loop.call_soon_threadsafe(self._schedule, event)

    def _schedule(self, event: NotificationEvent) -> None:
        # runs on the manager's loop so every publish task is tracked for the drain
        fut = asyncio.ensure_future(self.publish(event))
        self._pending.add(fut)
        fut.add_done_callback(self._pending.discard)
        fut.add_done_callback(self._log_failure)

    @staticmethod
    def _log_failure(fut) -> None:
        if fut.cancelled():
            return
        exc = fut.exception()
        if exc is not None:
            logger.error("Notification publish failed", exc_info=exc)
