import asyncio
import json
import threading
import time
from datetime import datetime, timezone

from app.core.notifications import NotificationManager, NotificationManagerClosed
from app.core.serialization import HEARTBEAT, NotificationEvent
from app.infra.sse import StreamTransport, TransportClosed


class RecordingTransport:
    def __init__(self):
        self.chunks = []
        self.closed = False
        self._callbacks = []

    async def write(self, chunk):
        if self.closed:
            raise TransportClosed("closed")
        self.chunks.append(chunk)

    def close(self):
        if self.closed:
            return
        self.closed = True
        for cb in self._callbacks:
            cb()

    def add_close_callback(self, cb):
        self._callbacks.append(cb)

    def messages(self):
        return [json.loads(c[len("data: "):]) for c in self.chunks if c.startswith("data: ")]


class BrokenTransport(RecordingTransport):
    def __init__(self):
        super().__init__()
        self.attempts = 0

    async def write(self, chunk):
        self.attempts += 1
        raise ConnectionResetError("peer gone")


class StalledTransport(RecordingTransport):
    async def write(self, chunk):
        await asyncio.sleep(60)


class CountingStore:
    def __init__(self):
        self.records = []

    def append(self, event):
        self.records.append(event)
        return len(self.records), event.created_at


class FailingStore:
    def append(self, event):
        raise RuntimeError("database unavailable")


class SlowStore:
    def append(self, event):
        time.sleep(0.5)
        return 99, event.created_at


def _event(name="Payment", notif="user1 nạp 100xu"):
    return NotificationEvent(name=name, icon="💵", notif=notif, path="/payments")


def test_each_subscriber_receives_event_once():
    async def scenario():
        mgr = NotificationManager(store=CountingStore())
        transports = [RecordingTransport() for _ in range(20)]
        await asyncio.gather(*(asyncio.to_thread(mgr.subscribe, t) for t in transports))
        assert mgr.subscriber_count == 20
        await mgr.publish(_event())
        return transports

    transports = asyncio.run(scenario())
    for t in transports:
        assert len(t.messages()) == 1
        assert t.messages()[0]["_id"] == "1"


def test_failed_subscriber_is_isolated_and_removed():
    async def scenario():
        mgr = NotificationManager(store=CountingStore())
        a, b, c = RecordingTransport(), BrokenTransport(), RecordingTransport()
        for t in (a, b, c):
            mgr.subscribe(t)
        await mgr.publish(_event(notif="first"))
        assert mgr.subscriber_count == 2
        await mgr.publish(_event(notif="second"))
        return mgr, a, b, c

    mgr, a, b, c = asyncio.run(scenario())
    assert [m["notif"] for m in a.messages()] == ["first", "second"]
    assert [m["notif"] for m in c.messages()] == ["first", "second"]
    assert b.attempts == 1
    assert b.closed


def test_closed_transport_is_removed_via_callback():
    mgr = NotificationManager()
    t = RecordingTransport()
    sub = mgr.subscribe(t)
    assert mgr.subscriber_count == 1
    t.close()
    assert mgr.subscriber_count == 0
    assert sub.alive is False


def test_order_preserved_per_subscriber():
    async def scenario():
        mgr = NotificationManager(store=CountingStore())
        t = RecordingTransport()
        mgr.subscribe(t)
        for n in ("E1", "E2", "E3"):
            await mgr.publish(_event(notif=n))
        return t

    t = asyncio.run(scenario())
    assert [m["notif"] for m in t.messages()] == ["E1", "E2", "E3"]


def test_concurrent_publishes_keep_invocation_order():
    async def scenario():
        mgr = NotificationManager(store=CountingStore())
        t = RecordingTransport()
        mgr.subscribe(t)
        await asyncio.gather(*(mgr.publish(_event(notif=f"E{i}")) for i in range(10)))
        return t

    t = asyncio.run(scenario())
    assert [m["notif"] for m in t.messages()] == [f"E{i}" for i in range(10)]


def test_heartbeat_only_prunes_failed_writes():
    async def scenario():
        mgr = NotificationManager()
        good, bad = RecordingTransport(), BrokenTransport()
        mgr.subscribe(good)
        mgr.subscribe(bad)
        await mgr.heartbeat()
        return mgr, good

    mgr, good = asyncio.run(scenario())
    assert good.chunks == [HEARTBEAT]
    assert mgr.subscriber_count == 1


def test_store_failure_still_delivers_without_id():
    async def scenario():
        mgr = NotificationManager(store=FailingStore())
        t = RecordingTransport()
        mgr.subscribe(t)
        await mgr.publish(_event())
        return t

    t = asyncio.run(scenario())
    [msg] = t.messages()
    assert "_id" not in msg
    assert msg["name"] == "Payment"
    assert msg["icon"] == "💵"
    assert msg["path"] == "/payments"
    assert msg["data-creation"].endswith("Z")


def test_slow_store_is_bounded():
    async def scenario():
        mgr = NotificationManager(store=SlowStore(), persist_timeout=0.05)
        t = RecordingTransport()
        mgr.subscribe(t)
        await mgr.publish(_event())
        return t

    t = asyncio.run(scenario())
    [msg] = t.messages()
    assert "_id" not in msg


def test_stalled_subscriber_does_not_block_others():
    async def scenario():
        mgr = NotificationManager(write_timeout=0.05)
        fast, stalled = RecordingTransport(), StalledTransport()
        mgr.subscribe(stalled)
        mgr.subscribe(fast)
        await mgr.publish(_event())
        return mgr, fast, stalled

    mgr, fast, stalled = asyncio.run(scenario())
    assert len(fast.messages()) == 1
    assert stalled.closed
    assert mgr.subscriber_count == 1


def test_late_subscriber_only_sees_later_events():
    async def scenario():
        mgr = NotificationManager(store=CountingStore())
        a = RecordingTransport()
        mgr.subscribe(a)
        await mgr.publish(_event(name="Payment", notif="user1 nạp 100xu"))
        b = RecordingTransport()
        mgr.subscribe(b)
        await mgr.publish(_event(name="Payment", notif="user2 nạp 50xu"))
        return a, b

    a, b = asyncio.run(scenario())
    assert [m["notif"] for m in a.messages()] == ["user1 nạp 100xu", "user2 nạp 50xu"]
    assert [m["notif"] for m in b.messages()] == ["user2 nạp 50xu"]
    datetime.fromisoformat(a.messages()[0]["data-creation"].replace("Z", "+00:00"))


def test_explicit_creation_time_is_kept():
    when = datetime(2025, 3, 1, 8, 30, tzinfo=timezone.utc)
    msg = NotificationEvent(name="n", icon="i", notif="x", path="/p", created_at=when).to_message()
    assert msg["data-creation"] == "2025-03-01T08:30:00.000Z"
    assert "_id" not in msg


def test_start_is_idempotent_and_heartbeat_fires():
    async def scenario():
        mgr = NotificationManager(heartbeat_seconds=0.05)
        mgr.start()
        task = mgr._heartbeat_task
        mgr.start()
        assert mgr._heartbeat_task is task
        t = RecordingTransport()
        mgr.subscribe(t)
        await asyncio.sleep(0.18)
        await mgr.shutdown()
        return t

    t = asyncio.run(scenario())
    assert t.chunks.count(HEARTBEAT) >= 2


def test_notify_from_worker_thread():
    async def scenario():
        store = CountingStore()
        mgr = NotificationManager(store=store)
        mgr.start()
        t = RecordingTransport()
        mgr.subscribe(t)
        worker = threading.Thread(
            target=mgr.notify, args=("Payment Notification", "💵", "hello", "/payments")
        )
        worker.start()
        await asyncio.to_thread(worker.join)
        for _ in range(100):
            if t.messages():
                break
            await asyncio.sleep(0.01)
        await mgr.shutdown()
        return t, store

    t, store = asyncio.run(scenario())
    assert [m["notif"] for m in t.messages()] == ["hello"]
    assert len(store.records) == 1


def test_notify_without_running_manager_is_dropped():
    mgr = NotificationManager(store=CountingStore())
    t = RecordingTransport()
    mgr.subscribe(t)
    mgr.notify("n", "i", "x", "/p")
    assert t.chunks == []


def test_shutdown_closes_streams_and_rejects_subscribers():
    async def scenario():
        mgr = NotificationManager()
        mgr.start()
        transport = StreamTransport(maxsize=10)
        mgr.subscribe(transport)
        await mgr.publish(_event(notif="before shutdown"))
        await mgr.shutdown()
        chunks = [c async for c in transport.stream()]
        try:
            mgr.subscribe(StreamTransport())
        except NotificationManagerClosed:
            rejected = True
        else:
            rejected = False
        return mgr, chunks, rejected

    mgr, chunks, rejected = asyncio.run(scenario())
    assert len(chunks) == 1 and "before shutdown" in chunks[0]
    assert mgr.subscriber_count == 0
    assert rejected


def test_full_stream_queue_evicts_slow_reader():
    async def scenario():
        mgr = NotificationManager(write_timeout=0.05)
        slow, fast = StreamTransport(maxsize=1), StreamTransport(maxsize=1)
        mgr.subscribe(slow)
        mgr.subscribe(fast)

        async def read(transport):
            return [c async for c in transport.stream()]

        reader = asyncio.ensure_future(read(fast))
        for n in ("E1", "E2", "E3"):
            await mgr.publish(_event(notif=n))
        count_before_shutdown = mgr.subscriber_count
        slow_chunks = [c async for c in slow.stream()]
        await mgr.shutdown()
        fast_chunks = await reader
        return slow, count_before_shutdown, slow_chunks, fast_chunks

    slow, count, slow_chunks, fast_chunks = asyncio.run(scenario())
    assert slow.closed
    assert count == 1
    # the one chunk that fit in the queue is still flushed to the client
    assert len(slow_chunks) == 1 and "E1" in slow_chunks[0]
    notifs = [json.loads(c[len("data: "):])["notif"] for c in fast_chunks]
    assert notifs == ["E1", "E2", "E3"]


def test_shutdown_delivers_notifications_queued_before_it():
    async def scenario():
        mgr = NotificationManager(store=CountingStore())
        mgr.start()
        transport = StreamTransport(maxsize=10)
        mgr.subscribe(transport)
        mgr.notify("Payment Notification", "💵", "queued-before-shutdown", "/payments")
        await mgr.shutdown()
        mgr.notify("Payment Notification", "💵", "after-shutdown", "/payments")
        return [c async for c in transport.stream()]

    chunks = asyncio.run(scenario())
    assert len(chunks) == 1
    assert json.loads(chunks[0][len("data: "):])["notif"] == "queued-before-shutdown"
