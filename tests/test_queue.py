from __future__ import annotations

import logging
import threading
from concurrent.futures import Future

from ci_script.queue import JobQueue, LocalQueue

from conftest import make_job


def test_remove_is_fifo_and_never_blocks():
    queue: LocalQueue[str, int] = LocalQueue()
    assert queue.remove() is None
    queue.add("a", 1)
    queue.add("b", 2)
    queue.add("c", 3)
    assert [queue.remove(), queue.remove(), queue.remove()] == [1, 2, 3]
    assert queue.remove() is None


def test_same_key_keeps_last_value():
    queue: LocalQueue[str, str] = LocalQueue()
    queue.add("k", "first")
    queue.add("k", "second")
    assert len(queue) == 1
    assert queue.remove() == "second"


def test_watcher_receives_next_add_instead_of_storage():
    queue = JobQueue()
    watcher: Future = Future()
    queue.register_watcher(watcher)
    assert queue.pending_watchers == 1

    job = make_job()
    queue.add("key", job)

    assert watcher.result(timeout=1) == job
    assert len(queue) == 0
    assert queue.pending_watchers == 0


def test_watchers_are_served_in_registration_order():
    queue: LocalQueue[str, int] = LocalQueue()
    first: Future = Future()
    second: Future = Future()
    queue.register_watcher(first)
    queue.register_watcher(second)
    queue.add("a", 1)
    queue.add("b", 2)
    assert first.result(timeout=1) == 1
    assert second.result(timeout=1) == 2


def test_register_with_stored_item_fulfils_immediately():
    queue: LocalQueue[str, int] = LocalQueue()
    queue.add("a", 1)
    watcher: Future = Future()
    queue.register_watcher(watcher)
    assert watcher.done()
    assert watcher.result() == 1
    assert queue.pending_watchers == 0
    assert len(queue) == 0


def test_cancelled_watcher_is_skipped():
    queue: LocalQueue[str, int] = LocalQueue()
    gone: Future = Future()
    alive: Future = Future()
    queue.register_watcher(gone)
    queue.register_watcher(alive)
    gone.cancel()

    queue.add("a", 1)

    assert alive.result(timeout=1) == 1
    assert len(queue) == 0


def test_all_watchers_cancelled_stores_item():
    queue: LocalQueue[str, int] = LocalQueue()
    gone: Future = Future()
    queue.register_watcher(gone)
    gone.cancel()
    queue.add("a", 1)
    assert len(queue) == 1
    assert queue.remove() == 1


def test_discard_watcher_returns_delivered_item():
    queue: LocalQueue[str, int] = LocalQueue()
    watcher: Future = Future()
    queue.register_watcher(watcher)
    queue.add("a", 1)
    assert queue.discard_watcher(watcher) == 1


def test_discard_pending_watcher_cancels_it():
    queue: LocalQueue[str, int] = LocalQueue()
    watcher: Future = Future()
    queue.register_watcher(watcher)
    assert queue.discard_watcher(watcher) is None
    assert watcher.cancelled()
    queue.add("a", 1)
    assert len(queue) == 1


def test_concurrent_producers_and_consumers_deliver_each_item_once():
    queue: LocalQueue[str, int] = LocalQueue()
    received = []
    received_lock = threading.Lock()
    total = 200

    def consume():
        while True:
            watcher: Future = Future()
            queue.register_watcher(watcher)
            item = watcher.result(timeout=5)
            if item < 0:
                return
            with received_lock:
                received.append(item)

    def produce(start):
        for i in range(start, total, 4):
            queue.add(f"item-{i}", i)

    consumers = [threading.Thread(target=consume) for _ in range(3)]
    producers = [threading.Thread(target=produce, args=(n,)) for n in range(4)]
    for thread in consumers + producers:
        thread.start()
    for thread in producers:
        thread.join()
    for n in range(len(consumers)):
        queue.add(f"stop-{n}", -1)
    for thread in consumers:
        thread.join(timeout=5)

    assert sorted(received) == list(range(total))


def test_queue_logs_under_its_module_name(caplog):
    queue = JobQueue()
    with caplog.at_level(logging.DEBUG, logger="ci_script.queue"):
        queue.add("k", make_job())
    assert [record.name for record in caplog.records] == ["ci_script.queue"]
    assert "Queued k" in caplog.text
