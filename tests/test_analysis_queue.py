from __future__ import annotations

import threading

from agent_coordinator.storage.memory import InMemoryAnalysisQueue


def test_dequeue_returns_fifo_batches(analysis_queue: InMemoryAnalysisQueue) -> None:
    analysis_queue.enqueue("a")
    analysis_queue.enqueue_batch(["b", "c", "d"])

    assert analysis_queue.size() == 4
    assert analysis_queue.dequeue(3) == ["a", "b", "c"]
    assert analysis_queue.dequeue(3) == ["d"]
    assert analysis_queue.dequeue(3) == []
    assert analysis_queue.is_empty()


def test_dequeue_with_non_positive_batch_is_empty(analysis_queue: InMemoryAnalysisQueue) -> None:
    analysis_queue.enqueue("a")

    assert analysis_queue.dequeue(0) == []
    assert analysis_queue.size() == 1


def test_concurrent_consumers_receive_disjoint_ids(
    analysis_queue: InMemoryAnalysisQueue,
) -> None:
    analysis_queue.enqueue_batch(str(index) for index in range(500))
    taken: list[str] = []
    lock = threading.Lock()

    def consume() -> None:
        while True:
            batch = analysis_queue.dequeue(7)
            if not batch:
                return
            with lock:
                taken.extend(batch)

    workers = [threading.Thread(target=consume) for _ in range(6)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=5)

    assert len(taken) == 500
    assert set(taken) == {str(index) for index in range(500)}
