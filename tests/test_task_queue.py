from __future__ import annotations

import threading

from agent_coordinator.storage.memory import InMemoryTaskQueue
from agent_coordinator.storage.models import SubTask


def test_task_queue_is_fifo_and_preserves_extra_fields(task_queue: InMemoryTaskQueue) -> None:
    task_queue.enqueue_many(
        [
            SubTask(title="schema", persona="backend", subtask_id="T1", estimate="2h"),
            SubTask(title="endpoints", persona="backend", subtask_id="T2"),
        ]
    )

    assert task_queue.size() == 2
    first = task_queue.dequeue_one()
    assert first is not None
    assert first.subtask_id == "T1"
    assert first.payload()["estimate"] == "2h"
    second = task_queue.dequeue_one()
    assert second is not None and second.subtask_id == "T2"
    assert task_queue.dequeue_one() is None
    assert task_queue.is_empty()


def test_task_queue_concurrent_consumers_never_share_items(
    task_queue: InMemoryTaskQueue,
) -> None:
    task_queue.enqueue_many(
        SubTask(title=f"task {index}", persona="generalist", subtask_id=str(index))
        for index in range(200)
    )
    taken: list[str] = []
    lock = threading.Lock()

    def consume() -> None:
        while True:
            item = task_queue.dequeue_one()
            if item is None:
                return
            with lock:
                taken.append(item.subtask_id or "")

    workers = [threading.Thread(target=consume) for _ in range(8)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=5)

    assert len(taken) == 200
    assert len(set(taken)) == 200
