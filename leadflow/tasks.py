"""In-process registry of running tasks keyed by entity id."""

from __future__ import annotations

import threading
from collections import OrderedDict
from enum import Enum
from typing import List, Set


class TaskState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class TaskRegistry:
    """Track which keys have work in flight in this process.

    ``begin`` inserts a key and returns ``False`` when the key is already
    running; ``end`` removes it. The final states of the last ``keep_finished``
    tasks are remembered, older keys and keys never seen report
    :attr:`TaskState.IDLE`.
    """

    def __init__(self, keep_finished: int = 1000) -> None:
        self._running: Set[str] = set()
        self._finished: OrderedDict[str, TaskState] = OrderedDict()
        self._keep_finished = keep_finished
        self._lock = threading.Lock()

    def begin(self, key: str) -> bool:
        with self._lock:
            if key in self._running:
                return False
            self._running.add(key)
            self._finished.pop(key, None)
            return True

    def end(self, key: str, state: TaskState = TaskState.SUCCEEDED) -> None:
        if state in (TaskState.RUNNING, TaskState.IDLE):
            raise ValueError("end() requires a final state")
        with self._lock:
            if key not in self._running:
                raise KeyError(f"Task {key} is not running")
            self._running.discard(key)
            self._finished[key] = state
            while len(self._finished) > self._keep_finished:
                self._finished.popitem(last=False)

    def status(self, key: str) -> TaskState:
        with self._lock:
            if key in self._running:
                return TaskState.RUNNING
            return self._finished.get(key, TaskState.IDLE)

    def running(self) -> List[str]:
        with self._lock:
            return sorted(self._running)

    def __len__(self) -> int:
        with self._lock:
            return len(self._running) + len(self._finished)
