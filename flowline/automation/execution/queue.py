"""
Flowline Execution Queue

Holds executions that could not start because their workflow is already
running ``max_concurrent`` executions.
"""

from __future__ import annotations

import heapq
import itertools
from typing import List, Optional, Tuple

from flowline.automation.types import Execution, QueueDiscipline


class ExecutionQueue:
    """
    Waiting executions for one workflow, ordered by the queue discipline.

    - fifo: oldest first
    - lifo: newest first
    - priority: highest ``priority`` first, oldest first among equals
    """

    def __init__(self, discipline: QueueDiscipline = QueueDiscipline.FIFO):
        self.discipline = discipline
        self._heap: List[Tuple[int, int, Execution]] = []
        self._counter = itertools.count()

    def __len__(self) -> int:
        return len(self._heap)

    def _key(self, execution: Execution, seq: int) -> Tuple[int, int]:
        if self.discipline == QueueDiscipline.LIFO:
            return (0, -seq)
        if self.discipline == QueueDiscipline.PRIORITY:
            return (-execution.priority, seq)
        return (0, seq)

    def push(self, execution: Execution) -> None:
        primary, secondary = self._key(execution, next(self._counter))
        heapq.heappush(self._heap, (primary, secondary, execution))

    def pop(self) -> Optional[Execution]:
        if not self._heap:
            return None
        return heapq.heappop(self._heap)[2]

    def remove(self, execution_id: str) -> Optional[Execution]:
        """Take a queued execution out, e.g. when it is cancelled before starting."""
        for index, (_, _, execution) in enumerate(self._heap):
            if execution.id == execution_id:
                self._heap.pop(index)
                heapq.heapify(self._heap)
                return execution
        return None

    def pending(self) -> List[Execution]:
        """Queued executions in the order they would start."""
        return [entry[2] for entry in sorted(self._heap, key=lambda e: (e[0], e[1]))]
