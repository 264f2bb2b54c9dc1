"""Run a batch of callables on a fixed number of worker threads."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable


class Executor:
    """Collects tasks and runs them on a bounded pool of workers."""

    def __init__(self, workers_num: int) -> None:
        if workers_num < 1:
            raise ValueError("workers_num must be at least 1")
        self.workers_num = workers_num
        self._tasks: list[Callable[[], Any]] = []
        self.results: list[Any] = []

    def execute(self, task: Callable[[], Any]) -> None:
        """Queue a task to be run by the next call to ``run``."""
        self._tasks.append(task)

    def run(self) -> list[Any]:
        """Run every queued task and return the results in completion order."""
        with ThreadPoolExecutor(max_workers=self.workers_num) as pool:
            futures = [pool.submit(task) for task in self._tasks]
            self.results = [future.result() for future in as_completed(futures)]
        return self.results