"""In-memory registry of runs started through the HTTP service."""

from __future__ import annotations

import threading
from typing import Dict, List, Optional

from .._log import get_logger
from ..run import Run

logger = get_logger("server.store")


class RunStore:
    """
    Thread-safe ``run_id -> Run`` map; newest runs list first.

    At most ``max_finished`` finished runs are kept: adding a run evicts the
    oldest finished ones beyond that. Runs still in progress are never evicted.
    """

    def __init__(self, max_finished: int = 100) -> None:
        self.max_finished = max_finished
        self._lock = threading.Lock()
        self._runs: Dict[str, Run] = {}
        self._threads: Dict[str, threading.Thread] = {}

    def add(self, run: Run, thread: Optional[threading.Thread] = None) -> None:
        with self._lock:
            self._runs[run.id] = run
            if thread is not None:
                self._threads[run.id] = thread
            self._prune()

    def _prune(self) -> None:
        finished = sorted((r for r in self._runs.values() if r.finished), key=lambda r: r.created_at)
        excess = len(finished) - max(self.max_finished, 0)
        for run in finished[:max(excess, 0)]:
            del self._runs[run.id]
            self._threads.pop(run.id, None)
            logger.debug("evicted finished run %s", run.id)

    def get(self, run_id: str) -> Optional[Run]:
        with self._lock:
            return self._runs.get(run_id)

    def list(self) -> List[Run]:
        with self._lock:
            runs = list(self._runs.values())
        return sorted(runs, key=lambda r: r.created_at, reverse=True)

    def join(self, run_id: str, timeout: float | None = None) -> bool:
        """Wait for the run's worker thread; True once it has exited."""
        with self._lock:
            thread = self._threads.get(run_id)
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def __len__(self) -> int:
        with self._lock:
            return len(self._runs)
