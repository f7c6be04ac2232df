# agent/pool.py
from __future__ import annotations

import queue
import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterable, Iterator, List, Optional

from stageflow._log import get_logger
from stageflow.errors import CancellationRequested, LeaseTimeout
from stageflow.model import DEFAULT_POOL, PoolSpec

from .agent import Agent

logger = get_logger("pool")

AgentFactory = Callable[[str], Agent]


class AgentPool:
    """
    A bounded set of agents.

    Two separate limits share the same capacity:
      - ``lease()`` hands one agent to one job, exclusively, until the job ends
      - ``try_admit()``/``release_stage()`` bound how many stages using this
        pool may be Running at once (the scheduler's Ready -> Running gate)

    Stage admission never holds an agent, so a stage waiting on its own jobs
    cannot starve them.
    """

    def __init__(self, name: str, capacity: int, factory: AgentFactory, poll_interval: float = 0.05):
        if capacity < 1:
            raise ValueError(f"Pool '{name}' capacity must be >= 1, got {capacity}")
        self.name = name
        self.capacity = capacity
        self.poll_interval = poll_interval
        self._free: "queue.Queue[Agent]" = queue.Queue()
        for i in range(capacity):
            self._free.put(factory(f"{name}-{i + 1}"))
        self._lock = threading.Lock()
        self._running_stages = 0
        self._leased = 0
        self.peak_leased = 0

    # ---- agent leases ----

    @contextmanager
    def lease(
        self,
        cancel_event: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
    ) -> Iterator[Agent]:
        """Lease one agent; it goes back to the pool on every exit path."""
        agent = self._acquire(cancel_event, deadline)
        try:
            yield agent
        finally:
            with self._lock:
                self._leased -= 1
            self._free.put(agent)
            logger.debug("released %s", agent.name)

    def _acquire(self, cancel_event: Optional[threading.Event], deadline: Optional[float]) -> Agent:
        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise CancellationRequested(f"cancelled while waiting for pool '{self.name}'")
            wait = self.poll_interval
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise LeaseTimeout(self.name)
                wait = min(wait, remaining)
            try:
                agent = self._free.get(timeout=wait)
            except queue.Empty:
                continue
            with self._lock:
                self._leased += 1
                self.peak_leased = max(self.peak_leased, self._leased)
            logger.debug("leased %s", agent.name)
            return agent

    @property
    def leased(self) -> int:
        with self._lock:
            return self._leased

    # ---- stage admission ----

    def try_admit(self) -> bool:
        with self._lock:
            if self._running_stages >= self.capacity:
                return False
            self._running_stages += 1
            return True

    def release_stage(self) -> None:
        with self._lock:
            if self._running_stages > 0:
                self._running_stages -= 1

    @property
    def running_stages(self) -> int:
        with self._lock:
            return self._running_stages


class PoolSet:
    """Named pools for one run; unnamed references go to ``default``."""

    def __init__(self, pools: Iterable[AgentPool]):
        self._pools: Dict[str, AgentPool] = {p.name: p for p in pools}
        if DEFAULT_POOL not in self._pools:
            raise ValueError(f"PoolSet requires a '{DEFAULT_POOL}' pool")

    def get(self, name: Optional[str]) -> AgentPool:
        return self._pools[name or DEFAULT_POOL]

    def __contains__(self, name: str) -> bool:
        return name in self._pools

    def names(self) -> List[str]:
        return list(self._pools)

    @classmethod
    def from_specs(
        cls,
        specs: Iterable[PoolSpec],
        factory: AgentFactory,
        *,
        default_capacity: int = 1,
        poll_interval: float = 0.05,
    ) -> "PoolSet":
        pools = [AgentPool(s.name, s.capacity, factory, poll_interval) for s in specs]
        if not any(p.name == DEFAULT_POOL for p in pools):
            pools.append(AgentPool(DEFAULT_POOL, default_capacity, factory, poll_interval))
        return cls(pools)
