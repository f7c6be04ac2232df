"""Tests for agent pools: exclusive leases and stage admission."""

import threading
import time

import pytest

from stageflow.agent.pool import AgentPool, PoolSet
from stageflow.errors import CancellationRequested, LeaseTimeout
from stageflow.model import PoolSpec
from tests.conftest import FakeAgentFactory


def _make_pool(capacity=1, name="default") -> AgentPool:
    return AgentPool(name, capacity, FakeAgentFactory(), poll_interval=0.01)


class TestLease:
    def test_agents_named_after_pool(self):
        pool = _make_pool(2, name="linux")
        with pool.lease() as a, pool.lease() as b:
            assert {a.name, b.name} == {"linux-1", "linux-2"}
            assert pool.leased == 2

    def test_released_on_exception(self):
        pool = _make_pool()
        with pytest.raises(RuntimeError):
            with pool.lease():
                raise RuntimeError("step blew up")
        assert pool.leased == 0
        with pool.lease(deadline=time.monotonic() + 1) as agent:
            assert agent.name == "default-1"

    def test_timeout_when_exhausted(self):
        pool = _make_pool()
        with pool.lease():
            with pytest.raises(LeaseTimeout):
                with pool.lease(deadline=time.monotonic() + 0.05):
                    pass

    def test_cancel_while_waiting(self):
        pool = _make_pool()
        cancel = threading.Event()
        cancel.set()
        with pool.lease():
            with pytest.raises(CancellationRequested):
                with pool.lease(cancel_event=cancel):
                    pass

    def test_peak_leased(self):
        pool = _make_pool(3)
        with pool.lease(), pool.lease():
            pass
        assert pool.peak_leased == 2

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            _make_pool(0)


class TestAdmission:
    def test_try_admit_bounded_by_capacity(self):
        pool = _make_pool(2)
        assert pool.try_admit()
        assert pool.try_admit()
        assert not pool.try_admit()
        pool.release_stage()
        assert pool.running_stages == 1
        assert pool.try_admit()

    def test_admission_does_not_hold_agents(self):
        pool = _make_pool(1)
        assert pool.try_admit()
        with pool.lease(deadline=time.monotonic() + 1):
            assert pool.leased == 1


class TestPoolSet:
    def test_default_added(self):
        pools = PoolSet.from_specs([PoolSpec("gpu", 2)], FakeAgentFactory(), default_capacity=3)
        assert sorted(pools.names()) == ["default", "gpu"]
        assert pools.get(None).capacity == 3
        assert pools.get("gpu").capacity == 2

    def test_declared_default_wins(self):
        pools = PoolSet.from_specs([PoolSpec("default", 5)], FakeAgentFactory(), default_capacity=1)
        assert pools.get(None).capacity == 5

    def test_requires_default(self):
        with pytest.raises(ValueError):
            PoolSet([_make_pool(1, name="gpu")])
