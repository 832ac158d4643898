"""Tests for the warm container pool and its background refill task."""

from __future__ import annotations

import asyncio
import itertools

import pytest

from conftest import make_env, make_settings
from sandpool.config import PoolConfig, RefillConfig
from sandpool.errors import RuntimeCommandError
from sandpool.pool import ContainerPool
from sandpool.types import Container


class StubManager:
    """Creates bare Container records; optionally slow or failing."""

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.created: list[Container] = []
        self.destroyed: list[Container] = []
        self.fail_after: int | None = None
        self.fail_envs: set[str] = set()
        self.gate: asyncio.Event | None = None
        self._ids = itertools.count(1)

    async def create_container(self, env) -> Container:
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if env.id in self.fail_envs or (
            self.fail_after is not None and len(self.created) >= self.fail_after
        ):
            raise RuntimeCommandError(["create"], 125, "out of disk space")
        n = next(self._ids)
        container = Container(id=f"c{n}", name=f"sandpool-{n}", environment_id=env.id)
        self.created.append(container)
        return container

    async def destroy_container(self, container: Container) -> None:
        container.destroyed = True
        self.destroyed.append(container)


@pytest.fixture
def stub() -> StubManager:
    return StubManager()


@pytest.fixture
def pool(stub) -> ContainerPool:
    return ContainerPool(stub, batch_size=8, interval=0.01, timeout=1.0)


class TestRefill:
    async def test_refill_reaches_pool_size(self, pool, stub):
        env = make_env(pool_size=3)
        pool.initialize([env])

        await pool.refill()

        assert pool.quantities() == {"python": 3}
        assert len(stub.created) == 3

    async def test_borrow_then_refill_restores_target(self, pool, stub):
        env = make_env(pool_size=3)
        pool.initialize([env])
        await pool.refill()

        borrowed = await pool.borrow(env)
        assert pool.quantities() == {"python": 2}
        assert borrowed in stub.created

        await pool.refill()
        assert pool.quantities() == {"python": 3}
        assert len(stub.created) == 4

    async def test_refill_is_a_noop_when_full(self, pool, stub):
        env = make_env(pool_size=2)
        pool.initialize([env])
        await pool.refill()
        await pool.refill()
        assert len(stub.created) == 2

    async def test_pool_size_zero_never_prewarms(self, pool, stub):
        env = make_env(pool_size=0)
        pool.initialize([env])
        await pool.refill()
        assert pool.quantities() == {"python": 0}
        assert stub.created == []

    async def test_batch_size_caps_one_run(self, stub):
        pool = ContainerPool(stub, batch_size=2)
        env = make_env(pool_size=5)
        pool.initialize([env])

        assert await pool.refill_for_environment(env) == 2
        assert await pool.refill_for_environment(env) == 2
        assert await pool.refill_for_environment(env) == 1
        assert pool.quantities() == {"python": 5}

    async def test_overlapping_refills_do_not_overshoot(self, stub):
        stub.delay = 0.01
        pool = ContainerPool(stub)
        env = make_env(pool_size=4)
        pool.initialize([env])

        await asyncio.gather(pool.refill(), pool.refill(), pool.refill())

        assert len(stub.created) == 4
        assert pool.quantities() == {"python": 4}

    async def test_failure_keeps_successful_creations(self, pool, stub):
        stub.fail_after = 2
        env = make_env(pool_size=5)
        pool.initialize([env])

        added = await pool.refill_for_environment(env)

        assert added == 2
        assert pool.quantities() == {"python": 2}
        # In-flight slots of the failed run are released for the next one.
        stub.fail_after = None
        assert await pool.refill_for_environment(env) == 3

    async def test_one_environment_failing_does_not_stop_others(self, stub):
        pool = ContainerPool(stub, concurrent=False)
        stub.fail_envs = {"python"}
        python, ruby = make_env(pool_size=1), make_env(id="ruby", pool_size=1)
        pool.initialize([python, ruby])

        await pool.refill()

        assert pool.quantities() == {"python": 0, "ruby": 1}

    async def test_inactive_pool_does_not_refill(self, stub):
        pool = ContainerPool(stub, active=False)
        env = make_env(pool_size=3)
        pool.initialize([env])
        await pool.refill()
        assert stub.created == []


class TestBorrow:
    async def test_borrow_from_empty_pool_creates_on_demand(self, pool, stub):
        env = make_env(pool_size=2)
        pool.initialize([env])

        container = await pool.borrow(env)

        assert container is stub.created[0]
        assert pool.quantities() == {"python": 0}

    async def test_borrow_is_first_in_first_out(self, pool):
        env = make_env(pool_size=2)
        pool.initialize([env])
        await pool.refill()
        first = await pool.borrow(env)
        second = await pool.borrow(env)
        assert (first.name, second.name) == ("sandpool-1", "sandpool-2")

    async def test_inactive_pool_always_creates(self, stub):
        pool = ContainerPool(stub, active=False)
        env = make_env(pool_size=2)
        pool.initialize([env])
        await pool.borrow(env)
        await pool.borrow(env)
        assert len(stub.created) == 2

    async def test_unknown_environment_creates(self, pool, stub):
        container = await pool.borrow(make_env(id="go"))
        assert container.environment_id == "go"


class TestRefillTask:
    async def test_background_task_fills_pool(self, pool):
        env = make_env(pool_size=2)
        pool.initialize([env])

        pool.start_refill_task()
        for _ in range(100):
            if pool.quantities()["python"] == 2:
                break
            await asyncio.sleep(0.01)
        await pool.stop_refill_task()

        assert pool.quantities() == {"python": 2}

    async def test_duplicate_start_is_ignored(self, pool):
        pool.initialize([])
        pool.start_refill_task()
        task = pool._refill_task
        pool.start_refill_task()
        assert pool._refill_task is task
        await pool.stop_refill_task()

    async def test_over_budget_run_is_abandoned(self, stub):
        stub.gate = asyncio.Event()
        pool = ContainerPool(stub, interval=0.01, timeout=0.05)
        env = make_env(pool_size=1)
        pool.initialize([env])

        pool.start_refill_task()
        for _ in range(100):
            if pool._abandoned:
                break
            await asyncio.sleep(0.01)

        assert pool._abandoned
        # The stuck run still counts toward the target, so later runs add nothing.
        assert stub.created == []
        await pool.stop_refill_task()
        assert not pool._abandoned


class TestDrain:
    async def test_destroys_idle_containers(self, pool, stub):
        env = make_env(pool_size=3)
        pool.initialize([env])
        await pool.refill()

        await pool.drain()

        assert len(stub.destroyed) == 3
        assert pool.quantities() == {"python": 0}

    async def test_container_finished_after_drain_is_destroyed(self, pool, stub):
        stub.gate = asyncio.Event()
        env = make_env(pool_size=1)
        pool.initialize([env])

        refill = asyncio.create_task(pool.refill_for_environment(env))
        await asyncio.sleep(0)
        await pool.drain()
        stub.gate.set()

        assert await refill == 0
        assert stub.destroyed == stub.created
        assert pool.quantities() == {"python": 0}

    async def test_refill_after_drain_does_nothing(self, pool, stub):
        env = make_env(pool_size=2)
        pool.initialize([env])
        await pool.drain()
        await pool.refill()
        assert stub.created == []


class TestIntegration:
    async def test_scenario_with_real_manager(self, manager, runtime):
        pool = ContainerPool(manager)
        manager.pool = pool
        env = make_env(pool_size=3)
        pool.initialize([env])

        await pool.refill()
        assert pool.quantities() == {"python": 3}

        result = await manager.execute_arbitrary_command("echo pooled", env)
        await manager.wait_for_background_tasks()
        assert result.stdout == "pooled\n"
        assert pool.quantities() == {"python": 2}
        assert len(runtime.created) == 2

        await pool.refill()
        assert pool.quantities() == {"python": 3}

        await pool.drain()
        assert runtime.created == {}

    def test_from_settings(self, stub):
        settings = make_settings(
            pool=PoolConfig(
                active=False,
                refill=RefillConfig(interval=2, batch_size=3, timeout=9, async_=False),
            )
        )
        pool = ContainerPool.from_settings(settings, stub)
        assert pool.active is False
        assert (pool.interval, pool.batch_size, pool.timeout) == (2, 3, 9)
        assert pool.concurrent is False


class TestScenarioTwoWarmContainers:
    async def test_two_borrows_then_fresh_create(self, pool, stub):
        env = make_env(pool_size=2)
        pool.initialize([env])
        await pool.refill()
        assert pool.quantities() == {"python": 2}

        first = await pool.borrow(env)
        second = await pool.borrow(env)
        assert first is not second
        assert pool.quantities() == {"python": 0}

        third = await pool.borrow(env)
        assert third not in (first, second)
        assert len(stub.created) == 3
