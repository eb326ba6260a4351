"""
Failure Injection Tests.

Validates resilience against collaborator failures.
"""

import asyncio

import pytest
from sqlalchemy import select

from backend.app.core.reliability import CircuitBreaker, CircuitOpenError
from backend.app.models.dlq import DeadLetterQueue, DLQStatus
from backend.app.services.fanout import SideEffect, SideEffectDispatcher
from backend.app.services.locking import KeyedLock


@pytest.mark.asyncio
async def test_circuit_breaker_activates():
    """Test that circuit breaker opens after threshold failures."""
    cb = CircuitBreaker(failure_threshold=2, reset_timeout=1)

    async def failing_func():
        raise ValueError("Boom")

    # Fail 1
    with pytest.raises(ValueError):
        await cb.call(failing_func)

    # Fail 2 (Threshold reached)
    with pytest.raises(ValueError):
        await cb.call(failing_func)

    # Call 3 is rejected without running
    with pytest.raises(CircuitOpenError):
        await cb.call(failing_func)
    assert cb.state == "OPEN"


@pytest.mark.asyncio
async def test_circuit_breaker_recovers_after_timeout(mocker):
    cb = CircuitBreaker(failure_threshold=1, reset_timeout=30)

    async def failing_func():
        raise ValueError("Boom")

    async def healthy_func():
        return "ok"

    clock = mocker.patch("backend.app.core.reliability.time.time", return_value=1000.0)
    with pytest.raises(ValueError):
        await cb.call(failing_func)
    with pytest.raises(CircuitOpenError):
        await cb.call(healthy_func)

    clock.return_value = 1031.0
    assert await cb.call(healthy_func) == "ok"
    assert cb.state == "CLOSED"
    assert cb.failures == 0


@pytest.mark.asyncio
async def test_dispatcher_dead_letters_failures(db_session):
    """A failed side effect is captured in the DLQ; the others still run."""
    ran = []

    async def ok():
        ran.append("ok")
        return "done"

    async def boom():
        raise ConnectionError("mail relay down")

    async def hang():
        await asyncio.sleep(10)

    failures = []
    outcomes = await SideEffectDispatcher(timeout=0.05).run(db_session, [
        SideEffect(task_name="first", run=ok),
        SideEffect(task_name="second", run=boom, payload={"invoice_id": 7}, on_failure=failures.append),
        SideEffect(task_name="third", run=hang),
        SideEffect(task_name="fourth", run=boom, dead_letter=False),
    ])

    assert [o.ok for o in outcomes] == [True, False, False, False]
    assert outcomes[0].result == "done"
    assert "timed out" in outcomes[2].error
    assert ran == ["ok"]
    assert failures == ["ConnectionError: mail relay down"]

    dead = (await db_session.execute(
        select(DeadLetterQueue).order_by(DeadLetterQueue.id)
    )).scalars().all()
    assert [d.task_name for d in dead] == ["second", "third"]
    assert dead[0].payload == {"invoice_id": 7}
    assert all(d.status == DLQStatus.FAILED for d in dead)


@pytest.mark.asyncio
async def test_dispatcher_with_no_effects(db_session):
    assert await SideEffectDispatcher().run(db_session, []) == []


@pytest.mark.asyncio
async def test_keyed_lock_serializes_same_key_only():
    locks = KeyedLock()
    order = []

    async def worker(key, name, delay):
        async with locks.hold(key):
            order.append(f"{name}-in")
            await asyncio.sleep(delay)
            order.append(f"{name}-out")

    await asyncio.gather(
        worker("item:1", "a", 0.02),
        worker("item:1", "b", 0),
        worker("item:2", "c", 0),
    )

    # b waits for a; c runs alongside a
    assert order.index("a-out") < order.index("b-in")
    assert order.index("c-in") < order.index("a-out")
    assert not locks.is_held("item:1")
    assert locks._locks == {}
