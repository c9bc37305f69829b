"""Tests for the command queue."""

from __future__ import annotations

import asyncio

import pytest

from agentrelay.command_queue import CommandQueue
from agentrelay.types import RpcJob


class TestCommandQueue:
    async def test_respects_concurrency_limit(self):
        queue = CommandQueue(max_concurrent=2, warn_after_ms=10_000)
        active = 0
        max_active = 0
        gates: list[asyncio.Event] = []

        async def job() -> None:
            nonlocal active, max_active
            active += 1
            max_active = max(max_active, active)
            gate = asyncio.Event()
            gates.append(gate)
            await gate.wait()
            active -= 1

        tasks = [asyncio.create_task(queue.enqueue(job)) for _ in range(3)]
        await asyncio.sleep(0.02)

        assert active == 2
        assert queue.snapshot() == {"active_count": 2, "queued_count": 1, "max_concurrent": 2}

        gates[0].set()
        await asyncio.sleep(0.02)
        assert len(gates) == 3

        for gate in gates:
            gate.set()
        await asyncio.gather(*tasks)
        assert max_active == 2
        assert queue.active_count == 0

    async def test_admits_in_fifo_order(self):
        queue = CommandQueue(max_concurrent=1)
        started: list[int] = []
        release = asyncio.Event()

        def make(n: int):
            async def job() -> int:
                started.append(n)
                if n == 0:
                    await release.wait()
                return n

            return job

        tasks = [asyncio.create_task(queue.enqueue(make(n))) for n in range(4)]
        await asyncio.sleep(0.01)
        assert started == [0]

        release.set()
        results = await asyncio.gather(*tasks)
        assert started == [0, 1, 2, 3]
        assert results == [0, 1, 2, 3]

    async def test_on_wait_only_for_queued_jobs(self):
        queue = CommandQueue(max_concurrent=1)
        waits: dict[str, tuple[int, int]] = {}
        release = asyncio.Event()

        async def slow() -> None:
            await release.wait()

        async def fast() -> None:
            return None

        first = asyncio.create_task(
            queue.enqueue(slow, on_wait=lambda ms, ahead: waits.__setitem__("first", (ms, ahead)))
        )
        await asyncio.sleep(0)
        second = asyncio.create_task(
            queue.enqueue(fast, on_wait=lambda ms, ahead: waits.__setitem__("second", (ms, ahead)))
        )
        await asyncio.sleep(0.03)
        release.set()
        await asyncio.gather(first, second)

        assert "first" not in waits
        wait_ms, queued_ahead = waits["second"]
        assert wait_ms >= 20
        assert queued_ahead == 0

    async def test_failure_only_fails_its_own_awaiter(self):
        queue = CommandQueue(max_concurrent=1)

        async def boom() -> None:
            raise RuntimeError("boom")

        async def ok() -> str:
            return "fine"

        failing = asyncio.create_task(queue.enqueue(boom))
        succeeding = asyncio.create_task(queue.enqueue(ok))

        with pytest.raises(RuntimeError, match="boom"):
            await failing
        assert await succeeding == "fine"
        assert queue.active_count == 0

    async def test_slot_taken_before_coroutine_runs(self):
        queue = CommandQueue(max_concurrent=1)
        release = asyncio.Event()

        async def job() -> None:
            await release.wait()

        task = asyncio.create_task(queue.enqueue(job))
        await asyncio.sleep(0)
        # The slot is counted as soon as the job is admitted.
        assert queue.active_count == 1
        release.set()
        await task

    async def test_shutdown_cancels_queued(self):
        queue = CommandQueue(max_concurrent=1)
        release = asyncio.Event()

        async def job() -> None:
            await release.wait()

        running = asyncio.create_task(queue.enqueue(job))
        queued = asyncio.create_task(queue.enqueue(job))
        await asyncio.sleep(0.01)

        await queue.shutdown()
        with pytest.raises(asyncio.CancelledError):
            await queued

        release.set()
        await running

        with pytest.raises(RuntimeError, match="shut down"):
            await queue.enqueue(job)

    async def test_submit_runs_agent_process(self, fake_agent):
        cmd = fake_agent(
            """
            emit({"type": "message_end", "message": {"role": "assistant",
                  "content": [{"type": "text", "text": "hi " + prompt}]}})
            """
        )
        lines: list[str] = []
        queue = CommandQueue(max_concurrent=1)
        result = await queue.submit(
            RpcJob(argv=tuple(cmd), prompt="there", timeout_ms=10_000, on_event=lines.append)
        )

        assert result.exit_code == 0
        assert not result.killed
        assert len(lines) == 1
        assert "hi there" in lines[0]
