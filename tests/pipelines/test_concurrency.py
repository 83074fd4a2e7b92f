import asyncio
import io

import anyio
import pytest
from PIL import Image

from vision_dispatch.core.types import AnalysisResult
from vision_dispatch.persistence.results_manager import ResultsManager
from vision_dispatch.pipelines.concurrency import (
    QUEUE_FULL,
    REQUEST_CANCELLED,
    ConcurrencyError,
    ConcurrencyLimits,
    ConcurrencyManager,
)
from vision_dispatch.pipelines.image_pipeline import ImageAnalysisPipeline
from vision_dispatch.pipelines.router import AnalysisRouter
from vision_dispatch.plugins.sources import InMemoryPluginSource


async def _until(condition, timeout: float = 5.0) -> None:
    with anyio.fail_after(timeout):
        while not condition():
            await anyio.sleep(0.01)


def _manager(max_concurrent=1, queue_limit=1) -> ConcurrencyManager:
    return ConcurrencyManager(ConcurrencyLimits(max_concurrent=max_concurrent, queue_limit=queue_limit))


def test_defaults_are_ten_running_and_five_waiting():
    limits = ConcurrencyManager().limits

    assert (limits.max_concurrent, limits.queue_limit) == (10, 5)


def test_invalid_limits_are_rejected():
    with pytest.raises(ValueError):
        ConcurrencyLimits(max_concurrent=0)
    with pytest.raises(ValueError):
        ConcurrencyLimits(queue_limit=-1)


def test_request_beyond_running_and_waiting_slots_is_queue_full(tmp_path):
    wd = str(tmp_path)
    manager = _manager(max_concurrent=1, queue_limit=1)

    async def main():
        release = anyio.Event()

        async def hold():
            async with manager.slot(wd):
                await release.wait()

        async with anyio.create_task_group() as tg:
            tg.start_soon(hold)
            await _until(lambda: manager.get_active_count(wd) == 1)
            tg.start_soon(hold)
            await _until(lambda: manager.get_queued_count(wd) == 1)
            assert manager.can_accept(wd) is False

            with pytest.raises(ConcurrencyError) as e:
                async with manager.slot(wd):
                    pass
            release.set()
        return e.value

    err = asyncio.run(main())

    assert err.code == QUEUE_FULL
    assert err.message == (
        "Cannot accept request: maximum concurrent analyses (1) reached and queue is full (1 queued)"
    )
    assert err.details.to_dict() == {"maxConcurrent": 1, "queueLimit": 1, "currentActive": 1, "currentQueued": 1}
    assert manager.get_active_count(wd) == 0
    assert manager.get_queued_count(wd) == 0
    assert manager.can_accept(wd) is True


def test_waiting_requests_are_admitted_in_arrival_order(tmp_path):
    wd = str(tmp_path)
    manager = _manager(max_concurrent=1, queue_limit=3)
    order = []

    async def main():
        release = anyio.Event()

        async def hold():
            async with manager.slot(wd):
                await release.wait()

        async def queued(n):
            async with manager.slot(wd):
                order.append(n)

        async with anyio.create_task_group() as tg:
            tg.start_soon(hold)
            await _until(lambda: manager.get_active_count(wd) == 1)
            for n in (1, 2, 3):
                tg.start_soon(queued, n)
                await _until(lambda: manager.get_queued_count(wd) == n)
            release.set()

    asyncio.run(main())

    assert order == [1, 2, 3]


def test_cancel_all_drops_waiting_requests_only(tmp_path):
    wd = str(tmp_path)
    manager = _manager(max_concurrent=1, queue_limit=2)
    outcomes = []

    async def main():
        release = anyio.Event()

        async def hold():
            async with manager.slot(wd):
                await release.wait()
            outcomes.append("ran")

        async def waiter():
            try:
                async with manager.slot(wd):
                    outcomes.append("unexpected")
            except ConcurrencyError as e:
                outcomes.append(e.code)

        async with anyio.create_task_group() as tg:
            tg.start_soon(hold)
            await _until(lambda: manager.get_active_count(wd) == 1)
            tg.start_soon(waiter)
            tg.start_soon(waiter)
            await _until(lambda: manager.get_queued_count(wd) == 2)

            assert manager.cancel_all(wd) == 2
            await _until(lambda: manager.get_queued_count(wd) == 0)
            assert manager.get_active_count(wd) == 1
            release.set()

    asyncio.run(main())

    assert sorted(outcomes) == sorted([REQUEST_CANCELLED, REQUEST_CANCELLED, "ran"])
    assert manager.cancel_all(wd) == 0


def test_limits_are_per_working_directory(tmp_path):
    a, b = tmp_path / "a", tmp_path / "b"
    a.mkdir()
    b.mkdir()
    manager = _manager(max_concurrent=1, queue_limit=0)

    async def main():
        async with manager.slot(str(a)):
            async with manager.slot(str(b)):
                assert manager.get_active_count(str(a)) == 1
                assert manager.get_active_count(str(b)) == 1
            with pytest.raises(ConcurrencyError):
                async with manager.slot(str(a / ".." / "a")):
                    pass

    asyncio.run(main())


class BlockingBackend:
    mode = "local"

    def __init__(self):
        self.release = anyio.Event()
        self.started = 0

    async def is_available(self):
        return True

    async def analyze(self, image, model_id):
        self.started += 1
        await self.release.wait()
        return AnalysisResult(
            id=f"r-{self.started}",
            image_path=image,
            timestamp="2024-01-01T00:00:00Z",
            model_id=model_id,
            mode="local",
            duration_ms=1,
        )


def _png(tmp_path) -> str:
    buf = io.BytesIO()
    Image.new("RGB", (8, 8)).save(buf, format="PNG")
    p = tmp_path / "img.png"
    p.write_bytes(buf.getvalue())
    return str(p)


def test_pipeline_rejects_when_workspace_is_saturated(tmp_path):
    image, wd = _png(tmp_path), str(tmp_path)
    manager = _manager(max_concurrent=1, queue_limit=1)
    outcomes = []

    async def main():
        backend = BlockingBackend()
        pipeline = ImageAnalysisPipeline(
            AnalysisRouter(backend, backend),
            InMemoryPluginSource(),
            concurrency=manager,
            results_manager_factory=lambda d: ResultsManager(d, results_directory=".image-analysis"),
        )

        async def run():
            outcome = await pipeline.run(image, wd)
            outcomes.append(outcome.result.id)

        async with anyio.create_task_group() as tg:
            tg.start_soon(run)
            await _until(lambda: backend.started == 1)
            tg.start_soon(run)
            await _until(lambda: manager.get_queued_count(wd) == 1)

            with pytest.raises(ConcurrencyError) as e:
                await pipeline.run(image, wd)
            assert e.value.code == QUEUE_FULL
            assert backend.started == 1
            backend.release.set()

    asyncio.run(main())

    assert sorted(outcomes) == ["r-1", "r-2"]
