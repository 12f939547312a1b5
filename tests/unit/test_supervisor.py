"""Unit tests for the classifier worker supervisor.

Runs small stand-in worker scripts (``python -c``) that speak the line
protocol, so lifecycle edge cases can be provoked on demand.
"""

import asyncio
import sys
from collections.abc import AsyncIterator, Callable

import pytest
import pytest_asyncio

from src.classifier.errors import (
    ClassificationError,
    ClassificationTimeoutError,
    WorkerExitedError,
    WorkerStartError,
)
from src.classifier.supervisor import ClassifierWorkerSupervisor, WorkerState
from src.common.metrics import MetricsCollector

# Replies by image value:
#   "bad"    -> error response
#   "silent" -> no response
#   "crash"  -> exit with code 3
#   "noisy"  -> garbage line and an unmatched id before the real response
#   other    -> letter A, confidence 0.91
STAND_IN_WORKER = """
import json, sys, time
delay = float(sys.argv[1]) if len(sys.argv) > 1 else 0.0
time.sleep(delay)
print("loading model", file=sys.stderr, flush=True)
print("Classifier worker ready", file=sys.stderr, flush=True)
for line in sys.stdin:
    req = json.loads(line)
    image = req["image"]
    if image == "silent":
        continue
    if image == "crash":
        sys.exit(3)
    if image == "noisy":
        print("this is not json", flush=True)
        print(json.dumps({"id": "req_unknown", "letter": "Z", "confidence": 0.5}), flush=True)
    if image == "bad":
        out = {"id": req["id"], "error": "Invalid base64 image data"}
    else:
        out = {"id": req["id"], "letter": "A", "confidence": 0.91}
    print(json.dumps(out), flush=True)
"""

# Buffers two requests, then answers them in reverse order with the image
# echoed back as the letter
REVERSING_WORKER = """
import json, sys
print("Classifier worker ready", file=sys.stderr, flush=True)
batch = []
for line in sys.stdin:
    batch.append(json.loads(line))
    if len(batch) == 2:
        for req in reversed(batch):
            out = {"id": req["id"], "letter": req["image"], "confidence": 0.5}
            print(json.dumps(out), flush=True)
        batch = []
"""

NEVER_READY_WORKER = "import time; time.sleep(30)"
EXIT_BEFORE_READY_WORKER = "import sys; sys.exit(1)"


def stand_in_command(ready_delay_s: float = 0.0) -> list[str]:
    """Command line for the stand-in worker."""
    return [sys.executable, "-c", STAND_IN_WORKER, str(ready_delay_s)]


@pytest_asyncio.fixture
async def make_supervisor() -> AsyncIterator[Callable[..., ClassifierWorkerSupervisor]]:
    """Factory for supervisors that are stopped after the test."""
    created: list[ClassifierWorkerSupervisor] = []

    def factory(**kwargs: object) -> ClassifierWorkerSupervisor:
        kwargs.setdefault("command", stand_in_command())
        kwargs.setdefault("shutdown_grace_s", 1.0)
        supervisor = ClassifierWorkerSupervisor(**kwargs)  # type: ignore[arg-type]
        created.append(supervisor)
        return supervisor

    yield factory

    for supervisor in created:
        await supervisor.stop()


@pytest.mark.asyncio
async def test_initial_state(make_supervisor: Callable[..., ClassifierWorkerSupervisor]) -> None:
    """Test that nothing is spawned until the first request."""
    supervisor = make_supervisor()

    assert supervisor.state == WorkerState.NOT_STARTED
    assert supervisor.pid is None
    assert supervisor.pending_count == 0
    assert supervisor.spawn_count == 0


@pytest.mark.asyncio
async def test_classify_returns_result(
    make_supervisor: Callable[..., ClassifierWorkerSupervisor],
) -> None:
    """Test the happy path: matching response becomes the result."""
    supervisor = make_supervisor()

    result = await supervisor.classify("aGVsbG8=")

    assert result == {"letter": "A", "confidence": 0.91}
    assert supervisor.state == WorkerState.READY
    assert supervisor.pid is not None
    assert supervisor.pending_count == 0


@pytest.mark.asyncio
async def test_concurrent_calls_during_start_spawn_once(
    make_supervisor: Callable[..., ClassifierWorkerSupervisor],
) -> None:
    """Test that requests issued while starting share one spawn."""
    supervisor = make_supervisor(command=stand_in_command(ready_delay_s=0.3))

    results = await asyncio.gather(*(supervisor.classify(f"img-{i}") for i in range(5)))

    assert len(results) == 5
    assert all(r["letter"] == "A" for r in results)
    assert supervisor.spawn_count == 1


@pytest.mark.asyncio
async def test_worker_error_rejects_only_that_request(
    make_supervisor: Callable[..., ClassifierWorkerSupervisor],
) -> None:
    """Test that an error response fails the request but keeps the worker."""
    supervisor = make_supervisor()

    with pytest.raises(ClassificationError, match="Invalid base64 image data"):
        await supervisor.classify("bad")

    result = await supervisor.classify("good")
    assert result["letter"] == "A"
    assert supervisor.spawn_count == 1


@pytest.mark.asyncio
async def test_unparsable_and_unmatched_lines_ignored(
    make_supervisor: Callable[..., ClassifierWorkerSupervisor],
) -> None:
    """Test that stray stdout lines do not disturb correlation."""
    supervisor = make_supervisor()

    result = await supervisor.classify("noisy")

    assert result == {"letter": "A", "confidence": 0.91}


@pytest.mark.asyncio
async def test_timeout_rejects_and_clears_pending(
    make_supervisor: Callable[..., ClassifierWorkerSupervisor],
) -> None:
    """Test that a request without a response times out."""
    supervisor = make_supervisor(request_timeout_s=0.3)

    with pytest.raises(ClassificationTimeoutError):
        await supervisor.classify("silent")

    assert supervisor.pending_count == 0
    assert supervisor.state == WorkerState.READY


@pytest.mark.asyncio
async def test_exit_rejects_all_pending_then_respawns(
    make_supervisor: Callable[..., ClassifierWorkerSupervisor],
) -> None:
    """Test crash recovery: every pending request fails, next call respawns."""
    metrics = MetricsCollector()
    supervisor = make_supervisor(metrics=metrics)
    await supervisor.ensure_ready()
    first_pid = supervisor.pid

    pending = [asyncio.create_task(supervisor.classify("silent")) for _ in range(2)]
    await asyncio.sleep(0.05)
    crash = asyncio.create_task(supervisor.classify("crash"))

    results = await asyncio.gather(*pending, crash, return_exceptions=True)

    assert len(results) == 3
    assert all(isinstance(r, WorkerExitedError) for r in results)
    assert len({id(r) for r in results}) == 3
    assert supervisor.state == WorkerState.CRASHED
    assert supervisor.pending_count == 0

    result = await supervisor.classify("after-crash")

    assert result["letter"] == "A"
    assert supervisor.spawn_count == 2
    assert supervisor.pid != first_pid
    summary = metrics.get_summary()
    assert summary["worker_spawns_total"] == 2
    assert summary["worker_crashes_total"] == 1


@pytest.mark.asyncio
async def test_startup_timeout(make_supervisor: Callable[..., ClassifierWorkerSupervisor]) -> None:
    """Test that a worker that never signals readiness fails the callers."""
    supervisor = make_supervisor(
        command=[sys.executable, "-c", NEVER_READY_WORKER], startup_timeout_s=0.3
    )

    with pytest.raises(WorkerStartError, match="not ready"):
        await supervisor.classify("img")


@pytest.mark.asyncio
async def test_exit_before_ready(make_supervisor: Callable[..., ClassifierWorkerSupervisor]) -> None:
    """Test that a worker dying during startup fails the callers."""
    supervisor = make_supervisor(command=[sys.executable, "-c", EXIT_BEFORE_READY_WORKER])

    with pytest.raises(WorkerExitedError):
        await supervisor.classify("img")

    assert supervisor.state == WorkerState.CRASHED


@pytest.mark.asyncio
async def test_spawn_failure(make_supervisor: Callable[..., ClassifierWorkerSupervisor]) -> None:
    """Test that an unlaunchable command surfaces as WorkerStartError."""
    supervisor = make_supervisor(command=["/nonexistent/classifier-worker"])

    with pytest.raises(WorkerStartError, match="Failed to start"):
        await supervisor.classify("img")

    assert supervisor.state == WorkerState.CRASHED
    assert supervisor.spawn_count == 0


@pytest.mark.asyncio
async def test_stop_resets_state(make_supervisor: Callable[..., ClassifierWorkerSupervisor]) -> None:
    """Test that stop terminates the worker and allows a later restart."""
    supervisor = make_supervisor()
    await supervisor.classify("img")

    await supervisor.stop()

    assert supervisor.state == WorkerState.NOT_STARTED
    assert supervisor.pid is None

    await supervisor.classify("img")
    assert supervisor.spawn_count == 2


@pytest.mark.asyncio
async def test_classify_metrics(make_supervisor: Callable[..., ClassifierWorkerSupervisor]) -> None:
    """Test that requests, errors and timeouts are recorded."""
    metrics = MetricsCollector()
    supervisor = make_supervisor(metrics=metrics, request_timeout_s=0.3)

    await supervisor.classify("img")
    with pytest.raises(ClassificationError):
        await supervisor.classify("bad")
    with pytest.raises(ClassificationTimeoutError):
        await supervisor.classify("silent")

    summary = metrics.get_summary()
    assert summary["classify_requests_total"] == 3
    assert summary["classify_errors_total"] == 2
    assert summary["classify_timeouts_total"] == 1
    assert summary["classify_pending"] == 0
    assert summary["classify_latency_p50_ms"] is not None


@pytest.mark.asyncio
async def test_out_of_order_replies_matched_by_id(
    make_supervisor: Callable[..., ClassifierWorkerSupervisor],
) -> None:
    """Test that replies arriving in reverse order reach their own callers."""
    supervisor = make_supervisor(command=[sys.executable, "-c", REVERSING_WORKER])
    await supervisor.ensure_ready()

    first = asyncio.create_task(supervisor.classify("B"))
    await asyncio.sleep(0.05)
    second = asyncio.create_task(supervisor.classify("Y"))

    results = await asyncio.wait_for(asyncio.gather(first, second), timeout=5.0)

    assert results == [
        {"letter": "B", "confidence": 0.5},
        {"letter": "Y", "confidence": 0.5},
    ]
    assert supervisor.pending_count == 0
