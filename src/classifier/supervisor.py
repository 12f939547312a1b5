"""Supervisor for the external classifier worker process.

Turns one long-lived worker process speaking a line-delimited JSON protocol
into a concurrent request/response service:

- request (stdin):  {"id": "<id>", "image": "<base64 frame>"}
- response (stdout): {"id": "<id>", "letter": "A", "confidence": 0.91}
                     {"id": "<id>", "error": "<message>"}
- readiness: a fixed sentinel line on stderr

Worker lifecycle:
- NOT_STARTED → STARTING (first classify call spawns the process)
- STARTING → READY (sentinel observed on stderr)
- READY → CRASHED (process exit; all pending requests rejected)
- CRASHED → STARTING (lazily, on the next classify call)

Concurrent callers during STARTING share one readiness future, so at most one
process is spawned per start. Responses are matched strictly by id.

Thread-safety: NOT thread-safe. Use from a single event loop.
"""

import asyncio
import json
import logging
import os
import sys
import time
from collections.abc import Sequence
from enum import Enum
from pathlib import Path

from src.classifier.correlator import RequestCorrelator
from src.classifier.errors import (
    ClassificationError,
    ClassificationTimeoutError,
    ClassifierError,
    WorkerExitedError,
    WorkerStartError,
    WorkerUnavailableError,
)
from src.common.metrics import MetricsCollector
from src.common.types import ClassificationResult, CorrelationID

logger = logging.getLogger(__name__)

READY_SENTINEL = "Classifier worker ready"
DEFAULT_REQUEST_TIMEOUT_S = 30.0  # covers model load on first request
DEFAULT_STARTUP_TIMEOUT_S = 60.0
PROJECT_ROOT = Path(__file__).resolve().parents[2]

# Upper bound on one stdout line from the worker
STDOUT_LINE_LIMIT = 1024 * 1024


def default_worker_command() -> list[str]:
    """Command line for the bundled worker (``python -m src.classifier``)."""
    return [sys.executable, "-m", "src.classifier"]


class WorkerState(Enum):
    """Worker process lifecycle states."""

    NOT_STARTED = "not_started"
    STARTING = "starting"
    READY = "ready"
    CRASHED = "crashed"


class ClassifierWorkerSupervisor:
    """Owns the worker process and exposes :meth:`classify`.

    Args:
        command: Worker command line (defaults to the bundled worker)
        request_timeout_s: Per-request deadline
        startup_timeout_s: Max wait for the readiness sentinel (None: no limit)
        ready_sentinel: Marker the worker writes to stderr once initialised
        shutdown_grace_s: Time allowed for termination before kill on stop()
        cwd: Working directory for the worker process
        metrics: Optional metrics collector
    """

    def __init__(
        self,
        command: Sequence[str] | None = None,
        request_timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S,
        startup_timeout_s: float | None = DEFAULT_STARTUP_TIMEOUT_S,
        ready_sentinel: str = READY_SENTINEL,
        shutdown_grace_s: float = 5.0,
        cwd: Path | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.command = list(command) if command else default_worker_command()
        self.request_timeout_s = request_timeout_s
        self.startup_timeout_s = startup_timeout_s
        self.ready_sentinel = ready_sentinel
        self.shutdown_grace_s = shutdown_grace_s
        self.cwd = cwd or PROJECT_ROOT
        self.metrics = metrics

        self._state = WorkerState.NOT_STARTED
        self._process: asyncio.subprocess.Process | None = None
        self._ready: asyncio.Future[None] | None = None
        self._correlator = RequestCorrelator()
        self._request_counter = 0
        self._spawn_count = 0
        self._stopping = False

        self._stdout_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._exit_task: asyncio.Task[None] | None = None
        self._startup_timer: asyncio.TimerHandle | None = None

        logger.info(
            "ClassifierWorkerSupervisor initialized",
            extra={"command": self.command, "request_timeout_s": request_timeout_s},
        )

    @property
    def state(self) -> WorkerState:
        """Current lifecycle state."""
        return self._state

    @property
    def pending_count(self) -> int:
        """Number of requests awaiting a worker response."""
        return len(self._correlator)

    @property
    def pid(self) -> int | None:
        """PID of the current worker process, if any."""
        return self._process.pid if self._process else None

    @property
    def spawn_count(self) -> int:
        """Number of processes spawned over the supervisor's lifetime."""
        return self._spawn_count

    async def classify(self, image: str) -> ClassificationResult:
        """Classify one still frame.

        Args:
            image: Encoded frame (base64 or data URL), passed through opaquely

        Returns:
            ``{"letter": ..., "confidence": ...}``

        Raises:
            ClassificationError: Worker reported an error for this request
            ClassificationTimeoutError: No response within the deadline
            WorkerExitedError: Worker exited while the request was pending
            WorkerStartError: Worker could not be started
            WorkerUnavailableError: Worker stdin could not be written
        """
        await self.ensure_ready()

        process = self._process
        if process is None or process.stdin is None or process.returncode is not None:
            raise WorkerUnavailableError("ASL classifier worker is not available")

        request_id = self._next_request_id()
        future = self._correlator.register(request_id, self.request_timeout_s)
        started = time.monotonic()
        if self.metrics:
            self.metrics.record_classify_start()

        try:
            line = json.dumps({"id": request_id, "image": image}) + "\n"
            process.stdin.write(line.encode("utf-8"))
            await process.stdin.drain()
        except (ConnectionError, RuntimeError) as e:
            logger.error(
                "Failed to write classifier request",
                extra={"request_id": request_id, "error": str(e)},
            )
            self._correlator.reject(
                request_id, WorkerUnavailableError(f"Failed to write to classifier worker: {e}")
            )

        logger.debug("Classifier request sent", extra={"request_id": request_id})

        error = timeout = False
        try:
            result: ClassificationResult = await future
            return result
        except ClassificationTimeoutError:
            timeout = True
            raise
        except Exception:
            error = True
            raise
        finally:
            if self.metrics:
                self.metrics.record_classify_complete(
                    time.monotonic() - started, error=error, timeout=timeout
                )

    async def ensure_ready(self) -> None:
        """Make sure a ready worker exists, spawning one if needed.

        Concurrent callers during STARTING all wait on the same readiness
        future rather than spawning duplicates.

        Raises:
            WorkerStartError: Spawn failed or readiness timed out
            WorkerExitedError: Worker exited before becoming ready
        """
        while True:
            if self._state == WorkerState.READY:
                if self._process is not None and self._process.returncode is None:
                    return
                # Exited but the exit watcher has not run yet
                if self._exit_task is not None:
                    await asyncio.shield(self._exit_task)
                    continue
                self._state = WorkerState.CRASHED

            if self._state in (WorkerState.NOT_STARTED, WorkerState.CRASHED):
                await self._spawn()

            if self._state == WorkerState.STARTING and self._ready is not None:
                await asyncio.shield(self._ready)
                return

            if self._ready is not None and self._ready.done():
                # Spawn failed synchronously; surface its error
                self._ready.result()
                return

    async def stop(self) -> None:
        """Terminate the worker and reject anything still pending."""
        process = self._process
        self._stopping = True
        try:
            if process is not None:
                logger.info("Stopping classifier worker", extra={"pid": process.pid})
                if process.stdin is not None and not process.stdin.is_closing():
                    process.stdin.close()
                if process.returncode is None:
                    try:
                        process.terminate()
                        await asyncio.wait_for(process.wait(), timeout=self.shutdown_grace_s)
                    except ProcessLookupError:
                        pass
                    except TimeoutError:
                        logger.warning(
                            "Classifier worker did not terminate, killing",
                            extra={"pid": process.pid},
                        )
                        process.kill()
                        await process.wait()

            if self._exit_task is not None:
                await asyncio.gather(self._exit_task, return_exceptions=True)

            self._correlator.reject_all(
                lambda: WorkerUnavailableError("Classifier supervisor stopped")
            )
            self._cancel_startup_timer()
            for task in (self._stdout_task, self._stderr_task):
                if task is not None and not task.done():
                    task.cancel()
            self._process = None
            self._state = WorkerState.NOT_STARTED
        finally:
            self._stopping = False

    def _next_request_id(self) -> CorrelationID:
        self._request_counter += 1
        return f"req_{int(time.time() * 1000)}_{self._request_counter}"

    async def _spawn(self) -> None:
        loop = asyncio.get_running_loop()
        self._state = WorkerState.STARTING
        ready: asyncio.Future[None] = loop.create_future()
        # Retrieve the exception even when every waiter has gone away
        ready.add_done_callback(lambda f: f.cancelled() or f.exception())
        self._ready = ready

        logger.info("Starting ASL classifier worker", extra={"command": self.command})

        env = {**os.environ, "PYTHONUNBUFFERED": "1"}
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.cwd),
                env=env,
                limit=STDOUT_LINE_LIMIT,
            )
        except OSError as e:
            logger.error("Failed to spawn classifier worker", extra={"error": str(e)})
            self._state = WorkerState.CRASHED
            ready.set_exception(WorkerStartError(f"Failed to start classifier worker: {e}"))
            return

        self._process = process
        self._spawn_count += 1
        if self.metrics:
            self.metrics.record_worker_spawn()

        logger.info("Classifier worker spawned", extra={"pid": process.pid})

        self._stdout_task = asyncio.create_task(self._read_stdout(process))
        self._stderr_task = asyncio.create_task(self._read_stderr(process))
        self._exit_task = asyncio.create_task(self._watch_exit(process))

        if self.startup_timeout_s is not None:
            self._startup_timer = loop.call_later(
                self.startup_timeout_s, self._startup_expired, process
            )

    async def _read_stdout(self, process: asyncio.subprocess.Process) -> None:
        assert process.stdout is not None
        while True:
            try:
                raw = await process.stdout.readline()
            except ValueError as e:
                # Line exceeded the stream limit; the remainder is discarded
                logger.error("Oversized classifier output line", extra={"error": str(e)})
                continue
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").strip()
            if line:
                self._handle_response_line(line)

    def _handle_response_line(self, line: str) -> None:
        try:
            payload = json.loads(line)
        except json.JSONDecodeError as e:
            logger.error(
                "Failed to parse classifier output",
                extra={"error": str(e), "line": line[:200]},
            )
            return

        if not isinstance(payload, dict):
            logger.error("Unexpected classifier output", extra={"line": line[:200]})
            return

        request_id = payload.get("id")
        if not isinstance(request_id, str) or request_id not in self._correlator:
            logger.debug("Ignoring unmatched classifier response", extra={"request_id": request_id})
            return

        if payload.get("error"):
            self._correlator.reject(request_id, ClassificationError(str(payload["error"])))
            return

        letter = payload.get("letter")
        confidence = payload.get("confidence")
        if not isinstance(letter, str) or not isinstance(confidence, int | float):
            self._correlator.reject(
                request_id, ClassificationError("Malformed classifier response")
            )
            return

        self._correlator.resolve(
            request_id, ClassificationResult(letter=letter, confidence=float(confidence))
        )

    async def _read_stderr(self, process: asyncio.subprocess.Process) -> None:
        assert process.stderr is not None
        while True:
            try:
                raw = await process.stderr.readline()
            except ValueError:
                continue
            if not raw:
                break
            message = raw.decode("utf-8", errors="replace").rstrip()
            if not message:
                continue

            logger.info(f"[ASL classifier worker] {message}", extra={"pid": process.pid})

            if self.ready_sentinel in message:
                self._mark_ready(process)

    def _mark_ready(self, process: asyncio.subprocess.Process) -> None:
        if process is not self._process or self._state != WorkerState.STARTING:
            return
        self._cancel_startup_timer()
        self._state = WorkerState.READY
        if self._ready is not None and not self._ready.done():
            self._ready.set_result(None)
        logger.info("ASL classifier worker is ready", extra={"pid": process.pid})

    def _startup_expired(self, process: asyncio.subprocess.Process) -> None:
        if process is not self._process or self._state != WorkerState.STARTING:
            return
        logger.error(
            "Classifier worker did not become ready",
            extra={"pid": process.pid, "startup_timeout_s": self.startup_timeout_s},
        )
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(
                WorkerStartError(
                    f"Classifier worker not ready after {self.startup_timeout_s}s"
                )
            )
        try:
            process.kill()
        except ProcessLookupError:
            pass

    async def _watch_exit(self, process: asyncio.subprocess.Process) -> None:
        returncode = await process.wait()

        # Let the reader drain responses written just before exit
        if self._stdout_task is not None:
            await asyncio.wait({self._stdout_task}, timeout=1.0)

        if process is not self._process:
            return

        self._cancel_startup_timer()
        self._process = None

        if self._stopping:
            error_type: type[ClassifierError] = WorkerUnavailableError
            message = "Classifier supervisor stopped"
            self._state = WorkerState.NOT_STARTED
            logger.info("Classifier worker stopped", extra={"returncode": returncode})
        else:
            error_type = WorkerExitedError
            message = "ASL classifier worker exited unexpectedly"
            self._state = WorkerState.CRASHED
            if self.metrics:
                self.metrics.record_worker_crash()
            logger.error(
                "ASL classifier worker exited",
                extra={"pid": process.pid, "returncode": returncode},
            )

        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(
                WorkerExitedError("ASL classifier worker exited before becoming ready")
            )

        rejected = self._correlator.reject_all(lambda: error_type(message))
        if rejected:
            logger.warning(
                "Rejected pending classifier requests", extra={"count": rejected}
            )

    def _cancel_startup_timer(self) -> None:
        if self._startup_timer is not None:
            self._startup_timer.cancel()
            self._startup_timer = None

    def __repr__(self) -> str:
        return (
            f"ClassifierWorkerSupervisor(state={self._state.value}, pid={self.pid}, "
            f"pending={self.pending_count})"
        )
