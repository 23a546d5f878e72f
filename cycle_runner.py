# cycle_runner.py

import asyncio
import enum
import time
from collections import OrderedDict, deque
from typing import Any, Dict, List, Optional, Set

import aiohttp

from cycle_models import (
    CycleConfig,
    CycleResult,
    FailureKind,
    Outcome,
    RequestFailure,
    RequestSpec,
    configure_logging,
    logger,
)
from digest_auth import DigestState
from field_extractor import ExtractedFields, extract, inject_headers
from field_generator import FieldGenerator, GeneratedFields, default_generator, render_body
from request_executor import RequestExecutor

# --- Exports for container_control ---
__all__ = [
    "asyncio", "logger", "CycleRunner", "RunStatistics", "RunnerState"
]

ROLES = ('A', 'B')


# ---------------------------
# Statistics Tracking
# ---------------------------
class DeltaStats:
    """Running min/max/mean of an observed interval in milliseconds."""
    def __init__(self):
        self.count = 0
        self.total_ms = 0.0
        self.min_ms: Optional[float] = None
        self.max_ms: Optional[float] = None

    def add(self, value_ms: float):
        self.count += 1
        self.total_ms += value_ms
        self.min_ms = value_ms if self.min_ms is None else min(self.min_ms, value_ms)
        self.max_ms = value_ms if self.max_ms is None else max(self.max_ms, value_ms)

    @property
    def mean_ms(self) -> Optional[float]:
        return self.total_ms / self.count if self.count else None

    def as_dict(self) -> Dict[str, Any]:
        return {"count": self.count, "min_ms": self.min_ms, "max_ms": self.max_ms, "mean_ms": self.mean_ms}

    def describe(self) -> str:
        if not self.count:
            return "n/a"
        return f"min {self.min_ms:.2f} / mean {self.mean_ms:.2f} / max {self.max_ms:.2f} ms ({self.count} samples)"


class RoleStats:
    def __init__(self):
        self.successes = 0
        self.failures = 0
        self.latency = DeltaStats()

    @property
    def total(self) -> int:
        return self.successes + self.failures


class RunStatistics:
    """
    Aggregates per-cycle timing and per-role outcomes of a run.
    Outcomes arrive from independent A/B tasks in any order; every update is
    serialized through an asyncio.Lock.
    """
    def __init__(self, retained_cycles: int = 1000):
        self.lock = asyncio.Lock()
        self.retained_cycles = retained_cycles
        self.roles: Dict[str, RoleStats] = {role: RoleStats() for role in ROLES}
        self.failures_by_kind: Dict[str, int] = {kind.value: 0 for kind in FailureKind}
        self.a_to_a = DeltaStats()
        self.a_to_b = DeltaStats()
        self.cycles: "OrderedDict[int, CycleResult]" = OrderedDict()
        self.cycles_started = 0
        self.last_error: Optional[str] = None
        self.started_at: Optional[float] = None
        self.finished_at: Optional[float] = None

        # --- For RPS over a rolling window ---
        self.request_timestamps = deque()
        self.last_rps_update_time = 0.0
        self.last_rps_value = 0.0

    def _cycle(self, cycle_index: int) -> CycleResult:
        result = self.cycles.get(cycle_index)
        if result is None:
            result = CycleResult(cycle_index=cycle_index)
            self.cycles[cycle_index] = result
            while len(self.cycles) > self.retained_cycles:
                self.cycles.popitem(last=False)
        return result

    def mark_started(self):
        self.started_at = time.monotonic()
        self.finished_at = None

    def mark_finished(self):
        self.finished_at = time.monotonic()

    @property
    def total_elapsed_s(self) -> float:
        if self.started_at is None:
            return 0.0
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return end - self.started_at

    async def record_a_dispatch(self, cycle_index: int, dispatched_at: float, previous_dispatched_at: Optional[float]):
        async with self.lock:
            self.cycles_started += 1
            result = self._cycle(cycle_index)
            result.a_dispatched_at = dispatched_at
            if previous_dispatched_at is not None:
                delta_ms = (dispatched_at - previous_dispatched_at) * 1000.0
                result.observed_a_to_a_ms = delta_ms
                self.a_to_a.add(delta_ms)

    async def record_b_dispatch(self, cycle_index: int, a_dispatched_at: float, dispatched_at: float):
        async with self.lock:
            result = self._cycle(cycle_index)
            result.b_dispatched_at = dispatched_at
            delta_ms = (dispatched_at - a_dispatched_at) * 1000.0
            result.observed_a_to_b_ms = delta_ms
            self.a_to_b.add(delta_ms)

    async def record_outcome(self, role: str, cycle_index: int, outcome: Outcome, description: str = ""):
        now = time.monotonic()
        async with self.lock:
            role_stats = self.roles[role]
            role_stats.latency.add(outcome.elapsed_ms)
            if outcome.succeeded:
                role_stats.successes += 1
            else:
                role_stats.failures += 1
                self.failures_by_kind[outcome.kind.value] += 1
                self.last_error = f"Cycle {cycle_index} {role} {description}: {outcome.describe()} - {outcome.message}"

            result = self._cycle(cycle_index)
            if role == 'A':
                result.a_outcome = outcome
            else:
                result.b_outcome = outcome

            self.request_timestamps.append(now)
            one_second_ago = now - 1.0
            while self.request_timestamps and self.request_timestamps[0] < one_second_ago:
                self.request_timestamps.popleft()

    async def get_rps(self) -> float:
        """Return the approximate RPS over the last 1 second."""
        now = time.monotonic()
        if now - self.last_rps_update_time < 0.1:
            return self.last_rps_value
        async with self.lock:
            one_second_ago = now - 1.0
            while self.request_timestamps and self.request_timestamps[0] < one_second_ago:
                self.request_timestamps.popleft()
            self.last_rps_value = float(len(self.request_timestamps))
            self.last_rps_update_time = now
            return self.last_rps_value

    def results(self) -> List[CycleResult]:
        return list(self.cycles.values())

    @property
    def total_failures(self) -> int:
        return sum(stats.failures for stats in self.roles.values())

    async def snapshot(self) -> Dict[str, Any]:
        async with self.lock:
            return self.as_dict()

    def as_dict(self) -> Dict[str, Any]:
        return {
            "cycles_started": self.cycles_started,
            "total_elapsed_s": round(self.total_elapsed_s, 3),
            "roles": {
                role: {
                    "successes": stats.successes,
                    "failures": stats.failures,
                    "mean_latency_ms": stats.latency.mean_ms,
                }
                for role, stats in self.roles.items()
            },
            "failures_by_kind": dict(self.failures_by_kind),
            "a_to_a": self.a_to_a.as_dict(),
            "a_to_b": self.a_to_b.as_dict(),
            "last_error": self.last_error,
        }

    def summary_lines(self) -> List[str]:
        lines = [
            "Final Statistics:",
            f"  Cycles started: {self.cycles_started}",
            f"  Total elapsed: {self.total_elapsed_s:.3f}s",
        ]
        for role, stats in self.roles.items():
            mean_latency = stats.latency.mean_ms
            latency_display = f"{mean_latency:.2f} ms" if mean_latency is not None else "n/a"
            lines.append(
                f"  Request {role}: {stats.total} total, {stats.successes} succeeded, "
                f"{stats.failures} failed (mean latency {latency_display})"
            )
        failed_kinds = {kind: count for kind, count in self.failures_by_kind.items() if count}
        lines.append(f"  Failures by kind: {failed_kinds if failed_kinds else 'none'}")
        lines.append(f"  A→A interval: {self.a_to_a.describe()}")
        lines.append(f"  A→B offset: {self.a_to_b.describe()}")
        if self.last_error:
            lines.append(f"  Last error: {self.last_error}")
        return lines


# ---------------------------
# Cycle Runner Class
# ---------------------------
class RunnerState(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"
    COMPLETED = "completed"


class CycleRunner:
    """
    Drives A/B request cycles.

    Every A dispatch is anchored on the previous A *dispatch* time, so A
    dispatches are never closer than delay_a_to_a_ms regardless of how long
    requests take. A and B run as independent tasks that the driver never
    awaits; B is dispatched delay_a_to_b_ms after its A, carrying whatever
    fields could be extracted from A's response by then.
    """
    def __init__(
        self,
        config: CycleConfig,
        statistics: Optional[RunStatistics] = None,
        *,
        executor: Optional[RequestExecutor] = None,
        generator: Optional[FieldGenerator] = None,
    ):
        self.config = config
        self.statistics = statistics or RunStatistics()
        self.executor = executor # Created per run from a fresh session when not injected
        self.generator = generator or default_generator
        self.state = RunnerState.IDLE
        self.running = False
        self._stopped_event: Optional[asyncio.Event] = None
        self._inflight: Set[asyncio.Task] = set()
        self.lock = asyncio.Lock()

        configure_logging(self.config.debug)

        logger.info(
            f"Cycle Runner Initialized: A={self.config.request_a.method} {self.config.request_a.url}, "
            f"B={self.config.request_b.method} {self.config.request_b.url}, "
            f"A→B={self.config.delay_a_to_b_ms}ms, A→A={self.config.delay_a_to_a_ms}ms, "
            f"Max cycles={'unlimited' if self.config.max_cycles is None else self.config.max_cycles}, Digest auth={'on' if self.config.auth else 'off'}"
        )
        if self.config.generated_fields:
            logger.info("Generated fields: " + ", ".join(
                f"{f.name} ({f.generator.value}, {f.field_type})" for f in self.config.generated_fields
            ))
        if self.config.field_mappings:
            logger.info("Field mappings: " + ", ".join(
                f"{m.source_path} -> {m.target_field}" for m in self.config.field_mappings
            ))

    def create_aiohttp_connector(self) -> aiohttp.BaseConnector:
        """Creates the connector shared by A and B for the whole run."""
        if not self.config.verify_ssl:
            logger.warning("TLS certificate verification is disabled.")
        return aiohttp.TCPConnector(ssl=self.config.verify_ssl, limit=100)

    def create_session(self, connector: aiohttp.BaseConnector) -> aiohttp.ClientSession:
        timeout = aiohttp.ClientTimeout(total=self.config.request_timeout_ms / 1000.0)
        return aiohttp.ClientSession(connector=connector, timeout=timeout)

    async def start_generating(self) -> RunStatistics:
        """Run cycles until max_cycles is reached or a stop is requested."""
        async with self.lock:
            if self.running:
                logger.warning("Cycle generation is already running.")
                return self.statistics
            self.running = True
            self.state = RunnerState.RUNNING
            self._stopped_event = asyncio.Event()

        session = None
        executor = self.executor
        if executor is None:
            session = self.create_session(self.create_aiohttp_connector())
            executor = RequestExecutor(
                session,
                timeout_s=self.config.request_timeout_ms / 1000.0,
                digest_state=DigestState(),
                user_agent=self.config.user_agent,
            )

        self.statistics.mark_started()
        logger.info("Cycle generation started.")
        try:
            await self._drive(executor)
        except asyncio.CancelledError:
            logger.info("Cycle driver cancelled; cancelling in-flight requests.")
            for task in list(self._inflight):
                task.cancel()
            raise
        finally:
            self.running = False
            await self._drain()
            if session is not None and not session.closed:
                await session.close()
                logger.debug("HTTP session closed.")
            if self.state == RunnerState.RUNNING:
                self.state = RunnerState.STOPPED
            self.statistics.mark_finished()
            logger.info(f"Cycle generation {self.state.value}.")
            for line in self.statistics.summary_lines():
                logger.info(line)

        return self.statistics

    async def stop_generating(self):
        """Request a stop; it takes effect at the driver's next wait checkpoint."""
        async with self.lock:
            if not self.running:
                logger.warning("Cycle generation not running or already stopping.")
                if self._stopped_event and not self._stopped_event.is_set():
                    self._stopped_event.set()
                return
            logger.info("Stopping cycle generation...")
            self.running = False
            if self._stopped_event and not self._stopped_event.is_set():
                self._stopped_event.set()

    # ------------------------------------------------------------------
    # Compatibility helpers for the continuous-run API
    # ------------------------------------------------------------------
    async def run(self) -> RunStatistics:
        """Alias for start_generating."""
        return await self.start_generating()

    async def stop(self):
        """Alias for stop_generating."""
        await self.stop_generating()

    def get_inflight_count(self) -> int:
        return sum(1 for task in self._inflight if not task.done())

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------
    async def _wait_or_stop(self, wait_s: float) -> bool:
        """Suspend for wait_s seconds. Returns True if a stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stopped_event.wait(), timeout=wait_s)
            return True
        except asyncio.TimeoutError:
            return False

    async def _drive(self, executor: RequestExecutor):
        delay_a_to_a_s = self.config.delay_a_to_a_ms / 1000.0
        max_cycles = self.config.max_cycles
        last_dispatch_a: Optional[float] = None
        cycle = 0

        while self.running:
            if max_cycles is not None and cycle >= max_cycles:
                logger.info(f"Reached maximum cycle count of {max_cycles}.")
                self.state = RunnerState.COMPLETED
                break

            if last_dispatch_a is not None:
                wait_s = last_dispatch_a + delay_a_to_a_s - time.monotonic()
                if wait_s > 0:
                    logger.debug(f"Waiting {wait_s * 1000:.1f}ms before cycle {cycle}.")
                    if await self._wait_or_stop(wait_s):
                        break
                else:
                    # Behind schedule; yield so spawned tasks and stop() get to run.
                    await asyncio.sleep(0)
                    if self._stopped_event.is_set():
                        break
            if not self.running:
                break

            previous_dispatch_a = last_dispatch_a
            last_dispatch_a = time.monotonic()
            fields = self.generator.generate_cycle_fields(self.config.generated_fields)
            if fields.header or fields.body:
                logger.debug(f"Cycle {cycle}: generated header fields {fields.header}, body fields {fields.body}")

            await self.statistics.record_a_dispatch(cycle, last_dispatch_a, previous_dispatch_a)
            a_task = self._spawn(self._run_a(cycle, fields, executor), f"cycle-{cycle}-A")
            self._spawn(self._run_b(cycle, last_dispatch_a, fields, a_task, executor), f"cycle-{cycle}-B")
            cycle += 1

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def _drain(self):
        pending = [task for task in self._inflight if not task.done()]
        if not pending:
            return
        logger.info(f"Waiting for {len(pending)} in-flight request task(s) to finish...")
        results = await asyncio.gather(*pending, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception) and not isinstance(result, asyncio.CancelledError):
                logger.error(f"Request task finished with unexpected error during drain: {result}")

    # ------------------------------------------------------------------
    # Per-role tasks
    # ------------------------------------------------------------------
    def _build_request(
        self,
        spec: RequestSpec,
        fields: GeneratedFields,
        extracted: Optional[ExtractedFields] = None,
    ) -> RequestSpec:
        headers = inject_headers(spec.headers, fields.header)
        body = spec.body
        if extracted is not None:
            headers = inject_headers(headers, extracted.headers)
        if spec.sends_body:
            body_values = dict(fields.body)
            if extracted is not None:
                body_values.update(extracted.body)
            body = render_body(body, body_values)
        return spec.model_copy(update={"headers": headers, "body": body})

    async def _execute(self, executor: RequestExecutor, role: str, cycle: int, request: RequestSpec) -> Outcome:
        try:
            outcome = await executor.execute(request, self.config.auth)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Cycle {cycle} {role}: unexpected error during request execution: {e}", exc_info=self.config.debug)
            outcome = RequestFailure(kind=FailureKind.NETWORK, message=f"Unexpected error: {e}")

        request_display = f"{request.method} {request.url}"
        if outcome.succeeded:
            logger.info(f"Cycle {cycle} {role}: {outcome.status} {request_display} ({outcome.elapsed_ms:.2f} ms)")
        else:
            logger.warning(
                f"Cycle {cycle} {role} failed: {outcome.describe()} {request_display} "
                f"({outcome.elapsed_ms:.2f} ms) - {outcome.message}"
            )
        await self.statistics.record_outcome(role, cycle, outcome, request_display)
        return outcome

    async def _run_a(self, cycle: int, fields: GeneratedFields, executor: RequestExecutor) -> Outcome:
        request = self._build_request(self.config.request_a, fields)
        return await self._execute(executor, 'A', cycle, request)

    async def _run_b(
        self,
        cycle: int,
        a_dispatched_at: float,
        fields: GeneratedFields,
        a_task: asyncio.Task,
        executor: RequestExecutor,
    ) -> Outcome:
        wait_s = a_dispatched_at + self.config.delay_a_to_b_ms / 1000.0 - time.monotonic()
        if wait_s > 0:
            await asyncio.sleep(wait_s)

        extracted = None
        if self.config.field_mappings:
            if not a_task.done():
                logger.debug(f"Cycle {cycle} B: A has not completed yet; dispatching without propagated fields.")
            elif a_task.cancelled():
                logger.debug(f"Cycle {cycle} B: A was cancelled; dispatching without propagated fields.")
            else:
                a_outcome = a_task.result()
                if a_outcome.succeeded:
                    extracted = extract(a_outcome, self.config.field_mappings)
                else:
                    logger.debug(f"Cycle {cycle} B: A failed ({a_outcome.describe()}); dispatching without propagated fields.")

        request = self._build_request(self.config.request_b, fields, extracted)
        await self.statistics.record_b_dispatch(cycle, a_dispatched_at, time.monotonic())
        return await self._execute(executor, 'B', cycle, request)
