"""
Wake orchestration for sleeping projects.

A WakeOperation is the single shared outcome of one resume attempt for one
project. The first caller for a project starts it; everyone arriving while it
runs, or within the grace window after it resolves, awaits the same future.
The registry lives on the event loop, so registration and lookup happen
between awaits and need no lock.
"""

import asyncio
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set

from .errors import WakeProcessFailure, WakerError, WakeTimeout
from .executor import ProcessExecutor, ProcessResult
from .logging import EventType, get_logger
from .metrics import MetricNames, MetricsCollector, get_metrics
from .projects import ProjectConfig, ProjectConfigResolver, parse_port


class WakeState(str, Enum):
    WAKING = "waking"
    AWAKE = "awake"
    FAILED = "failed"


@dataclass
class WakeOperation:
    """One resume attempt shared by every waiter for the project."""

    project_name: str
    future: asyncio.Future
    state: WakeState = WakeState.WAKING
    started_at: float = field(default_factory=time.monotonic)
    resolved_at: Optional[float] = None
    port: Optional[int] = None
    error: Optional[WakerError] = None

    def succeed(self, port: int):
        self.state = WakeState.AWAKE
        self.port = port
        self.resolved_at = time.monotonic()
        if not self.future.done():
            self.future.set_result(port)

    def fail(self, error: WakerError):
        self.state = WakeState.FAILED
        self.error = error
        self.resolved_at = time.monotonic()
        if not self.future.done():
            self.future.set_exception(error)

    @property
    def duration_ms(self) -> Optional[float]:
        if self.resolved_at is None:
            return None
        return (self.resolved_at - self.started_at) * 1000

    def to_dict(self) -> Dict:
        return {
            "project": self.project_name,
            "state": self.state.value,
            "port": self.port,
            "error": type(self.error).__name__ if self.error else None,
            "age_ms": (time.monotonic() - self.started_at) * 1000,
        }


class WakeRegistry:
    """Project name -> live WakeOperation."""

    def __init__(self):
        self._operations: Dict[str, WakeOperation] = {}

    def get(self, project_name: str) -> Optional[WakeOperation]:
        return self._operations.get(project_name)

    def register(self, operation: WakeOperation):
        if operation.project_name in self._operations:
            raise ValueError(f"Wake already registered for {operation.project_name}")
        self._operations[operation.project_name] = operation

    def evict(self, project_name: str, operation: WakeOperation) -> bool:
        """Remove the entry only if it is still this operation."""
        if self._operations.get(project_name) is operation:
            del self._operations[project_name]
            return True
        return False

    def clear(self):
        self._operations.clear()

    def operations(self) -> List[WakeOperation]:
        return list(self._operations.values())

    def snapshot(self) -> List[Dict]:
        return [op.to_dict() for op in self._operations.values()]

    def __contains__(self, project_name: str) -> bool:
        return project_name in self._operations

    def __len__(self) -> int:
        return len(self._operations)


def port_from_output(stdout: str) -> Optional[int]:
    """Port announced on the last non-empty stdout line, if it is one."""
    lines = [line.strip() for line in stdout.splitlines() if line.strip()]
    if not lines:
        return None
    try:
        return parse_port(lines[-1])
    except ValueError:
        return None


class WakeOrchestrator:
    """Deduplicates resume requests per project and publishes their outcome."""

    def __init__(
        self,
        resolver: ProjectConfigResolver,
        executor: ProcessExecutor,
        wake_command: List[str],
        registry: Optional[WakeRegistry] = None,
        environment: Optional[Dict[str, str]] = None,
        wake_timeout_seconds: float = 60.0,
        grace_period_seconds: float = 5.0,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.resolver = resolver
        self.executor = executor
        self.wake_command = list(wake_command)
        self.registry = registry if registry is not None else WakeRegistry()
        self.environment = dict(environment or {})
        self.wake_timeout_seconds = wake_timeout_seconds
        self.grace_period_seconds = grace_period_seconds
        self.metrics = metrics or get_metrics()
        self.logger = get_logger("waker.orchestrator")
        self._tasks: Set[asyncio.Task] = set()
        self._evictions: Dict[str, asyncio.TimerHandle] = {}

    async def wake(self, project_name: str) -> int:
        """Return the port of the awake project, resuming it if nobody else is."""
        operation = self.registry.get(project_name)
        if operation is not None:
            self.logger.log_wake_attach(project_name, operation.state.value)
            self.metrics.increment_counter(MetricNames.WAKES_ATTACHED, project=project_name)
        else:
            operation = self._start(project_name)

        # The wake belongs to every waiter; one of them going away must not cancel it.
        try:
            return await asyncio.shield(operation.future)
        except WakerError as e:
            # Every waiter re-raises the same instance; start each traceback afresh.
            raise e.with_traceback(None)

    def _start(self, project_name: str) -> WakeOperation:
        loop = asyncio.get_running_loop()
        operation = WakeOperation(project_name=project_name, future=loop.create_future())
        # Outcome is consumed by waiters; mark it retrieved even if all of them left.
        operation.future.add_done_callback(lambda f: f.cancelled() or f.exception())
        self.registry.register(operation)
        self.metrics.increment_counter(MetricNames.WAKES_STARTED, project=project_name)
        self.metrics.set_gauge(MetricNames.WAKES_IN_FLIGHT, self._in_flight())

        task = loop.create_task(self._run(operation), name=f"wake-{project_name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return operation

    async def _run(self, operation: WakeOperation) -> None:
        project_name = operation.project_name
        try:
            port = await self._perform_wake(project_name)
        except WakerError as e:
            if e.project is None:
                e.project = project_name
            operation.fail(e)
            self.logger.log_wake_failure(project_name, e, stage=e.stage)
            self.metrics.increment_counter(
                MetricNames.WAKES_FAILED,
                project=project_name,
                labels={"error": type(e).__name__},
            )
        except asyncio.CancelledError:
            operation.fail(
                WakeProcessFailure("Wake cancelled during shutdown", project=project_name)
            )
            raise
        except Exception as e:
            failure = WakeProcessFailure(
                f"Failed to wake project: {e}", project=project_name, detail=repr(e)
            )
            operation.fail(failure)
            self.logger.log_wake_failure(project_name, failure)
            self.metrics.increment_counter(
                MetricNames.WAKES_FAILED,
                project=project_name,
                labels={"error": type(e).__name__},
            )
        else:
            operation.succeed(port)
            self.logger.log_wake_success(project_name, port, operation.duration_ms)
            self.metrics.record_timer(
                MetricNames.WAKE_DURATION, operation.duration_ms, project=project_name
            )
        finally:
            self.metrics.set_gauge(MetricNames.WAKES_IN_FLIGHT, self._in_flight())
            self._schedule_eviction(operation)

    async def _perform_wake(self, project_name: str) -> int:
        config = self.resolver.resolve(project_name)
        command = self.wake_command + [project_name]
        self.logger.log_wake_start(project_name, command)

        result = await self.executor.run(
            command, self._build_environment(config), self.wake_timeout_seconds
        )
        return self._interpret_result(config, result)

    def _build_environment(self, config: ProjectConfig) -> Dict[str, str]:
        env = dict(os.environ)
        env.update(self.environment)
        env["PET_PROJECT"] = config.name
        return env

    def _interpret_result(self, config: ProjectConfig, result: ProcessResult) -> int:
        stderr = result.stderr.strip()
        if result.timed_out:
            raise WakeTimeout(
                f"Wake timeout exceeded ({self.wake_timeout_seconds:g}s)"
                + (f": {stderr}" if stderr else ""),
                project=config.name,
                detail=stderr or None,
            )
        if result.exit_code != 0:
            raise WakeProcessFailure(
                f"Failed to wake project (exit code {result.exit_code}): {stderr}",
                project=config.name,
                detail=stderr or None,
            )

        announced = port_from_output(result.stdout)
        return announced if announced is not None else config.port

    def _schedule_eviction(self, operation: WakeOperation) -> None:
        loop = asyncio.get_running_loop()
        handle = loop.call_later(self.grace_period_seconds, self._evict, operation)
        self._evictions[operation.project_name] = handle

    def _evict(self, operation: WakeOperation) -> None:
        project_name = operation.project_name
        self._evictions.pop(project_name, None)
        if self.registry.evict(project_name, operation):
            self.logger.debug(
                f"Wake result for {project_name} expired",
                event_type=EventType.WAKE_EVICTED,
                project=project_name,
                metadata={"state": operation.state.value},
            )

    def _in_flight(self) -> int:
        return sum(1 for op in self.registry.operations() if op.state is WakeState.WAKING)

    async def shutdown(self) -> None:
        """Cancel running wakes and pending evictions."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        for handle in self._evictions.values():
            handle.cancel()
        self._evictions.clear()
        self.registry.clear()
