"""
Fixtures for orchestrator tests: an in-memory supervisor, a scripted prober
and a factory that tears every orchestrator down after the test.
"""

import itertools
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from service_orchestrator.core.errors import LaunchError
from service_orchestrator.core.graph import build
from service_orchestrator.core.orchestrator import Orchestrator
from service_orchestrator.core.supervisor import ProcessHandle, Supervisor
from service_orchestrator.core.units import UnitSpec, load
from service_orchestrator.monitoring.health_monitor import HealthCheckResult, HealthMonitor, HealthStatus

HEALTHY = HealthStatus.HEALTHY
UNHEALTHY = HealthStatus.UNHEALTHY
UNKNOWN = HealthStatus.UNKNOWN


def fast_check(retries: int = 1, **overrides: Any) -> Dict[str, Any]:
    """A TCP health check that probes every 10ms; targets are never dialed by the scripted prober."""
    check = {
        "kind": "tcp",
        "target": "localhost:1",
        "interval": 0.01,
        "timeout": 0.5,
        "retries": retries,
        "startup_timeout": 10,
    }
    check.update(overrides)
    return check


def wait_until(condition: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01, msg: str = "") -> None:
    """Poll ``condition`` until it holds or fail the test."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return
        time.sleep(interval)
    pytest.fail(msg or f"condition not met within {timeout}s")


class FakeSupervisor(Supervisor):
    """
    Records every launch/stop/kill call.

    ``failures`` maps a unit name to how many launches should raise
    ``LaunchError`` (``-1`` for every launch). ``gates`` maps a unit name to an
    event its launch blocks on; ``stop_gate`` blocks every stop call.
    """

    def __init__(
        self,
        failures: Optional[Dict[str, int]] = None,
        gates: Optional[Dict[str, threading.Event]] = None,
        stop_gate: Optional[threading.Event] = None,
        barrier: Optional[Tuple[threading.Barrier, Tuple[str, ...]]] = None,
    ) -> None:
        self.failures = dict(failures or {})
        self.gates = dict(gates or {})
        self.stop_gate = stop_gate
        self.barrier = barrier
        self.calls: List[Tuple[str, str]] = []
        self.running: Dict[str, ProcessHandle] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def _record(self, action: str, unit: str) -> None:
        with self._lock:
            self.calls.append((action, unit))

    def launch(self, spec: UnitSpec) -> ProcessHandle:
        gate = self.gates.get(spec.name)
        if gate is not None:
            gate.wait(10)
        if self.barrier is not None and spec.name in self.barrier[1]:
            try:
                self.barrier[0].wait()
            except threading.BrokenBarrierError:
                raise LaunchError(spec.name, "launched alone")

        self._record("launch", spec.name)
        with self._lock:
            remaining = self.failures.get(spec.name, 0)
            if remaining:
                if remaining > 0:
                    self.failures[spec.name] = remaining - 1
                raise LaunchError(spec.name, "simulated launch failure")
            handle = ProcessHandle(unit=spec.name, id=f"{spec.name}-{next(self._ids)}")
            self.running[handle.id] = handle
            return handle

    def stop(self, handle: ProcessHandle, timeout: float) -> bool:
        if self.stop_gate is not None:
            self.stop_gate.wait(10)
        self._record("stop", handle.unit)
        with self._lock:
            self.running.pop(handle.id, None)
        return True

    def kill(self, handle: ProcessHandle) -> None:
        self._record("kill", handle.unit)
        with self._lock:
            self.running.pop(handle.id, None)

    def units(self, action: str) -> List[str]:
        with self._lock:
            return [unit for act, unit in self.calls if act == action]

    def count(self, action: str, unit: str) -> int:
        return self.units(action).count(unit)


class ScriptedProber:
    """
    Plays back a per-unit list of outcomes. The last outcome repeats forever;
    units without a script are always healthy.
    """

    def __init__(self, scripts: Optional[Dict[str, List[HealthStatus]]] = None) -> None:
        self.scripts = {name: list(outcomes) for name, outcomes in (scripts or {}).items()}
        self.calls: Dict[str, int] = {}
        self._lock = threading.Lock()

    def __call__(self, spec: UnitSpec) -> HealthCheckResult:
        with self._lock:
            self.calls[spec.name] = self.calls.get(spec.name, 0) + 1
            script = self.scripts.get(spec.name)
            if not script:
                outcome = HEALTHY
            elif len(script) > 1:
                outcome = script.pop(0)
            else:
                outcome = script[0]
        return HealthCheckResult(outcome, message=f"scripted {outcome.value}")

    def count(self, name: str) -> int:
        with self._lock:
            return self.calls.get(name, 0)


@pytest.fixture
def supervisor() -> FakeSupervisor:
    return FakeSupervisor()


@pytest.fixture
def prober() -> ScriptedProber:
    return ScriptedProber()


@pytest.fixture
def make_orchestrator(supervisor: FakeSupervisor, prober: ScriptedProber):
    """Build an orchestrator from a raw topology; it is torn down after the test."""
    created: List[Orchestrator] = []

    def factory(raw: Any, **kwargs: Any) -> Orchestrator:
        kwargs.setdefault("backoff_base", 0.01)
        kwargs.setdefault("backoff_max", 0.05)
        kwargs.setdefault("shutdown_timeout", 5.0)
        monitor = HealthMonitor(prober=kwargs.pop("prober", prober))
        orch = Orchestrator(
            build(load(raw)),
            kwargs.pop("supervisor", supervisor),
            monitor=monitor,
            **kwargs,
        )
        created.append(orch)
        return orch

    yield factory

    for orch in created:
        orch.down(timeout=2.0)


@pytest.fixture
def db_backend_frontend() -> Dict[str, Any]:
    """db <- backend <- frontend, each gated on a fast health check."""
    return {
        "db": {"image": "postgres:16", "healthcheck": fast_check(retries=1)},
        "backend": {"image": "acme/backend", "depends_on": ["db"], "healthcheck": fast_check(retries=1)},
        "frontend": {"image": "acme/frontend", "depends_on": ["backend"], "healthcheck": fast_check(retries=1)},
    }
