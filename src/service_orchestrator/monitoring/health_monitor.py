from __future__ import annotations

import socket
import subprocess
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional

import httpx

from service_orchestrator.core.errors import HealthCheckTimeout
from service_orchestrator.core.units import HealthCheckSpec, ProbeKind, UnitSpec, split_host_port
from service_orchestrator.utils.logger import logger


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class HealthVerdict(str, Enum):
    READY = "ready"
    NOT_READY = "not_ready"
    FAILED = "failed"


@dataclass(frozen=True)
class HealthCheckResult:
    outcome: HealthStatus
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    message: Optional[str] = None

    @property
    def healthy(self) -> bool:
        return self.outcome is HealthStatus.HEALTHY


# ---------- probe transports ----------

def _probe_tcp(check: HealthCheckSpec) -> HealthCheckResult:
    host, port = split_host_port(check.target)
    try:
        with socket.create_connection((host, port), timeout=check.timeout):
            pass
    except socket.timeout as e:
        raise HealthCheckTimeout(f"tcp {host}:{port} timed out after {check.timeout}s") from e
    except OSError as e:
        return HealthCheckResult(HealthStatus.UNHEALTHY, message=f"tcp {host}:{port}: {e}")
    return HealthCheckResult(HealthStatus.HEALTHY, message=f"tcp {host}:{port} accepting connections")


def _probe_http(check: HealthCheckSpec, client: Optional[httpx.Client] = None) -> HealthCheckResult:
    try:
        if client is not None:
            response = client.get(check.target, timeout=check.timeout)
        else:
            response = httpx.get(check.target, timeout=check.timeout)
    except httpx.TimeoutException as e:
        raise HealthCheckTimeout(f"GET {check.target} timed out after {check.timeout}s") from e
    except httpx.HTTPError as e:
        return HealthCheckResult(HealthStatus.UNHEALTHY, message=f"GET {check.target}: {e}")

    if response.status_code == check.expected_status:
        return HealthCheckResult(HealthStatus.HEALTHY, message=f"GET {check.target} -> {response.status_code}")
    return HealthCheckResult(
        HealthStatus.UNHEALTHY,
        message=f"GET {check.target} -> {response.status_code}, expected {check.expected_status}",
    )


def _probe_command(check: HealthCheckSpec) -> HealthCheckResult:
    try:
        completed = subprocess.run(
            check.target,
            shell=True,
            capture_output=True,
            timeout=check.timeout,
        )
    except subprocess.TimeoutExpired as e:
        raise HealthCheckTimeout(f"command timed out after {check.timeout}s") from e
    if completed.returncode == 0:
        return HealthCheckResult(HealthStatus.HEALTHY, message="command exited 0")
    stderr = completed.stderr.decode("utf-8", errors="ignore").strip()
    message = f"command exited {completed.returncode}"
    if stderr:
        message = f"{message}: {stderr[-200:]}"
    return HealthCheckResult(HealthStatus.UNHEALTHY, message=message)


def probe(spec: UnitSpec, *, client: Optional[httpx.Client] = None) -> HealthCheckResult:
    """
    Run one health probe for a unit.

    Never raises: timeouts become UNHEALTHY, anything unexpected UNKNOWN.
    """
    check = spec.health_check
    if check is None:
        return HealthCheckResult(HealthStatus.UNKNOWN, message="no health check declared")
    try:
        if check.kind is ProbeKind.TCP:
            return _probe_tcp(check)
        if check.kind is ProbeKind.HTTP:
            return _probe_http(check, client)
        return _probe_command(check)
    except HealthCheckTimeout as e:
        return HealthCheckResult(HealthStatus.UNHEALTHY, message=str(e))
    except Exception as e:
        logger.warning(f"Probe for {spec.name} raised unexpectedly: {e}")
        return HealthCheckResult(HealthStatus.UNKNOWN, message=f"probe error: {e}")


# ---------- counting rules ----------

class HealthTracker:
    """
    Turns a stream of probe results into READY / NOT_READY / FAILED.

    Before READY: ``retries`` consecutive healthy probes make the unit ready;
    ``retries`` consecutive non-healthy probes fail it, but only those that
    land after ``start_delay``. Exceeding the startup budget also fails it.
    After READY, ``retries`` consecutive non-healthy probes fail it.
    """

    def __init__(self, check: HealthCheckSpec, started_at: float) -> None:
        self.check = check
        self.started_at = started_at
        self.ready = False
        self.consecutive_healthy = 0
        self.consecutive_unhealthy = 0

    def observe(self, result: HealthCheckResult, now: float) -> HealthVerdict:
        elapsed = now - self.started_at
        if result.healthy:
            self.consecutive_healthy += 1
            self.consecutive_unhealthy = 0
        else:
            self.consecutive_healthy = 0
            if self.ready or elapsed >= self.check.start_delay:
                self.consecutive_unhealthy += 1

        if self.consecutive_unhealthy >= self.check.retries:
            return HealthVerdict.FAILED
        if self.ready:
            return HealthVerdict.READY
        if self.consecutive_healthy >= self.check.retries:
            self.ready = True
            return HealthVerdict.READY
        if elapsed >= self.check.startup_budget:
            return HealthVerdict.FAILED
        return HealthVerdict.NOT_READY


HealthCallback = Callable[[str, HealthCheckResult, HealthVerdict], None]
Prober = Callable[[UnitSpec], HealthCheckResult]


class _ProbeLoop:
    def __init__(self, spec: UnitSpec, thread: threading.Thread, stop: threading.Event):
        self.spec = spec
        self.thread = thread
        self.stop = stop


class HealthMonitor:
    """One probe loop (daemon thread) per watched unit."""

    def __init__(self, prober: Prober = probe, clock: Callable[[], float] = time.monotonic) -> None:
        self._prober = prober
        self._clock = clock
        self._loops: Dict[str, _ProbeLoop] = {}
        self._lock = threading.Lock()

    def watch(self, spec: UnitSpec, callback: HealthCallback) -> None:
        """Start probing ``spec`` every ``interval`` seconds, reporting to ``callback``."""
        if spec.health_check is None:
            raise ValueError(f"unit {spec.name} has no health check to watch")
        self.unwatch(spec.name)

        stop = threading.Event()
        tracker = HealthTracker(spec.health_check, self._clock())
        thread = threading.Thread(
            target=self._run,
            args=(spec, tracker, stop, callback),
            name=f"health-{spec.name}",
            daemon=True,
        )
        with self._lock:
            self._loops[spec.name] = _ProbeLoop(spec, thread, stop)
        logger.debug(f"Health monitor watching {spec.name} every {spec.health_check.interval}s")
        thread.start()

    def unwatch(self, name: str, timeout: Optional[float] = None) -> None:
        with self._lock:
            loop = self._loops.pop(name, None)
        if loop is None:
            return
        loop.stop.set()
        if loop.thread is not threading.current_thread() and loop.thread.is_alive():
            loop.thread.join(timeout if timeout is not None else loop.spec.health_check.timeout + 1.0)

    def stop_all(self) -> None:
        with self._lock:
            names = list(self._loops)
        for name in names:
            self.unwatch(name)

    def watched(self) -> List[str]:
        with self._lock:
            return sorted(self._loops)

    def _run(self, spec: UnitSpec, tracker: HealthTracker, stop: threading.Event, callback: HealthCallback) -> None:
        check = spec.health_check
        while not stop.is_set():
            t0 = self._clock()
            try:
                result = self._prober(spec)
            except Exception as e:
                result = HealthCheckResult(HealthStatus.UNKNOWN, message=f"probe error: {e}")
            if stop.is_set():
                break

            verdict = tracker.observe(result, self._clock())
            logger.debug(f"Probe {spec.name}: {result.outcome.value} ({result.message}) -> {verdict.value}")
            try:
                callback(spec.name, result, verdict)
            except Exception as e:
                logger.exception("Health callback for %s failed: %s", spec.name, e)

            if verdict is HealthVerdict.FAILED:
                break

            # sleep the remaining time of the interval
            elapsed = self._clock() - t0
            stop.wait(max(0.0, check.interval - elapsed))

        logger.debug(f"Health monitor loop for {spec.name} exited")


__all__ = [
    "HealthCheckResult",
    "HealthMonitor",
    "HealthStatus",
    "HealthTracker",
    "HealthVerdict",
    "probe",
]
